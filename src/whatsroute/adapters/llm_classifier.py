"""LLM analysis adapter.

Calls an OpenAI-compatible chat-completions endpoint and returns the JSON
object from the reply. Validation of the payload happens in the core
classifier; this adapter only raises on transport or parse problems.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping

import httpx

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "Qwen/Qwen2.5-7B-Instruct-Turbo"

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

PROMPT_TEMPLATE = """Analyze this WhatsApp message sent to a member-facing group.
The message can be in English, Hindi, or a mix of both.

Message: "{text}"
Context: Group="{group}", Sender="{sender}"

Return only a JSON object:
{{
  "sentiment": {{"sentiment": "positive|negative|neutral", "confidence": 0.0}},
  "intent": {{"intent": "complaint|question|booking|feedback|general", "confidence": 0.0}},
  "entities": {{"equipment": [], "facilities": [], "staff": []}},
  "flagging": {{"category": "complaint|urgent|equipment|staff|general", "priority": "low|medium|high|critical"}},
  "confidence": 0.0
}}"""


def build_prompt(text: str, context: Mapping[str, Any]) -> str:
    return PROMPT_TEMPLATE.format(
        text=text.replace('"', "'"),
        group=context.get("group_id") or "Private",
        sender=context.get("sender_name") or "Unknown",
    )


def extract_json_object(content: str) -> dict[str, Any]:
    """Return the outermost JSON object embedded in a model reply."""

    found = _JSON_OBJECT.search(content or "")
    if not found:
        raise ValueError("model reply contains no JSON object")
    parsed = json.loads(found.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("model reply JSON is not an object")
    return parsed


class LLMAnalyzer:
    """AnalyzerPort implementation backed by a hosted chat model."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.2,
        max_tokens: int = 500,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def analyze(self, text: str, context: Mapping[str, Any]) -> Mapping[str, Any]:
        response = await self._client.post(
            "/chat/completions",
            json={
                "model": self._model,
                "messages": [{"role": "user", "content": build_prompt(text, context)}],
                "temperature": self._temperature,
                "max_tokens": self._max_tokens,
            },
        )
        response.raise_for_status()
        body = response.json()
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError("unexpected chat-completions response shape") from exc
        LOGGER.debug("Analyzer reply length %s", len(content or ""))
        return extract_json_object(content)

    async def aclose(self) -> None:
        await self._client.aclose()
