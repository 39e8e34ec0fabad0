"""Confidence/intent classifier adapter (core domain).

The model itself lives behind ``AnalyzerPort``. This module only enforces the
contract: a bounded call, a sanitized result, and a deterministic fallback
whenever the upstream is slow or returns something unusable.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from whatsroute.core.config import ClassifierConfig
from whatsroute.core.errors import ClassificationDegraded
from whatsroute.core.models import ClassificationResult, Entity, Message
from whatsroute.core.ports import AnalyzerPort

LOGGER = logging.getLogger(__name__)

FALLBACK_RESULT = ClassificationResult(
    sentiment="neutral",
    intent="unknown",
    confidence=0.0,
    entities=(),
    degraded=True,
)


def _label(raw: Any, key: str) -> Optional[str]:
    # Upstream answers both {"sentiment": "negative"} and
    # {"sentiment": {"sentiment": "negative", "confidence": 0.9}}.
    if isinstance(raw, Mapping):
        raw = raw.get(key)
    if isinstance(raw, str) and raw.strip():
        return raw.strip().lower()
    return None


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def _entities(raw: Any) -> tuple[Entity, ...]:
    entities: list[Entity] = []
    if isinstance(raw, Mapping):
        for category, texts in raw.items():
            if not isinstance(texts, (list, tuple)):
                continue
            for text in texts:
                if isinstance(text, str) and text.strip():
                    entities.append(Entity(text=text.strip(), category=str(category).lower()))
    elif isinstance(raw, (list, tuple)):
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            text = item.get("text")
            category = item.get("category")
            if isinstance(text, str) and text.strip() and isinstance(category, str):
                entities.append(Entity(text=text.strip(), category=category.lower()))
    return tuple(entities)


def sanitize_analysis(payload: Mapping[str, Any], config: ClassifierConfig) -> ClassificationResult:
    """Validate an upstream payload and build a ClassificationResult.

    Raises ClassificationDegraded when the payload has no usable confidence.
    """

    if not isinstance(payload, Mapping):
        raise ClassificationDegraded("analysis payload is not an object")

    raw_confidence = payload.get("confidence")
    if isinstance(raw_confidence, bool) or not isinstance(raw_confidence, (int, float)):
        raise ClassificationDegraded("analysis payload has no numeric confidence")

    sentiment = _label(payload.get("sentiment"), "sentiment") or "neutral"
    if sentiment not in config.sentiments:
        sentiment = "neutral"
    intent = _label(payload.get("intent"), "intent") or "unknown"
    if intent not in config.intents:
        intent = "unknown"

    # A message the model flags as a complaint cannot be positive or neutral.
    flagging = payload.get("flagging")
    flagged_complaint = isinstance(flagging, Mapping) and _label(flagging, "category") == "complaint"
    if (flagged_complaint or intent == "complaint") and sentiment != "negative":
        LOGGER.debug("Sentiment %s overridden to negative for complaint", sentiment)
        sentiment = "negative"

    return ClassificationResult(
        sentiment=sentiment,
        intent=intent,
        confidence=_clamp(float(raw_confidence)),
        entities=_entities(payload.get("entities")),
        degraded=False,
    )


class Classifier:
    """Bounded, never-failing wrapper around the external analyzer."""

    def __init__(self, analyzer: AnalyzerPort, config: ClassifierConfig) -> None:
        self._analyzer = analyzer
        self._config = config

    async def classify(self, message: Message) -> ClassificationResult:
        """Classify one message, degrading to FALLBACK_RESULT on any failure."""

        if len(message.text.strip()) < self._config.min_text_chars:
            return FALLBACK_RESULT

        context = {
            "sender_name": message.sender_name,
            "group_id": message.group_id,
        }
        try:
            payload = await asyncio.wait_for(
                self._analyzer.analyze(message.text, context),
                timeout=self._config.timeout_seconds,
            )
            return sanitize_analysis(payload, self._config)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Classification degraded for %s: analyzer timed out after %ss",
                message.id,
                self._config.timeout_seconds,
            )
        except ClassificationDegraded as exc:
            LOGGER.warning("Classification degraded for %s: %s", message.id, exc)
        except Exception:
            LOGGER.warning("Classification degraded for %s: analyzer failed", message.id, exc_info=True)
        return FALLBACK_RESULT
