"""WhatsApp HTTP bridge adapter.

The bridge is a small HTTP service in front of a WhatsApp Web session. This
adapter turns its responses into the ok/transient/permanent trichotomy the
dispatcher retries on, and exposes the polling and group listing endpoints.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from whatsroute.core.models import SendResult, SendStatus

LOGGER = logging.getLogger(__name__)

PERMANENT_STATUS_CODES = frozenset({400, 403, 404, 410})
PERMANENT_ERROR_CODES = frozenset({"group_not_found", "not_in_group", "invalid_group"})


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        code = body.get("error") or body.get("code")
        if isinstance(code, str):
            return code
    return None


def classify_response(response: httpx.Response) -> SendResult:
    """Map a bridge response to a SendResult."""

    if response.is_success:
        return SendResult(SendStatus.OK)
    code = _error_code(response)
    detail = f"bridge returned {response.status_code}" + (f" ({code})" if code else "")
    if code in PERMANENT_ERROR_CODES or response.status_code in PERMANENT_STATUS_CODES:
        return SendResult(SendStatus.PERMANENT_ERROR, detail)
    # 408, 429, 5xx and anything unexpected are worth another attempt.
    return SendResult(SendStatus.TRANSIENT_ERROR, detail)


class WhatsAppBridge:
    """Transport adapter backed by an httpx.AsyncClient pointed at the bridge."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def send(self, destination_group_id: str, text: str) -> SendResult:
        try:
            response = await self._client.post(
                f"/groups/{destination_group_id}/messages",
                json={"text": text},
            )
        except httpx.TransportError as exc:
            return SendResult(SendStatus.TRANSIENT_ERROR, f"bridge unreachable: {exc}")
        return classify_response(response)

    async def list_groups(self) -> list[dict[str, Any]]:
        """Return the groups the bridge session is a member of."""

        response = await self._client.get("/groups")
        response.raise_for_status()
        body = response.json()
        groups = body.get("groups", []) if isinstance(body, dict) else body
        return [group for group in groups if isinstance(group, dict) and group.get("id")]

    async def fetch_messages(self, after: int = 0, limit: int = 100) -> tuple[list[dict[str, Any]], int]:
        """Fetch inbound messages newer than ``after``.

        Returns the raw items and the bridge sequence to resume from.
        """

        response = await self._client.get("/messages", params={"after": after, "limit": limit})
        response.raise_for_status()
        body = response.json()
        items = body.get("messages", []) if isinstance(body, dict) else body
        next_after = after
        for item in items:
            seq = item.get("seq")
            if isinstance(seq, int) and seq > next_after:
                next_after = seq
        if isinstance(body, dict) and isinstance(body.get("next_after"), int):
            next_after = max(next_after, body["next_after"])
        return list(items), next_after

    async def aclose(self) -> None:
        await self._client.aclose()
