"""Bridge-to-core message mapping adapter.

This keeps the bridge's JSON shape out of the core pipeline.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from whatsroute.core.chat_ids import GROUP_SUFFIX, USER_SUFFIX


def _sender_id(item: Mapping[str, Any]) -> Optional[str]:
    raw = item.get("fromNumber") or item.get("author") or item.get("from")
    if not isinstance(raw, str) or not raw.strip():
        return None
    raw = raw.strip()
    if "@" in raw:
        return raw
    return f"{raw}{USER_SUFFIX}"


def _group_id(item: Mapping[str, Any]) -> Optional[str]:
    chat_id = item.get("chatId")
    if not isinstance(chat_id, str):
        return None
    if item.get("isGroup") or chat_id.endswith(GROUP_SUFFIX):
        return chat_id
    # Private chats have no group.
    return None


def payload_from_bridge(item: Mapping[str, Any]) -> Optional[dict[str, Any]]:
    """Build an ingestion payload from one bridge message.

    Returns None for items that should not be ingested: our own outbound
    messages, media without a caption, or items missing a sender.
    """

    if item.get("isFromMe") or item.get("fromMe"):
        return None
    text = item.get("body")
    if not isinstance(text, str) or not text.strip():
        return None
    sender_id = _sender_id(item)
    if sender_id is None:
        return None

    payload: dict[str, Any] = {
        "sender_id": sender_id,
        "sender_name": item.get("fromName") or item.get("notifyName") or sender_id,
        "group_id": _group_id(item),
        "text": text,
        "received_at": item.get("timestamp"),
    }
    message_id = item.get("id")
    if isinstance(message_id, Mapping):
        message_id = message_id.get("id") or message_id.get("_serialized")
    if isinstance(message_id, str) and message_id:
        payload["id"] = message_id
    return payload
