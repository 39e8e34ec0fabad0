"""Helpers for working with WhatsApp chat identifiers."""

from __future__ import annotations

import re
from typing import Optional, Tuple

GROUP_SUFFIX = "@g.us"
USER_SUFFIX = "@c.us"

_PHONE_NOISE = re.compile(r"[\s()+-]")


def split_chat_id(chat_id: str) -> Tuple[str, Optional[str]]:
    """Split a chat id into (local_part, suffix)."""

    local, sep, domain = chat_id.partition("@")
    if not sep:
        return chat_id, None
    return local, f"@{domain}"


def normalize_group_id(raw: str) -> str:
    """Return the canonical ``<id>@g.us`` form of a group id.

    Bridges report group ids both with and without the suffix, and older
    exports use ``<creator>-<timestamp>`` locals; both are kept verbatim apart
    from the suffix.
    """

    value = raw.strip()
    if not value:
        raise ValueError("group id is empty")
    local, suffix = split_chat_id(value)
    if suffix not in (None, GROUP_SUFFIX):
        raise ValueError(f"not a group id: {raw}")
    if not local:
        raise ValueError(f"group id has no local part: {raw}")
    return f"{local}{GROUP_SUFFIX}"


def normalize_sender_id(raw: str) -> str:
    """Return the canonical ``<digits>@c.us`` form of a sender id.

    Phone numbers arrive formatted ("+91 98765-43210"); spacing, dashes, and
    the leading plus are stripped so one person maps to one profile.
    """

    value = raw.strip()
    if not value:
        raise ValueError("sender id is empty")
    local, suffix = split_chat_id(value)
    if suffix is not None and suffix != USER_SUFFIX:
        # Linked-device ids (@lid) are stable on their own.
        return value
    digits = _PHONE_NOISE.sub("", local)
    if not digits.isdigit():
        raise ValueError(f"sender id is not a phone number: {raw}")
    return f"{digits}{USER_SUFFIX}"


def is_group_id(chat_id: Optional[str]) -> bool:
    return bool(chat_id) and chat_id.endswith(GROUP_SUFFIX)
