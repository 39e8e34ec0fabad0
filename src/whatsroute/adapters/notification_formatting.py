"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters and keeps routed
alerts consistent regardless of which rule fired.
"""

from __future__ import annotations

from typing import Mapping, Optional

from whatsroute.core.models import (
    ClassificationResult,
    EscalationResult,
    MatchResult,
    Message,
    RoutingDecision,
    Severity,
)

RISK_LINE_MIN_SCORE = 0.5

_SEVERITY_ICONS = {
    Severity.LOW: "📋",
    Severity.MEDIUM: "⚠️",
    Severity.HIGH: "🚨",
}


def escape_whatsapp(value: str) -> str:
    """Neutralize WhatsApp inline markers so user text cannot restyle the alert."""

    for ch in "*_~`":
        value = value.replace(ch, f"\u200b{ch}")
    return value


def format_group_label(group_id: Optional[str], group_aliases: Mapping[str, str]) -> str:
    """Return a human-friendly group label, using configured aliases."""

    if not group_id:
        return "direct message"
    alias = group_aliases.get(group_id)
    if not alias:
        return group_id
    return f"{alias} ({group_id})"


def format_routing_message(
    message: Message,
    classification: ClassificationResult,
    match: MatchResult,
    escalation: EscalationResult,
    decision: RoutingDecision,
    group_aliases: Optional[Mapping[str, str]] = None,
) -> str:
    """Create the WhatsApp text forwarded to a destination group."""

    aliases = group_aliases or {}
    category = match.category
    category_name = category.name if category else "Uncategorized"
    department = category.department if category else ""
    icon = _SEVERITY_ICONS.get(decision.severity, "📋")
    timestamp = message.received_at.astimezone().strftime("%H:%M:%S %d-%m-%Y").strip()

    header = f"{icon} *{escape_whatsapp(category_name)}*"
    if department:
        header += f" ({escape_whatsapp(department)})"

    lines = [
        header,
        f"*From:* {escape_whatsapp(message.sender_name)}",
        f"*Group:* {escape_whatsapp(format_group_label(message.group_id, aliases))}",
        f"*Time:* {timestamp}",
        f"*Category:* {escape_whatsapp(category_name)} ({match.score:.0%} confidence)",
        f"*Sentiment:* {classification.sentiment} / {classification.intent}",
    ]
    if escalation.score > RISK_LINE_MIN_SCORE:
        lines.append(f"*Escalation Risk:* {escalation.risk_level.value} ({escalation.score:.0%})")
    if decision.rule is None:
        lines.append("*Escalated:* no regular route could deliver this alert")

    lines.extend(["──────────────", "", "*Message:*", escape_whatsapp(message.text)])
    return "\n".join(lines)
