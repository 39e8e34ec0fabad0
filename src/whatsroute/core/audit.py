"""Routing audit log (core domain).

Every delivery attempt ends in exactly one RoutingLogEntry. The write is
synchronous and must succeed before the dispatcher reports an outcome; live
dashboard updates are a best-effort event published afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from whatsroute.core.errors import AuditWriteFailure
from whatsroute.core.models import LogPage, LogQuery, RoutingLogEntry
from whatsroute.core.ports import AuditStore, EventSink

LOGGER = logging.getLogger(__name__)


def entry_event(entry: RoutingLogEntry) -> dict[str, Any]:
    """Serialize a log entry into the outbound event payload."""

    return {
        "type": "routing_log",
        "id": entry.id,
        "message_id": entry.message_id,
        "rule_id": entry.rule_id,
        "category_id": entry.category_id,
        "destination_group_id": entry.destination_group_id,
        "severity": entry.severity.value,
        "success": entry.success,
        "status": entry.status.value,
        "attempts": entry.attempts,
        "error_message": entry.error_message,
        "escalation_score": entry.escalation_score,
        "routed_at": entry.routed_at.isoformat(),
    }


class NullEventSink:
    def publish(self, event: Mapping[str, Any]) -> None:
        return None


class QueueEventSink:
    """Bounded asyncio queue consumed by a separate notification collaborator."""

    def __init__(self, maxsize: int = 1000) -> None:
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, event: Mapping[str, Any]) -> None:
        try:
            self.queue.put_nowait(dict(event))
        except asyncio.QueueFull:
            self.dropped += 1
            LOGGER.warning("Event queue full, dropped %s event", event.get("type"))


class AuditLogger:
    """Durable, append-only recorder of routing outcomes."""

    def __init__(self, store: AuditStore, sink: Optional[EventSink] = None) -> None:
        self._store = store
        self._sink = sink or NullEventSink()

    def record(self, entry: RoutingLogEntry) -> RoutingLogEntry:
        """Persist ``entry``; raise AuditWriteFailure if it is not durable."""

        try:
            self._store.append_log_entry(entry)
        except Exception as exc:
            LOGGER.error("Routing log write failed for %s -> %s", entry.message_id, entry.destination_group_id)
            raise AuditWriteFailure(f"could not record routing log entry {entry.id}: {exc}") from exc

        try:
            self._sink.publish(entry_event(entry))
        except Exception:
            LOGGER.warning("Event publish failed for log entry %s", entry.id, exc_info=True)
        return entry

    def query(self, query: LogQuery) -> LogPage:
        return self._store.query_log(query)

    def find_success(
        self, message_id: str, rule_id: Optional[int], destination_group_id: str
    ) -> Optional[RoutingLogEntry]:
        return self._store.find_successful_entry(message_id, rule_id, destination_group_id)
