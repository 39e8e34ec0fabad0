"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, analysis, and transport
adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

from whatsroute.core.models import (
    Category,
    CategoryStatus,
    ClassificationResult,
    DestinationGroup,
    LogPage,
    LogQuery,
    Message,
    RoutingLogEntry,
    RoutingRule,
    SendResult,
    SenderHistoryEntry,
    SenderProfile,
    UnmatchedMessage,
)


class AnalyzerPort(Protocol):
    """External sentiment/intent/entity analysis call."""

    async def analyze(self, text: str, context: Mapping[str, Any]) -> Mapping[str, Any]:
        ...


class TransportPort(Protocol):
    """Chat-send capability; only the ok/transient/permanent trichotomy is assumed."""

    async def send(self, destination_group_id: str, text: str) -> SendResult:
        ...


class EventSink(Protocol):
    """One-way outbound event channel; must never block the caller."""

    def publish(self, event: Mapping[str, Any]) -> None:
        ...


class CategoryStore(Protocol):
    def list_categories(self, status: Optional[CategoryStatus] = None) -> list[Category]:
        ...

    def get_category(self, category_id: int) -> Optional[Category]:
        ...

    def find_category_by_name(self, name: str) -> Optional[Category]:
        ...

    def add_category(self, category: Category) -> Category:
        """Insert a category; ``category.id`` is ignored and assigned."""
        ...

    def save_category(self, category: Category) -> None:
        ...

    def save_categories(self, categories: Sequence[Category]) -> None:
        """Persist several categories in one transaction."""
        ...


class GroupStore(Protocol):
    def list_groups(self) -> list[DestinationGroup]:
        ...

    def save_group(self, group: DestinationGroup) -> None:
        ...

    def delete_group(self, group_id: str) -> bool:
        ...


class RuleStore(Protocol):
    def list_rules(self) -> list[RoutingRule]:
        ...

    def add_rule(self, rule: RoutingRule) -> RoutingRule:
        """Insert a rule; ``rule.id`` is ignored and assigned."""
        ...

    def save_rule(self, rule: RoutingRule) -> None:
        ...

    def delete_rule(self, rule_id: int) -> bool:
        ...


class ProfileStore(Protocol):
    def get_profile(self, sender_id: str) -> Optional[SenderProfile]:
        ...

    def save_profile(self, profile: SenderProfile) -> None:
        ...

    def recent_sender_messages(self, sender_id: str, since: datetime) -> list[SenderHistoryEntry]:
        ...

    def append_sender_message(self, sender_id: str, entry: SenderHistoryEntry) -> None:
        ...


class UnmatchedPoolStore(Protocol):
    def add_unmatched(self, entry: UnmatchedMessage) -> int:
        """Append an entry and return its pool sequence number."""
        ...

    def list_unmatched(self, since: datetime) -> list[UnmatchedMessage]:
        ...

    def prune_unmatched(self, before: datetime) -> int:
        ...

    def get_cursor(self, name: str) -> Optional[int]:
        ...

    def set_cursor(self, name: str, value: int) -> None:
        ...


class AuditStore(Protocol):
    def append_log_entry(self, entry: RoutingLogEntry) -> None:
        ...

    def query_log(self, query: LogQuery) -> LogPage:
        ...

    def find_successful_entry(
        self, message_id: str, rule_id: Optional[int], destination_group_id: str
    ) -> Optional[RoutingLogEntry]:
        ...


class MessageStore(Protocol):
    def save_message(self, message: Message) -> bool:
        """Persist a message; return False when the id already exists."""
        ...

    def get_message(self, message_id: str) -> Optional[Message]:
        ...

    def save_classification(self, message_id: str, result: ClassificationResult) -> None:
        ...


class SettingsStore(Protocol):
    def get_setting(self, key: str) -> Optional[Any]:
        ...

    def set_setting(self, key: str, value: Any) -> None:
        ...
