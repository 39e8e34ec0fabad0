"""Routing rule evaluation and administration (core domain)."""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any, Iterable, Mapping, Optional, Sequence

from whatsroute.core.categories import CategoryRegistry
from whatsroute.core.chat_ids import normalize_group_id
from whatsroute.core.errors import CategoryNotFound, InvalidRuleReference, RuleValidationError
from whatsroute.core.models import (
    CategoryStatus,
    DestinationGroup,
    MatchResult,
    RoutingDecision,
    RoutingRule,
    Severity,
)
from whatsroute.core.ports import GroupStore, RuleStore

LOGGER = logging.getLogger(__name__)


def parse_severity_filter(raw: Iterable[Any]) -> frozenset[Severity]:
    """Normalize a severity filter; it must be a non-empty subset of low/medium/high."""

    if isinstance(raw, str):
        raw = [part for part in raw.split(",") if part.strip()]
    severities = set()
    for value in raw:
        label = value.value if isinstance(value, Severity) else str(value).strip().lower()
        try:
            severities.add(Severity(label))
        except ValueError as exc:
            raise RuleValidationError(f"unknown severity: {value}") from exc
    if not severities:
        raise RuleValidationError("severity filter must not be empty")
    return frozenset(severities)


def _destination_id(raw: str) -> str:
    try:
        return normalize_group_id(raw)
    except ValueError as exc:
        raise InvalidRuleReference(str(exc)) from exc


def evaluate(
    match: MatchResult,
    severity: Severity,
    rules: Iterable[RoutingRule],
    groups: Mapping[str, DestinationGroup],
) -> list[RoutingDecision]:
    """Return every routing decision for a matched message, ordered by priority.

    Matching logic:
    - An unmatched message never routes.
    - A rule fires when it targets the matched category, is active, its
      destination group exists and is active, and the severity is in its filter.
    - All qualifying rules fire, not just the best one.
    """

    if match.category is None:
        return []

    category_id = match.category.id
    decisions: list[RoutingDecision] = []
    for rule in sorted(rules, key=lambda r: (r.priority, r.id)):
        if rule.category_id != category_id or not rule.is_active:
            continue
        group = groups.get(rule.destination_group_id)
        if group is None or not group.is_active:
            # A dangling or paused destination makes the rule inactive.
            LOGGER.debug("Rule %s skipped: destination %s unavailable", rule.id, rule.destination_group_id)
            continue
        if severity not in rule.severity_filter:
            continue
        decisions.append(
            RoutingDecision(
                rule=rule,
                destination_group_id=rule.destination_group_id,
                severity=severity,
                category_id=category_id,
            )
        )
    return decisions


class GroupDirectory:
    """Known destination groups and their activation state."""

    def __init__(self, store: GroupStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._snapshot: dict[str, DestinationGroup] = {}
        self.reload()

    def reload(self) -> None:
        groups = {group.id: group for group in self._store.list_groups()}
        self._snapshot = groups

    def snapshot(self) -> Mapping[str, DestinationGroup]:
        return self._snapshot

    def get(self, group_id: str) -> Optional[DestinationGroup]:
        return self._snapshot.get(group_id)

    def upsert_group(self, group_id: str, name: str, department: str = "", is_active: bool = True) -> DestinationGroup:
        group = DestinationGroup(
            id=normalize_group_id(group_id),
            name=name,
            department=department,
            is_active=is_active,
        )
        with self._lock:
            self._store.save_group(group)
            self._snapshot = {**self._snapshot, group.id: group}
        return group

    def set_group_active(self, group_id: str, active: bool) -> DestinationGroup:
        group_id = normalize_group_id(group_id)
        with self._lock:
            current = self._snapshot.get(group_id)
            if current is None:
                raise InvalidRuleReference(f"unknown destination group: {group_id}")
            updated = dataclasses.replace(current, is_active=active)
            self._store.save_group(updated)
            self._snapshot = {**self._snapshot, updated.id: updated}
        LOGGER.info("Group %s %s", group_id, "activated" if active else "deactivated")
        return updated

    def remove_group(self, group_id: str) -> bool:
        group_id = normalize_group_id(group_id)
        with self._lock:
            removed = self._store.delete_group(group_id)
            self._snapshot = {key: value for key, value in self._snapshot.items() if key != group_id}
        return removed


class RuleBook:
    """Operator-managed routing rules with all-or-nothing visibility.

    Each write validates the rule, persists it, and then swaps the in-memory
    snapshot in a single assignment, so evaluations see either the old or the
    new rule set and never a half-applied update.
    """

    def __init__(self, store: RuleStore, registry: CategoryRegistry, groups: GroupDirectory) -> None:
        self._store = store
        self._registry = registry
        self._groups = groups
        self._lock = threading.Lock()
        self._snapshot: tuple[RoutingRule, ...] = tuple(store.list_rules())

    def snapshot(self) -> tuple[RoutingRule, ...]:
        return self._snapshot

    def list_rules(self) -> list[RoutingRule]:
        return sorted(self._snapshot, key=lambda r: (r.priority, r.id))

    def get_rule(self, rule_id: int) -> RoutingRule:
        for rule in self._snapshot:
            if rule.id == rule_id:
                return rule
        raise RuleValidationError(f"rule {rule_id} does not exist")

    def _validate(self, rule: RoutingRule) -> None:
        try:
            category = self._registry.get(rule.category_id)
        except CategoryNotFound as exc:
            raise InvalidRuleReference(str(exc)) from exc
        if category.status is not CategoryStatus.APPROVED:
            raise InvalidRuleReference(
                f"category {rule.category_id} is {category.status.value}, not approved"
            )
        if self._groups.get(rule.destination_group_id) is None:
            raise InvalidRuleReference(f"unknown destination group: {rule.destination_group_id}")
        if not rule.severity_filter or not rule.severity_filter <= set(Severity):
            raise RuleValidationError("severity filter must be a non-empty subset of low/medium/high")

    def create_rule(
        self,
        category_id: int,
        destination_group_id: str,
        severity_filter: Iterable[Any],
        is_active: bool = True,
        priority: int = 100,
    ) -> RoutingRule:
        rule = RoutingRule(
            id=0,
            category_id=int(category_id),
            destination_group_id=_destination_id(destination_group_id),
            severity_filter=parse_severity_filter(severity_filter),
            is_active=bool(is_active),
            priority=int(priority),
        )
        with self._lock:
            self._validate(rule)
            created = self._store.add_rule(rule)
            self._snapshot = self._snapshot + (created,)
        LOGGER.info("Rule %s created: category %s -> %s", created.id, created.category_id, created.destination_group_id)
        return created

    def update_rule(self, rule_id: int, **changes: Any) -> RoutingRule:
        allowed = {"category_id", "destination_group_id", "severity_filter", "is_active", "priority"}
        unknown = set(changes) - allowed
        if unknown:
            raise RuleValidationError(f"unknown rule fields: {', '.join(sorted(unknown))}")
        if "severity_filter" in changes:
            changes["severity_filter"] = parse_severity_filter(changes["severity_filter"])
        if "destination_group_id" in changes:
            changes["destination_group_id"] = _destination_id(changes["destination_group_id"])
        with self._lock:
            updated = dataclasses.replace(self.get_rule(rule_id), **changes)
            self._validate(updated)
            self._store.save_rule(updated)
            self._snapshot = tuple(updated if r.id == rule_id else r for r in self._snapshot)
        LOGGER.info("Rule %s updated", rule_id)
        return updated

    def delete_rule(self, rule_id: int) -> bool:
        with self._lock:
            removed = self._store.delete_rule(rule_id)
            self._snapshot = tuple(r for r in self._snapshot if r.id != rule_id)
        if removed:
            LOGGER.info("Rule %s deleted", rule_id)
        return removed


def seed_rules(rulebook: RuleBook, rules_config: Sequence[Mapping[str, Any]], category_ids: Mapping[str, int]) -> int:
    """Create configured rules that do not exist yet; return how many were added.

    Config rules reference categories by name so config.json stays readable.
    """

    existing = {(r.category_id, r.destination_group_id) for r in rulebook.snapshot()}
    added = 0
    for entry in rules_config:
        if not entry.get("enabled", True):
            continue
        category_id = category_ids.get(entry["category"])
        if category_id is None:
            LOGGER.warning("Rule for unknown category %s ignored", entry["category"])
            continue
        group_id = normalize_group_id(entry["group"])
        if (category_id, group_id) in existing:
            continue
        rulebook.create_rule(
            category_id=category_id,
            destination_group_id=group_id,
            severity_filter=entry.get("severity", ["low", "medium", "high"]),
            is_active=entry.get("active", True),
            priority=entry.get("priority", 100),
        )
        existing.add((category_id, group_id))
        added += 1
    return added
