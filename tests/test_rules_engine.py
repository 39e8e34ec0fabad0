from __future__ import annotations

import pytest

from fakes import EQUIPMENT_KEYWORDS, MemoryStore
from whatsroute.core.categories import CategoryRegistry
from whatsroute.core.errors import InvalidRuleReference, RuleValidationError
from whatsroute.core.models import Category, CategoryStatus, DestinationGroup, MatchResult, RoutingRule, Severity
from whatsroute.core.rules_engine import GroupDirectory, RuleBook, evaluate, parse_severity_filter, seed_rules

OPS = "120363000000000001@g.us"
MANAGERS = "120363000000000002@g.us"

EQUIPMENT = Category(id=1, name="Equipment", department="OPS", status=CategoryStatus.APPROVED)


def _rule(rule_id: int, group: str, severities, *, priority: int = 100, active: bool = True) -> RoutingRule:
    return RoutingRule(
        id=rule_id,
        category_id=EQUIPMENT.id,
        destination_group_id=group,
        severity_filter=frozenset(severities),
        is_active=active,
        priority=priority,
    )


GROUPS = {
    OPS: DestinationGroup(id=OPS, name="Ops"),
    MANAGERS: DestinationGroup(id=MANAGERS, name="Managers"),
}


def _setup() -> tuple[MemoryStore, CategoryRegistry, GroupDirectory, RuleBook, Category]:
    store = MemoryStore()
    registry = CategoryRegistry(store)
    category = registry.create_static("Equipment", "OPS", EQUIPMENT_KEYWORDS)
    groups = GroupDirectory(store)
    groups.upsert_group(OPS, "Ops")
    groups.upsert_group(MANAGERS, "Managers")
    return store, registry, groups, RuleBook(store, registry, groups), category


def test_all_qualifying_rules_fire_in_priority_order() -> None:
    rules = [
        _rule(1, OPS, Severity, priority=20),
        _rule(2, MANAGERS, {Severity.HIGH}, priority=10),
    ]

    decisions = evaluate(MatchResult(EQUIPMENT, 0.9), Severity.HIGH, rules, GROUPS)

    assert [d.destination_group_id for d in decisions] == [MANAGERS, OPS]
    assert all(d.category_id == EQUIPMENT.id for d in decisions)


def test_severity_filter_excludes_rule() -> None:
    rules = [_rule(1, OPS, Severity), _rule(2, MANAGERS, {Severity.HIGH})]

    decisions = evaluate(MatchResult(EQUIPMENT, 0.9), Severity.MEDIUM, rules, GROUPS)

    assert [d.rule_id for d in decisions] == [1]


def test_unmatched_inactive_rule_or_group_does_not_route() -> None:
    paused = {**GROUPS, MANAGERS: DestinationGroup(id=MANAGERS, name="Managers", is_active=False)}
    rules = [_rule(1, OPS, Severity, active=False), _rule(2, MANAGERS, Severity)]

    assert evaluate(MatchResult(None, 0.2), Severity.HIGH, rules, GROUPS) == []
    assert evaluate(MatchResult(EQUIPMENT, 0.9), Severity.HIGH, rules, paused) == []


def test_rule_with_unknown_destination_is_skipped() -> None:
    rules = [_rule(1, "120363000000000099@g.us", Severity)]
    assert evaluate(MatchResult(EQUIPMENT, 0.9), Severity.LOW, rules, GROUPS) == []


def test_parse_severity_filter() -> None:
    assert parse_severity_filter("High, medium") == {Severity.HIGH, Severity.MEDIUM}
    assert parse_severity_filter([Severity.LOW]) == {Severity.LOW}
    with pytest.raises(RuleValidationError):
        parse_severity_filter([])
    with pytest.raises(RuleValidationError):
        parse_severity_filter(["urgent"])
    with pytest.raises(RuleValidationError):
        parse_severity_filter(" , ")


def test_create_rule_validates_references() -> None:
    store, registry, _, rulebook, category = _setup()
    pending = store.add_category(Category(id=0, name="Lockers", department="", status=CategoryStatus.PENDING))

    with pytest.raises(InvalidRuleReference):
        rulebook.create_rule(pending.id, OPS, ["high"])
    with pytest.raises(InvalidRuleReference):
        rulebook.create_rule(999, OPS, ["high"])
    with pytest.raises(InvalidRuleReference):
        rulebook.create_rule(category.id, "120363000000000099", ["high"])
    with pytest.raises(InvalidRuleReference):
        rulebook.create_rule(category.id, "919876543210@c.us", ["high"])
    assert rulebook.snapshot() == ()


def test_create_update_delete_swap_snapshot() -> None:
    store, _, _, rulebook, category = _setup()
    rule = rulebook.create_rule(category.id, "120363000000000001", "medium,high", priority=5)
    before = rulebook.snapshot()

    updated = rulebook.update_rule(rule.id, severity_filter=["high"], destination_group_id=MANAGERS)

    assert before == (rule,)
    assert rulebook.snapshot() == (updated,)
    assert updated.severity_filter == {Severity.HIGH}
    assert store.rules[rule.id].destination_group_id == MANAGERS

    assert rulebook.delete_rule(rule.id)
    assert rulebook.snapshot() == ()
    assert not rulebook.delete_rule(rule.id)


def test_failed_update_leaves_rule_unchanged() -> None:
    _, _, _, rulebook, category = _setup()
    rule = rulebook.create_rule(category.id, OPS, ["high"])

    with pytest.raises(RuleValidationError):
        rulebook.update_rule(rule.id, colour="red")
    with pytest.raises(InvalidRuleReference):
        rulebook.update_rule(rule.id, category_id=999)

    assert rulebook.get_rule(rule.id) == rule


def test_group_directory_activation() -> None:
    store, _, groups, _, _ = _setup()

    groups.set_group_active(OPS, False)

    assert not groups.get(OPS).is_active
    assert not store.groups[OPS].is_active
    with pytest.raises(InvalidRuleReference):
        groups.set_group_active("120363000000000099@g.us", True)


def test_seed_rules_skips_existing_and_unknown_categories() -> None:
    _, _, _, rulebook, category = _setup()
    config = [
        {"category": "Equipment", "group": OPS, "severity": ["low", "medium", "high"]},
        {"category": "Equipment", "group": "120363000000000002", "severity": ["high"], "priority": 1},
        {"category": "Billing", "group": OPS},
        {"category": "Equipment", "group": MANAGERS, "enabled": False},
    ]

    assert seed_rules(rulebook, config, {"Equipment": category.id}) == 2
    assert seed_rules(rulebook, config, {"Equipment": category.id}) == 0
    assert [r.destination_group_id for r in rulebook.list_rules()] == [MANAGERS, OPS]


def test_removed_group_leaves_rule_dangling() -> None:
    store, _, groups, rulebook, category = _setup()
    rulebook.create_rule(category.id, OPS, ["high"])

    assert groups.remove_group(OPS)

    assert OPS not in store.groups
    assert evaluate(MatchResult(category, 0.9), Severity.HIGH, rulebook.snapshot(), groups.snapshot()) == []
    assert not groups.remove_group(OPS)
