from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import timedelta

import pytest

from fakes import (
    EQUIPMENT_KEYWORDS,
    T0,
    FakeAnalyzer,
    FakeClock,
    FakeTransport,
    MemoryStore,
    make_message,
)
from whatsroute.core.audit import AuditLogger
from whatsroute.core.categories import CategoryRegistry
from whatsroute.core.classifier import Classifier
from whatsroute.core.config import (
    ClassifierConfig,
    DeliveryConfig,
    DetectorConfig,
    EscalationConfig,
    MatcherConfig,
    ProcessorConfig,
)
from whatsroute.core.detector import DynamicCategoryDetector
from whatsroute.core.dispatcher import DeliveryDispatcher
from whatsroute.core.errors import AuditWriteFailure, MessageValidationError
from whatsroute.core.escalation import EscalationScorer
from whatsroute.core.matcher import CategoryMatcher
from whatsroute.core.models import DeliveryStatus, RiskLevel, SendStatus, Severity
from whatsroute.core.processor import MessageProcessor, build_message
from whatsroute.core.rate_limit import DestinationRateLimiter
from whatsroute.core.rules_engine import GroupDirectory, RuleBook

OPS = "120363000000000001@g.us"
MANAGERS = "120363000000000002@g.us"
FALLBACK = "120363000000000004@g.us"

TREADMILL_TEXTS = [
    "treadmill is broken",
    "the treadmill is still broken",
    "treadmill broken again!!",
]


@dataclass
class Harness:
    store: MemoryStore
    transport: FakeTransport
    registry: CategoryRegistry
    processor: MessageProcessor
    equipment_id: int


def _harness(analyzer: FakeAnalyzer | None = None, classifier_config: ClassifierConfig | None = None) -> Harness:
    store = MemoryStore()
    clock = FakeClock()
    transport = FakeTransport()
    registry = CategoryRegistry(store, clock=clock)
    equipment = registry.create_static(
        "Equipment",
        "EQUIPMENT_MAINTENANCE",
        EQUIPMENT_KEYWORDS,
        min_confidence=0.3,
        severity_weight=0.7,
        intents=["complaint"],
        entity_types=["equipment"],
    )
    groups = GroupDirectory(store)
    for group_id, name in ((OPS, "Ops"), (MANAGERS, "Managers"), (FALLBACK, "Duty manager")):
        groups.upsert_group(group_id, name)
    rulebook = RuleBook(store, registry, groups)
    rulebook.create_rule(equipment.id, OPS, ["low", "medium", "high"])
    rulebook.create_rule(equipment.id, MANAGERS, ["high"])
    dispatcher = DeliveryDispatcher(
        transport,
        AuditLogger(store),
        DestinationRateLimiter(rate_per_second=1000, burst=100),
        DeliveryConfig(backoff_base_seconds=0),
        clock=clock,
    )
    processor = MessageProcessor(
        classifier=Classifier(analyzer or FakeAnalyzer(), classifier_config or ClassifierConfig()),
        registry=registry,
        matcher=CategoryMatcher(MatcherConfig()),
        detector=DynamicCategoryDetector(store, registry, DetectorConfig(), clock=clock),
        scorer=EscalationScorer(store, EscalationConfig(), clock=clock),
        rulebook=rulebook,
        groups=groups,
        dispatcher=dispatcher,
        messages=store,
        formatter=lambda message, classification, match, escalation, decision: f"[{match.category.name}] {message.text}",
        config=ProcessorConfig(fallback_group_ids=(FALLBACK,)),
    )
    return Harness(store, transport, registry, processor, equipment.id)


def _process(harness: Harness, text: str, index: int = 0):
    message = make_message(text, message_id=f"m{index}", received_at=T0 + timedelta(minutes=index))
    return asyncio.run(harness.processor.process(message))


def test_repeated_treadmill_complaints_reach_more_groups() -> None:
    harness = _harness()

    first, second, third = (_process(harness, text, i) for i, text in enumerate(TREADMILL_TEXTS))

    assert first.match.category.name == "Equipment"
    assert first.escalation.risk_level is RiskLevel.MEDIUM
    assert [d.destination_group_id for d in first.decisions] == [OPS]

    assert second.escalation.risk_level is RiskLevel.HIGH
    assert {d.destination_group_id for d in second.decisions} == {OPS, MANAGERS}

    assert third.escalation.risk_level is RiskLevel.CRITICAL
    assert third.escalation.severity is Severity.HIGH
    assert all(o.status is DeliveryStatus.DELIVERED for o in third.outcomes)
    assert not third.fallback_used

    assert len(harness.transport.sent) == 5
    assert harness.transport.sent[0] == (OPS, "[Equipment] treadmill is broken")
    assert len(harness.store.log) == 5
    assert harness.store.classifications["m0"].intent == "complaint"


def test_third_equipment_complaint_this_week_reaches_managers() -> None:
    harness = _harness()
    texts = [
        "Treadmill #3 is broken",
        "Treadmill #3 broken, please fix",
        "Treadmill #3 is broken again, third time this week",
    ]

    reports = [_process(harness, text, i) for i, text in enumerate(texts)]
    third = reports[-1]

    assert third.match.category.name == "Equipment"
    assert third.escalation.repetition_count == 2
    assert third.escalation.risk_level.rank >= RiskLevel.HIGH.rank
    assert {d.destination_group_id for d in third.decisions} == {OPS, MANAGERS}
    to_managers = [e for e in harness.store.log if e.message_id == "m2" and e.destination_group_id == MANAGERS]
    assert len(to_managers) == 1
    assert to_managers[0].success


def test_store_writes_run_off_the_event_loop_thread() -> None:
    harness = _harness()
    store = harness.store
    writer_threads: dict[str, int] = {}

    def _tracking(name: str, write):
        def _wrapped(*args):
            writer_threads[name] = threading.get_ident()
            return write(*args)

        return _wrapped

    store.save_classification = _tracking("classification", store.save_classification)
    store.save_profile = _tracking("profile", store.save_profile)

    async def _scenario() -> int:
        await harness.processor.process(make_message("treadmill is broken"))
        return threading.get_ident()

    loop_thread = asyncio.run(_scenario())

    assert set(writer_threads) == {"classification", "profile"}
    assert loop_thread not in writer_threads.values()


def test_classifier_timeout_sends_message_to_detection() -> None:
    harness = _harness(FakeAnalyzer(delay=1.0), ClassifierConfig(timeout_seconds=0.01))

    report = _process(harness, "treadmill is broken")

    assert not report.match.matched
    assert report.queued_for_detection
    assert report.classification.degraded
    assert report.decisions == ()
    assert len(harness.store.pool) == 1
    assert harness.transport.sent == []
    # Unmatched senders still build a profile.
    assert harness.store.get_profile("919876543210@c.us").message_count == 1


def test_below_threshold_is_unmatched() -> None:
    harness = _harness()
    harness.registry.set_threshold(harness.equipment_id, 0.6)

    # Entity and intent agree but no keyword hits: score 0.5.
    report = _process(harness, "the reception music is far too loud")

    assert not report.match.matched
    assert report.match.score == pytest.approx(0.5)
    assert report.queued_for_detection


def test_permanent_failure_is_logged_without_retry() -> None:
    harness = _harness()
    harness.transport.script = {OPS: [SendStatus.PERMANENT_ERROR]}

    report = _process(harness, "treadmill is broken")

    assert [o.status for o in report.outcomes] == [DeliveryStatus.FAILED]
    assert harness.transport.attempts[OPS] == 1
    assert harness.store.log[0].error_message == "scripted permanent_error"
    assert not report.fallback_used


def test_critical_message_falls_back_when_every_route_fails() -> None:
    harness = _harness()
    _process(harness, TREADMILL_TEXTS[0], 0)
    _process(harness, TREADMILL_TEXTS[1], 1)
    harness.transport.script = {OPS: [SendStatus.PERMANENT_ERROR], MANAGERS: [SendStatus.PERMANENT_ERROR]}

    report = _process(harness, TREADMILL_TEXTS[2], 2)

    assert report.escalation.risk_level is RiskLevel.CRITICAL
    assert report.fallback_used
    fallback = [o for o in report.outcomes if o.decision.rule is None]
    assert [o.decision.destination_group_id for o in fallback] == [FALLBACK]
    assert fallback[0].status is DeliveryStatus.DELIVERED
    assert harness.store.log[-1].rule_id is None


def test_audit_failure_surfaces_after_deliveries() -> None:
    harness = _harness()
    harness.store.fail_log_writes = True

    with pytest.raises(AuditWriteFailure):
        _process(harness, "treadmill is broken")

    assert harness.transport.sent == [(OPS, "[Equipment] treadmill is broken")]


def test_ingest_runs_in_background_and_ignores_duplicates() -> None:
    harness = _harness()
    payload = {
        "id": "wamid-1",
        "sender_id": "+91 98765-43210",
        "sender_name": "Asha",
        "group_id": "120363000000000009",
        "text": "treadmill is broken",
        "received_at": "2024-01-01T09:00:00Z",
    }

    async def _scenario() -> tuple[str, str]:
        first = harness.processor.ingest(payload)
        second = harness.processor.ingest(payload)
        await harness.processor.drain()
        return first, second

    first, second = asyncio.run(_scenario())

    assert first == second == "wamid-1"
    assert len(harness.transport.sent) == 1
    assert harness.store.messages["wamid-1"].sender_id == "919876543210@c.us"


def test_reanalyze_replaces_stored_classification() -> None:
    harness = _harness()
    message = make_message("treadmill is broken", message_id="m9")
    harness.store.save_message(message)

    result = asyncio.run(harness.processor.reanalyze("m9"))

    assert harness.store.classifications["m9"] == result
    with pytest.raises(MessageValidationError):
        asyncio.run(harness.processor.reanalyze("missing"))


def test_build_message_normalizes_and_defaults() -> None:
    message = build_message(
        {"sender_id": "+91 98765-43210", "text": "hi there", "group_id": None, "received_at": 1704099600}
    )

    assert message.sender_id == "919876543210@c.us"
    assert message.sender_name == "919876543210@c.us"
    assert message.group_id is None
    assert message.received_at == T0
    assert len(message.id) == 32
    assert build_message(
        {"sender_id": "919876543210", "text": "hi there", "received_at": "2024-01-01T09:00:00"}
    ).id == message.id


@pytest.mark.parametrize(
    "payload",
    [
        {"text": "treadmill", "received_at": "2024-01-01T09:00:00Z"},
        {"sender_id": "not a phone", "text": "treadmill", "received_at": "2024-01-01T09:00:00Z"},
        {"sender_id": "919876543210", "text": 42, "received_at": "2024-01-01T09:00:00Z"},
        {"sender_id": "919876543210", "text": "x", "group_id": 5, "received_at": "2024-01-01T09:00:00Z"},
        {"sender_id": "919876543210", "text": "x", "received_at": "yesterday"},
        {"sender_id": "919876543210", "text": "x"},
        {"sender_id": "919876543210", "text": "x", "received_at": 1704099600, "id": "  "},
    ],
)
def test_build_message_rejects_malformed_payloads(payload) -> None:
    with pytest.raises(MessageValidationError):
        build_message(payload)
