from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from fakes import EQUIPMENT_KEYWORDS, T0, FakeClock, MemoryStore, complaint, make_message
from whatsroute.core.config import EscalationConfig
from whatsroute.core.escalation import EscalationScorer, band_for
from whatsroute.core.models import Category, CategoryStatus, ClassificationResult, RiskLevel, Severity

EQUIPMENT = Category(
    id=1,
    name="Equipment",
    department="EQUIPMENT_MAINTENANCE",
    status=CategoryStatus.APPROVED,
    keywords=frozenset(EQUIPMENT_KEYWORDS),
    severity_weight=0.7,
)

TREADMILL_TEXTS = [
    "treadmill is broken",
    "the treadmill is still broken",
    "treadmill broken again!!",
]


def _score(scorer: EscalationScorer, text: str, index: int, *, offset: timedelta = timedelta(0)):
    message = make_message(text, message_id=f"m{index}", received_at=T0 + timedelta(minutes=index) + offset)
    return asyncio.run(scorer.score(message, complaint(), EQUIPMENT))


def test_repeated_complaints_escalate_to_critical() -> None:
    store = MemoryStore()
    scorer = EscalationScorer(store, EscalationConfig(), clock=FakeClock())

    first, second, third = (_score(scorer, text, i) for i, text in enumerate(TREADMILL_TEXTS))

    assert first.score == pytest.approx(0.44)
    assert first.risk_level is RiskLevel.MEDIUM
    assert first.severity is Severity.MEDIUM

    assert second.score == pytest.approx(0.64)
    assert second.risk_level is RiskLevel.HIGH
    assert second.repetition_count == 1
    assert second.profile.flag_count == 1

    assert third.score == pytest.approx(0.89)
    assert third.risk_level is RiskLevel.CRITICAL
    assert third.severity is Severity.HIGH

    profile = store.get_profile("919876543210@c.us")
    assert profile.message_count == 3
    assert profile.flag_count == 2
    assert profile.risk_level is RiskLevel.CRITICAL


def test_repeats_outside_window_do_not_count() -> None:
    scorer = EscalationScorer(MemoryStore(), EscalationConfig(), clock=FakeClock())
    _score(scorer, TREADMILL_TEXTS[0], 0)

    later = _score(scorer, TREADMILL_TEXTS[1], 1, offset=timedelta(days=8))

    assert later.repetition_count == 0
    assert later.score == pytest.approx(0.44)


def test_false_positive_lowers_flag_rate() -> None:
    store = MemoryStore()
    scorer = EscalationScorer(store, EscalationConfig(), clock=FakeClock())
    _score(scorer, TREADMILL_TEXTS[0], 0)
    _score(scorer, TREADMILL_TEXTS[1], 1)

    profile = asyncio.run(scorer.mark_false_positive("919876543210@c.us"))
    third = _score(scorer, TREADMILL_TEXTS[2], 2)

    assert profile.false_positive_count == 1
    assert third.score == pytest.approx(0.84)


def test_unmatched_message_has_no_category_bias() -> None:
    scorer = EscalationScorer(MemoryStore(), EscalationConfig(), clock=FakeClock())
    message = make_message("where is the front desk", message_id="q1")
    neutral = ClassificationResult(sentiment="neutral", intent="question", confidence=0.8)

    result = asyncio.run(scorer.score(message, neutral, None))

    assert result.score == 0.0
    assert result.risk_level is RiskLevel.LOW


def test_custom_bands_are_read_on_every_score() -> None:
    bands = {RiskLevel.MEDIUM: 0.1, RiskLevel.HIGH: 0.4, RiskLevel.CRITICAL: 0.9}
    scorer = EscalationScorer(MemoryStore(), EscalationConfig(), bands_provider=lambda: bands, clock=FakeClock())

    assert _score(scorer, TREADMILL_TEXTS[0], 0).risk_level is RiskLevel.HIGH


def test_same_sender_updates_are_serialized() -> None:
    store = MemoryStore()
    scorer = EscalationScorer(store, EscalationConfig(), clock=FakeClock())
    messages = [make_message(text, message_id=f"m{i}") for i, text in enumerate(TREADMILL_TEXTS[:2])]

    async def _both():
        return await asyncio.gather(*(scorer.score(m, complaint(), EQUIPMENT) for m in messages))

    asyncio.run(_both())

    assert store.get_profile("919876543210@c.us").message_count == 2
    assert len(store.sender_messages) == 2


def test_band_for_edges_are_inclusive() -> None:
    bands = {RiskLevel.MEDIUM: 0.3, RiskLevel.HIGH: 0.6, RiskLevel.CRITICAL: 0.8}
    assert band_for(0.29, bands) is RiskLevel.LOW
    assert band_for(0.3, bands) is RiskLevel.MEDIUM
    assert band_for(0.8, bands) is RiskLevel.CRITICAL


def test_differently_worded_complaints_in_same_category_count_as_repeats() -> None:
    scorer = EscalationScorer(MemoryStore(), EscalationConfig(), clock=FakeClock())
    texts = [
        "Treadmill #3 is broken",
        "Treadmill #3 broken, please fix",
        "Treadmill #3 is broken again, third time this week",
    ]

    first, second, third = (_score(scorer, text, i) for i, text in enumerate(texts))

    assert first.score == pytest.approx(0.44)
    assert second.repetition_count == 1
    assert second.risk_level is RiskLevel.HIGH
    assert third.repetition_count == 2
    assert third.score == pytest.approx(0.89)
    assert third.risk_level is RiskLevel.CRITICAL
    assert third.severity is Severity.HIGH


def test_escalation_phrase_counts_as_one_repeat() -> None:
    scorer = EscalationScorer(MemoryStore(), EscalationConfig(), clock=FakeClock())
    message = make_message("the AC is off again", message_id="ac1")

    result = asyncio.run(scorer.score(message, complaint(), None))

    assert result.repetition_count == 0
    assert result.score == pytest.approx(0.5)
    assert result.risk_level is RiskLevel.MEDIUM


def test_other_category_history_is_not_a_repeat() -> None:
    store = MemoryStore()
    scorer = EscalationScorer(store, EscalationConfig(), clock=FakeClock())
    hvac = Category(id=2, name="HVAC", department="FACILITY", status=CategoryStatus.APPROVED, severity_weight=0.7)
    asyncio.run(scorer.score(make_message("AC is off in studio", message_id="h1"), complaint(), hvac))

    result = _score(scorer, TREADMILL_TEXTS[0], 1)

    assert result.repetition_count == 0
    assert store.sender_messages[0][1].category_id == 2
