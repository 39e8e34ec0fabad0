from __future__ import annotations

import asyncio

import pytest

from fakes import FakeAnalyzer, complaint_payload, make_message
from whatsroute.core.classifier import FALLBACK_RESULT, Classifier, sanitize_analysis
from whatsroute.core.config import ClassifierConfig
from whatsroute.core.errors import ClassificationDegraded


def test_sanitize_accepts_nested_labels_and_entity_mapping() -> None:
    result = sanitize_analysis(complaint_payload(0.85), ClassifierConfig())
    assert result.sentiment == "negative"
    assert result.intent == "complaint"
    assert result.confidence == 0.85
    assert [(e.text, e.category) for e in result.entities] == [("treadmill", "equipment")]
    assert not result.degraded


def test_sanitize_accepts_flat_labels_and_entity_list() -> None:
    payload = {
        "sentiment": "Positive",
        "intent": "question",
        "entities": [{"text": "pool", "category": "Facilities"}],
        "confidence": 0.7,
    }
    result = sanitize_analysis(payload, ClassifierConfig())
    assert (result.sentiment, result.intent) == ("positive", "question")
    assert result.entities[0].category == "facilities"


def test_sanitize_forces_negative_sentiment_for_complaints() -> None:
    payload = {"sentiment": "positive", "intent": "complaint", "confidence": 0.8}
    assert sanitize_analysis(payload, ClassifierConfig()).sentiment == "negative"

    flagged = {"sentiment": "neutral", "intent": "general", "flagging": {"category": "complaint"}, "confidence": 0.8}
    assert sanitize_analysis(flagged, ClassifierConfig()).sentiment == "negative"


def test_sanitize_maps_unknown_labels_and_clamps_confidence() -> None:
    payload = {"sentiment": "furious", "intent": "rant", "confidence": 1.7}
    result = sanitize_analysis(payload, ClassifierConfig())
    assert result.sentiment == "neutral"
    assert result.intent == "unknown"
    assert result.confidence == 1.0


@pytest.mark.parametrize("confidence", [None, "high", True])
def test_sanitize_rejects_missing_or_non_numeric_confidence(confidence) -> None:
    payload = {"sentiment": "negative", "intent": "complaint", "confidence": confidence}
    with pytest.raises(ClassificationDegraded):
        sanitize_analysis(payload, ClassifierConfig())


def test_classify_returns_fallback_on_timeout() -> None:
    analyzer = FakeAnalyzer(delay=1.0)
    classifier = Classifier(analyzer, ClassifierConfig(timeout_seconds=0.01))

    result = asyncio.run(classifier.classify(make_message("treadmill broken again")))

    assert result == FALLBACK_RESULT
    assert result.confidence == 0.0
    assert result.degraded


def test_classify_returns_fallback_on_analyzer_error() -> None:
    analyzer = FakeAnalyzer(error=RuntimeError("upstream 500"))
    classifier = Classifier(analyzer, ClassifierConfig())

    result = asyncio.run(classifier.classify(make_message("treadmill broken again")))

    assert result == FALLBACK_RESULT


def test_classify_returns_fallback_on_malformed_payload() -> None:
    analyzer = FakeAnalyzer(payload={"sentiment": "negative"})
    classifier = Classifier(analyzer, ClassifierConfig())

    assert asyncio.run(classifier.classify(make_message("treadmill broken again"))) == FALLBACK_RESULT


def test_classify_skips_analyzer_for_short_text() -> None:
    analyzer = FakeAnalyzer()
    classifier = Classifier(analyzer, ClassifierConfig())

    result = asyncio.run(classifier.classify(make_message("ok")))

    assert result == FALLBACK_RESULT
    assert analyzer.calls == []


def test_classify_is_deterministic_for_same_payload() -> None:
    classifier = Classifier(FakeAnalyzer(), ClassifierConfig())
    message = make_message("The treadmill is broken")

    first = asyncio.run(classifier.classify(message))
    second = asyncio.run(classifier.classify(message))

    assert first == second
    assert first.confidence == 0.9
