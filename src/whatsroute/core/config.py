"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from whatsroute.core.models import RiskLevel, Severity

DEFAULT_BANDS: Mapping[RiskLevel, float] = {
    RiskLevel.MEDIUM: 0.3,
    RiskLevel.HIGH: 0.6,
    RiskLevel.CRITICAL: 0.8,
}


@dataclass(frozen=True)
class ClassifierConfig:
    """Timeout and label vocabulary for the analysis adapter."""

    timeout_seconds: float = 10.0
    min_text_chars: int = 3
    sentiments: frozenset[str] = frozenset({"positive", "negative", "neutral"})
    intents: frozenset[str] = frozenset(
        {"complaint", "question", "booking", "feedback", "general", "unknown"}
    )


@dataclass(frozen=True)
class MatcherConfig:
    """Weights for keyword, entity, and intent affinity."""

    keyword_weight: float = 0.5
    entity_weight: float = 0.25
    intent_weight: float = 0.25
    keyword_saturation: int = 2
    min_classification_confidence: float = 0.0


@dataclass(frozen=True)
class DetectorConfig:
    """Clustering parameters for dynamic category detection."""

    interval_seconds: float = 900.0
    similarity_threshold: float = 0.4
    min_cluster_size: int = 3
    signature_size: int = 5
    overlap_threshold: float = 0.6
    max_samples: int = 5
    trend_window_seconds: float = 24 * 3600.0
    default_min_confidence: float = 0.5


@dataclass(frozen=True)
class EscalationConfig:
    """Weights and windows for per-sender escalation scoring."""

    repetition_weight: float = 0.4
    sentiment_weight: float = 0.3
    category_weight: float = 0.2
    flag_rate_weight: float = 0.1
    repetition_window_seconds: float = 7 * 24 * 3600.0
    repetition_threshold: int = 2
    near_duplicate_similarity: float = 0.5
    escalation_phrases: tuple[str, ...] = (
        "again",
        "still not",
        "third time",
        "how many times",
        "told you before",
        "complained before",
        "repeatedly",
        "every time",
        "fed up",
        "sick of",
        "tired of",
        "फिर से",
        "बार बार",
        "कई बार",
    )
    indicator_repeats: int = 1
    sentiment_scores: Mapping[str, float] = field(
        default_factory=lambda: {"negative": 1.0, "neutral": 0.0, "positive": 0.0}
    )
    flag_level: RiskLevel = RiskLevel.HIGH
    severity_by_risk: Mapping[RiskLevel, Severity] = field(
        default_factory=lambda: {
            RiskLevel.LOW: Severity.LOW,
            RiskLevel.MEDIUM: Severity.MEDIUM,
            RiskLevel.HIGH: Severity.HIGH,
            RiskLevel.CRITICAL: Severity.HIGH,
        }
    )


@dataclass(frozen=True)
class DeliveryConfig:
    """Retry, timeout, and throttling settings for the dispatcher."""

    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 30.0
    send_timeout_seconds: float = 15.0
    rate_per_second: float = 0.5
    burst: int = 3


@dataclass(frozen=True)
class ProcessorConfig:
    """Pipeline-level settings."""

    fallback_group_ids: tuple[str, ...] = ()
    category_cache_ttl_seconds: float = 30.0
