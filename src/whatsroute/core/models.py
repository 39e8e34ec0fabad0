"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types. Every record is frozen; updates
produce a new value via ``dataclasses.replace``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


class CategoryStatus(str, enum.Enum):
    APPROVED = "approved"
    PENDING = "pending"
    REJECTED = "rejected"
    MERGED = "merged"


class CategoryOrigin(str, enum.Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DeliveryStatus(str, enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class SendStatus(str, enum.Enum):
    OK = "ok"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


@dataclass(frozen=True)
class Message:
    """Inbound chat message as accepted at the ingestion boundary."""

    id: str
    sender_id: str
    sender_name: str
    group_id: Optional[str]
    text: str
    received_at: datetime


@dataclass(frozen=True)
class Entity:
    text: str
    category: str


@dataclass(frozen=True)
class ClassificationResult:
    """Sentiment/intent/confidence produced once per message."""

    sentiment: str
    intent: str
    confidence: float
    entities: tuple[Entity, ...] = ()
    degraded: bool = False


@dataclass(frozen=True)
class Category:
    """Issue category, either configured (static) or detected (dynamic)."""

    id: int
    name: str
    department: str
    status: CategoryStatus
    origin: CategoryOrigin = CategoryOrigin.STATIC
    color_code: str = "#607D8B"
    keywords: frozenset[str] = frozenset()
    min_confidence: float = 0.5
    severity_weight: float = 0.0
    intents: frozenset[str] = frozenset()
    entity_types: frozenset[str] = frozenset()
    confidence_score: float = 0.0
    trend_score: float = 0.0
    message_count: int = 0
    first_detected: Optional[datetime] = None
    sample_messages: tuple[str, ...] = ()
    merged_into: Optional[int] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None


@dataclass(frozen=True)
class SenderProfile:
    """Rolling behavioural profile, one per sender."""

    sender_id: str
    message_count: int = 0
    flag_count: int = 0
    false_positive_count: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    escalation_score: float = 0.0
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class SenderHistoryEntry:
    """One earlier message from a sender, kept for repetition scoring."""

    message_id: str
    text: str
    received_at: datetime
    category_id: Optional[int] = None


@dataclass(frozen=True)
class DestinationGroup:
    """WhatsApp group that can receive forwarded alerts."""

    id: str
    name: str
    department: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class RoutingRule:
    """Operator-managed mapping from a category to a destination group."""

    id: int
    category_id: int
    destination_group_id: str
    severity_filter: frozenset[Severity]
    is_active: bool = True
    priority: int = 100


@dataclass(frozen=True)
class MatchResult:
    """Category match for one message; ``category`` is None when unmatched."""

    category: Optional[Category]
    score: float

    @property
    def matched(self) -> bool:
        return self.category is not None


@dataclass(frozen=True)
class EscalationResult:
    score: float
    risk_level: RiskLevel
    severity: Severity
    repetition_count: int
    profile: SenderProfile


@dataclass(frozen=True)
class RoutingDecision:
    """One (rule, destination) pairing selected for a message."""

    rule: Optional[RoutingRule]
    destination_group_id: str
    severity: Severity
    category_id: Optional[int] = None

    @property
    def rule_id(self) -> Optional[int]:
        return self.rule.id if self.rule else None


@dataclass(frozen=True)
class RoutingLogEntry:
    """Append-only audit record of one delivery attempt's outcome."""

    id: str
    message_id: str
    rule_id: Optional[int]
    category_id: Optional[int]
    destination_group_id: str
    severity: Severity
    sentiment: str
    intent: str
    confidence: float
    escalation_score: float
    success: bool
    status: DeliveryStatus
    attempts: int
    error_message: Optional[str]
    routed_at: datetime
    digest_type: str = "realtime"


@dataclass(frozen=True)
class DeliveryOutcome:
    decision: RoutingDecision
    status: DeliveryStatus
    attempts: int
    error_message: Optional[str] = None
    log_entry: Optional[RoutingLogEntry] = None

    @property
    def success(self) -> bool:
        return self.status in (DeliveryStatus.DELIVERED, DeliveryStatus.SKIPPED)


@dataclass(frozen=True)
class SendResult:
    """Result of a single transport send."""

    status: SendStatus
    detail: Optional[str] = None


@dataclass(frozen=True)
class UnmatchedMessage:
    """Message waiting in the detector's intake pool."""

    message: Message
    classification: ClassificationResult
    tokens: frozenset[str]
    seq: int = 0


@dataclass(frozen=True)
class LogQuery:
    """Filters and paging for routing log reads."""

    digest_type: Optional[str] = None
    category_id: Optional[int] = None
    destination_group_id: Optional[str] = None
    success: Optional[bool] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class LogPage:
    entries: tuple[RoutingLogEntry, ...]
    total: int
    limit: int
    offset: int


@dataclass(frozen=True)
class ProcessingReport:
    """Summary of one message's trip through the pipeline."""

    message_id: str
    classification: ClassificationResult
    match: MatchResult
    escalation: Optional[EscalationResult] = None
    decisions: tuple[RoutingDecision, ...] = ()
    outcomes: tuple[DeliveryOutcome, ...] = ()
    queued_for_detection: bool = False
    fallback_used: bool = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
