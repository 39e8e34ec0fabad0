"""Per-sender escalation scoring (core domain).

The score is a clamped weighted sum of four signals: repetition of the same
complaint, negative sentiment, the matched category's severity bias, and the
sender's historical flag rate. Profile updates for one sender are serialized
through a keyed lock; different senders never wait on each other.

A repeat is an earlier message from the same sender, inside the trailing
window, that matched the same category or is a near-duplicate of the text.
Phrases such as "again" or "third time" count as one more repeat.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from whatsroute.core.config import DEFAULT_BANDS, EscalationConfig
from whatsroute.core.locks import KeyedLocks
from whatsroute.core.models import (
    Category,
    ClassificationResult,
    EscalationResult,
    Message,
    RiskLevel,
    SenderHistoryEntry,
    SenderProfile,
    utcnow,
)
from whatsroute.core.ports import ProfileStore
from whatsroute.core.text import jaccard, normalize_text, phrase_hits, tokenize

LOGGER = logging.getLogger(__name__)

BandsProvider = Callable[[], Mapping[RiskLevel, float]]


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(max(value, low), high)


def band_for(score: float, bands: Mapping[RiskLevel, float]) -> RiskLevel:
    """Map a score onto a risk level using ascending band edges (inclusive)."""

    for level in (RiskLevel.CRITICAL, RiskLevel.HIGH, RiskLevel.MEDIUM):
        edge = bands.get(level)
        if edge is not None and score >= edge:
            return level
    return RiskLevel.LOW


class EscalationScorer:
    """Computes bounded escalation scores and maintains sender profiles."""

    def __init__(
        self,
        store: ProfileStore,
        config: EscalationConfig,
        bands_provider: Optional[BandsProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._config = config
        self._bands = bands_provider or (lambda: DEFAULT_BANDS)
        self._clock = clock
        self._locks = KeyedLocks()

    def combine(
        self,
        repetition: float,
        sentiment: float,
        category: float,
        flag_rate: float,
    ) -> float:
        cfg = self._config
        total = (
            cfg.repetition_weight * repetition
            + cfg.sentiment_weight * sentiment
            + cfg.category_weight * category
            + cfg.flag_rate_weight * flag_rate
        )
        return clamp(total)

    async def score(
        self,
        message: Message,
        classification: ClassificationResult,
        category: Optional[Category],
    ) -> EscalationResult:
        """Score one message and fold it into the sender's profile."""

        async with self._locks.hold(message.sender_id):
            return await asyncio.to_thread(self._score_locked, message, classification, category)

    def _score_locked(
        self,
        message: Message,
        classification: ClassificationResult,
        category: Optional[Category],
    ) -> EscalationResult:
        cfg = self._config
        now = self._clock()
        profile = self._store.get_profile(message.sender_id) or SenderProfile(sender_id=message.sender_id)

        since = message.received_at - timedelta(seconds=cfg.repetition_window_seconds)
        tokens = tokenize(message.text)
        near_dups = 0
        for prior in self._store.recent_sender_messages(message.sender_id, since):
            if category is not None and prior.category_id == category.id:
                near_dups += 1
            elif tokens and jaccard(tokens, tokenize(prior.text)) >= cfg.near_duplicate_similarity:
                near_dups += 1
        indicators = phrase_hits(normalize_text(message.text), cfg.escalation_phrases)

        repeats = near_dups + (cfg.indicator_repeats if indicators else 0)
        repetition = clamp(repeats / max(cfg.repetition_threshold, 1))
        sentiment = clamp(cfg.sentiment_scores.get(classification.sentiment, 0.0))
        severity_bias = clamp(category.severity_weight) if category else 0.0
        flag_rate = 0.0
        if profile.message_count:
            effective_flags = max(profile.flag_count - profile.false_positive_count, 0)
            flag_rate = clamp(effective_flags / profile.message_count)

        score = round(self.combine(repetition, sentiment, severity_bias, flag_rate), 6)
        risk_level = band_for(score, self._bands())
        flagged = risk_level.rank >= cfg.flag_level.rank

        updated = dataclasses.replace(
            profile,
            message_count=profile.message_count + 1,
            flag_count=profile.flag_count + (1 if flagged else 0),
            risk_level=risk_level,
            escalation_score=score,
            last_updated=now,
        )
        self._store.save_profile(updated)
        self._store.append_sender_message(
            message.sender_id,
            SenderHistoryEntry(
                message_id=message.id,
                text=message.text,
                received_at=message.received_at,
                category_id=category.id if category else None,
            ),
        )

        if flagged:
            LOGGER.info(
                "Sender %s escalated to %s (score %.2f, repeats %s, phrases %s)",
                message.sender_id,
                risk_level.value,
                score,
                near_dups,
                indicators,
            )
        return EscalationResult(
            score=score,
            risk_level=risk_level,
            severity=cfg.severity_by_risk[risk_level],
            repetition_count=near_dups,
            profile=updated,
        )

    async def mark_false_positive(self, sender_id: str) -> SenderProfile:
        """Record that a flag on this sender was wrong; lowers future flag rates."""

        async with self._locks.hold(sender_id):
            return await asyncio.to_thread(self._mark_false_positive_locked, sender_id)

    def _mark_false_positive_locked(self, sender_id: str) -> SenderProfile:
        profile = self._store.get_profile(sender_id) or SenderProfile(sender_id=sender_id)
        updated = dataclasses.replace(
            profile,
            false_positive_count=profile.false_positive_count + 1,
            last_updated=self._clock(),
        )
        self._store.save_profile(updated)
        return updated
