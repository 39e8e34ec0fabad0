"""Dynamic category detection (core domain).

Unmatched messages accumulate in a persisted pool. On each run the detector
clusters every entry still retained in the pool by token overlap. Each
sufficiently large cluster that gained members since the previous run becomes
a pending category, unless an existing pending or approved category already
covers its signature, in which case that category's counters are bumped by
the new members instead.

Candidates never promote themselves; approval goes through CategoryRegistry.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import combinations
from typing import Callable, Optional

from whatsroute.core.categories import CategoryRegistry
from whatsroute.core.config import DetectorConfig
from whatsroute.core.models import (
    Category,
    CategoryOrigin,
    CategoryStatus,
    ClassificationResult,
    Message,
    UnmatchedMessage,
    utcnow,
)
from whatsroute.core.ports import UnmatchedPoolStore
from whatsroute.core.text import jaccard, overlap_coefficient, tokenize

LOGGER = logging.getLogger(__name__)

CURSOR_NAME = "detector"


@dataclass
class _Cluster:
    members: list[UnmatchedMessage] = field(default_factory=list)
    counts: Counter = field(default_factory=Counter)

    def add(self, entry: UnmatchedMessage) -> None:
        self.members.append(entry)
        self.counts.update(entry.tokens)

    def core(self) -> frozenset[str]:
        """Tokens shared by at least half of the members."""

        needed = max(1, (len(self.members) + 1) // 2)
        return frozenset(token for token, count in self.counts.items() if count >= needed)


@dataclass(frozen=True)
class DetectionReport:
    created: tuple[int, ...] = ()
    updated: tuple[int, ...] = ()
    clusters: int = 0
    processed: int = 0
    failed: int = 0
    skipped: bool = False


def message_tokens(message: Message, classification: ClassificationResult) -> frozenset[str]:
    """Tokens used as the keyword/entity signature of one message."""

    entity_tokens = set()
    for entity in classification.entities:
        entity_tokens |= tokenize(entity.text)
    return tokenize(message.text) | frozenset(entity_tokens)


def cohesion(members: list[UnmatchedMessage]) -> float:
    """Mean pairwise Jaccard similarity of the members' token sets."""

    if len(members) < 2:
        return 1.0 if members else 0.0
    pairs = list(combinations(members, 2))
    return sum(jaccard(a.tokens, b.tokens) for a, b in pairs) / len(pairs)


class DynamicCategoryDetector:
    """Periodic, single-flight clustering of unmatched messages."""

    def __init__(
        self,
        pool: UnmatchedPoolStore,
        registry: CategoryRegistry,
        config: DetectorConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._pool = pool
        self._registry = registry
        self._config = config
        self._clock = clock
        self._run_lock = asyncio.Lock()

    def enqueue(self, message: Message, classification: ClassificationResult) -> UnmatchedMessage:
        """Add an unmatched message to the intake pool for the next run."""

        entry = UnmatchedMessage(
            message=message,
            classification=classification,
            tokens=message_tokens(message, classification),
        )
        seq = self._pool.add_unmatched(entry)
        LOGGER.debug("Message %s queued for detection (seq %s)", message.id, seq)
        return UnmatchedMessage(entry.message, entry.classification, entry.tokens, seq)

    async def run_once(self) -> DetectionReport:
        """Run one detection pass; concurrent calls skip instead of overlapping."""

        if self._run_lock.locked():
            LOGGER.info("Detection already running, skipping")
            return DetectionReport(skipped=True)
        async with self._run_lock:
            return await asyncio.to_thread(self._detect, self._clock())

    async def run_forever(self, stop: asyncio.Event, interval: Optional[float] = None) -> None:
        interval = self._config.interval_seconds if interval is None else interval
        while not stop.is_set():
            try:
                report = await self.run_once()
                if report.created or report.updated:
                    LOGGER.info(
                        "Detection: %s new candidates, %s updated, %s messages",
                        len(report.created),
                        len(report.updated),
                        report.processed,
                    )
            except Exception:
                LOGGER.exception("Detection run failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def _detect(self, now: datetime) -> DetectionReport:
        window = timedelta(seconds=self._config.trend_window_seconds)
        pool = self._pool.list_unmatched(since=now - 2 * window)
        cursor = self._pool.get_cursor(CURSOR_NAME) or 0
        fresh = [entry for entry in pool if entry.seq > cursor]
        if not fresh:
            self._pool.prune_unmatched(before=now - 2 * window)
            return DetectionReport()

        # Only clusters with members past the cursor produce work.
        clusters = self._cluster(sorted(pool, key=lambda e: (e.message.received_at, e.message.id)))
        existing = self._registry.list_categories(CategoryStatus.PENDING) + self._registry.list_categories(
            CategoryStatus.APPROVED
        )

        created: list[int] = []
        updated: list[int] = []
        failed = 0
        eligible = [
            c
            for c in clusters
            if len(c.members) >= self._config.min_cluster_size and any(m.seq > cursor for m in c.members)
        ]
        for cluster in eligible:
            signature = self._signature(cluster)
            if not signature:
                continue
            trend = self._trend(signature, pool, now, window)
            covering = self._covering(signature, existing)
            try:
                if covering is not None:
                    added = [m for m in cluster.members if m.seq > cursor]
                    samples = [m.message.text for m in added[: self._config.max_samples]]
                    self._registry.record_activity(covering.id, len(added), trend, samples)
                    updated.append(covering.id)
                    continue
                samples = [m.message.text for m in cluster.members[: self._config.max_samples]]
                candidate = self._registry.add_candidate(self._candidate(cluster, signature, trend, samples, now))
            except Exception:
                # One bad candidate must not stop the rest of the run.
                LOGGER.exception("Failed to persist detection cluster %s", sorted(signature))
                failed += 1
                continue
            existing.append(candidate)
            created.append(candidate.id)

        self._pool.set_cursor(CURSOR_NAME, max(entry.seq for entry in fresh))
        self._pool.prune_unmatched(before=now - 2 * window)
        return DetectionReport(
            created=tuple(created),
            updated=tuple(updated),
            clusters=len(eligible),
            processed=len(fresh),
            failed=failed,
        )

    def _cluster(self, entries: list[UnmatchedMessage]) -> list[_Cluster]:
        clusters: list[_Cluster] = []
        for entry in entries:
            if not entry.tokens:
                continue
            best: Optional[_Cluster] = None
            best_similarity = 0.0
            for cluster in clusters:
                similarity = jaccard(entry.tokens, cluster.core())
                if similarity >= self._config.similarity_threshold and similarity > best_similarity:
                    best = cluster
                    best_similarity = similarity
            if best is None:
                best = _Cluster()
                clusters.append(best)
            best.add(entry)
        return clusters

    def _signature(self, cluster: _Cluster) -> frozenset[str]:
        needed = max(1, (len(cluster.members) + 1) // 2)
        ranked = sorted(
            (token for token, count in cluster.counts.items() if count >= needed),
            key=lambda token: (-cluster.counts[token], token),
        )
        return frozenset(ranked[: self._config.signature_size])

    def _trend(
        self,
        signature: frozenset[str],
        pool: list[UnmatchedMessage],
        now: datetime,
        window: timedelta,
    ) -> float:
        recent = prior = 0
        for entry in pool:
            if overlap_coefficient(entry.tokens, signature) < self._config.overlap_threshold:
                continue
            age = now - entry.message.received_at
            if age <= window:
                recent += 1
            elif age <= 2 * window:
                prior += 1
        return round((recent - prior) / max(prior, 1), 4)

    def _covering(self, signature: frozenset[str], existing: list[Category]) -> Optional[Category]:
        best: Optional[Category] = None
        best_overlap = 0.0
        for category in sorted(existing, key=lambda c: c.id):
            overlap = overlap_coefficient(signature, category.keywords)
            if overlap >= self._config.overlap_threshold and overlap > best_overlap:
                best = category
                best_overlap = overlap
        return best

    def _candidate(
        self,
        cluster: _Cluster,
        signature: frozenset[str],
        trend: float,
        samples: list[str],
        now: datetime,
    ) -> Category:
        ranked = sorted(signature, key=lambda token: (-cluster.counts[token], token))
        intents = Counter(
            m.classification.intent for m in cluster.members if m.classification.intent != "unknown"
        )
        entity_types = {e.category for m in cluster.members for e in m.classification.entities}
        return Category(
            id=0,
            name=" / ".join(token.title() for token in ranked[:3]),
            department="UNASSIGNED",
            status=CategoryStatus.PENDING,
            origin=CategoryOrigin.DYNAMIC,
            keywords=signature,
            min_confidence=self._config.default_min_confidence,
            intents=frozenset(intent for intent, _ in intents.most_common(1)),
            entity_types=frozenset(entity_types),
            confidence_score=round(cohesion(cluster.members), 4),
            trend_score=trend,
            message_count=len(cluster.members),
            first_detected=min(m.message.received_at for m in cluster.members) if cluster.members else now,
            sample_messages=tuple(samples),
        )
