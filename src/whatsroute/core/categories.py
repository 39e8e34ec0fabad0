"""Category state machine and registry (core domain).

Static and dynamic categories share one closed shape; what differs is only
their status. Status changes go through ``transition`` so the approve, reject
and merge rules live in one pure function.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
import time
from datetime import datetime
from typing import Callable, Iterable, Optional

from whatsroute.core.errors import CategoryNotFound, ConfigValidationError, InvalidTransition
from whatsroute.core.models import Category, CategoryOrigin, CategoryStatus, utcnow
from whatsroute.core.ports import CategoryStore

LOGGER = logging.getLogger(__name__)


class CategoryAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    MERGE = "merge"


_TARGET_STATUS = {
    CategoryAction.APPROVE: CategoryStatus.APPROVED,
    CategoryAction.REJECT: CategoryStatus.REJECTED,
    CategoryAction.MERGE: CategoryStatus.MERGED,
}


def transition(
    category: Category,
    action: CategoryAction,
    *,
    approver: str,
    at: datetime,
    target_id: Optional[int] = None,
) -> Category:
    """Return ``category`` after applying ``action``.

    Only pending categories can be decided, and every decision is final.
    Merge additionally records the target it folded into.
    """

    if not approver or not approver.strip():
        raise InvalidTransition("an approver identity is required")
    if category.status is not CategoryStatus.PENDING:
        raise InvalidTransition(
            f"cannot {action.value} category {category.id}: status is {category.status.value}"
        )
    if action is CategoryAction.MERGE:
        if target_id is None:
            raise InvalidTransition("merge requires a target category")
        if target_id == category.id:
            raise InvalidTransition("cannot merge a category into itself")
    elif target_id is not None:
        raise InvalidTransition(f"{action.value} does not take a target category")

    return dataclasses.replace(
        category,
        status=_TARGET_STATUS[action],
        merged_into=target_id,
        decided_by=approver.strip(),
        decided_at=at,
    )


def bounded_samples(existing: Iterable[str], new: Iterable[str], limit: int) -> tuple[str, ...]:
    """Append to a ring buffer of sample messages, keeping the newest ``limit``."""

    samples = list(existing) + list(new)
    if limit <= 0:
        return ()
    return tuple(samples[-limit:])


class CategoryRegistry:
    """Read-mostly category pool plus the administration API."""

    def __init__(
        self,
        store: CategoryStore,
        ttl_seconds: float = 30.0,
        sample_limit: int = 5,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._sample_limit = sample_limit
        self._clock = clock
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._cached: Optional[tuple[Category, ...]] = None
        self._cached_at = 0.0

    def snapshot(self) -> tuple[Category, ...]:
        """Return the approved categories as an immutable, id-ordered tuple."""

        cached = self._cached
        if cached is not None and self._monotonic() - self._cached_at < self._ttl:
            return cached
        approved = sorted(self._store.list_categories(CategoryStatus.APPROVED), key=lambda c: c.id)
        snapshot = tuple(approved)
        self._cached = snapshot
        self._cached_at = self._monotonic()
        return snapshot

    def invalidate(self) -> None:
        self._cached = None

    def list_categories(self, status: Optional[CategoryStatus] = None) -> list[Category]:
        return sorted(self._store.list_categories(status), key=lambda c: c.id)

    def get(self, category_id: int) -> Category:
        category = self._store.get_category(category_id)
        if category is None:
            raise CategoryNotFound(f"category {category_id} does not exist")
        return category

    def approve_category(self, category_id: int, approver: str) -> Category:
        with self._lock:
            updated = transition(
                self.get(category_id), CategoryAction.APPROVE, approver=approver, at=self._clock()
            )
            self._store.save_category(updated)
            self.invalidate()
        LOGGER.info("Category %s approved by %s", category_id, updated.decided_by)
        return updated

    def reject_category(self, category_id: int, approver: str) -> Category:
        with self._lock:
            updated = transition(
                self.get(category_id), CategoryAction.REJECT, approver=approver, at=self._clock()
            )
            self._store.save_category(updated)
            self.invalidate()
        LOGGER.info("Category %s rejected by %s", category_id, updated.decided_by)
        return updated

    def merge_category(self, category_id: int, target_id: int, approver: str) -> Category:
        """Fold a pending category into ``target_id`` and return the updated target."""

        with self._lock:
            source = self.get(category_id)
            target = self.get(target_id)
            if target.status not in (CategoryStatus.APPROVED, CategoryStatus.PENDING):
                raise InvalidTransition(
                    f"cannot merge into category {target_id}: status is {target.status.value}"
                )
            self._check_merge_cycle(source.id, target)
            merged_source = transition(
                source,
                CategoryAction.MERGE,
                approver=approver,
                at=self._clock(),
                target_id=target.id,
            )
            merged_target = dataclasses.replace(
                target,
                keywords=target.keywords | source.keywords,
                message_count=target.message_count + source.message_count,
                sample_messages=bounded_samples(
                    target.sample_messages, source.sample_messages, self._sample_limit
                ),
            )
            self._store.save_categories([merged_source, merged_target])
            self.invalidate()
        LOGGER.info(
            "Category %s merged into %s by %s", category_id, target_id, merged_source.decided_by
        )
        return merged_target

    def _check_merge_cycle(self, source_id: int, target: Category) -> None:
        seen = {target.id}
        current = target
        while current.merged_into is not None:
            if current.merged_into == source_id:
                raise InvalidTransition(
                    f"merging {source_id} into {target.id} would create a cycle"
                )
            if current.merged_into in seen:
                break
            seen.add(current.merged_into)
            nxt = self._store.get_category(current.merged_into)
            if nxt is None:
                break
            current = nxt

    def create_static(
        self,
        name: str,
        department: str,
        keywords: Iterable[str],
        *,
        color_code: str = "#607D8B",
        min_confidence: float = 0.5,
        severity_weight: float = 0.0,
        intents: Iterable[str] = (),
        entity_types: Iterable[str] = (),
    ) -> Category:
        """Create an approved, configured category unless one with ``name`` exists."""

        with self._lock:
            existing = self._store.find_category_by_name(name)
            if existing is not None:
                return existing
            created = self._store.add_category(
                Category(
                    id=0,
                    name=name,
                    department=department,
                    status=CategoryStatus.APPROVED,
                    origin=CategoryOrigin.STATIC,
                    color_code=color_code,
                    keywords=frozenset(k.lower() for k in keywords),
                    min_confidence=min_confidence,
                    severity_weight=severity_weight,
                    intents=frozenset(i.lower() for i in intents),
                    entity_types=frozenset(e.lower() for e in entity_types),
                    first_detected=self._clock(),
                )
            )
            self.invalidate()
        LOGGER.info("Static category %s created (%s)", created.id, created.name)
        return created

    def add_candidate(self, category: Category) -> Category:
        """Persist a detector candidate; candidates always start pending."""

        if category.status is not CategoryStatus.PENDING:
            raise InvalidTransition("detected categories must start pending")
        with self._lock:
            created = self._store.add_category(category)
        LOGGER.info("Pending category %s surfaced (%s)", created.id, created.name)
        return created

    def record_activity(
        self, category_id: int, added: int, trend_score: float, samples: Iterable[str]
    ) -> Category:
        """Fold detector counters into the current row without touching status."""

        with self._lock:
            current = self.get(category_id)
            updated = dataclasses.replace(
                current,
                message_count=current.message_count + added,
                trend_score=trend_score,
                sample_messages=bounded_samples(current.sample_messages, samples, self._sample_limit),
            )
            self._store.save_category(updated)
            if updated.status is CategoryStatus.APPROVED:
                self.invalidate()
        return updated

    def set_threshold(self, category_id: int, value: float) -> Category:
        if not 0.0 <= value <= 1.0:
            raise ConfigValidationError(f"threshold must be within [0, 1], got {value}")
        with self._lock:
            updated = dataclasses.replace(self.get(category_id), min_confidence=value)
            self._store.save_category(updated)
            self.invalidate()
        return updated
