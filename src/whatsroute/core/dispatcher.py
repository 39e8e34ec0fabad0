"""Delivery of routing decisions to destination groups (core domain).

Each decision is delivered on its own: retries, throttling, and failures for
one destination never touch another. Whatever happens, one deliver() call
produces exactly one audit entry, written before the outcome is returned.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from whatsroute.core.audit import AuditLogger
from whatsroute.core.config import DeliveryConfig
from whatsroute.core.errors import PermanentDeliveryFailure, TransientDeliveryFailure
from whatsroute.core.locks import KeyedLocks
from whatsroute.core.models import (
    ClassificationResult,
    DeliveryOutcome,
    DeliveryStatus,
    Message,
    RoutingDecision,
    RoutingLogEntry,
    SendStatus,
    utcnow,
)
from whatsroute.core.ports import TransportPort
from whatsroute.core.rate_limit import DestinationRateLimiter

LOGGER = logging.getLogger(__name__)


@dataclass
class RoutingStats:
    total: int = 0
    delivered: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    retries: int = 0


class DeliveryDispatcher:
    """Sends rendered alerts through the transport with retry and throttling."""

    def __init__(
        self,
        transport: TransportPort,
        audit: AuditLogger,
        limiter: DestinationRateLimiter,
        config: DeliveryConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._transport = transport
        self._audit = audit
        self._limiter = limiter
        self._config = config
        self._clock = clock
        self._locks = KeyedLocks()
        self.stats = RoutingStats()

    async def _send_once(self, destination: str, text: str) -> None:
        await self._limiter.acquire(destination)
        try:
            result = await asyncio.wait_for(
                self._transport.send(destination, text),
                timeout=self._config.send_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransientDeliveryFailure(
                f"send timed out after {self._config.send_timeout_seconds}s"
            ) from exc
        except (TransientDeliveryFailure, PermanentDeliveryFailure):
            raise
        except Exception as exc:
            # Anything the transport did not classify is treated as connectivity.
            raise TransientDeliveryFailure(f"transport error: {exc}") from exc

        if result.status is SendStatus.OK:
            return
        if result.status is SendStatus.PERMANENT_ERROR:
            raise PermanentDeliveryFailure(result.detail or "destination rejected the message")
        raise TransientDeliveryFailure(result.detail or "transient transport error")

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        self.stats.retries += 1
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        LOGGER.info(
            "Retrying delivery (attempt %s failed: %s), sleeping %.1fs",
            retry_state.attempt_number,
            exc,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(self._config.max_attempts, 1)),
            wait=wait_exponential(
                multiplier=self._config.backoff_base_seconds,
                max=self._config.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientDeliveryFailure),
            before_sleep=self._before_sleep,
            reraise=True,
        )

    def _record(
        self,
        decision: RoutingDecision,
        message: Message,
        classification: ClassificationResult,
        escalation_score: float,
        status: DeliveryStatus,
        attempts: int,
        error_message: Optional[str],
    ) -> RoutingLogEntry:
        entry = RoutingLogEntry(
            id=uuid.uuid4().hex,
            message_id=message.id,
            rule_id=decision.rule_id,
            category_id=decision.category_id,
            destination_group_id=decision.destination_group_id,
            severity=decision.severity,
            sentiment=classification.sentiment,
            intent=classification.intent,
            confidence=classification.confidence,
            escalation_score=escalation_score,
            success=status is DeliveryStatus.DELIVERED,
            status=status,
            attempts=attempts,
            error_message=error_message,
            routed_at=self._clock(),
        )
        return self._audit.record(entry)

    async def deliver(
        self,
        decision: RoutingDecision,
        message: Message,
        classification: ClassificationResult,
        escalation_score: float,
        text: str,
    ) -> DeliveryOutcome:
        """Deliver one decision and record its final outcome.

        Re-delivering a (message, rule, destination) triple that already
        succeeded is a no-op that returns the existing entry.
        """

        key = (message.id, decision.rule_id, decision.destination_group_id)
        acquired = False
        try:
            async with self._locks.hold(key):
                acquired = True
                return await self._deliver_locked(key, decision, message, classification, escalation_score, text)
        except asyncio.CancelledError:
            if not acquired:
                # Cancelled while an earlier attempt on the same key held the lock.
                self.stats.cancelled += 1
                self._record(
                    decision,
                    message,
                    classification,
                    escalation_score,
                    DeliveryStatus.CANCELLED,
                    0,
                    "cancelled before sending",
                )
            raise

    async def _deliver_locked(
        self,
        key: tuple[str, Optional[int], str],
        decision: RoutingDecision,
        message: Message,
        classification: ClassificationResult,
        escalation_score: float,
        text: str,
    ) -> DeliveryOutcome:
        existing = self._audit.find_success(*key)
        if existing is not None:
            self.stats.skipped += 1
            LOGGER.info("Delivery %s already succeeded, skipping", key)
            return DeliveryOutcome(
                decision=decision,
                status=DeliveryStatus.SKIPPED,
                attempts=0,
                log_entry=existing,
            )

        self.stats.total += 1
        attempts = 0
        status = DeliveryStatus.FAILED
        error: Optional[str] = None
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self._send_once(decision.destination_group_id, text)
            status = DeliveryStatus.DELIVERED
        except PermanentDeliveryFailure as exc:
            error = str(exc)
            LOGGER.warning(
                "Permanent delivery failure to %s for %s: %s",
                decision.destination_group_id,
                message.id,
                error,
            )
        except TransientDeliveryFailure as exc:
            error = f"gave up after {attempts} attempts: {exc}"
            LOGGER.warning("Delivery to %s for %s failed: %s", decision.destination_group_id, message.id, error)
        except asyncio.CancelledError:
            self.stats.cancelled += 1
            self._record(
                decision,
                message,
                classification,
                escalation_score,
                DeliveryStatus.CANCELLED,
                attempts,
                "cancelled",
            )
            raise

        entry = self._record(
            decision, message, classification, escalation_score, status, attempts, error
        )
        if status is DeliveryStatus.DELIVERED:
            self.stats.delivered += 1
            LOGGER.info(
                "Routed %s to %s (rule %s, %s attempt(s))",
                message.id,
                decision.destination_group_id,
                decision.rule_id,
                attempts,
            )
        else:
            self.stats.failed += 1
        return DeliveryOutcome(
            decision=decision,
            status=status,
            attempts=attempts,
            error_message=error,
            log_entry=entry,
        )
