"""Core message processing pipeline.

This module is integration-agnostic. It only relies on ports and injected
components, enabling other transports or storage backends without changes
here.

The pipeline enforces a strict order per message:
1) Classify (never fails; degrades to a fallback result)
2) Match against one snapshot of approved categories
3) Score escalation and update the sender profile
4) Unmatched messages go to the detector's pool and stop here
5) Evaluate routing rules; every qualifying rule fires
6) Deliver all decisions concurrently, one audit entry each
7) CRITICAL messages whose every delivery failed go to the fallback groups
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

from whatsroute.core.categories import CategoryRegistry
from whatsroute.core.chat_ids import normalize_group_id, normalize_sender_id
from whatsroute.core.classifier import Classifier
from whatsroute.core.config import ProcessorConfig
from whatsroute.core.detector import DynamicCategoryDetector
from whatsroute.core.dispatcher import DeliveryDispatcher
from whatsroute.core.errors import AuditWriteFailure, MessageValidationError
from whatsroute.core.escalation import EscalationScorer
from whatsroute.core.matcher import CategoryMatcher
from whatsroute.core.models import (
    ClassificationResult,
    DeliveryOutcome,
    EscalationResult,
    MatchResult,
    Message,
    ProcessingReport,
    RiskLevel,
    RoutingDecision,
)
from whatsroute.core.ports import MessageStore
from whatsroute.core.rules_engine import GroupDirectory, RuleBook, evaluate
from whatsroute.core.text import compute_fingerprint

LOGGER = logging.getLogger(__name__)

Formatter = Callable[
    [Message, ClassificationResult, MatchResult, EscalationResult, RoutingDecision], str
]


def _parse_received_at(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        value = datetime.fromtimestamp(raw, tz=timezone.utc)
    elif isinstance(raw, str) and raw.strip():
        try:
            value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise MessageValidationError(f"received_at is not ISO-8601: {raw}") from exc
    else:
        raise MessageValidationError("received_at is required")
    # Naive timestamps from the bridge are UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def build_message(payload: Mapping[str, Any]) -> Message:
    """Validate an ingestion payload and build the immutable Message."""

    if not isinstance(payload, Mapping):
        raise MessageValidationError("message payload must be an object")

    raw_sender = payload.get("sender_id")
    if not isinstance(raw_sender, str) or not raw_sender.strip():
        raise MessageValidationError("sender_id is required")
    try:
        sender_id = normalize_sender_id(raw_sender)
    except ValueError as exc:
        raise MessageValidationError(str(exc)) from exc

    text = payload.get("text")
    if not isinstance(text, str):
        raise MessageValidationError("text must be a string")

    raw_group = payload.get("group_id")
    group_id: Optional[str] = None
    if raw_group is not None:
        if not isinstance(raw_group, str):
            raise MessageValidationError("group_id must be a string or null")
        try:
            group_id = normalize_group_id(raw_group)
        except ValueError as exc:
            raise MessageValidationError(str(exc)) from exc

    received_at = _parse_received_at(payload.get("received_at"))
    sender_name = payload.get("sender_name")
    if not isinstance(sender_name, str) or not sender_name.strip():
        sender_name = sender_id

    message_id = payload.get("id")
    if message_id is None:
        message_id = compute_fingerprint(sender_id, group_id or "", received_at.isoformat(), text)[:32]
    elif not isinstance(message_id, str) or not message_id.strip():
        raise MessageValidationError("id must be a non-empty string")

    return Message(
        id=message_id.strip(),
        sender_id=sender_id,
        sender_name=sender_name.strip(),
        group_id=group_id,
        text=text,
        received_at=received_at,
    )


class MessageProcessor:
    """Orchestrates classification, matching, scoring, routing, and delivery."""

    def __init__(
        self,
        classifier: Classifier,
        registry: CategoryRegistry,
        matcher: CategoryMatcher,
        detector: DynamicCategoryDetector,
        scorer: EscalationScorer,
        rulebook: RuleBook,
        groups: GroupDirectory,
        dispatcher: DeliveryDispatcher,
        messages: MessageStore,
        formatter: Formatter,
        config: ProcessorConfig,
    ) -> None:
        self._classifier = classifier
        self._registry = registry
        self._matcher = matcher
        self._detector = detector
        self._scorer = scorer
        self._rulebook = rulebook
        self._groups = groups
        self._dispatcher = dispatcher
        self._messages = messages
        self._formatter = formatter
        self._config = config
        self._tasks: set[asyncio.Task] = set()

    def ingest(self, payload: Mapping[str, Any]) -> str:
        """Accept one inbound message and process it in the background.

        Must be called from a running event loop. Returns the message id;
        malformed payloads raise MessageValidationError.
        """

        message = build_message(payload)
        if not self._messages.save_message(message):
            LOGGER.info("Message %s already ingested, ignoring", message.id)
            return message.id
        task = asyncio.get_running_loop().create_task(self._process_logged(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return message.id

    async def _process_logged(self, message: Message) -> None:
        try:
            await self.process(message)
        except AuditWriteFailure:
            LOGGER.error("Routing for %s is incomplete: audit log write failed", message.id)
        except Exception:
            LOGGER.exception("Error while processing message %s", message.id)

    async def drain(self) -> None:
        """Wait for all background processing started by ingest()."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def process(self, message: Message) -> ProcessingReport:
        """Run the full pipeline for one message."""

        classification = await self._classifier.classify(message)
        await asyncio.to_thread(self._messages.save_classification, message.id, classification)

        # One snapshot for the whole evaluation, even if an admin acts meanwhile.
        categories = self._registry.snapshot()
        match = self._matcher.match(message, classification, categories)
        escalation = await self._scorer.score(message, classification, match.category)

        if not match.matched:
            await asyncio.to_thread(self._detector.enqueue, message, classification)
            return ProcessingReport(
                message_id=message.id,
                classification=classification,
                match=match,
                escalation=escalation,
                queued_for_detection=True,
            )

        decisions = evaluate(match, escalation.severity, self._rulebook.snapshot(), self._groups.snapshot())
        if not decisions:
            LOGGER.info("No active rule for %s in category %s", message.id, match.category.name)
        outcomes = await self._deliver_all(decisions, message, classification, match, escalation)

        fallback_used = False
        if (
            decisions
            and escalation.risk_level is RiskLevel.CRITICAL
            and not any(outcome.success for outcome in outcomes)
        ):
            fallback = self._fallback_decisions(decisions, escalation)
            if fallback:
                LOGGER.warning("All routes failed for CRITICAL message %s, escalating to fallback groups", message.id)
                outcomes = outcomes + await self._deliver_all(fallback, message, classification, match, escalation)
                decisions = decisions + fallback
                fallback_used = True

        return ProcessingReport(
            message_id=message.id,
            classification=classification,
            match=match,
            escalation=escalation,
            decisions=tuple(decisions),
            outcomes=tuple(outcomes),
            fallback_used=fallback_used,
        )

    def _fallback_decisions(
        self, decisions: Sequence[RoutingDecision], escalation: EscalationResult
    ) -> list[RoutingDecision]:
        tried = {decision.destination_group_id for decision in decisions}
        groups = self._groups.snapshot()
        category_id = decisions[0].category_id
        fallback = []
        for group_id in self._config.fallback_group_ids:
            group = groups.get(group_id)
            if group is None or not group.is_active or group_id in tried:
                continue
            fallback.append(
                RoutingDecision(
                    rule=None,
                    destination_group_id=group_id,
                    severity=escalation.severity,
                    category_id=category_id,
                )
            )
        return fallback

    async def _deliver_all(
        self,
        decisions: Sequence[RoutingDecision],
        message: Message,
        classification: ClassificationResult,
        match: MatchResult,
        escalation: EscalationResult,
    ) -> list[DeliveryOutcome]:
        if not decisions:
            return []
        results = await asyncio.gather(
            *(
                self._dispatcher.deliver(
                    decision,
                    message,
                    classification,
                    escalation.score,
                    self._formatter(message, classification, match, escalation, decision),
                )
                for decision in decisions
            ),
            return_exceptions=True,
        )
        # Let every destination finish before surfacing an audit failure.
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def reanalyze(self, message_id: str) -> ClassificationResult:
        """Recompute and replace the stored classification for a message."""

        message = await asyncio.to_thread(self._messages.get_message, message_id)
        if message is None:
            raise MessageValidationError(f"message {message_id} does not exist")
        classification = await self._classifier.classify(message)
        await asyncio.to_thread(self._messages.save_classification, message.id, classification)
        return classification
