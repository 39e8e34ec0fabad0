"""Application entry point for the whatsroute engine."""

from __future__ import annotations

import argparse
import asyncio
import functools
import logging
import os
import signal
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

import httpx
from art import tprint
from dotenv import load_dotenv

from whatsroute import settings
from whatsroute.adapters.llm_classifier import LLMAnalyzer
from whatsroute.adapters.notification_formatting import format_routing_message
from whatsroute.adapters.sqlite_storage import SQLiteStorage
from whatsroute.adapters.whatsapp_bridge import WhatsAppBridge
from whatsroute.adapters.whatsapp_mapper import payload_from_bridge
from whatsroute.client import build_analyzer_client, build_bridge_client
from whatsroute.core.audit import AuditLogger, NullEventSink
from whatsroute.core.categories import CategoryRegistry
from whatsroute.core.chat_ids import normalize_group_id, normalize_sender_id
from whatsroute.core.classifier import Classifier
from whatsroute.core.detector import DynamicCategoryDetector
from whatsroute.core.dispatcher import DeliveryDispatcher
from whatsroute.core.errors import MessageValidationError, WhatsrouteError
from whatsroute.core.escalation import EscalationScorer
from whatsroute.core.matcher import CategoryMatcher
from whatsroute.core.models import CategoryStatus, LogQuery, RiskLevel
from whatsroute.core.ports import AnalyzerPort, EventSink, TransportPort
from whatsroute.core.processor import MessageProcessor
from whatsroute.core.rate_limit import DestinationRateLimiter
from whatsroute.core.rules_engine import GroupDirectory, RuleBook, seed_rules
from whatsroute.core.thresholds import ThresholdConfig, percent_to_threshold, threshold_to_percent

NAME = "WHATSROUTE"
FONT = "tarty-1"

BRIDGE_CURSOR = "bridge"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", True):
        return []
    values = []
    for name in redact_cfg.get("patterns", ["BRIDGE_TOKEN", "ANALYZER_API_KEY"]):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/whatsroute.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # httpx logs every request at INFO, which drowns out routing outcomes.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


@dataclass
class Admin:
    """Storage-backed administration components shared by every command."""

    storage: SQLiteStorage
    registry: CategoryRegistry
    groups: GroupDirectory
    rulebook: RuleBook
    thresholds: ThresholdConfig


def _open_admin() -> Admin:
    storage = SQLiteStorage(settings.DB_PATH, timeout=settings.DB_TIMEOUT_SECONDS)
    storage.init_db()
    registry = CategoryRegistry(
        storage,
        ttl_seconds=settings.PROCESSOR.category_cache_ttl_seconds,
        sample_limit=settings.DETECTOR.max_samples,
    )
    groups = GroupDirectory(storage)
    rulebook = RuleBook(storage, registry, groups)
    thresholds = ThresholdConfig(storage, registry, settings.DEFAULT_BANDS_CONFIG)
    return Admin(storage, registry, groups, rulebook, thresholds)


def _seed(admin: Admin) -> None:
    """Create configured categories, groups, and rules that do not exist yet."""

    category_ids: dict[str, int] = {}
    for entry in settings.CATEGORIES_CONFIG:
        if not entry.get("enabled", True):
            continue
        category = admin.registry.create_static(
            entry["name"],
            entry.get("department", ""),
            entry.get("keywords", []),
            color_code=entry.get("color", "#607D8B"),
            min_confidence=percent_to_threshold(float(entry.get("min_confidence_percent", 50))),
            severity_weight=float(entry.get("severity_weight", 0.0)),
            intents=entry.get("intents", []),
            entity_types=entry.get("entity_types", []),
        )
        category_ids[category.name] = category.id

    for entry in settings.GROUPS_CONFIG:
        if admin.groups.get(normalize_group_id(entry["id"])) is None:
            admin.groups.upsert_group(
                entry["id"],
                entry.get("name", entry["id"]),
                entry.get("department", ""),
                entry.get("active", True),
            )

    added = seed_rules(admin.rulebook, settings.RULES_CONFIG, category_ids)
    LOGGER.info(
        "Seeded config: %s categories, %s groups, %s new rules",
        len(category_ids),
        len(settings.GROUPS_CONFIG),
        added,
    )


def build_processor(
    admin: Admin,
    transport: TransportPort,
    analyzer: AnalyzerPort,
    sink: Optional[EventSink] = None,
) -> tuple[MessageProcessor, DynamicCategoryDetector]:
    """Wire the pipeline from configuration and the given adapters."""

    storage = admin.storage
    detector = DynamicCategoryDetector(storage, admin.registry, settings.DETECTOR)
    scorer = EscalationScorer(storage, settings.ESCALATION, bands_provider=admin.thresholds.get_bands)
    dispatcher = DeliveryDispatcher(
        transport,
        AuditLogger(storage, sink or NullEventSink()),
        DestinationRateLimiter(settings.DELIVERY.rate_per_second, settings.DELIVERY.burst),
        settings.DELIVERY,
    )
    processor = MessageProcessor(
        classifier=Classifier(analyzer, settings.CLASSIFIER),
        registry=admin.registry,
        matcher=CategoryMatcher(settings.MATCHER),
        detector=detector,
        scorer=scorer,
        rulebook=admin.rulebook,
        groups=admin.groups,
        dispatcher=dispatcher,
        messages=storage,
        formatter=functools.partial(format_routing_message, group_aliases=settings.GROUP_ALIASES),
        config=settings.PROCESSOR,
    )
    return processor, detector


async def _wait(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def _poll_bridge(
    bridge: WhatsAppBridge,
    processor: MessageProcessor,
    storage: SQLiteStorage,
    stop: asyncio.Event,
) -> None:
    """Pull new messages from the bridge and hand them to the processor."""

    after = storage.get_cursor(BRIDGE_CURSOR) or 0
    while not stop.is_set():
        try:
            items, next_after = await bridge.fetch_messages(after, settings.POLL_BATCH_SIZE)
        except httpx.HTTPError as exc:
            LOGGER.warning("Bridge poll failed: %s", exc)
            await _wait(stop, settings.POLL_INTERVAL_SECONDS)
            continue

        for item in items:
            payload = payload_from_bridge(item)
            if payload is None:
                continue
            try:
                processor.ingest(payload)
            except MessageValidationError as exc:
                LOGGER.warning("Rejected bridge message: %s", exc)

        # Advance only after the batch is persisted so restarts do not repeat it.
        if next_after != after:
            storage.set_cursor(BRIDGE_CURSOR, next_after)
            after = next_after
        if not items:
            await _wait(stop, settings.POLL_INTERVAL_SECONDS)


async def _serve(admin: Admin) -> None:
    bridge = WhatsAppBridge(build_bridge_client(settings.DELIVERY.send_timeout_seconds))
    analyzer = LLMAnalyzer(build_analyzer_client(settings.CLASSIFIER.timeout_seconds), settings.ANALYZER_MODEL)
    processor, detector = build_processor(admin, bridge, analyzer)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    detector_task = None
    if settings.DETECTOR_ENABLED:
        detector_task = asyncio.create_task(detector.run_forever(stop))

    LOGGER.info("Listening for bridge messages...")
    try:
        await _poll_bridge(bridge, processor, admin.storage, stop)
    finally:
        stop.set()
        await processor.drain()
        if detector_task is not None:
            await detector_task
        await bridge.aclose()
        await analyzer.aclose()
        LOGGER.info("Stopped")


def _run() -> None:
    _print_banner()
    _configure_logging()
    LOGGER.info("Starting whatsroute")

    admin = _open_admin()
    removed = admin.storage.cleanup_sender_messages(settings.SENDER_HISTORY_RETENTION_DAYS)
    LOGGER.info("Sender history cleanup removed %s messages", removed)
    _seed(admin)
    LOGGER.info(
        "%s approved categories, %s rules, %s groups are loaded",
        len(admin.registry.snapshot()),
        len(admin.rulebook.snapshot()),
        len(admin.groups.snapshot()),
    )
    asyncio.run(_serve(admin))


def _detect(admin: Admin) -> None:
    detector = DynamicCategoryDetector(admin.storage, admin.registry, settings.DETECTOR)
    report = asyncio.run(detector.run_once())
    print(
        f"processed={report.processed} clusters={report.clusters} "
        f"created={list(report.created)} updated={list(report.updated)} failed={report.failed}"
    )


def _sync_groups(admin: Admin) -> None:
    async def _fetch() -> list[dict[str, Any]]:
        bridge = WhatsAppBridge(build_bridge_client())
        try:
            return await bridge.list_groups()
        finally:
            await bridge.aclose()

    known = admin.groups.snapshot()
    added = 0
    for item in asyncio.run(_fetch()):
        group_id = normalize_group_id(item["id"])
        if group_id in known:
            continue
        admin.groups.upsert_group(group_id, item.get("name") or group_id, is_active=False)
        added += 1
    print(f"{added} new group(s) added as inactive")


def _print_categories(admin: Admin, status: Optional[str]) -> None:
    selected = CategoryStatus(status) if status else None
    for c in admin.registry.list_categories(selected):
        print(
            f"{c.id}. {c.name} | {c.department} | {c.status.value} | {c.origin.value} | "
            f"threshold {threshold_to_percent(c.min_confidence):g}% | "
            f"messages {c.message_count} | trend {c.trend_score:+.2f}"
        )


def _categories(admin: Admin, args: argparse.Namespace) -> None:
    if args.action == "list":
        _print_categories(admin, args.status)
    elif args.action == "approve":
        category = admin.registry.approve_category(args.id, args.by)
        print(f"category {category.id} ({category.name}) approved by {args.by}")
    elif args.action == "reject":
        category = admin.registry.reject_category(args.id, args.by)
        print(f"category {category.id} ({category.name}) rejected by {args.by}")
    elif args.action == "merge":
        target = admin.registry.merge_category(args.id, args.target, args.by)
        print(f"category {args.id} merged into {target.id} ({target.name})")
    elif args.action == "threshold":
        admin.thresholds.set_category_threshold(args.id, percent_to_threshold(args.percent))
        print(f"category {args.id} threshold set to {args.percent:g}%")


def _rules(admin: Admin, args: argparse.Namespace) -> None:
    if args.action == "list":
        for rule in admin.rulebook.list_rules():
            severities = ",".join(sorted(s.value for s in rule.severity_filter))
            state = "active" if rule.is_active else "inactive"
            print(
                f"{rule.id}. category {rule.category_id} -> {rule.destination_group_id} | "
                f"{severities} | priority {rule.priority} | {state}"
            )
    elif args.action == "add":
        rule = admin.rulebook.create_rule(
            category_id=args.category,
            destination_group_id=args.group,
            severity_filter=args.severity,
            is_active=not args.inactive,
            priority=args.priority,
        )
        print(f"rule {rule.id} created")
    elif args.action == "update":
        changes: dict[str, Any] = {}
        if args.category is not None:
            changes["category_id"] = args.category
        if args.group is not None:
            changes["destination_group_id"] = args.group
        if args.severity is not None:
            changes["severity_filter"] = args.severity
        if args.priority is not None:
            changes["priority"] = args.priority
        if args.active is not None:
            changes["is_active"] = args.active == "yes"
        admin.rulebook.update_rule(args.id, **changes)
        print(f"rule {args.id} updated")
    elif args.action == "delete":
        removed = admin.rulebook.delete_rule(args.id)
        print(f"rule {args.id} {'deleted' if removed else 'not found'}")


def _groups(admin: Admin, args: argparse.Namespace) -> None:
    if args.action == "list":
        for group in sorted(admin.groups.snapshot().values(), key=lambda g: g.id):
            state = "active" if group.is_active else "inactive"
            print(f"{group.id} | {group.name} | {group.department or '-'} | {state}")
    elif args.action in {"activate", "deactivate"}:
        group = admin.groups.set_group_active(args.id, args.action == "activate")
        print(f"{group.id} is now {'active' if group.is_active else 'inactive'}")
    elif args.action == "remove":
        removed = admin.groups.remove_group(args.id)
        print(f"group {args.id} {'removed' if removed else 'not found'}")


def _parse_time(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _logs(admin: Admin, args: argparse.Namespace) -> None:
    success = None if args.status is None else args.status == "success"
    page = AuditLogger(admin.storage).query(
        LogQuery(
            digest_type=args.digest_type,
            category_id=args.category,
            destination_group_id=normalize_group_id(args.group) if args.group else None,
            success=success,
            since=_parse_time(args.since),
            until=_parse_time(args.until),
            limit=args.limit,
            offset=args.offset,
        )
    )
    for entry in page.entries:
        outcome = "ok" if entry.success else f"{entry.status.value}: {entry.error_message or '-'}"
        print(
            f"{entry.routed_at.isoformat()} | {entry.message_id} -> {entry.destination_group_id} | "
            f"rule {entry.rule_id} | {entry.severity.value} | attempts {entry.attempts} | {outcome}"
        )
    print(f"showing {len(page.entries)} of {page.total}")


def _bands(admin: Admin, args: argparse.Namespace) -> None:
    requested = {
        RiskLevel.MEDIUM: args.medium,
        RiskLevel.HIGH: args.high,
        RiskLevel.CRITICAL: args.critical,
    }
    if any(value is not None for value in requested.values()):
        current = admin.thresholds.get_bands()
        merged = {
            level: percent_to_threshold(value) if value is not None else current[level]
            for level, value in requested.items()
        }
        admin.thresholds.set_bands(merged)
    for level, edge in admin.thresholds.get_bands().items():
        print(f"{level.value} >= {threshold_to_percent(edge):g}%")


def _profiles(admin: Admin, args: argparse.Namespace) -> None:
    if args.action == "list":
        for profile in admin.storage.list_profiles(RiskLevel(args.min_level)):
            print(
                f"{profile.sender_id} | {profile.risk_level.value} | score {profile.escalation_score:.2f} | "
                f"messages {profile.message_count} | flags {profile.flag_count} | "
                f"false positives {profile.false_positive_count}"
            )
    elif args.action == "false-positive":
        scorer = EscalationScorer(admin.storage, settings.ESCALATION)
        profile = asyncio.run(scorer.mark_false_positive(normalize_sender_id(args.sender)))
        print(f"{profile.sender_id}: {profile.false_positive_count} false positive(s)")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="whatsroute")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start polling, detection, and routing")
    subparsers.add_parser("detect", help="Run one dynamic category detection pass")
    subparsers.add_parser("sync-groups", help="Import groups the bridge session belongs to")

    categories = subparsers.add_parser("categories", help="Review and tune categories")
    cat_actions = categories.add_subparsers(dest="action", required=True)
    cat_list = cat_actions.add_parser("list")
    cat_list.add_argument("--status", choices=[s.value for s in CategoryStatus])
    for name in ("approve", "reject"):
        action = cat_actions.add_parser(name)
        action.add_argument("id", type=int)
        action.add_argument("--by", required=True, help="Approver name")
    merge = cat_actions.add_parser("merge")
    merge.add_argument("id", type=int)
    merge.add_argument("target", type=int)
    merge.add_argument("--by", required=True, help="Approver name")
    threshold = cat_actions.add_parser("threshold")
    threshold.add_argument("id", type=int)
    threshold.add_argument("percent", type=float)

    rules = subparsers.add_parser("rules", help="Manage routing rules")
    rule_actions = rules.add_subparsers(dest="action", required=True)
    rule_actions.add_parser("list")
    add = rule_actions.add_parser("add")
    add.add_argument("--category", type=int, required=True)
    add.add_argument("--group", required=True)
    add.add_argument("--severity", default="low,medium,high")
    add.add_argument("--priority", type=int, default=100)
    add.add_argument("--inactive", action="store_true")
    update = rule_actions.add_parser("update")
    update.add_argument("id", type=int)
    update.add_argument("--category", type=int)
    update.add_argument("--group")
    update.add_argument("--severity")
    update.add_argument("--priority", type=int)
    update.add_argument("--active", choices=["yes", "no"])
    delete = rule_actions.add_parser("delete")
    delete.add_argument("id", type=int)

    groups = subparsers.add_parser("groups", help="Manage destination groups")
    group_actions = groups.add_subparsers(dest="action", required=True)
    group_actions.add_parser("list")
    for name in ("activate", "deactivate", "remove"):
        group_actions.add_parser(name).add_argument("id")

    logs = subparsers.add_parser("logs", help="Show the routing log")
    logs.add_argument("--group")
    logs.add_argument("--category", type=int)
    logs.add_argument("--status", choices=["success", "failed"])
    logs.add_argument("--digest-type", dest="digest_type")
    logs.add_argument("--since")
    logs.add_argument("--until")
    logs.add_argument("--limit", type=int, default=50)
    logs.add_argument("--offset", type=int, default=0)

    bands = subparsers.add_parser("bands", help="Show or set severity band edges (percent)")
    bands.add_argument("--medium", type=float)
    bands.add_argument("--high", type=float)
    bands.add_argument("--critical", type=float)

    profiles = subparsers.add_parser("profiles", help="Inspect sender escalation profiles")
    profile_actions = profiles.add_subparsers(dest="action", required=True)
    profile_list = profile_actions.add_parser("list")
    profile_list.add_argument("--min-level", dest="min_level", default="MEDIUM", choices=[r.value for r in RiskLevel])
    false_positive = profile_actions.add_parser("false-positive")
    false_positive.add_argument("sender")

    return parser


_ADMIN_COMMANDS = {
    "categories": _categories,
    "rules": _rules,
    "groups": _groups,
    "logs": _logs,
    "bands": _bands,
    "profiles": _profiles,
}


def main(argv: Optional[list[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, "run"):
        _run()
        return

    logging.basicConfig(level=logging.WARNING)
    try:
        admin = _open_admin()
        if args.command == "detect":
            _detect(admin)
        elif args.command == "sync-groups":
            _sync_groups(admin)
        else:
            _ADMIN_COMMANDS[args.command](admin, args)
    except (WhatsrouteError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
