"""SQLite storage adapter.

Implements every core store port (categories, groups, rules, profiles,
detector pool, routing log, messages, settings) on one SQLite database.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from whatsroute.core.models import (
    Category,
    CategoryOrigin,
    CategoryStatus,
    ClassificationResult,
    DeliveryStatus,
    DestinationGroup,
    Entity,
    LogPage,
    LogQuery,
    Message,
    RiskLevel,
    RoutingLogEntry,
    RoutingRule,
    SenderHistoryEntry,
    SenderProfile,
    Severity,
    UnmatchedMessage,
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _entities_to_json(entities: Sequence[Entity]) -> str:
    return json.dumps([{"text": e.text, "category": e.category} for e in entities])


def _entities_from_json(raw: Optional[str]) -> tuple[Entity, ...]:
    if not raw:
        return ()
    return tuple(Entity(text=item["text"], category=item["category"]) for item in json.loads(raw))


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the core store contracts."""

    def __init__(self, db_path: str, timeout: float = 30.0) -> None:
        self._db_path = db_path
        self._timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - categories: static and detected categories with lifecycle state
        - destination_groups: WhatsApp groups that can receive alerts
        - routing_rules: category -> group mappings with severity filters
        - sender_profiles / sender_messages: escalation history per sender
        - messages: ingested messages and their latest classification
        - unmatched_pool: detector intake, ordered by seq
        - routing_log: append-only delivery outcomes
        - settings / cursors: small key-value state
        """

        with self._connect() as conn:
            # keywords, intents, entity_types and sample_messages are JSON arrays.
            # merged_into points at the category that absorbed this one.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    department TEXT NOT NULL,
                    status TEXT NOT NULL,
                    origin TEXT NOT NULL,
                    color_code TEXT NOT NULL,
                    keywords TEXT NOT NULL,
                    min_confidence REAL NOT NULL,
                    severity_weight REAL NOT NULL,
                    intents TEXT NOT NULL,
                    entity_types TEXT NOT NULL,
                    confidence_score REAL NOT NULL,
                    trend_score REAL NOT NULL,
                    message_count INTEGER NOT NULL,
                    first_detected TIMESTAMP,
                    sample_messages TEXT NOT NULL,
                    merged_into INTEGER,
                    decided_by TEXT,
                    decided_at TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS destination_groups (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    department TEXT NOT NULL,
                    is_active INTEGER NOT NULL
                )
                """
            )
            # severity_filter is a JSON array of severity values.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS routing_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    category_id INTEGER NOT NULL,
                    destination_group_id TEXT NOT NULL,
                    severity_filter TEXT NOT NULL,
                    is_active INTEGER NOT NULL,
                    priority INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sender_profiles (
                    sender_id TEXT PRIMARY KEY,
                    message_count INTEGER NOT NULL,
                    flag_count INTEGER NOT NULL,
                    false_positive_count INTEGER NOT NULL,
                    risk_level TEXT NOT NULL,
                    escalation_score REAL NOT NULL,
                    last_updated TIMESTAMP
                )
                """
            )
            # Trailing history used for repetition scoring.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sender_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    category_id INTEGER,
                    received_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sender_messages ON sender_messages (sender_id, received_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    sender_id TEXT NOT NULL,
                    sender_name TEXT NOT NULL,
                    group_id TEXT,
                    text TEXT NOT NULL,
                    received_at TIMESTAMP NOT NULL,
                    sentiment TEXT,
                    intent TEXT,
                    confidence REAL,
                    entities TEXT,
                    degraded INTEGER
                )
                """
            )
            # payload is the full UnmatchedMessage as JSON.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS unmatched_pool (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    received_at TIMESTAMP NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS routing_log (
                    id TEXT PRIMARY KEY,
                    message_id TEXT NOT NULL,
                    rule_id INTEGER,
                    category_id INTEGER,
                    destination_group_id TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    sentiment TEXT NOT NULL,
                    intent TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    escalation_score REAL NOT NULL,
                    success INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    error_message TEXT,
                    routed_at TIMESTAMP NOT NULL,
                    digest_type TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_routing_log_message ON routing_log (message_id, destination_group_id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cursors (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
                """
            )

    # Categories

    @staticmethod
    def _category_from_row(row: sqlite3.Row) -> Category:
        return Category(
            id=int(row["id"]),
            name=row["name"],
            department=row["department"],
            status=CategoryStatus(row["status"]),
            origin=CategoryOrigin(row["origin"]),
            color_code=row["color_code"],
            keywords=frozenset(json.loads(row["keywords"])),
            min_confidence=float(row["min_confidence"]),
            severity_weight=float(row["severity_weight"]),
            intents=frozenset(json.loads(row["intents"])),
            entity_types=frozenset(json.loads(row["entity_types"])),
            confidence_score=float(row["confidence_score"]),
            trend_score=float(row["trend_score"]),
            message_count=int(row["message_count"]),
            first_detected=_dt(row["first_detected"]),
            sample_messages=tuple(json.loads(row["sample_messages"])),
            merged_into=row["merged_into"],
            decided_by=row["decided_by"],
            decided_at=_dt(row["decided_at"]),
        )

    @staticmethod
    def _category_values(category: Category) -> tuple[Any, ...]:
        return (
            category.name,
            category.department,
            category.status.value,
            category.origin.value,
            category.color_code,
            json.dumps(sorted(category.keywords)),
            category.min_confidence,
            category.severity_weight,
            json.dumps(sorted(category.intents)),
            json.dumps(sorted(category.entity_types)),
            category.confidence_score,
            category.trend_score,
            category.message_count,
            _ts(category.first_detected),
            json.dumps(list(category.sample_messages)),
            category.merged_into,
            category.decided_by,
            _ts(category.decided_at),
        )

    def list_categories(self, status: Optional[CategoryStatus] = None) -> list[Category]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM categories ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM categories WHERE status = ? ORDER BY id",
                    (status.value,),
                ).fetchall()
        return [self._category_from_row(row) for row in rows]

    def get_category(self, category_id: int) -> Optional[Category]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,)).fetchone()
        return self._category_from_row(row) if row else None

    def find_category_by_name(self, name: str) -> Optional[Category]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM categories WHERE lower(name) = lower(?) ORDER BY id LIMIT 1",
                (name,),
            ).fetchone()
        return self._category_from_row(row) if row else None

    def add_category(self, category: Category) -> Category:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO categories (
                    name, department, status, origin, color_code, keywords,
                    min_confidence, severity_weight, intents, entity_types,
                    confidence_score, trend_score, message_count, first_detected,
                    sample_messages, merged_into, decided_by, decided_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._category_values(category),
            )
            new_id = int(cur.lastrowid)
        return self.get_category(new_id)

    def _update_category(self, conn: sqlite3.Connection, category: Category) -> None:
        conn.execute(
            """
            UPDATE categories SET
                name = ?, department = ?, status = ?, origin = ?, color_code = ?,
                keywords = ?, min_confidence = ?, severity_weight = ?, intents = ?,
                entity_types = ?, confidence_score = ?, trend_score = ?,
                message_count = ?, first_detected = ?, sample_messages = ?,
                merged_into = ?, decided_by = ?, decided_at = ?
            WHERE id = ?
            """,
            self._category_values(category) + (category.id,),
        )

    def save_category(self, category: Category) -> None:
        with self._connect() as conn:
            self._update_category(conn, category)

    def save_categories(self, categories: Sequence[Category]) -> None:
        # The connection context manager commits all updates or none.
        with self._connect() as conn:
            for category in categories:
                self._update_category(conn, category)

    # Destination groups

    def list_groups(self) -> list[DestinationGroup]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM destination_groups ORDER BY id").fetchall()
        return [
            DestinationGroup(
                id=row["id"],
                name=row["name"],
                department=row["department"],
                is_active=bool(row["is_active"]),
            )
            for row in rows
        ]

    def save_group(self, group: DestinationGroup) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO destination_groups (id, name, department, is_active)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    department = excluded.department,
                    is_active = excluded.is_active
                """,
                (group.id, group.name, group.department, int(group.is_active)),
            )

    def delete_group(self, group_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM destination_groups WHERE id = ?", (group_id,))
            return cur.rowcount > 0

    # Routing rules

    @staticmethod
    def _rule_from_row(row: sqlite3.Row) -> RoutingRule:
        return RoutingRule(
            id=int(row["id"]),
            category_id=int(row["category_id"]),
            destination_group_id=row["destination_group_id"],
            severity_filter=frozenset(Severity(value) for value in json.loads(row["severity_filter"])),
            is_active=bool(row["is_active"]),
            priority=int(row["priority"]),
        )

    def list_rules(self) -> list[RoutingRule]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM routing_rules ORDER BY priority, id").fetchall()
        return [self._rule_from_row(row) for row in rows]

    def add_rule(self, rule: RoutingRule) -> RoutingRule:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO routing_rules (
                    category_id, destination_group_id, severity_filter, is_active, priority
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    rule.category_id,
                    rule.destination_group_id,
                    json.dumps(sorted(s.value for s in rule.severity_filter)),
                    int(rule.is_active),
                    rule.priority,
                ),
            )
            new_id = int(cur.lastrowid)
        return RoutingRule(
            id=new_id,
            category_id=rule.category_id,
            destination_group_id=rule.destination_group_id,
            severity_filter=rule.severity_filter,
            is_active=rule.is_active,
            priority=rule.priority,
        )

    def save_rule(self, rule: RoutingRule) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE routing_rules SET
                    category_id = ?, destination_group_id = ?, severity_filter = ?,
                    is_active = ?, priority = ?
                WHERE id = ?
                """,
                (
                    rule.category_id,
                    rule.destination_group_id,
                    json.dumps(sorted(s.value for s in rule.severity_filter)),
                    int(rule.is_active),
                    rule.priority,
                    rule.id,
                ),
            )

    def delete_rule(self, rule_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM routing_rules WHERE id = ?", (rule_id,))
            return cur.rowcount > 0

    # Sender profiles

    def get_profile(self, sender_id: str) -> Optional[SenderProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sender_profiles WHERE sender_id = ?",
                (sender_id,),
            ).fetchone()
        if row is None:
            return None
        return SenderProfile(
            sender_id=row["sender_id"],
            message_count=int(row["message_count"]),
            flag_count=int(row["flag_count"]),
            false_positive_count=int(row["false_positive_count"]),
            risk_level=RiskLevel(row["risk_level"]),
            escalation_score=float(row["escalation_score"]),
            last_updated=_dt(row["last_updated"]),
        )

    def list_profiles(self, min_level: RiskLevel = RiskLevel.LOW) -> list[SenderProfile]:
        """Return profiles at or above ``min_level``, highest score first."""

        levels = [level.value for level in RiskLevel if level.rank >= min_level.rank]
        placeholders = ", ".join("?" for _ in levels)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT sender_id FROM sender_profiles WHERE risk_level IN ({placeholders}) "
                "ORDER BY escalation_score DESC, sender_id",
                levels,
            ).fetchall()
        return [self.get_profile(row["sender_id"]) for row in rows]

    def save_profile(self, profile: SenderProfile) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sender_profiles (
                    sender_id, message_count, flag_count, false_positive_count,
                    risk_level, escalation_score, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(sender_id) DO UPDATE SET
                    message_count = excluded.message_count,
                    flag_count = excluded.flag_count,
                    false_positive_count = excluded.false_positive_count,
                    risk_level = excluded.risk_level,
                    escalation_score = excluded.escalation_score,
                    last_updated = excluded.last_updated
                """,
                (
                    profile.sender_id,
                    profile.message_count,
                    profile.flag_count,
                    profile.false_positive_count,
                    profile.risk_level.value,
                    profile.escalation_score,
                    _ts(profile.last_updated),
                ),
            )

    def recent_sender_messages(self, sender_id: str, since: datetime) -> list[SenderHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT message_id, text, category_id, received_at FROM sender_messages
                WHERE sender_id = ? AND received_at >= ?
                ORDER BY received_at
                """,
                (sender_id, _ts(since)),
            ).fetchall()
        return [
            SenderHistoryEntry(
                message_id=row["message_id"],
                text=row["text"],
                received_at=_dt(row["received_at"]),
                category_id=row["category_id"],
            )
            for row in rows
        ]

    def append_sender_message(self, sender_id: str, entry: SenderHistoryEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sender_messages (sender_id, message_id, text, category_id, received_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (sender_id, entry.message_id, entry.text, entry.category_id, _ts(entry.received_at)),
            )

    def cleanup_sender_messages(self, retention_days: int) -> int:
        """Delete sender history older than the retention window."""

        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM sender_messages WHERE received_at < ?",
                (_ts(cutoff),),
            )
            return cur.rowcount

    # Messages

    def save_message(self, message: Message) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO messages (
                    id, sender_id, sender_name, group_id, text, received_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.sender_id,
                    message.sender_name,
                    message.group_id,
                    message.text,
                    _ts(message.received_at),
                ),
            )
            return cur.rowcount > 0

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        if row is None:
            return None
        return Message(
            id=row["id"],
            sender_id=row["sender_id"],
            sender_name=row["sender_name"],
            group_id=row["group_id"],
            text=row["text"],
            received_at=_dt(row["received_at"]),
        )

    def save_classification(self, message_id: str, result: ClassificationResult) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE messages SET
                    sentiment = ?, intent = ?, confidence = ?, entities = ?, degraded = ?
                WHERE id = ?
                """,
                (
                    result.sentiment,
                    result.intent,
                    result.confidence,
                    _entities_to_json(result.entities),
                    int(result.degraded),
                    message_id,
                ),
            )

    def get_classification(self, message_id: str) -> Optional[ClassificationResult]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT sentiment, intent, confidence, entities, degraded FROM messages WHERE id = ?",
                (message_id,),
            ).fetchone()
        if row is None or row["sentiment"] is None:
            return None
        return ClassificationResult(
            sentiment=row["sentiment"],
            intent=row["intent"],
            confidence=float(row["confidence"]),
            entities=_entities_from_json(row["entities"]),
            degraded=bool(row["degraded"]),
        )

    # Detector pool

    def add_unmatched(self, entry: UnmatchedMessage) -> int:
        message = entry.message
        result = entry.classification
        payload = {
            "message": {
                "id": message.id,
                "sender_id": message.sender_id,
                "sender_name": message.sender_name,
                "group_id": message.group_id,
                "text": message.text,
                "received_at": _ts(message.received_at),
            },
            "classification": {
                "sentiment": result.sentiment,
                "intent": result.intent,
                "confidence": result.confidence,
                "entities": [{"text": e.text, "category": e.category} for e in result.entities],
                "degraded": result.degraded,
            },
            "tokens": sorted(entry.tokens),
        }
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO unmatched_pool (received_at, payload) VALUES (?, ?)",
                (_ts(message.received_at), json.dumps(payload)),
            )
            return int(cur.lastrowid)

    def list_unmatched(self, since: datetime) -> list[UnmatchedMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT seq, payload FROM unmatched_pool WHERE received_at >= ? ORDER BY seq",
                (_ts(since),),
            ).fetchall()
        entries = []
        for row in rows:
            payload = json.loads(row["payload"])
            raw_message = payload["message"]
            raw_result = payload["classification"]
            entries.append(
                UnmatchedMessage(
                    message=Message(
                        id=raw_message["id"],
                        sender_id=raw_message["sender_id"],
                        sender_name=raw_message["sender_name"],
                        group_id=raw_message["group_id"],
                        text=raw_message["text"],
                        received_at=_dt(raw_message["received_at"]),
                    ),
                    classification=ClassificationResult(
                        sentiment=raw_result["sentiment"],
                        intent=raw_result["intent"],
                        confidence=float(raw_result["confidence"]),
                        entities=tuple(
                            Entity(text=item["text"], category=item["category"])
                            for item in raw_result.get("entities", [])
                        ),
                        degraded=bool(raw_result.get("degraded", False)),
                    ),
                    tokens=frozenset(payload["tokens"]),
                    seq=int(row["seq"]),
                )
            )
        return entries

    def prune_unmatched(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM unmatched_pool WHERE received_at < ?", (_ts(before),))
            return cur.rowcount

    def get_cursor(self, name: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM cursors WHERE name = ?", (name,)).fetchone()
        return int(row["value"]) if row else None

    def set_cursor(self, name: str, value: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cursors (name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value
                """,
                (name, value),
            )

    # Routing log

    @staticmethod
    def _log_from_row(row: sqlite3.Row) -> RoutingLogEntry:
        return RoutingLogEntry(
            id=row["id"],
            message_id=row["message_id"],
            rule_id=row["rule_id"],
            category_id=row["category_id"],
            destination_group_id=row["destination_group_id"],
            severity=Severity(row["severity"]),
            sentiment=row["sentiment"],
            intent=row["intent"],
            confidence=float(row["confidence"]),
            escalation_score=float(row["escalation_score"]),
            success=bool(row["success"]),
            status=DeliveryStatus(row["status"]),
            attempts=int(row["attempts"]),
            error_message=row["error_message"],
            routed_at=_dt(row["routed_at"]),
            digest_type=row["digest_type"],
        )

    def append_log_entry(self, entry: RoutingLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO routing_log (
                    id, message_id, rule_id, category_id, destination_group_id,
                    severity, sentiment, intent, confidence, escalation_score,
                    success, status, attempts, error_message, routed_at, digest_type
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.message_id,
                    entry.rule_id,
                    entry.category_id,
                    entry.destination_group_id,
                    entry.severity.value,
                    entry.sentiment,
                    entry.intent,
                    entry.confidence,
                    entry.escalation_score,
                    int(entry.success),
                    entry.status.value,
                    entry.attempts,
                    entry.error_message,
                    _ts(entry.routed_at),
                    entry.digest_type,
                ),
            )

    def query_log(self, query: LogQuery) -> LogPage:
        clauses: list[str] = []
        params: list[Any] = []
        if query.digest_type is not None:
            clauses.append("digest_type = ?")
            params.append(query.digest_type)
        if query.category_id is not None:
            clauses.append("category_id = ?")
            params.append(query.category_id)
        if query.destination_group_id is not None:
            clauses.append("destination_group_id = ?")
            params.append(query.destination_group_id)
        if query.success is not None:
            clauses.append("success = ?")
            params.append(int(query.success))
        if query.since is not None:
            clauses.append("routed_at >= ?")
            params.append(_ts(query.since))
        if query.until is not None:
            clauses.append("routed_at < ?")
            params.append(_ts(query.until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS n FROM routing_log {where}", params).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM routing_log {where} ORDER BY routed_at DESC, id LIMIT ? OFFSET ?",
                params + [query.limit, query.offset],
            ).fetchall()
        return LogPage(
            entries=tuple(self._log_from_row(row) for row in rows),
            total=int(total),
            limit=query.limit,
            offset=query.offset,
        )

    def find_successful_entry(
        self, message_id: str, rule_id: Optional[int], destination_group_id: str
    ) -> Optional[RoutingLogEntry]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM routing_log
                WHERE message_id = ? AND rule_id IS ? AND destination_group_id = ? AND success = 1
                ORDER BY routed_at LIMIT 1
                """,
                (message_id, rule_id, destination_group_id),
            ).fetchone()
        return self._log_from_row(row) if row else None

    # Settings

    def get_setting(self, key: str) -> Optional[Any]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else None

    def set_setting(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, json.dumps(value)),
            )
