"""Static configuration for whatsroute.

All user-editable settings (categories, groups, rules, scoring weights,
delivery tuning) live in a single JSON file for quick edits without touching
Python. Secrets never go in this file; they come from the environment.
"""

from __future__ import annotations

import json
import os
from typing import Any, Mapping

from whatsroute.core.chat_ids import normalize_group_id
from whatsroute.core.config import (
    DEFAULT_BANDS,
    ClassifierConfig,
    DeliveryConfig,
    DetectorConfig,
    EscalationConfig,
    MatcherConfig,
    ProcessorConfig,
)
from whatsroute.core.errors import ConfigValidationError
from whatsroute.core.models import RiskLevel, Severity

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))

# WHATSROUTE_CONFIG points at another file; otherwise config.json at the root.
CONFIG_PATH = os.getenv("WHATSROUTE_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load the JSON config; a missing default file means all defaults."""

    if not os.path.exists(CONFIG_PATH):
        if os.getenv("WHATSROUTE_CONFIG"):
            raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")
        return {}

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


def build_classifier_config(section: Mapping[str, Any]) -> ClassifierConfig:
    defaults = ClassifierConfig()
    return ClassifierConfig(
        timeout_seconds=float(section.get("timeout_seconds", defaults.timeout_seconds)),
        min_text_chars=int(section.get("min_text_chars", defaults.min_text_chars)),
    )


def build_matcher_config(section: Mapping[str, Any]) -> MatcherConfig:
    defaults = MatcherConfig()
    return MatcherConfig(
        keyword_weight=float(section.get("keyword_weight", defaults.keyword_weight)),
        entity_weight=float(section.get("entity_weight", defaults.entity_weight)),
        intent_weight=float(section.get("intent_weight", defaults.intent_weight)),
        keyword_saturation=int(section.get("keyword_saturation", defaults.keyword_saturation)),
        min_classification_confidence=float(
            section.get("min_classification_confidence", defaults.min_classification_confidence)
        ),
    )


def build_detector_config(section: Mapping[str, Any]) -> DetectorConfig:
    defaults = DetectorConfig()
    return DetectorConfig(
        interval_seconds=float(section.get("interval_seconds", defaults.interval_seconds)),
        similarity_threshold=float(section.get("similarity_threshold", defaults.similarity_threshold)),
        min_cluster_size=int(section.get("min_cluster_size", defaults.min_cluster_size)),
        signature_size=int(section.get("signature_size", defaults.signature_size)),
        overlap_threshold=float(section.get("overlap_threshold", defaults.overlap_threshold)),
        max_samples=int(section.get("max_samples", defaults.max_samples)),
        trend_window_seconds=float(section.get("trend_window_hours", defaults.trend_window_seconds / 3600)) * 3600,
        default_min_confidence=float(section.get("default_min_confidence", defaults.default_min_confidence)),
    )


def build_escalation_config(section: Mapping[str, Any]) -> EscalationConfig:
    defaults = EscalationConfig()
    weights = section.get("weights", {})
    try:
        flag_level = RiskLevel(str(section.get("flag_level", defaults.flag_level.value)).upper())
    except ValueError as exc:
        raise ConfigValidationError(f"unknown escalation.flag_level: {section.get('flag_level')}") from exc
    severity_by_risk = dict(defaults.severity_by_risk)
    for level, severity in section.get("severity_by_risk", {}).items():
        try:
            severity_by_risk[RiskLevel(level.upper())] = Severity(severity.lower())
        except ValueError as exc:
            raise ConfigValidationError(f"bad severity mapping {level} -> {severity}") from exc
    return EscalationConfig(
        repetition_weight=float(weights.get("repetition", defaults.repetition_weight)),
        sentiment_weight=float(weights.get("sentiment", defaults.sentiment_weight)),
        category_weight=float(weights.get("category", defaults.category_weight)),
        flag_rate_weight=float(weights.get("flag_rate", defaults.flag_rate_weight)),
        repetition_window_seconds=float(
            section.get("repetition_window_days", defaults.repetition_window_seconds / 86400)
        )
        * 86400,
        repetition_threshold=int(section.get("repetition_threshold", defaults.repetition_threshold)),
        near_duplicate_similarity=float(
            section.get("near_duplicate_similarity", defaults.near_duplicate_similarity)
        ),
        escalation_phrases=tuple(section.get("escalation_phrases", defaults.escalation_phrases)),
        indicator_repeats=int(section.get("indicator_repeats", defaults.indicator_repeats)),
        sentiment_scores={**defaults.sentiment_scores, **section.get("sentiment_scores", {})},
        flag_level=flag_level,
        severity_by_risk=severity_by_risk,
    )


def build_default_bands(section: Mapping[str, Any]) -> dict[RiskLevel, float]:
    raw = section.get("bands", {})
    bands = dict(DEFAULT_BANDS)
    for level, edge in raw.items():
        try:
            bands[RiskLevel(level.upper())] = float(edge)
        except ValueError as exc:
            raise ConfigValidationError(f"bad severity band {level}={edge}") from exc
    return bands


def build_delivery_config(section: Mapping[str, Any]) -> DeliveryConfig:
    defaults = DeliveryConfig()
    return DeliveryConfig(
        max_attempts=int(section.get("max_attempts", defaults.max_attempts)),
        backoff_base_seconds=float(section.get("backoff_base_seconds", defaults.backoff_base_seconds)),
        backoff_max_seconds=float(section.get("backoff_max_seconds", defaults.backoff_max_seconds)),
        send_timeout_seconds=float(section.get("send_timeout_seconds", defaults.send_timeout_seconds)),
        rate_per_second=float(section.get("rate_per_second", defaults.rate_per_second)),
        burst=int(section.get("burst", defaults.burst)),
    )


def build_processor_config(section: Mapping[str, Any]) -> ProcessorConfig:
    defaults = ProcessorConfig()
    return ProcessorConfig(
        fallback_group_ids=tuple(normalize_group_id(g) for g in section.get("fallback_groups", [])),
        category_cache_ttl_seconds=float(
            section.get("category_cache_ttl_seconds", defaults.category_cache_ttl_seconds)
        ),
    )


def _group_aliases(raw_groups: list[dict]) -> dict[str, str]:
    """Alias map keyed by canonical group id, used when rendering alerts."""

    aliases: dict[str, str] = {}
    for entry in raw_groups:
        group_id = entry.get("id")
        name = entry.get("alias") or entry.get("name")
        if group_id and name:
            aliases[normalize_group_id(group_id)] = name
    return aliases


_CONFIG = _load_json_config()

_database = _CONFIG.get("database", {})
DB_PATH = _resolve_path(_database.get("path", "whatsroute.db"))
DB_TIMEOUT_SECONDS = float(_database.get("timeout_seconds", 30))
SENDER_HISTORY_RETENTION_DAYS = int(_database.get("sender_history_retention_days", 30))

# Bridge polling; base URL and token come from the environment.
_bridge = _CONFIG.get("bridge", {})
POLL_INTERVAL_SECONDS = float(_bridge.get("poll_interval_seconds", 2))
POLL_BATCH_SIZE = int(_bridge.get("batch_size", 100))

_classifier = _CONFIG.get("classifier", {})
CLASSIFIER = build_classifier_config(_classifier)
ANALYZER_MODEL = _classifier.get("model", "Qwen/Qwen2.5-7B-Instruct-Turbo")

MATCHER = build_matcher_config(_CONFIG.get("matcher", {}))
DETECTOR = build_detector_config(_CONFIG.get("detector", {}))
DETECTOR_ENABLED = bool(_CONFIG.get("detector", {}).get("enabled", True))

_escalation = _CONFIG.get("escalation", {})
ESCALATION = build_escalation_config(_escalation)
DEFAULT_BANDS_CONFIG = build_default_bands(_escalation)

DELIVERY = build_delivery_config(_CONFIG.get("delivery", {}))
PROCESSOR = build_processor_config(_CONFIG.get("routing", {}))

# Seed data: created at startup if missing, then managed from the CLI.
CATEGORIES_CONFIG = _CONFIG.get("categories", [])
GROUPS_CONFIG = _CONFIG.get("groups", [])
RULES_CONFIG = _CONFIG.get("rules", [])
GROUP_ALIASES = _group_aliases(GROUPS_CONFIG)

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
