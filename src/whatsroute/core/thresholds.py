"""Confidence threshold and severity band configuration.

These are plain key-value settings edited from the dashboard. The UI works on
a 0-100 scale; the engine stores and compares 0.0-1.0.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from whatsroute.core.categories import CategoryRegistry
from whatsroute.core.config import DEFAULT_BANDS
from whatsroute.core.errors import ConfigValidationError
from whatsroute.core.models import RiskLevel
from whatsroute.core.ports import SettingsStore

LOGGER = logging.getLogger(__name__)

BANDS_KEY = "severity_bands"

_BAND_ORDER = (RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL)


def percent_to_threshold(percent: float) -> float:
    if not 0 <= percent <= 100:
        raise ConfigValidationError(f"threshold percent must be within [0, 100], got {percent}")
    return round(percent / 100.0, 4)


def threshold_to_percent(threshold: float) -> float:
    return round(threshold * 100.0, 2)


def validate_bands(bands: Mapping[RiskLevel, float]) -> dict[RiskLevel, float]:
    """Bands need MEDIUM < HIGH < CRITICAL, all within [0, 1]."""

    missing = [level.value for level in _BAND_ORDER if level not in bands]
    if missing:
        raise ConfigValidationError(f"missing band edges: {', '.join(missing)}")
    edges = [float(bands[level]) for level in _BAND_ORDER]
    if any(not 0.0 <= edge <= 1.0 for edge in edges):
        raise ConfigValidationError("band edges must be within [0, 1]")
    if not edges[0] < edges[1] < edges[2]:
        raise ConfigValidationError("band edges must be strictly ascending MEDIUM < HIGH < CRITICAL")
    return dict(zip(_BAND_ORDER, edges))


class ThresholdConfig:
    """Read/write access to per-category thresholds and global band edges."""

    def __init__(
        self,
        settings: SettingsStore,
        registry: CategoryRegistry,
        default_bands: Optional[Mapping[RiskLevel, float]] = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._default_bands = validate_bands(default_bands or DEFAULT_BANDS)

    def get_category_threshold(self, category_id: int) -> float:
        return self._registry.get(category_id).min_confidence

    def set_category_threshold(self, category_id: int, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ConfigValidationError(f"threshold must be within [0, 1], got {value}")
        self._registry.set_threshold(category_id, value)
        LOGGER.info("Category %s threshold set to %.2f", category_id, value)
        return value

    def get_bands(self) -> dict[RiskLevel, float]:
        stored = self._settings.get_setting(BANDS_KEY)
        if not stored:
            return dict(self._default_bands)
        try:
            return validate_bands({RiskLevel(key): value for key, value in stored.items()})
        except (ConfigValidationError, ValueError, AttributeError, TypeError):
            LOGGER.warning("Stored severity bands are invalid, using defaults")
            return dict(self._default_bands)

    def set_bands(self, bands: Mapping[RiskLevel, float]) -> dict[RiskLevel, float]:
        validated = validate_bands(bands)
        self._settings.set_setting(BANDS_KEY, {level.value: edge for level, edge in validated.items()})
        LOGGER.info(
            "Severity bands set to %s",
            ", ".join(f"{level.value}>={edge:.2f}" for level, edge in validated.items()),
        )
        return validated
