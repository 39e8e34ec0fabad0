from __future__ import annotations

import pytest

from fakes import MemoryStore
from whatsroute.core.categories import CategoryRegistry
from whatsroute.core.errors import ConfigValidationError
from whatsroute.core.models import RiskLevel
from whatsroute.core.thresholds import (
    BANDS_KEY,
    ThresholdConfig,
    percent_to_threshold,
    threshold_to_percent,
    validate_bands,
)


def _config() -> tuple[MemoryStore, ThresholdConfig]:
    store = MemoryStore()
    return store, ThresholdConfig(store, CategoryRegistry(store))


def test_percent_conversion() -> None:
    assert percent_to_threshold(30) == 0.3
    assert threshold_to_percent(0.3) == 30.0
    with pytest.raises(ConfigValidationError):
        percent_to_threshold(101)


@pytest.mark.parametrize(
    "bands",
    [
        {RiskLevel.MEDIUM: 0.3, RiskLevel.HIGH: 0.3, RiskLevel.CRITICAL: 0.8},
        {RiskLevel.MEDIUM: 0.3, RiskLevel.HIGH: 0.9, RiskLevel.CRITICAL: 0.8},
        {RiskLevel.MEDIUM: -0.1, RiskLevel.HIGH: 0.5, RiskLevel.CRITICAL: 0.8},
        {RiskLevel.MEDIUM: 0.3, RiskLevel.HIGH: 0.6},
    ],
)
def test_validate_bands_rejects_bad_edges(bands) -> None:
    with pytest.raises(ConfigValidationError):
        validate_bands(bands)


def test_bands_default_then_persisted() -> None:
    store, config = _config()
    assert config.get_bands() == {RiskLevel.MEDIUM: 0.3, RiskLevel.HIGH: 0.6, RiskLevel.CRITICAL: 0.8}

    config.set_bands({RiskLevel.MEDIUM: 0.2, RiskLevel.HIGH: 0.5, RiskLevel.CRITICAL: 0.7})

    assert store.settings[BANDS_KEY] == {"MEDIUM": 0.2, "HIGH": 0.5, "CRITICAL": 0.7}
    assert config.get_bands()[RiskLevel.HIGH] == 0.5


def test_invalid_stored_bands_fall_back_to_defaults() -> None:
    store, config = _config()
    store.settings[BANDS_KEY] = {"MEDIUM": 0.9, "HIGH": 0.1, "CRITICAL": 0.5}

    assert config.get_bands()[RiskLevel.MEDIUM] == 0.3


def test_rejected_bands_are_not_stored() -> None:
    store, config = _config()
    with pytest.raises(ConfigValidationError):
        config.set_bands({RiskLevel.MEDIUM: 0.5, RiskLevel.HIGH: 0.4, RiskLevel.CRITICAL: 0.8})
    assert BANDS_KEY not in store.settings


def test_category_threshold_round_trip() -> None:
    store = MemoryStore()
    registry = CategoryRegistry(store)
    category = registry.create_static("Equipment", "OPS", ["treadmill"])
    config = ThresholdConfig(store, registry)

    config.set_category_threshold(category.id, 0.3)

    assert config.get_category_threshold(category.id) == 0.3
    with pytest.raises(ConfigValidationError):
        config.set_category_threshold(category.id, -0.1)
