"""Tests for DataSourceRegistry (BF-006)."""

import logging

import pytest

from blockflow.core.data_source import SourceKind
from blockflow.core.errors import SourceGenerationError, ValidationError
from blockflow.core.scalar_source import ScalarSource
from blockflow.core.source_registry import DataSourceRegistry, create_source


@pytest.fixture
def registry():
    reg = DataSourceRegistry()
    reg.add_source("scalar", {"id": "temp", "pattern": "linear", "amplitude": 1.0, "seed": 1})
    reg.add_source("discrete", {"id": "day", "pattern": "sequential", "numCategories": 3, "seed": 2})
    return reg


def broken(*_args, **_kwargs):
    raise RuntimeError("sensor unplugged")


# ── Factory ──────────────────────────────────────────────────────────────────


def test_create_source_by_name():
    assert isinstance(create_source("scalar", {"seed": 1}), ScalarSource)
    assert create_source(SourceKind.DISCRETE, {"seed": 1}).kind is SourceKind.DISCRETE


def test_create_source_unknown_kind():
    with pytest.raises(ValidationError):
        create_source("vector")


# ── Lifecycle ────────────────────────────────────────────────────────────────


def test_add_and_remove(registry):
    assert registry.source_count == 2
    assert "temp" in registry
    registry.remove_source("temp")
    assert "temp" not in registry
    assert registry.execution_order == ["day"]


def test_duplicate_id_rejected(registry):
    with pytest.raises(ValidationError):
        registry.add_source("scalar", {"id": "temp"})


def test_generated_ids_are_unique():
    reg = DataSourceRegistry()
    ids = {reg.add_source("scalar", {"seed": 1}) for _ in range(20)}
    assert len(ids) == 20


def test_unknown_id_warns_and_does_nothing(registry, caplog):
    with caplog.at_level(logging.WARNING):
        registry.remove_source("ghost")
        registry.reset_source("ghost")
        assert registry.update_source("ghost", {"amplitude": 2}) is False
    assert caplog.text.count("Source not found: ghost") == 3
    assert registry.source_count == 2


def test_clear(registry):
    registry.clear()
    assert len(registry) == 0
    assert registry.execution_order == []


# ── Execution ────────────────────────────────────────────────────────────────


def test_execute_all_in_order(registry):
    values = registry.execute_all_sources()
    assert list(values) == ["temp", "day"]
    assert values == {"temp": 1.0, "day": 1}


def test_disabled_sources_skipped(registry):
    registry.set_source_enabled("temp", False)
    assert registry.enabled_source_count == 1
    assert list(registry.execute_all_sources()) == ["day"]
    assert registry.get_source("temp").step == 0


def test_failing_source_is_isolated(registry, caplog):
    """One throwing source loses its own value; the others still run."""
    registry.get_source("temp").generate_next = broken

    with caplog.at_level(logging.ERROR):
        values = registry.execute_all_sources()

    assert values == {"day": 1}
    assert isinstance(registry.last_errors["temp"], SourceGenerationError)
    assert registry.last_errors["temp"].source_id == "temp"
    assert "Error executing source temp" in caplog.text

    # Next tick starts with a clean error map
    registry.get_source("temp").generate_next = lambda: 0.0
    registry.execute_all_sources()
    assert registry.last_errors == {}


def test_statistics_refreshed_after_tick(registry):
    assert registry.get_source_statistics("temp").count == 0
    for _ in range(3):
        registry.execute_all_sources()
    stats = registry.get_source_statistics("temp")
    assert stats.count == 3
    assert stats.mean == pytest.approx(2.0)


def test_set_execution_order(registry):
    registry.add_source("scalar", {"id": "x", "seed": 3})
    registry.set_execution_order(["x", "temp"])
    assert registry.execution_order == ["x", "temp", "day"]


def test_set_execution_order_rejects_bad_ids(registry):
    with pytest.raises(ValidationError):
        registry.set_execution_order(["ghost"])
    with pytest.raises(ValidationError):
        registry.set_execution_order(["temp", "temp"])


def test_reset_all(registry):
    for _ in range(5):
        registry.execute_all_sources()
    registry.reset_all()
    assert registry.get_source("temp").step == 0
    assert registry.get_source_history("day") == []


# ── Updates and accessors ────────────────────────────────────────────────────


def test_update_source_reports_reinit(registry):
    assert registry.update_source("temp", {"amplitude": 2.0}) is False
    assert registry.update_source("temp", {"seed": 10}) is True


def test_update_source_propagates_validation(registry):
    with pytest.raises(ValidationError):
        registry.update_source("day", {"pattern": "spiral"})


def test_accessors(registry):
    registry.execute_all_sources()
    assert registry.get_source_value("temp") == 1.0
    assert registry.get_source_history("temp") == [1.0]
    assert registry.get_source_info("day")["type"] == "discrete"
    assert registry.get_source_config("day")["numCategories"] == 3
    assert registry.get_source_value("ghost") is None
    assert [c["id"] for c in registry.get_all_configs()] == ["temp", "day"]


# ── Bulk load ────────────────────────────────────────────────────────────────


def test_load_from_configs_reproduces_sequences(registry):
    expected = [registry.execute_all_sources() for _ in range(5)]
    configs = registry.get_all_configs()

    fresh = DataSourceRegistry()
    id_map = fresh.load_from_configs(configs, fresh_ids=True)

    assert set(id_map) == {"temp", "day"}
    assert id_map["temp"] != "temp"
    replay = [fresh.execute_all_sources() for _ in range(5)]
    for before, after in zip(expected, replay):
        assert before["temp"] == after[id_map["temp"]]
        assert before["day"] == after[id_map["day"]]


def test_load_from_configs_keeps_ids_by_default(registry):
    fresh = DataSourceRegistry()
    id_map = fresh.load_from_configs(registry.get_all_configs())
    assert id_map == {"temp": "temp", "day": "day"}


def test_load_skips_unknown_types(caplog):
    reg = DataSourceRegistry()
    with caplog.at_level(logging.ERROR):
        id_map = reg.load_from_configs([
            {"id": "a", "type": "scalar", "seed": 1},
            {"id": "b", "type": "vector", "seed": 1},
        ])
    assert id_map == {"a": "a"}
    assert "Failed to load source" in caplog.text
