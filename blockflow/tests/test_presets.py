"""Tests for source presets (BF-005)."""

import logging

from blockflow.core.data_source import SourceKind
from blockflow.core.discrete_source import DiscretePattern, DiscreteSource
from blockflow.core.presets import (
    apply_preset,
    get_preset_by_id,
    get_preset_names,
    get_preset_options,
    get_presets,
)
from blockflow.core.scalar_source import ScalarPattern, ScalarSource


def test_preset_catalog_sizes():
    assert len(get_presets(SourceKind.SCALAR)) == 8
    assert len(get_presets("discrete")) == 6
    assert get_presets("bogus") == []


def test_lookup_by_id():
    preset = get_preset_by_id("scalar", "temp-daily")
    assert preset.name == "Daily Temperature"
    assert preset.params["offset"] == 20
    assert get_preset_by_id("scalar", "days-of-week") is None


def test_apply_scalar_preset():
    source = ScalarSource(pattern="constant", seed=1)
    assert apply_preset(source, "random-walk") is True
    assert source.pattern is ScalarPattern.RANDOM_WALK
    assert source.offset == 100
    assert source.noise == 0.5


def test_apply_discrete_preset_reinitializes():
    source = DiscreteSource(pattern="random", num_categories=10, seed=1)
    source.execute()
    assert apply_preset(source, "traffic-light") is True
    assert source.pattern is DiscretePattern.CYCLIC
    assert source.num_categories == 3
    assert source.change_every == 5
    assert source.sequence_index == 0


def test_apply_unknown_preset_warns(caplog):
    source = ScalarSource(seed=1)
    with caplog.at_level(logging.WARNING):
        assert apply_preset(source, "dice-roll") is False
    assert "Preset not found" in caplog.text


def test_apply_to_missing_source():
    assert apply_preset(None, "smooth-sine") is False


def test_names_and_options():
    assert "Dice Roll" in get_preset_names("discrete")
    options = get_preset_options("discrete")
    assert options[0] == {
        "value": "days-of-week",
        "label": "Days of Week",
        "description": "Sequential days (0=Mon, 6=Sun)",
    }
