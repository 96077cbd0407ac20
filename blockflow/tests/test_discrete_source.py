"""Tests for DiscreteSource (BF-004)."""

import numpy as np
import pytest

from blockflow.core.data_source import SourceKind
from blockflow.core.discrete_source import DiscretePattern, DiscreteSource
from blockflow.core.errors import ValidationError


def make(pattern, **params):
    params.setdefault("seed", 1)
    return DiscreteSource(pattern=pattern, **params)


def run(source, n):
    return [source.execute() for _ in range(n)]


# ── Patterns ─────────────────────────────────────────────────────────────────


def test_sequential_wraps():
    source = make("sequential", num_categories=4)
    assert source.get_value() == 0
    assert run(source, 6) == [1, 2, 3, 0, 1, 2]


def test_cyclic_bounces():
    source = make("cyclic", num_categories=4)
    assert [source.get_value()] + run(source, 8) == [0, 1, 2, 3, 2, 1, 0, 1, 2]


def test_cyclic_single_category_is_zero():
    source = make("cyclic", num_categories=1)
    assert run(source, 5) == [0] * 5


def test_weighted_with_single_nonzero_weight():
    source = make("weighted", num_categories=3, weights=[0, 1, 0], seed=42)
    assert run(source, 20) == [1] * 20


def test_weighted_falls_back_to_uniform_on_bad_weights():
    """Wrong length behaves exactly like the random pattern."""
    weighted = make("weighted", num_categories=5, weights=[1, 2], seed=4)
    uniform = make("random", num_categories=5, seed=4)
    assert run(weighted, 30) == run(uniform, 30)


def test_random_in_range():
    source = make("random", num_categories=6, seed=13)
    values = run(source, 600)
    assert min(values) >= 0
    assert max(values) <= 5
    assert len(set(values)) == 6


def test_custom_sequence_is_clamped():
    source = make("custom", num_categories=3, custom_sequence=[5, 1, -2])
    assert source.get_value() == 2
    assert run(source, 3) == [1, 0, 2]


def test_custom_empty_sequence_is_zero():
    source = make("custom", num_categories=3, custom_sequence=[])
    assert run(source, 3) == [0, 0, 0]


# ── Dwell and noise ──────────────────────────────────────────────────────────


def test_change_every_holds_values():
    source = make("sequential", num_categories=4, change_every=3)
    assert run(source, 7) == [0, 0, 1, 1, 1, 2, 2]


def test_noise_only_replaces_some_ticks():
    clean = run(make("sequential", num_categories=10, seed=5), 200)
    noisy = run(make("sequential", num_categories=10, noise=0.2, seed=5), 200)
    differing = sum(1 for a, b in zip(clean, noisy) if a != b)
    assert 0 < differing < 100
    assert all(0 <= v < 10 for v in noisy)


def test_full_noise_still_in_range():
    source = make("sequential", num_categories=3, noise=1.0, seed=21)
    assert all(0 <= v < 3 for v in run(source, 100))


def test_glitch_is_held_until_the_dwell_ends():
    source = make("sequential", num_categories=50, change_every=1000, noise=0.5, seed=3)
    values = run(source, 20)
    assert any(v != 0 for v in values)

    source.update_params({"noise": 0.0})
    assert run(source, 5) == [values[-1]] * 5


# ── Determinism and lifecycle ────────────────────────────────────────────────


@pytest.mark.parametrize("pattern", [p.value for p in DiscretePattern])
def test_same_seed_same_values(pattern):
    params = dict(num_categories=5, noise=0.1, seed=31,
                  weights=[1, 2, 3, 2, 1], custom_sequence=[4, 0, 2])
    assert run(make(pattern, **params), 40) == run(make(pattern, **params), 40)


def test_history_is_integer_typed():
    source = make("sequential", num_categories=4)
    run(source, 5)
    assert source.kind is SourceKind.DISCRETE
    assert source.history.to_array().dtype == np.int64
    assert source.get_history() == [1, 2, 3, 0, 1]


def test_num_categories_update_reinitializes():
    source = make("sequential", num_categories=4)
    run(source, 3)
    assert source.update_params({"numCategories": 7}) is True
    assert source.sequence_index == 0
    assert source.get_value() == 0


def test_change_every_update_keeps_position():
    source = make("sequential", num_categories=4)
    run(source, 2)
    assert source.update_params({"changeEvery": 2}) is False
    assert source.sequence_index == 2


def test_unknown_pattern_rejected():
    with pytest.raises(ValidationError):
        make("spiral")


def test_config_round_trip():
    source = make("custom", num_categories=4, custom_sequence=[3, 1], change_every=2, seed=8)
    config = source.get_config()
    assert config["numCategories"] == 4
    assert config["customSequence"] == [3, 1]
    assert config["changeEvery"] == 2
    assert config["weights"] is None

    clone = DiscreteSource(config)
    assert run(clone, 12) == run(source, 12)


def test_category_count_has_a_floor():
    source = make("random", num_categories=-3)
    assert source.num_categories == 1
    assert set(run(source, 10)) == {0}

    source = make("sequential", num_categories=4, change_every=0)
    assert source.change_every == 1
    source.update_params({"numCategories": 0})
    assert source.num_categories == 1
    assert run(source, 3) == [0, 0, 0]


def test_value_label():
    source = make("sequential", num_categories=3)
    source.execute()
    assert source.get_value_label(["red", "amber", "green"]) == "amber"
    assert source.get_value_label() == "1"
