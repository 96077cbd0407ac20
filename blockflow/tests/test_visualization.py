"""Tests for VisualizationBuffer (BF-010)."""

import numpy as np

from blockflow.core.visualization import DEFAULT_MAX_POINTS, VisualizationBuffer, VisualizationSample


def test_time_series_append():
    buf = VisualizationBuffer()
    buf.update_time_series("n1", 0.5, timestamp=10.0)
    buf.update_time_series("n1", 0.7, timestamp=11.0)
    assert buf.get_time_series("n1") == [
        VisualizationSample(10.0, 0.5),
        VisualizationSample(11.0, 0.7),
    ]
    assert buf.get_values("n1").tolist() == [0.5, 0.7]


def test_time_series_is_bounded():
    buf = VisualizationBuffer(default_max_points=5)
    for i in range(12):
        buf.update_time_series("n1", float(i), timestamp=float(i))
    samples = buf.get_time_series("n1")
    assert len(samples) == 5
    assert [s.timestamp for s in samples] == [7.0, 8.0, 9.0, 10.0, 11.0]


def test_default_timestamp_is_wall_clock():
    buf = VisualizationBuffer()
    buf.update_time_series("n1", 1.0)
    assert buf.get_time_series("n1")[0].timestamp > 0


def test_set_max_points_keeps_recent():
    buf = VisualizationBuffer()
    for i in range(10):
        buf.update_time_series("n1", float(i), timestamp=0.0)
    buf.set_max_points("n1", 3)
    assert buf.get_max_points("n1") == 3
    assert buf.get_values("n1").tolist() == [7.0, 8.0, 9.0]


def test_set_max_points_before_first_sample():
    buf = VisualizationBuffer()
    buf.set_max_points("n2", 2)
    for i in range(4):
        buf.update_time_series("n2", float(i), timestamp=0.0)
    assert buf.get_values("n2").tolist() == [2.0, 3.0]
    assert buf.get_max_points("unknown") == DEFAULT_MAX_POINTS


def test_unknown_node_is_empty():
    buf = VisualizationBuffer()
    assert buf.get_time_series("ghost") == []
    assert buf.get_values("ghost").size == 0
    assert buf.get_bitfield("ghost") is None


def test_bitfield_is_replaced():
    buf = VisualizationBuffer()
    buf.update_bitfield("n1", np.array([1, 0, 1]))
    buf.update_bitfield("n1", np.array([0, 0, 0, 1]))
    bits = buf.get_bitfield("n1")
    assert bits.dtype == np.uint8
    assert bits.tolist() == [0, 0, 0, 1]


def test_clearing():
    buf = VisualizationBuffer()
    for node in ("a", "b"):
        buf.update_time_series(node, 1.0, timestamp=0.0)
        buf.update_bitfield(node, np.zeros(4))
    assert buf.node_ids() == ["a", "b"]

    buf.clear_time_series_for_block("a")
    assert buf.get_time_series("a") == []
    assert buf.get_bitfield("a") is not None

    buf.clear_bitfield_for_block("a")
    buf.clear_node("b")
    assert buf.node_ids() == []

    buf.update_time_series("c", 1.0, timestamp=0.0)
    buf.clear_data()
    assert buf.node_ids() == []
