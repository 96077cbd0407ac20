# ═══════════════════════════════════════════════════════════════════════════════
# PART 11: VISUALIZATION BUFFERS
# Design: I3 (State Management) | Implementation: I2 (Numerics)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I3: "Two kinds of view data. Time series grow tick by tick and forget their
oldest point. Bitfields are snapshots and are replaced whole every tick."
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from blockflow.core.ring_buffer import RingBuffer

DEFAULT_MAX_POINTS = 100


@dataclass(frozen=True)
class VisualizationSample:
    timestamp: float
    value: float


class _Series:
    """Paired timestamp/value ring buffers for one node."""

    def __init__(self, max_points: int):
        self.timestamps = RingBuffer(max_points)
        self.values = RingBuffer(max_points)

    @property
    def max_points(self) -> int:
        return self.values.capacity

    def append(self, timestamp: float, value: float) -> None:
        self.timestamps.append(timestamp)
        self.values.append(value)

    def resize(self, max_points: int) -> None:
        self.timestamps.resize(max_points)
        self.values.resize(max_points)

    def __len__(self) -> int:
        return len(self.values)


class VisualizationBuffer:
    """Per-node time series and latest bitfield snapshot."""

    def __init__(self, default_max_points: int = DEFAULT_MAX_POINTS):
        self.default_max_points = default_max_points
        self.time_series: Dict[str, _Series] = {}
        self.bitfields: Dict[str, np.ndarray] = {}

    # ── Time series ─────────────────────────────────────────────────────────

    def update_time_series(self, node_id: str, value: float, timestamp: Optional[float] = None) -> None:
        """Append a point; the oldest point is dropped once max_points is reached."""
        series = self._series(node_id)
        series.append(time.time() if timestamp is None else timestamp, float(value))

    def set_max_points(self, node_id: str, max_points: int) -> None:
        """Change a node's capacity, keeping its most recent points."""
        series = self.time_series.get(node_id)
        if series is None:
            self.time_series[node_id] = _Series(max_points)
        else:
            series.resize(max_points)

    def get_max_points(self, node_id: str) -> int:
        series = self.time_series.get(node_id)
        return series.max_points if series else self.default_max_points

    def get_time_series(self, node_id: str) -> List[VisualizationSample]:
        series = self.time_series.get(node_id)
        if series is None:
            return []
        return [
            VisualizationSample(ts, value)
            for ts, value in zip(series.timestamps.to_list(), series.values.to_list())
        ]

    def get_values(self, node_id: str) -> np.ndarray:
        series = self.time_series.get(node_id)
        if series is None:
            return np.zeros(0)
        return series.values.to_array()

    def clear_time_series_for_block(self, node_id: str) -> None:
        self.time_series.pop(node_id, None)

    # ── Bitfields ───────────────────────────────────────────────────────────

    def update_bitfield(self, node_id: str, bitfield: np.ndarray) -> None:
        self.bitfields[node_id] = np.asarray(bitfield, dtype=np.uint8)

    def get_bitfield(self, node_id: str) -> Optional[np.ndarray]:
        return self.bitfields.get(node_id)

    def clear_bitfield_for_block(self, node_id: str) -> None:
        self.bitfields.pop(node_id, None)

    # ── Clearing ────────────────────────────────────────────────────────────

    def clear_node(self, node_id: str) -> None:
        self.clear_time_series_for_block(node_id)
        self.clear_bitfield_for_block(node_id)

    def clear_data(self) -> None:
        self.time_series.clear()
        self.bitfields.clear()

    def node_ids(self) -> List[str]:
        return sorted(set(self.time_series) | set(self.bitfields))

    # ── Internal ────────────────────────────────────────────────────────────

    def _series(self, node_id: str) -> _Series:
        series = self.time_series.get(node_id)
        if series is None:
            series = _Series(self.default_max_points)
            self.time_series[node_id] = series
        return series
