# ═══════════════════════════════════════════════════════════════════════════════
# PART 2: RING BUFFER
# Design: I2 (Numerics) | Implementation: I2 (Numerics)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I2: "Shifting a list on every overflow is O(n) per tick for every source and
every plotted node. A preallocated arena with a head index is O(1) and the
memory never moves."
"""

from __future__ import annotations

from typing import Any, Iterator, List, Optional

import numpy as np


class RingBuffer:
    """
    Fixed-capacity circular buffer backed by a numpy arena.

    Appends overwrite the oldest slot once full. Reads always come back in
    insertion order (oldest first).
    """

    def __init__(self, capacity: int, dtype: Any = np.float64):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = int(capacity)
        self._dtype = np.dtype(dtype)
        self._data: np.ndarray = np.zeros(self._capacity, dtype=self._dtype)
        self._head: int = 0     # Next write slot
        self._size: int = 0

    # ── Properties ──────────────────────────────────────────────────────────

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def is_full(self) -> bool:
        return self._size == self._capacity

    @property
    def latest(self) -> Optional[Any]:
        if self._size == 0:
            return None
        return self._data[(self._head - 1) % self._capacity].item()

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[Any]:
        return iter(self.to_list())

    # ── Methods ─────────────────────────────────────────────────────────────

    def append(self, value: Any) -> Optional[Any]:
        """Append a value. Returns the evicted oldest value, if any."""
        evicted = None
        if self._size == self._capacity:
            evicted = self._data[self._head].item()
        else:
            self._size += 1
        self._data[self._head] = value
        self._head = (self._head + 1) % self._capacity
        return evicted

    def to_array(self) -> np.ndarray:
        """Ordered copy of the contents, oldest first."""
        if self._size < self._capacity:
            return self._data[: self._size].copy()
        return np.concatenate((self._data[self._head:], self._data[: self._head]))

    def to_list(self) -> List[Any]:
        return self.to_array().tolist()

    def last(self, n: int) -> List[Any]:
        """The most recent n values, oldest first."""
        if n <= 0:
            return []
        return self.to_array()[-n:].tolist()

    def clear(self) -> None:
        self._head = 0
        self._size = 0

    def resize(self, capacity: int) -> None:
        """Change capacity, keeping the most recent values."""
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        kept = self.to_array()[-capacity:]
        self._capacity = int(capacity)
        self._data = np.zeros(self._capacity, dtype=self._dtype)
        self._data[: len(kept)] = kept
        self._size = len(kept)
        self._head = self._size % self._capacity
