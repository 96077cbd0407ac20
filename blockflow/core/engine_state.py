# ═══════════════════════════════════════════════════════════════════════════════
# PART 10: ENGINE STATE DECODING
# Design: I2 (Numerics) | Implementation: I2 (Numerics)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I2: "The engine speaks sparse: a width and a list of active indices. The
views want dense 0/1 arrays. Reconstruction is a scatter into zeros, and a
bad entry becomes a blank bitfield, never an exception in the tick."
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import numpy as np

from blockflow.core.errors import MalformedTraceData

logger = logging.getLogger(__name__)


@dataclass
class BlockTrace:
    """Sparse output of one engine block."""
    num_bits: int
    active_bits: np.ndarray
    num_active: int

    @property
    def active_fraction(self) -> float:
        return self.num_active / self.num_bits if self.num_bits > 0 else 0.0


@dataclass
class EngineState:
    traces: Dict[int, BlockTrace] = field(default_factory=dict)
    metadata: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    connections: List[Dict[str, Any]] = field(default_factory=list)
    step: Optional[int] = None
    errors: Dict[int, str] = field(default_factory=dict)

    def trace(self, handle: int) -> Optional[BlockTrace]:
        return self.traces.get(handle)


def parse_trace(entry: Any) -> BlockTrace:
    """Validate one per-block entry. Raises MalformedTraceData."""
    if not isinstance(entry, dict):
        raise MalformedTraceData(f"expected an object, got {type(entry).__name__}")
    try:
        num_bits = int(entry["num_bits"])
        active_bits = entry.get("active_bits")
        active = np.asarray([] if active_bits is None else active_bits, dtype=np.int64)
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedTraceData(f"unreadable trace entry: {exc}") from exc

    if num_bits < 0 or active.ndim != 1:
        raise MalformedTraceData("negative width or non-flat active_bits")

    active = np.unique(active[(active >= 0) & (active < num_bits)])
    return BlockTrace(num_bits=num_bits, active_bits=active, num_active=int(active.size))


def decode_state(raw: Union[str, bytes, Dict[str, Any], None]) -> EngineState:
    """
    Parse the engine's state payload.

    Unreadable per-block entries are logged and left out of `traces` (their
    handles appear in `errors`), so the caller falls back to a zero bitfield.
    A payload that is not JSON at all, or whose blocks or connections have
    the wrong shape, raises MalformedTraceData.
    """
    if raw is None:
        return EngineState()
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise MalformedTraceData(f"engine state is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise MalformedTraceData("engine state must be a JSON object")

    blocks = raw.get("blocks") or {}
    connections = raw.get("connections") or []
    if not isinstance(blocks, dict):
        raise MalformedTraceData(f"engine state 'blocks' must be an object, got {type(blocks).__name__}")
    if not isinstance(connections, list):
        raise MalformedTraceData(
            f"engine state 'connections' must be a list, got {type(connections).__name__}")

    state = EngineState(step=raw.get("step"), connections=list(connections))

    for key, entry in blocks.items():
        try:
            handle = int(key)
        except (TypeError, ValueError):
            logger.warning("Ignoring engine state entry with non-integer handle %r", key)
            continue
        try:
            state.traces[handle] = parse_trace(entry)
        except MalformedTraceData as exc:
            state.errors[handle] = str(exc)
            logger.warning("Malformed trace for handle %d: %s", handle, exc)
            continue
        if isinstance(entry, dict):
            state.metadata[handle] = {k: v for k, v in entry.items() if k not in ("active_bits",)}

    return state


def to_bitfield(trace: Optional[BlockTrace], width: int) -> np.ndarray:
    """
    Dense 0/1 uint8 array of length `width`.

    None (missing entry) gives all zeros. Active indices outside [0, width)
    are dropped.
    """
    bits = np.zeros(max(0, int(width)), dtype=np.uint8)
    if trace is None or bits.size == 0:
        return bits
    active = trace.active_bits
    active = active[(active >= 0) & (active < bits.size)]
    bits[active] = 1
    return bits
