# ═══════════════════════════════════════════════════════════════════════════════
# PART 3: DATA SOURCE CONTRACT
# Design: P1 (Dynamical Systems) + I3 (State Management)
# Implementation: I3 (State Management)
# ═══════════════════════════════════════════════════════════════════════════════

"""
P1: "A data source is a tiny dynamical system: a seed, a step counter and a
pattern. Give it the same seed and it tells the same story."

I3: "Lifecycle is explicit. Construct -> init() -> execute() while enabled ->
reset() re-runs init(). History is bounded, statistics are derived from it,
and some parameters move the reference point so far that the only honest
thing to do is re-init."
"""

from __future__ import annotations

import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

import numpy as np

from blockflow.core.prng import PseudoRandomStream
from blockflow.core.ring_buffer import RingBuffer

DEFAULT_MAX_HISTORY = 100

Number = Union[int, float]

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class SourceKind(Enum):
    """Value kind a source produces (and a block may consume)."""
    SCALAR = "scalar"
    DISCRETE = "discrete"


class SourceState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


@dataclass
class SourceStatistics:
    """Summary of a source's bounded history."""
    count: int = 0
    min: Optional[float] = None
    max: Optional[float] = None
    mean: Optional[float] = None
    stddev: Optional[float] = None  # Population standard deviation

    def to_dict(self) -> dict:
        return asdict(self)


def to_snake(key: str) -> str:
    """numCategories -> num_categories. Snake-case keys pass through."""
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def normalize_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Accept both persisted (camelCase) and attribute (snake_case) keys."""
    return {to_snake(k): v for k, v in (params or {}).items()}


def generate_source_id() -> str:
    return f"ds-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def default_seed() -> int:
    return int(time.time() * 1000)


class DataSource(ABC):
    """
    Abstract reproducible value generator.

    Subclasses implement:
    - _on_init(): reset pattern-specific internal state
    - _generate_value(): raw pattern dispatch
    - generate_next(): one post-init step (pattern value + noise/dwell)
    - _apply_params(): merge subclass fields, report whether re-init is needed
    - get_config(): persisted configuration
    """

    kind: SourceKind
    history_dtype: Any = np.float64

    # Fields whose change forces a full init()
    REINIT_FIELDS: FrozenSet[str] = frozenset({"seed"})

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        cfg = normalize_params(config)

        self.id: str = cfg.get("id") or generate_source_id()
        self.name: str = cfg.get("name") or "Data Source"
        self.enabled: bool = bool(cfg.get("enabled", True))
        seed = cfg.get("seed")
        self.seed: int = default_seed() if seed is None else int(seed)

        # Execution state
        self.step: int = 0
        self.current_value: Optional[Number] = None
        self.max_history: int = int(cfg.get("max_history") or DEFAULT_MAX_HISTORY)
        self.history = RingBuffer(self.max_history, dtype=self.history_dtype)
        self.rng: Optional[PseudoRandomStream] = None
        self.state = SourceState.UNINITIALIZED

        # Metadata
        self.created_at: float = time.time()
        self.last_updated: float = self.created_at

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def init(self) -> None:
        """Seed the stream, reset pattern state and compute the initial value."""
        self.rng = PseudoRandomStream(self.seed)
        self._on_init()
        self.current_value = self._coerce(self._generate_value())
        self.state = SourceState.READY

    def execute(self) -> Optional[Number]:
        """
        Advance one step and return the new value.

        Disabled sources do nothing and return their frozen current value.
        The step counter is incremented before generation, so the first
        post-init call evaluates the pattern at t = 1.
        """
        if not self.enabled:
            return self.current_value
        if self.state is SourceState.UNINITIALIZED:
            self.init()

        self.step += 1
        value = self._coerce(self.generate_next())
        self.current_value = value
        self.history.append(value)
        self.last_updated = time.time()
        return value

    def reset(self) -> None:
        """Back to step 0 with an empty history, then re-init."""
        self.step = 0
        self.current_value = None
        self.history.clear()
        self.init()

    # ── Accessors ───────────────────────────────────────────────────────────

    def get_value(self) -> Optional[Number]:
        return self.current_value

    def get_history(self, length: Optional[int] = None) -> List[Number]:
        if length is None:
            return self.history.to_list()
        return self.history.last(length)

    def get_statistics(self) -> SourceStatistics:
        if len(self.history) == 0:
            return SourceStatistics()

        values = self.history.to_array().astype(np.float64)
        return SourceStatistics(
            count=int(values.size),
            min=float(np.min(values)),
            max=float(np.max(values)),
            mean=float(np.mean(values)),
            stddev=float(np.std(values)),
        )

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)

    def is_enabled(self) -> bool:
        return self.enabled

    def get_info(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.kind.value,
            "enabled": self.enabled,
            "step": self.step,
            "current_value": self.current_value,
            "history_length": len(self.history),
            "created_at": self.created_at,
            "last_updated": self.last_updated,
        }

    # ── Parameters ──────────────────────────────────────────────────────────

    def update_params(self, params: Dict[str, Any]) -> bool:
        """
        Merge a partial parameter update.

        Returns True if the update forced a re-init.
        """
        cfg = normalize_params(params)

        if "name" in cfg:
            self.name = cfg["name"]
        if "enabled" in cfg:
            self.enabled = bool(cfg["enabled"])
        if "max_history" in cfg:
            self.max_history = int(cfg["max_history"])
            self.history.resize(self.max_history)
        if "seed" in cfg:
            self.seed = int(cfg["seed"])

        self._apply_params(cfg)

        needs_reinit = any(field in cfg for field in self.REINIT_FIELDS)
        if needs_reinit:
            self.init()
        return needs_reinit

    def _base_config(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.kind.value,
            "enabled": self.enabled,
            "seed": self.seed,
            "maxHistory": self.max_history,
        }

    # ── Subclass contract ───────────────────────────────────────────────────

    @abstractmethod
    def _on_init(self) -> None:
        """Reset pattern-specific internal state (stream is already seeded)."""

    @abstractmethod
    def _generate_value(self) -> Number:
        """Raw pattern value at the current step."""

    @abstractmethod
    def generate_next(self) -> Number:
        """Value for one post-init step."""

    @abstractmethod
    def _apply_params(self, cfg: Dict[str, Any]) -> None:
        """Merge subclass-specific fields from a normalized update."""

    @abstractmethod
    def get_config(self) -> dict:
        """Serializable configuration, including the seed."""

    @abstractmethod
    def get_pattern_description(self) -> str:
        """Human-readable description of the active pattern."""

    def _coerce(self, value: Number) -> Number:
        return value
