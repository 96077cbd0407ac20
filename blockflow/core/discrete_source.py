# ═══════════════════════════════════════════════════════════════════════════════
# PART 5: DISCRETE SOURCE
# Design: P1 (Dynamical Systems) | Implementation: I2 (Numerics)
# ═══════════════════════════════════════════════════════════════════════════════

"""
P1: "Days of the week, traffic lights, state machines. Categorical inputs need
dwell (hold a value for a while) and occasional glitches (noise)."

I2: "Dwell first, then noise. Noise is evaluated every tick, even while a
value is being held. A glitch replaces the held value and stays until the
dwell runs out."
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from blockflow.core.data_source import DataSource, SourceKind, normalize_params
from blockflow.core.errors import ValidationError


class DiscretePattern(Enum):
    SEQUENTIAL = "sequential"
    CYCLIC = "cyclic"
    RANDOM = "random"
    WEIGHTED = "weighted"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Any) -> "DiscretePattern":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            options = ", ".join(p.value for p in cls)
            raise ValidationError(
                f"Unknown discrete pattern {value!r} (expected one of: {options})"
            ) from None


PATTERN_DESCRIPTIONS = {
    DiscretePattern.SEQUENTIAL: "Sequential (0, 1, 2, ...)",
    DiscretePattern.CYCLIC: "Cyclic (up then down)",
    DiscretePattern.RANDOM: "Uniform random",
    DiscretePattern.WEIGHTED: "Weighted random",
    DiscretePattern.CUSTOM: "Custom sequence",
}


class DiscreteSource(DataSource):
    """
    Categorical sequence generator over [0, num_categories).

    Every execute() counts one tick of dwell. When the dwell reaches
    change_every the sequence index advances and a new value is generated.
    Afterwards, with probability `noise`, the value is replaced by a uniform
    draw, which is then held for the rest of the dwell.
    """

    kind = SourceKind.DISCRETE
    history_dtype = np.int64
    REINIT_FIELDS = frozenset({"seed", "num_categories"})

    def __init__(self, config: Optional[Dict[str, Any]] = None, **overrides: Any):
        cfg = normalize_params({**(config or {}), **overrides})
        super().__init__(cfg)

        self.num_categories: int = max(1, int(cfg.get("num_categories") or 10))
        self.pattern = DiscretePattern.parse(cfg.get("pattern") or DiscretePattern.SEQUENTIAL)
        self.change_every: int = max(1, int(cfg.get("change_every") or 1))
        self.noise: float = float(cfg.get("noise") or 0.0)
        self.custom_sequence: List[int] = list(cfg.get("custom_sequence") or [])
        weights = cfg.get("weights")
        self.weights: Optional[List[float]] = list(weights) if weights else None

        # Internal state
        self.sequence_index: int = 0
        self.steps_since_change: int = 0

        self._dispatch: Dict[DiscretePattern, Callable[[], int]] = {
            DiscretePattern.SEQUENTIAL: self._sequential,
            DiscretePattern.CYCLIC: self._cyclic,
            DiscretePattern.RANDOM: self._random,
            DiscretePattern.WEIGHTED: self._weighted,
            DiscretePattern.CUSTOM: self._custom,
        }

        self.init()

    # ── DataSource contract ─────────────────────────────────────────────────

    def _on_init(self) -> None:
        self.sequence_index = 0
        self.steps_since_change = 0

    def _generate_value(self) -> int:
        return self._dispatch[self.pattern]()

    def generate_next(self) -> int:
        self.steps_since_change += 1

        value = self.current_value
        if self.steps_since_change >= self.change_every:
            self.steps_since_change = 0
            self.sequence_index += 1
            value = self._generate_value()

        if self.noise > 0 and self.rng.random() < self.noise:
            value = self.rng.random_int(0, self.num_categories)

        return value

    def _apply_params(self, cfg: Dict[str, Any]) -> None:
        if "num_categories" in cfg:
            self.num_categories = max(1, int(cfg["num_categories"]))
        if "pattern" in cfg:
            self.pattern = DiscretePattern.parse(cfg["pattern"])
        if "change_every" in cfg:
            self.change_every = max(1, int(cfg["change_every"]))
        if "noise" in cfg:
            self.noise = float(cfg["noise"])
        if "custom_sequence" in cfg:
            self.custom_sequence = list(cfg["custom_sequence"] or [])
        if "weights" in cfg:
            self.weights = list(cfg["weights"]) if cfg["weights"] else None

    def get_config(self) -> dict:
        config = self._base_config()
        config.update({
            "numCategories": self.num_categories,
            "pattern": self.pattern.value,
            "changeEvery": self.change_every,
            "noise": self.noise,
            "customSequence": list(self.custom_sequence),
            "weights": list(self.weights) if self.weights else None,
        })
        return config

    def get_pattern_description(self) -> str:
        return PATTERN_DESCRIPTIONS[self.pattern]

    def get_value_label(self, labels: Optional[List[str]] = None) -> str:
        if self.current_value is None:
            return "N/A"
        if labels and len(labels) > self.current_value:
            return labels[self.current_value]
        return str(self.current_value)

    def _coerce(self, value: int) -> int:
        return int(value)

    # ── Patterns ────────────────────────────────────────────────────────────

    def _sequential(self) -> int:
        return self.sequence_index % self.num_categories

    def _cyclic(self) -> int:
        # 0, 1, ..., n-1, n-2, ..., 1, 0, 1, ...
        period = 2 * self.num_categories - 2
        if period <= 0:
            return 0
        pos = self.sequence_index % period
        return pos if pos < self.num_categories else period - pos

    def _random(self) -> int:
        return self.rng.random_int(0, self.num_categories)

    def _weighted(self) -> int:
        weights = self.weights
        if not weights or len(weights) != self.num_categories:
            return self.rng.random_int(0, self.num_categories)

        total = float(sum(weights))
        if total <= 0:
            return self.rng.random_int(0, self.num_categories)

        remaining = self.rng.random() * total
        for category, weight in enumerate(weights):
            remaining -= weight
            if remaining <= 0:
                return category
        return self.num_categories - 1

    def _custom(self) -> int:
        if not self.custom_sequence:
            return 0
        value = int(self.custom_sequence[self.sequence_index % len(self.custom_sequence)])
        return max(0, min(self.num_categories - 1, value))
