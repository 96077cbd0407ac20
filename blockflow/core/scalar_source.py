# ═══════════════════════════════════════════════════════════════════════════════
# PART 4: SCALAR SOURCE
# Design: P1 (Dynamical Systems) | Implementation: I2 (Numerics)
# ═══════════════════════════════════════════════════════════════════════════════

"""
P1: "Temperature, sensor drift, prices, control signals. Nine waveforms cover
almost everything a test bench needs."

I2: "One enum, one dispatch table, one method per pattern. Noise and clamping
happen after the pattern, never inside it."
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Callable, Dict, Optional

from blockflow.core.data_source import DataSource, SourceKind, normalize_params
from blockflow.core.errors import ValidationError

TWO_PI = 2.0 * math.pi


class ScalarPattern(Enum):
    SINE = "sine"
    SQUARE = "square"
    SAWTOOTH = "sawtooth"
    TRIANGLE = "triangle"
    RANDOM_WALK = "randomWalk"
    GAUSSIAN = "gaussian"
    STEP = "step"
    LINEAR = "linear"
    CONSTANT = "constant"

    @classmethod
    def parse(cls, value: Any) -> "ScalarPattern":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            options = ", ".join(p.value for p in cls)
            raise ValidationError(
                f"Unknown scalar pattern {value!r} (expected one of: {options})"
            ) from None


PATTERN_DESCRIPTIONS = {
    ScalarPattern.SINE: "Sine wave (smooth oscillation)",
    ScalarPattern.SQUARE: "Square wave (on/off)",
    ScalarPattern.SAWTOOTH: "Sawtooth (linear ramp)",
    ScalarPattern.TRIANGLE: "Triangle wave (up/down)",
    ScalarPattern.RANDOM_WALK: "Random walk (cumulative)",
    ScalarPattern.GAUSSIAN: "Gaussian noise",
    ScalarPattern.STEP: "Step function",
    ScalarPattern.LINEAR: "Linear trend",
    ScalarPattern.CONSTANT: "Constant value",
}

# Stochastic patterns carry their own noise
_NOISE_FREE = frozenset({ScalarPattern.RANDOM_WALK, ScalarPattern.GAUSSIAN})


def _bound(value: Optional[float], default: float) -> float:
    return default if value is None else float(value)


class ScalarSource(DataSource):
    """
    Continuous waveform generator.

    With t the current step and theta = 2*pi*t*frequency + phase:
    sine, square, sawtooth and triangle are periodic in theta; linear grows
    with t; step alternates sign every step_width ticks; randomWalk
    accumulates gaussian(drift, amplitude) increments; gaussian draws
    gaussian(offset, amplitude) each tick.
    """

    kind = SourceKind.SCALAR
    REINIT_FIELDS = frozenset({"seed", "offset"})

    def __init__(self, config: Optional[Dict[str, Any]] = None, **overrides: Any):
        cfg = normalize_params({**(config or {}), **overrides})
        super().__init__(cfg)

        self.pattern = ScalarPattern.parse(cfg.get("pattern", ScalarPattern.SINE))
        self.amplitude: float = float(cfg.get("amplitude", 1.0))
        self.frequency: float = float(cfg.get("frequency", 0.1))
        self.offset: float = float(cfg.get("offset", 0.0))
        self.noise: float = float(cfg.get("noise", 0.0))
        self.min: float = _bound(cfg.get("min"), -math.inf)
        self.max: float = _bound(cfg.get("max"), math.inf)

        # Pattern-specific
        self.phase: float = float(cfg.get("phase", 0.0))
        self.drift: float = float(cfg.get("drift", 0.0))
        self.step_height: float = float(cfg.get("step_height", 1.0))
        self.step_width: int = int(cfg.get("step_width", 10))

        # Random-walk state
        self.accumulated_value: float = 0.0

        self._dispatch: Dict[ScalarPattern, Callable[[], float]] = {
            ScalarPattern.SINE: self._sine,
            ScalarPattern.SQUARE: self._square,
            ScalarPattern.SAWTOOTH: self._sawtooth,
            ScalarPattern.TRIANGLE: self._triangle,
            ScalarPattern.RANDOM_WALK: self._random_walk,
            ScalarPattern.GAUSSIAN: self._gaussian,
            ScalarPattern.STEP: self._step,
            ScalarPattern.LINEAR: self._linear,
            ScalarPattern.CONSTANT: self._constant,
        }

        self.init()

    # ── DataSource contract ─────────────────────────────────────────────────

    def _on_init(self) -> None:
        self.accumulated_value = self.offset

    def _generate_value(self) -> float:
        return self._dispatch[self.pattern]()

    def generate_next(self) -> float:
        value = self._generate_value()

        if self.noise > 0 and self.pattern not in _NOISE_FREE:
            value += self.rng.gaussian(0.0, self.noise)

        return max(self.min, min(self.max, value))

    def _apply_params(self, cfg: Dict[str, Any]) -> None:
        if "pattern" in cfg:
            self.pattern = ScalarPattern.parse(cfg["pattern"])
        for field in ("amplitude", "frequency", "offset", "noise", "phase",
                      "drift", "step_height"):
            if field in cfg:
                setattr(self, field, float(cfg[field]))
        if "min" in cfg:
            self.min = _bound(cfg["min"], -math.inf)
        if "max" in cfg:
            self.max = _bound(cfg["max"], math.inf)
        if "step_width" in cfg:
            self.step_width = int(cfg["step_width"])

    def get_config(self) -> dict:
        config = self._base_config()
        config.update({
            "pattern": self.pattern.value,
            "amplitude": self.amplitude,
            "frequency": self.frequency,
            "offset": self.offset,
            "noise": self.noise,
            "min": None if math.isinf(self.min) else self.min,
            "max": None if math.isinf(self.max) else self.max,
            "phase": self.phase,
            "drift": self.drift,
            "stepHeight": self.step_height,
            "stepWidth": self.step_width,
        })
        return config

    def get_pattern_description(self) -> str:
        return PATTERN_DESCRIPTIONS[self.pattern]

    def get_formatted_value(self, decimals: int = 2) -> str:
        if self.current_value is None:
            return "N/A"
        return f"{self.current_value:.{decimals}f}"

    def _coerce(self, value: float) -> float:
        return float(value)

    # ── Patterns ────────────────────────────────────────────────────────────

    @property
    def theta(self) -> float:
        return TWO_PI * self.step * self.frequency + self.phase

    def _sine(self) -> float:
        return self.offset + self.amplitude * math.sin(self.theta)

    def _square(self) -> float:
        sign = 1.0 if math.sin(self.theta) >= 0 else -1.0
        return self.offset + self.amplitude * sign

    def _sawtooth(self) -> float:
        saw_phase = self.theta % TWO_PI
        return self.offset + self.amplitude * (2.0 * saw_phase / TWO_PI - 1.0)

    def _triangle(self) -> float:
        tri_phase = self.theta % TWO_PI
        if tri_phase < math.pi:
            normalized = 2.0 * tri_phase / math.pi - 1.0   # rising
        else:
            normalized = 3.0 - 2.0 * tri_phase / math.pi   # falling
        return self.offset + self.amplitude * normalized

    def _random_walk(self) -> float:
        self.accumulated_value += self.rng.gaussian(self.drift, self.amplitude)
        return self.accumulated_value

    def _gaussian(self) -> float:
        return self.rng.gaussian(self.offset, self.amplitude)

    def _step(self) -> float:
        if self.step_width <= 0:
            return self.offset
        sign = 1.0 if (self.step // self.step_width) % 2 == 0 else -1.0
        return self.offset + sign * self.step_height * self.amplitude

    def _linear(self) -> float:
        return self.offset + self.amplitude * self.step

    def _constant(self) -> float:
        return self.offset

