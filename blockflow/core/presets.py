# ═══════════════════════════════════════════════════════════════════════════════
# PART 6: SOURCE PRESETS
# Design: P1 (Dynamical Systems) | Implementation: I3 (State Management)
# ═══════════════════════════════════════════════════════════════════════════════

"""
P1: "Nobody wants to tune amplitude, frequency and offset from scratch to get a
daily temperature curve. Ship the common shapes as named bundles."
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from blockflow.core.data_source import DataSource, SourceKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Preset:
    id: str
    name: str
    description: str
    params: Dict[str, Any] = field(default_factory=dict)


SCALAR_PRESETS: List[Preset] = [
    Preset("temp-daily", "Daily Temperature", "Simulates daily temperature variation",
           {"pattern": "sine", "amplitude": 15, "frequency": 0.042, "offset": 20, "noise": 2.0}),
    Preset("smooth-sine", "Smooth Sine Wave", "Clean sinusoidal oscillation",
           {"pattern": "sine", "amplitude": 10, "frequency": 0.1, "offset": 0, "noise": 0}),
    Preset("noisy-sensor", "Noisy Sensor", "Sensor readings with noise",
           {"pattern": "sine", "amplitude": 5, "frequency": 0.05, "offset": 50, "noise": 3.0}),
    Preset("random-walk", "Random Walk", "Brownian motion / stock price simulation",
           {"pattern": "randomWalk", "amplitude": 1.0, "frequency": 0.1, "offset": 100, "noise": 0.5}),
    Preset("square-wave", "Square Wave", "Alternating high/low signal",
           {"pattern": "square", "amplitude": 10, "frequency": 0.1, "offset": 0, "noise": 0}),
    Preset("step-function", "Step Function", "Discrete level changes",
           {"pattern": "step", "amplitude": 20, "frequency": 0.05, "offset": 0, "noise": 0}),
    Preset("linear-ramp", "Linear Ramp", "Steadily increasing value",
           {"pattern": "linear", "amplitude": 0.5, "frequency": 0.1, "offset": 0, "noise": 0}),
    Preset("gaussian-noise", "Gaussian Noise", "Pure random noise",
           {"pattern": "gaussian", "amplitude": 5, "frequency": 0.1, "offset": 0, "noise": 0}),
]

DISCRETE_PRESETS: List[Preset] = [
    Preset("days-of-week", "Days of Week", "Sequential days (0=Mon, 6=Sun)",
           {"pattern": "sequential", "numCategories": 7, "changeEvery": 10, "noise": 0}),
    Preset("traffic-light", "Traffic Light", "Cyclic pattern (green, yellow, red, yellow)",
           {"pattern": "cyclic", "numCategories": 3, "changeEvery": 5, "noise": 0}),
    Preset("dice-roll", "Dice Roll", "Random 6-sided dice",
           {"pattern": "random", "numCategories": 6, "changeEvery": 1, "noise": 0}),
    Preset("state-machine", "State Machine", "Sequential state transitions",
           {"pattern": "sequential", "numCategories": 4, "changeEvery": 3, "noise": 0.05}),
    Preset("binary-toggle", "Binary Toggle", "Alternating 0/1",
           {"pattern": "sequential", "numCategories": 2, "changeEvery": 5, "noise": 0}),
    Preset("noisy-counter", "Noisy Counter", "Sequential with occasional errors",
           {"pattern": "sequential", "numCategories": 10, "changeEvery": 2, "noise": 0.15}),
]

PRESETS: Dict[SourceKind, List[Preset]] = {
    SourceKind.SCALAR: SCALAR_PRESETS,
    SourceKind.DISCRETE: DISCRETE_PRESETS,
}


def _kind(kind: Union[SourceKind, str]) -> Optional[SourceKind]:
    if isinstance(kind, SourceKind):
        return kind
    try:
        return SourceKind(kind)
    except ValueError:
        return None


def get_presets(kind: Union[SourceKind, str]) -> List[Preset]:
    """All presets for a source kind (empty for unknown kinds)."""
    resolved = _kind(kind)
    return list(PRESETS.get(resolved, [])) if resolved else []


def get_preset_by_id(kind: Union[SourceKind, str], preset_id: str) -> Optional[Preset]:
    for preset in get_presets(kind):
        if preset.id == preset_id:
            return preset
    return None


def apply_preset(source: Optional[DataSource], preset_id: str) -> bool:
    """
    Apply a preset's params to a live source via update_params().

    Returns False when the source is missing or the preset is unknown for
    the source's kind.
    """
    if source is None:
        return False

    preset = get_preset_by_id(source.kind, preset_id)
    if preset is None:
        logger.warning("Preset not found: %s for type %s", preset_id, source.kind.value)
        return False

    source.update_params(dict(preset.params))
    logger.info("Applied preset %r to source %s", preset.name, source.id)
    return True


def get_preset_names(kind: Union[SourceKind, str]) -> List[str]:
    return [p.name for p in get_presets(kind)]


def get_preset_options(kind: Union[SourceKind, str]) -> List[Dict[str, str]]:
    """{value, label, description} entries for a selection widget."""
    return [
        {"value": p.id, "label": p.name, "description": p.description}
        for p in get_presets(kind)
    ]
