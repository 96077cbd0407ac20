# ═══════════════════════════════════════════════════════════════════════════════
# PART 8: BLOCK CATALOG
# Design: I1 (Systems Architect) | Implementation: I3 (State Management)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I1: "The graph only needs to know a few facts about a block: what value kind
it consumes, how wide its output is, how to read a scalar out of it and
whether the engine must initialise it. Everything else is the engine's
business."

I3: "Parameter edits from a form are untrusted. Clamp, round to the step,
fall back to the default. Only a missing required field is an error."
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from blockflow.core.data_source import SourceKind, to_snake
from blockflow.core.errors import ValidationError


class BlockKind(Enum):
    SCALAR_DATA_SOURCE = "ScalarDataSource"
    DISCRETE_DATA_SOURCE = "DiscreteDataSource"
    SCALAR_TRANSFORMER = "ScalarTransformer"
    DISCRETE_TRANSFORMER = "DiscreteTransformer"
    PERSISTENCE_TRANSFORMER = "PersistenceTransformer"
    PATTERN_POOLER = "PatternPooler"
    PATTERN_CLASSIFIER = "PatternClassifier"
    SEQUENCE_LEARNER = "SequenceLearner"
    CONTEXT_LEARNER = "ContextLearner"

    @classmethod
    def parse(cls, value: Union["BlockKind", str]) -> "BlockKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown block type: {value!r}") from None


class ReadoutKind(Enum):
    """How a node's scalar time-series value is read from the engine."""
    ACTIVE_FRACTION = "active_fraction"
    PROBABILITY = "probability"
    ANOMALY = "anomaly"


@dataclass(frozen=True)
class ParamDef:
    """Constraints for one editable block parameter."""
    type: str = "number"                # number | boolean | string | select
    default: Any = None
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    options: Tuple[str, ...] = ()
    required: bool = False
    integer: bool = False
    power_of_2: bool = False
    max_length: Optional[int] = None
    label: str = ""


@dataclass(frozen=True)
class BlockSpec:
    kind: BlockKind
    name: str
    category: str                       # data_source | transformer | learner | temporal
    consumes: Optional[SourceKind] = None
    readout: ReadoutKind = ReadoutKind.ACTIVE_FRACTION
    learning: bool = False              # Engine requires init_block() after build()
    has_context: bool = False
    width_params: Tuple[str, ...] = ()  # First present key sets the bit width
    default_width: int = 0
    params: Dict[str, ParamDef] = field(default_factory=dict)

    @property
    def is_source(self) -> bool:
        return self.category == "data_source"


# ── Shared parameter definitions ─────────────────────────────────────────────

_SIZE = ParamDef(min=16, max=1024, step=16, default=128, integer=True, label="Size")
_CAPACITY = ParamDef(min=64, max=2048, step=64, default=256, integer=True, label="Capacity")
_HISTORY = ParamDef(min=10, max=1000, step=10, default=100, integer=True, label="History Size")


BLOCK_SPECS: Dict[BlockKind, BlockSpec] = {
    BlockKind.DISCRETE_DATA_SOURCE: BlockSpec(
        kind=BlockKind.DISCRETE_DATA_SOURCE,
        name="Discrete Source",
        category="data_source",
        params={
            "pattern": ParamDef(
                type="select", default="sequential", required=True, label="Pattern",
                options=("sequential", "cyclic", "random", "weighted", "custom"),
            ),
            "numCategories": ParamDef(min=2, max=100, step=1, default=10, integer=True, label="Categories"),
            "changeEvery": ParamDef(min=1, max=100, step=1, default=1, integer=True, label="Change Every"),
            "noise": ParamDef(min=0, max=1, step=0.01, default=0.0, label="Noise"),
        },
    ),
    BlockKind.SCALAR_DATA_SOURCE: BlockSpec(
        kind=BlockKind.SCALAR_DATA_SOURCE,
        name="Scalar Source",
        category="data_source",
        params={
            "pattern": ParamDef(
                type="select", default="sine", required=True, label="Pattern",
                options=("sine", "square", "sawtooth", "triangle", "randomWalk",
                         "gaussian", "step", "linear", "constant"),
            ),
            "amplitude": ParamDef(min=0, max=100, step=0.1, default=1.0, label="Amplitude"),
            "frequency": ParamDef(min=0, max=1, step=0.01, default=0.1, label="Frequency"),
            "offset": ParamDef(min=-100, max=100, step=0.1, default=0.0, label="Offset"),
            "noise": ParamDef(min=0, max=10, step=0.1, default=0.0, label="Noise"),
        },
    ),
    BlockKind.SCALAR_TRANSFORMER: BlockSpec(
        kind=BlockKind.SCALAR_TRANSFORMER,
        name="Scalar",
        category="transformer",
        consumes=SourceKind.SCALAR,
        width_params=("num_s", "size"),
        default_width=128,
        params={
            "size": _SIZE,
            "threshold": ParamDef(min=0, max=1, step=0.01, default=0.5, label="Threshold"),
        },
    ),
    BlockKind.DISCRETE_TRANSFORMER: BlockSpec(
        kind=BlockKind.DISCRETE_TRANSFORMER,
        name="Discrete",
        category="transformer",
        consumes=SourceKind.DISCRETE,
        width_params=("num_s", "size"),
        default_width=128,
        params={
            "size": _SIZE,
            "bins": ParamDef(min=2, max=256, step=1, default=16, integer=True, label="Bins"),
        },
    ),
    BlockKind.PERSISTENCE_TRANSFORMER: BlockSpec(
        kind=BlockKind.PERSISTENCE_TRANSFORMER,
        name="Persistence",
        category="transformer",
        width_params=("num_s", "size"),
        default_width=128,
        params={
            "size": _SIZE,
            "persistence": ParamDef(min=0, max=1, step=0.01, default=0.8, label="Persistence"),
        },
    ),
    BlockKind.PATTERN_POOLER: BlockSpec(
        kind=BlockKind.PATTERN_POOLER,
        name="Pooler",
        category="learner",
        learning=True,
        width_params=("num_s", "capacity"),
        default_width=256,
        params={
            "capacity": _CAPACITY,
            "learningRate": ParamDef(min=0, max=1, step=0.001, default=0.01, label="Learning Rate"),
        },
    ),
    BlockKind.PATTERN_CLASSIFIER: BlockSpec(
        kind=BlockKind.PATTERN_CLASSIFIER,
        name="Classifier",
        category="learner",
        readout=ReadoutKind.PROBABILITY,
        learning=True,
        width_params=("num_s", "capacity"),
        default_width=256,
        params={
            "capacity": _CAPACITY,
            "numClasses": ParamDef(min=2, max=100, step=1, default=10, integer=True, label="Num Classes"),
        },
    ),
    BlockKind.SEQUENCE_LEARNER: BlockSpec(
        kind=BlockKind.SEQUENCE_LEARNER,
        name="Sequence",
        category="temporal",
        readout=ReadoutKind.ANOMALY,
        learning=True,
        has_context=True,
        width_params=("num_c", "historySize"),
        default_width=100,
        params={
            "historySize": _HISTORY,
            "decayRate": ParamDef(min=0, max=1, step=0.01, default=0.95, label="Decay Rate"),
        },
    ),
    BlockKind.CONTEXT_LEARNER: BlockSpec(
        kind=BlockKind.CONTEXT_LEARNER,
        name="Context",
        category="temporal",
        readout=ReadoutKind.ANOMALY,
        learning=True,
        has_context=True,
        width_params=("num_c", "historySize"),
        default_width=100,
        params={
            "historySize": _HISTORY,
            "contextWindow": ParamDef(min=1, max=50, step=1, default=10, integer=True, label="Context Window"),
        },
    ),
}

SOURCE_BLOCKS = {
    BlockKind.SCALAR_DATA_SOURCE: SourceKind.SCALAR,
    BlockKind.DISCRETE_DATA_SOURCE: SourceKind.DISCRETE,
}


# ── Catalog lookup ───────────────────────────────────────────────────────────


def get_block_spec(kind: Union[BlockKind, str]) -> BlockSpec:
    return BLOCK_SPECS[BlockKind.parse(kind)]


def get_block_defaults(kind: Union[BlockKind, str]) -> Dict[str, Any]:
    spec = get_block_spec(kind)
    return {name: d.default for name, d in spec.params.items() if d.default is not None}


def blocks_by_category() -> Dict[str, List[BlockSpec]]:
    categories: Dict[str, List[BlockSpec]] = {}
    for spec in BLOCK_SPECS.values():
        categories.setdefault(spec.category, []).append(spec)
    return categories


def bit_width(kind: Union[BlockKind, str], params: Optional[Mapping[str, Any]] = None) -> int:
    """Output width in bits for a block with the given params (0 for sources)."""
    spec = get_block_spec(kind)
    params = params or {}
    for name in spec.width_params:
        if params.get(name) is not None:
            return int(params[name])
    return spec.default_width


# ── Validation ───────────────────────────────────────────────────────────────


def is_power_of_2(n: float) -> bool:
    return n > 0 and float(n).is_integer() and (int(n) & (int(n) - 1)) == 0


def _is_number(value: Any) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and not math.isnan(value))


def validate_parameter(value: Any, definition: Optional[ParamDef]) -> Tuple[bool, Optional[str]]:
    """Check a value against its definition. Returns (ok, error message)."""
    if definition is None:
        return True, None

    if definition.type == "number":
        if not _is_number(value):
            return False, "Must be a valid number"
        if definition.min is not None and value < definition.min:
            return False, f"Must be at least {definition.min}"
        if definition.max is not None and value > definition.max:
            return False, f"Must be at most {definition.max}"
        if definition.step is not None:
            base = definition.min or 0
            expected = base + round((value - base) / definition.step) * definition.step
            if abs(value - expected) > 1e-4:
                return False, f"Must be a multiple of {definition.step}"
        if definition.power_of_2 and not is_power_of_2(value):
            return False, "Must be a power of 2"
        if definition.integer and not float(value).is_integer():
            return False, "Must be an integer"

    elif definition.type == "boolean":
        if not isinstance(value, bool):
            return False, "Must be true or false"

    elif definition.type == "string":
        if not isinstance(value, str):
            return False, "Must be a string"
        if definition.max_length is not None and len(value) > definition.max_length:
            return False, f"Must be at most {definition.max_length} characters"

    elif definition.type == "select":
        if definition.options and value not in definition.options:
            return False, "Invalid option selected"

    return True, None


def validate_all_parameters(kind: Union[BlockKind, str], params: Mapping[str, Any]) -> Tuple[bool, Dict[str, str]]:
    """Validate every catalog field (absent fields are checked at their default)."""
    errors: Dict[str, str] = {}
    for name, definition in get_block_spec(kind).params.items():
        ok, error = validate_parameter(params.get(name, definition.default), definition)
        if not ok:
            errors[name] = error
    return not errors, errors


def sanitize_parameter(value: Any, definition: Optional[ParamDef]) -> Any:
    """Coerce a value into its definition's constraints."""
    if definition is None:
        return value

    if definition.type == "number":
        try:
            num = float(value)
        except (TypeError, ValueError):
            num = math.nan
        if math.isnan(num):
            num = float(definition.default if definition.default is not None else 0)

        if definition.min is not None:
            num = max(num, definition.min)
        if definition.max is not None:
            num = min(num, definition.max)
        if definition.step is not None:
            base = definition.min or 0
            num = round(base + round((num - base) / definition.step) * definition.step, 10)
        if definition.power_of_2 and num > 0:
            num = 2.0 ** round(math.log2(num))
        if definition.integer:
            return int(round(num))
        return num

    if definition.type == "boolean":
        return bool(value)

    if definition.type == "string":
        text = str(value)
        if definition.max_length is not None:
            text = text[: definition.max_length]
        return text

    if definition.type == "select":
        if definition.options and value not in definition.options:
            return definition.default
        return value

    return value


def sanitize_params(kind: Union[BlockKind, str], params: Mapping[str, Any],
                    partial: bool = False) -> Dict[str, Any]:
    """
    Sanitize every catalog field present in params. Unknown fields (engine
    constructor arguments such as num_s) pass through unchanged.

    Raises ValidationError when a required field is absent, unless the
    update is partial.
    """
    spec = get_block_spec(kind)
    if not partial:
        missing = [name for name, d in spec.params.items() if d.required and name not in params]
        if missing:
            raise ValidationError(f"{spec.kind.value}: missing required parameter(s) {missing}")

    result = dict(params)
    for name, value in params.items():
        definition = spec.params.get(name)
        if definition is not None:
            result[name] = sanitize_parameter(value, definition)
    return result


def sanitize_source_params(kind: Union[BlockKind, str], params: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Clamp numeric data-source params into their catalog range.

    Keys match the catalog in either camelCase or snake_case and keep the
    caller's spelling. Integer fields are rounded; fractional fields are
    not snapped to the slider step. Select fields pass through, so the
    source itself rejects an unknown pattern.
    """
    spec = get_block_spec(kind)
    if not spec.is_source:
        raise ValidationError(f"{spec.kind.value} is not a data source")
    by_snake = {to_snake(name): d for name, d in spec.params.items()}

    result = dict(params)
    for key, value in params.items():
        definition = by_snake.get(to_snake(key))
        if definition is None or definition.type != "number":
            continue
        if not definition.integer:
            definition = replace(definition, step=None)
        result[key] = sanitize_parameter(value, definition)
    return result


def get_parameter_constraints(definition: Optional[ParamDef]) -> str:
    """Human-readable constraint summary, e.g. 'Range: 16 - 1024, Step: 16'."""
    if definition is None:
        return ""
    parts = []
    if definition.min is not None and definition.max is not None:
        parts.append(f"Range: {definition.min:g} - {definition.max:g}")
    elif definition.min is not None:
        parts.append(f"Min: {definition.min:g}")
    elif definition.max is not None:
        parts.append(f"Max: {definition.max:g}")
    if definition.step is not None:
        parts.append(f"Step: {definition.step:g}")
    if definition.power_of_2:
        parts.append("Power of 2")
    if definition.integer:
        parts.append("Integer")
    return ", ".join(parts)
