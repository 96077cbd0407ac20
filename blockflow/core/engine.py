# ═══════════════════════════════════════════════════════════════════════════════
# PART 9: ENGINE CONTRACT
# Design: I1 (Systems Architect) + A3 (ML Integration)
# Implementation: I4 (Integration)
# ═══════════════════════════════════════════════════════════════════════════════

"""
A3: "The block engine is a black box. We add blocks, wire them, build, feed
values, execute and read sparse state back. We never look inside."

I1: "ABC for the contract, typed handles so a dead block can't be addressed
by accident, and a mock engine for running the whole loop without the real
thing."
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

from blockflow.core.blocks import BlockKind, bit_width, get_block_spec
from blockflow.core.errors import StaleHandleError, ValidationError
from blockflow.core.prng import PseudoRandomStream

logger = logging.getLogger(__name__)


class ComputeEngine(ABC):
    """Handle-based block execution engine."""

    @abstractmethod
    def add_block(self, kind: Union[BlockKind, str], name: str, **params: Any) -> int:
        """Create a block. Returns its integer handle."""

    @abstractmethod
    def remove_block(self, handle: int) -> None:
        """Remove a block and every connection touching it."""

    @abstractmethod
    def connect_to_input(self, source: int, target: int) -> None:
        """Feed source's output into target's input."""

    @abstractmethod
    def connect_to_context(self, source: int, target: int) -> None:
        """Feed source's output into target's context input."""

    @abstractmethod
    def build(self) -> None:
        """Finalize topology. Required after any topology change."""

    @abstractmethod
    def init_block(self, handle: int) -> None:
        """One-time initialization for learning-capable blocks."""

    @abstractmethod
    def execute(self, learn: bool) -> None:
        """Run one step of every block."""

    @abstractmethod
    def set_scalar_value(self, handle: int, value: float) -> None:
        pass

    @abstractmethod
    def set_discrete_value(self, handle: int, value: int) -> None:
        pass

    @abstractmethod
    def get_state_json(self) -> str:
        """Per-handle {num_bits, active_bits, num_active}, metadata, connections."""

    @abstractmethod
    def get_probabilities(self, handle: int) -> List[float]:
        pass

    @abstractmethod
    def get_anomaly(self, handle: int) -> float:
        pass


# ── Handles ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BlockHandle:
    """An engine block id tagged with the block kind it was created as."""
    id: int
    kind: BlockKind


class HandleRegistry:
    """
    Tracks which graph node owns which engine handle.

    Handles are invalidated when their node is removed. Using an
    invalidated handle raises StaleHandleError.
    """

    def __init__(self):
        self._by_node: Dict[str, BlockHandle] = {}
        self._live: Set[BlockHandle] = set()

    def __len__(self) -> int:
        return len(self._by_node)

    def register(self, node_id: str, handle_id: int, kind: Union[BlockKind, str]) -> BlockHandle:
        handle = BlockHandle(int(handle_id), BlockKind.parse(kind))
        previous = self._by_node.get(node_id)
        if previous is not None:
            self._live.discard(previous)
        self._by_node[node_id] = handle
        self._live.add(handle)
        return handle

    def invalidate(self, node_id: str) -> Optional[BlockHandle]:
        """Drop a node's handle. Returns the handle that was invalidated, if any."""
        handle = self._by_node.pop(node_id, None)
        if handle is not None:
            self._live.discard(handle)
        return handle

    def resolve(self, node_id: str) -> Optional[BlockHandle]:
        return self._by_node.get(node_id)

    def is_live(self, handle: BlockHandle) -> bool:
        return handle in self._live

    def check(self, handle: BlockHandle) -> BlockHandle:
        if handle not in self._live:
            raise StaleHandleError(f"Handle {handle.id} ({handle.kind.value}) is no longer live")
        return handle

    def node_for(self, handle_id: int) -> Optional[str]:
        for node_id, handle in self._by_node.items():
            if handle.id == handle_id:
                return node_id
        return None

    def live_handles(self) -> Dict[str, BlockHandle]:
        return dict(self._by_node)

    def clear(self) -> None:
        self._by_node.clear()
        self._live.clear()


# ── Mock Engine ──────────────────────────────────────────────────────────────


@dataclass
class MockEngineConfig:
    seed: int = 42
    default_bits: int = 128         # Width for blocks whose kind declares none
    active_fraction: float = 0.1    # Share of bits active per block per step


@dataclass
class _MockBlock:
    handle: int
    kind: BlockKind
    name: str
    params: Dict[str, Any]
    num_bits: int
    inputs: List[int] = field(default_factory=list)
    contexts: List[int] = field(default_factory=list)
    value: Optional[float] = None
    active: List[int] = field(default_factory=list)
    previous: List[int] = field(default_factory=list)
    anomaly: float = 0.0
    initialized: bool = False


class MockEngine(ComputeEngine):
    """
    Deterministic in-process engine for tests and the CLI.

    - Transformers encode their last value as a contiguous run of active bits.
    - Other blocks activate a subset of bits seeded from the engine seed,
      the block handle and their inputs' active bits.
    - execute() refuses to run until build() follows the last topology change.
    - All calls are recorded in call_log for test inspection.
    """

    def __init__(self, config: Optional[MockEngineConfig] = None):
        self.config = config or MockEngineConfig()
        self.blocks: Dict[int, _MockBlock] = {}
        self.call_log: list = []
        self.step_count = 0
        self._next_handle = 0
        self._dirty = False
        self._built = False

    # ── Topology ────────────────────────────────────────────────────────────

    def add_block(self, kind: Union[BlockKind, str], name: str, **params: Any) -> int:
        kind = BlockKind.parse(kind)
        spec = get_block_spec(kind)
        if spec.is_source:
            raise ValidationError(f"{kind.value} is not an engine block")
        self.call_log.append({"method": "add_block", "kind": kind.value, "name": name, "params": params})

        handle = self._next_handle
        self._next_handle += 1
        width = bit_width(kind, params) or self.config.default_bits
        self.blocks[handle] = _MockBlock(handle, kind, name, dict(params), width)
        self._dirty = True
        return handle

    def remove_block(self, handle: int) -> None:
        self.call_log.append({"method": "remove_block", "handle": handle})
        self._block(handle)
        del self.blocks[handle]
        for block in self.blocks.values():
            block.inputs = [h for h in block.inputs if h != handle]
            block.contexts = [h for h in block.contexts if h != handle]
        self._dirty = True

    def connect_to_input(self, source: int, target: int) -> None:
        self.call_log.append({"method": "connect_to_input", "source": source, "target": target})
        self._block(source)
        self._block(target).inputs.append(source)
        self._dirty = True

    def connect_to_context(self, source: int, target: int) -> None:
        self.call_log.append({"method": "connect_to_context", "source": source, "target": target})
        self._block(source)
        block = self._block(target)
        if not get_block_spec(block.kind).has_context:
            raise ValidationError(f"{block.kind.value} has no context input")
        block.contexts.append(source)
        self._dirty = True

    def build(self) -> None:
        self.call_log.append({"method": "build"})
        self._dirty = False
        self._built = True

    def init_block(self, handle: int) -> None:
        self.call_log.append({"method": "init_block", "handle": handle})
        self._block(handle).initialized = True

    # ── Execution ───────────────────────────────────────────────────────────

    def execute(self, learn: bool) -> None:
        self.call_log.append({"method": "execute", "learn": learn})
        if self._dirty or not self._built:
            raise RuntimeError("Topology changed: build() must be called before execute()")

        for handle in sorted(self.blocks):
            block = self.blocks[handle]
            spec = get_block_spec(block.kind)
            if spec.learning and not block.initialized:
                raise RuntimeError(f"Block {handle} ({block.kind.value}) was not initialized")

            block.previous = block.active
            if spec.consumes is not None:
                block.active = self._encode(block)
            else:
                block.active = self._activate(block)

            overlap = len(set(block.active) & set(block.previous))
            block.anomaly = 1.0 - overlap / len(block.active) if block.active else 0.0

        self.step_count += 1

    def set_scalar_value(self, handle: int, value: float) -> None:
        self.call_log.append({"method": "set_scalar_value", "handle": handle, "value": value})
        self._block(handle).value = float(value)

    def set_discrete_value(self, handle: int, value: int) -> None:
        self.call_log.append({"method": "set_discrete_value", "handle": handle, "value": value})
        self._block(handle).value = int(value)

    # ── State ───────────────────────────────────────────────────────────────

    def get_state_json(self) -> str:
        self.call_log.append({"method": "get_state_json"})
        blocks = {}
        connections = []
        for handle, block in self.blocks.items():
            blocks[str(handle)] = {
                "name": block.name,
                "type": block.kind.value,
                "num_bits": block.num_bits,
                "active_bits": list(block.active),
                "num_active": len(block.active),
            }
            connections.extend({"source": s, "target": handle, "type": "input"} for s in block.inputs)
            connections.extend({"source": s, "target": handle, "type": "context"} for s in block.contexts)
        return json.dumps({"step": self.step_count, "blocks": blocks, "connections": connections})

    def get_probabilities(self, handle: int) -> List[float]:
        self.call_log.append({"method": "get_probabilities", "handle": handle})
        block = self._block(handle)
        if not block.active:
            return []
        num_classes = int(block.params.get("num_l") or block.params.get("numClasses") or 10)
        counts = [0] * num_classes
        for bit in block.active:
            counts[bit % num_classes] += 1
        total = float(sum(counts))
        return [c / total for c in counts]

    def get_anomaly(self, handle: int) -> float:
        self.call_log.append({"method": "get_anomaly", "handle": handle})
        return self._block(handle).anomaly

    # ── Internal ────────────────────────────────────────────────────────────

    def _block(self, handle: int) -> _MockBlock:
        block = self.blocks.get(handle)
        if block is None:
            raise StaleHandleError(f"Unknown engine handle: {handle}")
        return block

    def _num_active(self, block: _MockBlock) -> int:
        return max(1, int(round(block.num_bits * self.config.active_fraction)))

    def _encode(self, block: _MockBlock) -> List[int]:
        if block.value is None:
            return []
        num_active = self._num_active(block)
        span = block.num_bits - num_active

        if block.kind is BlockKind.DISCRETE_TRANSFORMER:
            bins = int(block.params.get("num_v") or block.params.get("bins") or 16)
            position = (int(block.value) % bins) / max(1, bins - 1)
        else:
            low = float(block.params.get("min_val", 0.0))
            high = float(block.params.get("max_val", 1.0))
            position = (block.value - low) / (high - low) if high > low else 0.0
            position = min(1.0, max(0.0, position))

        start = int(round(position * span))
        return list(range(start, start + num_active))

    def _activate(self, block: _MockBlock) -> List[int]:
        upstream: List[int] = []
        for source in block.inputs + block.contexts:
            upstream.extend(self.blocks[source].active)
        if (block.inputs or block.contexts) and not upstream:
            return []

        checksum = sum((i + 1) * bit for i, bit in enumerate(sorted(upstream)))
        rng = PseudoRandomStream(self.config.seed + 7919 * (block.handle + 1) + checksum)
        bits = rng.shuffle(list(range(block.num_bits)))
        return sorted(bits[: self._num_active(block)])
