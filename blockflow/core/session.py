# ═══════════════════════════════════════════════════════════════════════════════
# PART 16: FLOW SESSION
# Design: I1 (Systems Architect) + A3 (ML Integration)
# Implementation: I4 (Integration)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I1: "The session is the editor's side of the world. Graph edits go through
the graph; the session listens and keeps the engine in step: a block per
node, a connection per input or context edge, a build after every change."

A3: "The engine never sees data sources. They live in the registry and
reach the engine only through the scheduler's dispatch."
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Union

from blockflow.core.blocks import (
    SOURCE_BLOCKS,
    BlockKind,
    get_block_defaults,
    get_block_spec,
    sanitize_params,
    sanitize_source_params,
)
from blockflow.core.data_source import SourceKind
from blockflow.core.engine import ComputeEngine, HandleRegistry, MockEngine, MockEngineConfig
from blockflow.core.errors import ValidationError
from blockflow.core.graph import EdgeKind, GraphEdge, GraphEvent, GraphModel, GraphNode
from blockflow.core.history import DEFAULT_HISTORY_CAPACITY
from blockflow.core.scheduler import ExecutionScheduler, SchedulerConfig, TickResult, Timer
from blockflow.core.source_registry import DataSourceRegistry
from blockflow.core.visualization import VisualizationBuffer

logger = logging.getLogger(__name__)

SOURCE_BLOCK_FOR = {kind: block for block, kind in SOURCE_BLOCKS.items()}


@dataclass
class SessionConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    max_history_entries: int = DEFAULT_HISTORY_CAPACITY
    engine: MockEngineConfig = field(default_factory=MockEngineConfig)


# ── Demo networks ────────────────────────────────────────────────────────────
# Blocks are created in order; connections refer to block indices.

DEMOS: Dict[str, Dict[str, Any]] = {
    "sequence": {
        "name": "Sequence Learning",
        "description": "Learn and predict temporal sequences",
        "blocks": [
            {"type": "ScalarDataSource", "label": "Sine Wave", "position": {"x": 100, "y": 50},
             "params": {"pattern": "sine", "amplitude": 0.5, "frequency": 0.1, "offset": 0.5, "noise": 0}},
            {"type": "ScalarTransformer", "label": "Input Scalar", "position": {"x": 100, "y": 200},
             "params": {"min_val": 0.0, "max_val": 1.0, "num_s": 64, "num_as": 8, "num_t": 2, "seed": 42}},
            {"type": "SequenceLearner", "label": "Sequence Memory", "position": {"x": 100, "y": 350},
             "params": {"num_c": 64, "num_spc": 10, "num_dps": 10, "num_rpd": 12, "d_thresh": 6,
                        "perm_thr": 20, "perm_inc": 2, "perm_dec": 1, "num_t": 2,
                        "always_update": False, "seed": 42}},
        ],
        "connections": [(0, 1, "input"), (1, 2, "input")],
    },
    "classification": {
        "name": "Classification",
        "description": "Pattern classification task",
        "blocks": [
            {"type": "DiscreteDataSource", "label": "Feature 1 Source", "position": {"x": 50, "y": 0},
             "params": {"pattern": "sequential", "numCategories": 4, "changeEvery": 3, "noise": 0}},
            {"type": "DiscreteDataSource", "label": "Feature 2 Source", "position": {"x": 250, "y": 0},
             "params": {"pattern": "cyclic", "numCategories": 5, "changeEvery": 2, "noise": 0}},
            {"type": "DiscreteTransformer", "label": "Feature 1", "position": {"x": 50, "y": 100},
             "params": {"size": 128, "bins": 16}},
            {"type": "DiscreteTransformer", "label": "Feature 2", "position": {"x": 250, "y": 100},
             "params": {"size": 128, "bins": 16}},
            {"type": "PatternPooler", "label": "Feature Pool", "position": {"x": 150, "y": 250},
             "params": {"num_s": 1024, "num_as": 40, "perm_thr": 20, "perm_inc": 2, "perm_dec": 1,
                        "pct_pool": 0.8, "pct_conn": 0.5, "pct_learn": 0.3,
                        "always_update": False, "num_t": 2, "seed": 0}},
            {"type": "PatternClassifier", "label": "Classifier", "position": {"x": 150, "y": 400},
             "params": {"capacity": 256, "numClasses": 10}},
        ],
        "connections": [(0, 2, "input"), (1, 3, "input"), (2, 4, "input"), (3, 4, "input"), (4, 5, "input")],
    },
    "context": {
        "name": "Context Learning",
        "description": "Learn contextual relationships",
        "blocks": [
            {"type": "ScalarDataSource", "label": "Signal", "position": {"x": 100, "y": -100},
             "params": {"pattern": "triangle", "amplitude": 0.5, "frequency": 0.05, "offset": 0.5, "noise": 0}},
            {"type": "ScalarTransformer", "label": "Input Signal", "position": {"x": 100, "y": 50},
             "params": {"size": 128, "threshold": 0.5}},
            {"type": "ContextLearner", "label": "Context Memory", "position": {"x": 100, "y": 200},
             "params": {"num_c": 128, "ctx_size": 128, "capacity": 256}},
            {"type": "PersistenceTransformer", "label": "Context Source", "position": {"x": 300, "y": 50},
             "params": {"size": 128, "persistence": 0.9}},
            {"type": "PatternClassifier", "label": "Output", "position": {"x": 100, "y": 350},
             "params": {"capacity": 256, "numClasses": 10}},
        ],
        "connections": [(0, 1, "input"), (1, 2, "input"), (3, 2, "context"), (2, 4, "input")],
    },
    "pooling": {
        "name": "Feature Pooling",
        "description": "Pool features from multiple inputs",
        "blocks": [
            {"type": "ScalarDataSource", "label": "Sensor A", "position": {"x": 50, "y": -100},
             "params": {"pattern": "sine", "amplitude": 0.5, "frequency": 0.042, "offset": 0.5, "noise": 0.05}},
            {"type": "ScalarDataSource", "label": "Sensor B", "position": {"x": 200, "y": -100},
             "params": {"pattern": "square", "amplitude": 0.5, "frequency": 0.02, "offset": 0.5, "noise": 0}},
            {"type": "ScalarDataSource", "label": "Sensor C", "position": {"x": 350, "y": -100},
             "params": {"pattern": "randomWalk", "amplitude": 0.02, "offset": 0.5, "min": 0, "max": 1}},
            {"type": "ScalarTransformer", "label": "Input A", "position": {"x": 50, "y": 50},
             "params": {"size": 128, "threshold": 0.5}},
            {"type": "ScalarTransformer", "label": "Input B", "position": {"x": 200, "y": 50},
             "params": {"size": 128, "threshold": 0.5}},
            {"type": "ScalarTransformer", "label": "Input C", "position": {"x": 350, "y": 50},
             "params": {"size": 128, "threshold": 0.5}},
            {"type": "PatternPooler", "label": "Feature Pooler", "position": {"x": 200, "y": 200},
             "params": {"capacity": 256, "learningRate": 0.01}},
            {"type": "SequenceLearner", "label": "Temporal Integration", "position": {"x": 200, "y": 350},
             "params": {"num_c": 256, "mem_size": 512, "history": 10}},
        ],
        "connections": [(0, 3, "input"), (1, 4, "input"), (2, 5, "input"),
                        (3, 6, "input"), (4, 6, "input"), (5, 6, "input"), (6, 7, "input")],
    },
}


def get_demo_names() -> List[str]:
    return list(DEMOS)


class FlowSession:
    """
    Graph + registry + engine + buffers + scheduler, kept consistent.

    All topology edits go through `graph`; the session mirrors them into
    the engine from a graph listener, so undo/redo and file loads follow
    the same path as interactive edits.
    """

    def __init__(
        self,
        engine: Optional[ComputeEngine] = None,
        config: Optional[SessionConfig] = None,
        timer: Optional[Timer] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SessionConfig()
        self.engine = engine or MockEngine(self.config.engine)
        self.graph = GraphModel(self.config.max_history_entries)
        self.registry = DataSourceRegistry()
        self.handles = HandleRegistry()
        self.visualization = VisualizationBuffer(self.config.scheduler.max_points)
        self.scheduler = ExecutionScheduler(
            self.registry, self.graph, self.visualization,
            engine=self.engine, config=self.config.scheduler,
            timer=timer, clock=clock, handles=self.handles,
        )
        self.demo: Optional[str] = None

        self._initialized: Set[int] = set()
        self._build_depth = 0
        self._build_pending = False
        self.graph.add_listener(self._on_graph_event)

    # ── Building ────────────────────────────────────────────────────────────

    def add_block(
        self,
        kind: Union[BlockKind, str],
        label: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        position: Optional[Dict[str, float]] = None,
    ) -> GraphNode:
        """Add an engine block node. Params are merged over catalog defaults and sanitized."""
        kind = BlockKind.parse(kind)
        spec = get_block_spec(kind)
        if spec.is_source:
            raise ValidationError(f"{kind.value} is a data source; use add_data_source()")

        merged = sanitize_params(kind, {**get_block_defaults(kind), **(params or {})})
        node = GraphNode(
            id=self.graph.generate_node_id(kind.value),
            block_type=kind.value,
            position=dict(position or {"x": 0.0, "y": 0.0}),
            data={"label": label or spec.name, "blockType": kind.value, "params": merged},
        )
        return self.graph.add_node(node)

    def add_data_source(
        self,
        kind: Union[SourceKind, str],
        params: Optional[Dict[str, Any]] = None,
        label: Optional[str] = None,
        position: Optional[Dict[str, float]] = None,
    ) -> GraphNode:
        """Create a data source in the registry and the graph node that represents it."""
        try:
            source_kind = kind if isinstance(kind, SourceKind) else SourceKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown data source type: {kind!r}") from None
        block_kind = SOURCE_BLOCK_FOR[source_kind]
        config = sanitize_source_params(block_kind, params or {})
        if label:
            config["name"] = label

        source_id = self.registry.add_source(source_kind, config)
        source = self.registry.get_source(source_id)
        node = GraphNode(
            id=self.graph.generate_node_id(block_kind.value),
            block_type=block_kind.value,
            position=dict(position or {"x": 0.0, "y": 0.0}),
            data={
                "label": label or source.name,
                "blockType": block_kind.value,
                "source_id": source_id,
                "source_type": source_kind.value,
                "source_config": source.get_config(),
                "current_value": source.get_value(),
            },
        )
        return self.graph.add_node(node)

    def connect(self, source_node: str, target_node: str,
                kind: Optional[Union[EdgeKind, str]] = None) -> GraphEdge:
        if isinstance(kind, str):
            kind = EdgeKind(kind)
        return self.graph.connect(source_node, target_node, kind)

    def remove_node(self, node_id: str) -> Optional[GraphNode]:
        """Remove a node, its edges, its engine block or its data source."""
        node = self.graph.find_node(node_id)
        if node is None:
            logger.warning("Node not found: %s", node_id)
            return None
        if node.is_source:
            config = self.registry.get_source_config(node.data.get("source_id"))
            if config is not None:
                node.data["source_config"] = config
        return self.graph.remove_node(node_id)

    def remove_edge(self, edge_id: str) -> Optional[GraphEdge]:
        return self.graph.remove_edge(edge_id)

    def update_block_params(self, node_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Sanitize and merge block params. The engine block is recreated,
        since the engine has no in-place parameter update.
        """
        node = self._require_node(node_id)
        if node.is_source:
            raise ValidationError(f"{node_id} is a data source; use update_source_params()")

        sanitized = sanitize_params(node.block_type, params, partial=True)
        merged = {**node.data.get("params", {}), **sanitized}
        self.graph.update_node_data(node_id, {"params": merged})
        self._resync_engine()
        return merged

    def update_source_params(self, node_id: str, params: Dict[str, Any]) -> bool:
        """Update the data source behind a node. Returns True if it re-initialized."""
        node = self._require_node(node_id)
        source_id = node.data.get("source_id")
        if not node.is_source or source_id is None:
            raise ValidationError(f"{node_id} is not a data source node")

        params = sanitize_source_params(node.block_type, params)
        reinit = self.registry.update_source(source_id, params)
        source = self.registry.get_source(source_id)
        if source is not None:
            self.graph.update_node_data(node_id, {
                "source_config": source.get_config(),
                "current_value": source.get_value(),
            })
        return reinit

    def undo(self) -> bool:
        with self.deferred_build():
            return self.graph.undo()

    def redo(self) -> bool:
        with self.deferred_build():
            return self.graph.redo()

    def clear(self) -> None:
        """Stop execution and drop every node, edge, source, block and buffer."""
        self.scheduler.reset()
        for handle in self.handles.live_handles().values():
            self.engine.remove_block(handle.id)
        self.handles.clear()
        self._initialized.clear()
        self.graph.reset()
        self.registry.clear()
        self.visualization.clear_data()
        self.demo = None
        self.engine.build()

    def load_demo(self, name: str, seed: Optional[int] = None) -> None:
        """
        Replace the session contents with a demo network.

        Data sources are seeded with seed, seed + 1, ... when a seed is given.
        """
        demo = DEMOS.get(name)
        if demo is None:
            raise ValidationError(f"Unknown demo {name!r} (available: {', '.join(DEMOS)})")

        logger.info("Loading demo: %s", demo["name"])
        self.clear()
        nodes: List[GraphNode] = []

        with self.deferred_build():
            for index, block in enumerate(demo["blocks"]):
                kind = BlockKind.parse(block["type"])
                if kind in SOURCE_BLOCKS:
                    params = dict(block.get("params") or {})
                    if seed is not None:
                        params["seed"] = seed + index
                    node = self.add_data_source(SOURCE_BLOCKS[kind], params,
                                                block.get("label"), block.get("position"))
                else:
                    node = self.add_block(kind, block.get("label"), block.get("params"),
                                          block.get("position"))
                nodes.append(node)

            for source_index, target_index, edge_type in demo["connections"]:
                self.connect(nodes[source_index].id, nodes[target_index].id, edge_type)

        self.graph.history.clear()
        self.demo = name

    @contextmanager
    def deferred_build(self) -> Iterator[None]:
        """Collapse the engine builds requested inside the block into one."""
        self._build_depth += 1
        try:
            yield
        finally:
            self._build_depth -= 1
            if self._build_depth == 0 and self._build_pending:
                self._build_pending = False
                self._build()

    # ── Execution ───────────────────────────────────────────────────────────

    def start(self) -> bool:
        return self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()

    def step(self, ticks: int = 1) -> List[TickResult]:
        """Run ticks manually. Stops early if a tick fails."""
        results = []
        for _ in range(ticks):
            result = self.scheduler.step()
            if result is None:
                break
            results.append(result)
        return results

    # ── Reporting ───────────────────────────────────────────────────────────

    def get_state(self) -> dict:
        tick = self.scheduler.state
        timings = self.scheduler.timings
        return {
            "demo": self.demo,
            "step": tick.step_counter,
            "running": tick.running,
            "learning": tick.learning_enabled,
            "interval_ms": tick.interval_ms,
            "nodes": len(self.graph.nodes),
            "edges": len(self.graph.edges),
            "blocks": len(self.handles),
            "sources": self.registry.source_count,
            "enabled_sources": self.registry.enabled_source_count,
            "history": {"entries": len(self.graph.history), "cursor": self.graph.history.cursor},
            "timings": {"count": timings.count, "mean_ms": timings.mean_ms,
                        "max_ms": timings.max_ms, "overruns": timings.overruns},
            "last_error": str(self.scheduler.last_error) if self.scheduler.last_error else None,
        }

    def status(self) -> str:
        s = self.get_state()
        return (
            f"step={s['step']} running={s['running']} learning={s['learning']} "
            f"nodes={s['nodes']} edges={s['edges']} blocks={s['blocks']} "
            f"sources={s['enabled_sources']}/{s['sources']}"
            + (f" error={s['last_error']}" if s["last_error"] else "")
        )

    def witness(self) -> str:
        """Multi-line report of the session and every node's latest output."""
        s = self.get_state()
        t = s["timings"]
        lines = [
            "═" * 67,
            f"SESSION: {s['demo'] or 'custom network'}",
            "═" * 67,
            "",
            "EXECUTION",
            f"  Step: {s['step']} | Running: {s['running']} | Learning: {s['learning']}",
            f"  Interval: {s['interval_ms']}ms | Ticks timed: {t['count']}",
            f"  Tick time: mean {t['mean_ms']:.2f}ms, max {t['max_ms']:.2f}ms | Overruns: {t['overruns']}",
            f"  Last error: {s['last_error'] or 'none'}",
            "",
            "GRAPH",
            f"  Nodes: {s['nodes']} | Edges: {s['edges']} | Engine blocks: {s['blocks']}",
            f"  History: {s['history']['entries']} entries (cursor {s['history']['cursor']})",
            "",
            "SOURCES",
        ]
        for source_id in self.registry.execution_order:
            source = self.registry.get_source(source_id)
            stats = self.registry.get_source_statistics(source_id)
            mean = f"{stats.mean:.3f}" if stats and stats.mean is not None else "n/a"
            lines.append(
                f"  {source.name}: {source.get_pattern_description()} | "
                f"value={source.get_value()} mean={mean} step={source.step}"
                + ("" if source.is_enabled() else " (disabled)")
            )
        if not self.registry.source_count:
            lines.append("  (none)")

        lines += ["", "BLOCKS"]
        for node in self.graph.nodes:
            handle = self.handles.resolve(node.id)
            if handle is None:
                continue
            values = self.visualization.get_values(node.id)
            bits = self.visualization.get_bitfield(node.id)
            latest = f"{values[-1]:.3f}" if len(values) else "n/a"
            active = int(bits.sum()) if bits is not None else 0
            width = len(bits) if bits is not None else 0
            lines.append(f"  {node.label} [{node.block_type} #{handle.id}]: "
                         f"output={latest} active={active}/{width}")
        if not len(self.handles):
            lines.append("  (none)")

        lines += ["", "═" * 67]
        return "\n".join(lines)

    # ── Engine mirror ───────────────────────────────────────────────────────

    def _on_graph_event(self, event: GraphEvent, payload: Any) -> None:
        if event is GraphEvent.NODE_ADDED:
            self._on_node_added(payload)
        elif event is GraphEvent.NODE_REMOVED:
            node, _edges = payload
            self._on_node_removed(node)
        elif event is GraphEvent.EDGE_ADDED:
            if payload.kind is not EdgeKind.DATA_SOURCE_LINK:
                self._connect_engine(payload)
                self._request_build()
        elif event is GraphEvent.EDGE_REMOVED:
            # The engine cannot disconnect; rebuild its topology from the graph
            if payload.kind is not EdgeKind.DATA_SOURCE_LINK:
                self._resync_engine()

    def _on_node_added(self, node: GraphNode) -> None:
        if node.is_source:
            source_id = node.data.get("source_id")
            config = node.data.get("source_config")
            if source_id not in self.registry and config:
                self.registry.add_source(config["type"], config)
            return
        self._create_engine_block(node)
        self._request_build()

    def _on_node_removed(self, node: GraphNode) -> None:
        self.visualization.clear_node(node.id)
        if node.is_source:
            self.registry.remove_source(node.data.get("source_id"))
            return
        handle = self.handles.invalidate(node.id)
        if handle is not None:
            self.engine.remove_block(handle.id)
            self._initialized.discard(handle.id)
            self._request_build()

    def _create_engine_block(self, node: GraphNode) -> None:
        params = node.data.get("params") or {}
        handle_id = self.engine.add_block(node.block_type, node.label, **params)
        self.handles.register(node.id, handle_id, node.block_type)
        node.data["engine_handle"] = handle_id

    def _connect_engine(self, edge: GraphEdge) -> None:
        source = self.handles.resolve(edge.source)
        target = self.handles.resolve(edge.target)
        if source is None or target is None:
            logger.warning("Edge %s has an endpoint without an engine block", edge.id)
            return
        if edge.kind is EdgeKind.CONTEXT:
            self.engine.connect_to_context(source.id, target.id)
        else:
            self.engine.connect_to_input(source.id, target.id)

    def _resync_engine(self) -> None:
        """Recreate every engine block and connection from the graph."""
        with self.deferred_build():
            for node_id, handle in self.handles.live_handles().items():
                self.engine.remove_block(handle.id)
                self.handles.invalidate(node_id)
            self._initialized.clear()
            for node in self.graph.nodes:
                if not node.is_source:
                    self._create_engine_block(node)
            for edge in self.graph.edges:
                if edge.kind is not EdgeKind.DATA_SOURCE_LINK:
                    self._connect_engine(edge)
            self._request_build()

    def _request_build(self) -> None:
        if self._build_depth:
            self._build_pending = True
        else:
            self._build()

    def _build(self) -> None:
        self.engine.build()
        for handle in self.handles.live_handles().values():
            if get_block_spec(handle.kind).learning and handle.id not in self._initialized:
                self.engine.init_block(handle.id)
                self._initialized.add(handle.id)

    def _require_node(self, node_id: str) -> GraphNode:
        node = self.graph.find_node(node_id)
        if node is None:
            raise ValidationError(f"Unknown node: {node_id}")
        return node


def create_session(engine: Optional[ComputeEngine] = None,
                   config: Optional[SessionConfig] = None,
                   timer: Optional[Timer] = None) -> FlowSession:
    """Create a session around an engine (a MockEngine by default)."""
    return FlowSession(engine=engine, config=config, timer=timer)
