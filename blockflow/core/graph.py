# ═══════════════════════════════════════════════════════════════════════════════
# PART 13: GRAPH MODEL
# Design: I1 (Systems Architect) + I3 (State Management)
# Implementation: I3 (State Management)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I1: "The editor owns nodes and edges. The core only reads them each tick and
publishes values back into node data. Topology changes are announced so the
engine mirror can follow."

I3: "Every add and remove is recorded, unless it is itself a replay."
"""

from __future__ import annotations

import copy
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from blockflow.core.blocks import BlockKind, get_block_spec
from blockflow.core.errors import ValidationError
from blockflow.core.history import (
    DEFAULT_HISTORY_CAPACITY,
    AddEdge,
    AddNode,
    HistoryStack,
    RemoveEdge,
    RemoveNode,
)

logger = logging.getLogger(__name__)


class EdgeKind(Enum):
    INPUT = "input"
    CONTEXT = "context"
    DATA_SOURCE_LINK = "dataSourceLink"


class GraphEvent(Enum):
    NODE_ADDED = "node_added"
    NODE_REMOVED = "node_removed"
    EDGE_ADDED = "edge_added"
    EDGE_REMOVED = "edge_removed"
    RESET = "reset"


Listener = Callable[[GraphEvent, Any], None]


@dataclass
class GraphNode:
    id: str
    block_type: str
    position: Dict[str, float] = field(default_factory=lambda: {"x": 0.0, "y": 0.0})
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> BlockKind:
        return BlockKind.parse(self.block_type)

    @property
    def is_source(self) -> bool:
        return get_block_spec(self.block_type).is_source

    @property
    def label(self) -> str:
        return self.data.get("label") or self.id

    def copy(self) -> "GraphNode":
        return GraphNode(self.id, self.block_type, dict(self.position), copy.deepcopy(self.data))

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.block_type,
                "position": dict(self.position), "data": copy.deepcopy(self.data)}

    @classmethod
    def from_dict(cls, d: dict) -> "GraphNode":
        return cls(
            id=d["id"],
            block_type=d.get("type") or d.get("blockType") or d["data"]["blockType"],
            position=dict(d.get("position") or {"x": 0.0, "y": 0.0}),
            data=copy.deepcopy(d.get("data") or {}),
        )


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    kind: EdgeKind = EdgeKind.INPUT

    def copy(self) -> "GraphEdge":
        return GraphEdge(self.id, self.source, self.target, self.kind)

    def to_dict(self) -> dict:
        return {"id": self.id, "source": self.source, "target": self.target, "type": self.kind.value}

    @classmethod
    def from_dict(cls, d: dict) -> "GraphEdge":
        return cls(
            id=d.get("id") or f"edge-{d['source']}-{d['target']}",
            source=d["source"],
            target=d["target"],
            kind=EdgeKind(d.get("type") or EdgeKind.INPUT.value),
        )


def edge_rule_error(kind: EdgeKind, source_type: str, target_type: str) -> Optional[str]:
    """
    Why an edge of `kind` between blocks of these types is not allowed, or
    None when it is.
    """
    source_spec = get_block_spec(source_type)
    target_spec = get_block_spec(target_type)
    if target_spec.is_source:
        return f"{target_type} is a data source and takes no inputs"
    if source_spec.is_source and kind is not EdgeKind.DATA_SOURCE_LINK:
        return "edges leaving a data source must be dataSourceLink"
    if kind is EdgeKind.DATA_SOURCE_LINK and not source_spec.is_source:
        return "dataSourceLink edges must start at a data source"
    if kind is EdgeKind.CONTEXT and not target_spec.has_context:
        return f"{target_type} has no context input"
    return None


class GraphModel:
    """
    Node and edge lists with history-aware edits.

    Listeners receive (GraphEvent, payload) after every change:
    NODE_ADDED -> GraphNode, NODE_REMOVED -> (GraphNode, [GraphEdge]),
    EDGE_ADDED / EDGE_REMOVED -> GraphEdge, RESET -> None.
    """

    def __init__(self, history_capacity: int = DEFAULT_HISTORY_CAPACITY):
        self.nodes: List[GraphNode] = []
        self.edges: List[GraphEdge] = []
        self.history = HistoryStack(history_capacity)
        self._listeners: List[Listener] = []
        self._ids = itertools.count(1)

    # ── Listeners ───────────────────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: GraphEvent, payload: Any) -> None:
        for listener in list(self._listeners):
            listener(event, payload)

    # ── Nodes ───────────────────────────────────────────────────────────────

    def generate_node_id(self, block_type: str) -> str:
        while True:
            node_id = f"{block_type}-{next(self._ids)}"
            if self.find_node(node_id) is None:
                return node_id

    def add_node(self, node: GraphNode, record: bool = True) -> GraphNode:
        if self.find_node(node.id) is not None:
            raise ValidationError(f"Duplicate node id: {node.id}")
        BlockKind.parse(node.block_type)

        self.nodes.append(node)
        if record:
            self.history.push(AddNode(node.copy()))
        self._emit(GraphEvent.NODE_ADDED, node)
        return node

    def remove_node(self, node_id: str, record: bool = True) -> Optional[GraphNode]:
        """Remove a node and its incident edges. Returns the removed node."""
        node = self.find_node(node_id)
        if node is None:
            logger.warning("Node not found: %s", node_id)
            return None

        incident = [e for e in self.edges if e.source == node_id or e.target == node_id]
        self.edges = [e for e in self.edges if e not in incident]
        self.nodes.remove(node)

        if record:
            self.history.push(RemoveNode(node.copy(), tuple(e.copy() for e in incident)))
        self._emit(GraphEvent.NODE_REMOVED, (node, incident))
        return node

    def update_node_data(self, node_id: str, data: Dict[str, Any]) -> None:
        """Merge into a node's data dict (not recorded in history)."""
        node = self.find_node(node_id)
        if node is None:
            logger.warning("Node not found: %s", node_id)
            return
        node.data.update(data)

    def find_node(self, node_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def find_node_by_source(self, source_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.data.get("source_id") == source_id:
                return node
        return None

    # ── Edges ───────────────────────────────────────────────────────────────

    def add_edge(self, edge: GraphEdge, record: bool = True) -> GraphEdge:
        """Add an edge. Nothing is stored or announced unless the edge is valid."""
        if self.find_edge(edge.id) is not None:
            raise ValidationError(f"Duplicate edge id: {edge.id}")
        for endpoint in (edge.source, edge.target):
            if self.find_node(endpoint) is None:
                raise ValidationError(f"Edge {edge.id} references unknown node {endpoint}")
        error = edge_rule_error(edge.kind, self.find_node(edge.source).block_type,
                                self.find_node(edge.target).block_type)
        if error:
            raise ValidationError(f"Edge {edge.id}: {error}")

        self.edges.append(edge)
        if record:
            self.history.push(AddEdge(edge.copy()))
        self._emit(GraphEvent.EDGE_ADDED, edge)
        return edge

    def remove_edge(self, edge_id: str, record: bool = True) -> Optional[GraphEdge]:
        edge = self.find_edge(edge_id)
        if edge is None:
            logger.warning("Edge not found: %s", edge_id)
            return None
        self.edges.remove(edge)
        if record:
            self.history.push(RemoveEdge(edge.copy()))
        self._emit(GraphEvent.EDGE_REMOVED, edge)
        return edge

    def connect(self, source: str, target: str, kind: Optional[EdgeKind] = None) -> GraphEdge:
        """
        Connect two nodes. Edges leaving a data-source node are always
        dataSourceLink; otherwise the kind defaults to input.
        """
        source_node = self.find_node(source)
        if source_node is None:
            raise ValidationError(f"Unknown source node: {source}")
        if self.find_node(target) is None:
            raise ValidationError(f"Unknown target node: {target}")

        if source_node.is_source:
            kind = EdgeKind.DATA_SOURCE_LINK
        elif kind is None:
            kind = EdgeKind.INPUT

        suffix = "" if kind is EdgeKind.INPUT else f"-{kind.value}"
        edge_id = f"edge-{source}-{target}{suffix}"
        if self.find_edge(edge_id) is not None:
            raise ValidationError(f"{source} is already connected to {target} ({kind.value})")
        return self.add_edge(GraphEdge(edge_id, source, target, kind))

    def find_edge(self, edge_id: str) -> Optional[GraphEdge]:
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None

    def outgoing_edges(self, node_id: str, kind: Optional[EdgeKind] = None) -> List[GraphEdge]:
        return [e for e in self.edges
                if e.source == node_id and (kind is None or e.kind is kind)]

    def incoming_edges(self, node_id: str, kind: Optional[EdgeKind] = None) -> List[GraphEdge]:
        return [e for e in self.edges
                if e.target == node_id and (kind is None or e.kind is kind)]

    # ── History ─────────────────────────────────────────────────────────────

    def undo(self) -> bool:
        return self.history.undo(self)

    def redo(self) -> bool:
        return self.history.redo(self)

    def reset(self) -> None:
        """Drop every node, edge and history entry."""
        self.nodes = []
        self.edges = []
        self.history.clear()
        self._emit(GraphEvent.RESET, None)
