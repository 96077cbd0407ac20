# ═══════════════════════════════════════════════════════════════════════════════
# PART 12: EDIT HISTORY
# Design: I3 (State Management) | Implementation: I3 (State Management)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I3: "Four edits, four inverses. Adding a node undoes by removing it, removing
a node undoes by putting it back along with every edge it took with it. One
cursor, fifty entries, and a new edit after an undo throws the redo tail
away."
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Tuple, Type, Union

if TYPE_CHECKING:
    from blockflow.core.graph import GraphEdge, GraphModel, GraphNode

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 50


@dataclass(frozen=True)
class AddNode:
    node: "GraphNode"
    edges: Tuple["GraphEdge", ...] = ()


@dataclass(frozen=True)
class RemoveNode:
    node: "GraphNode"
    edges: Tuple["GraphEdge", ...] = ()     # Incident edges removed with the node


@dataclass(frozen=True)
class AddEdge:
    edge: "GraphEdge"


@dataclass(frozen=True)
class RemoveEdge:
    edge: "GraphEdge"


HistoryEntry = Union[AddNode, RemoveNode, AddEdge, RemoveEdge]


INVERSES: Dict[Type, Callable[..., HistoryEntry]] = {
    AddNode: lambda e: RemoveNode(e.node, e.edges),
    RemoveNode: lambda e: AddNode(e.node, e.edges),
    AddEdge: lambda e: RemoveEdge(e.edge),
    RemoveEdge: lambda e: AddEdge(e.edge),
}


def inverse(entry: HistoryEntry) -> HistoryEntry:
    return INVERSES[type(entry)](entry)


def apply_entry(entry: HistoryEntry, graph: "GraphModel") -> None:
    """Replay one entry onto a graph without recording it."""
    if isinstance(entry, AddNode):
        graph.add_node(entry.node.copy(), record=False)
        for edge in entry.edges:
            graph.add_edge(edge.copy(), record=False)
    elif isinstance(entry, RemoveNode):
        graph.remove_node(entry.node.id, record=False)
    elif isinstance(entry, AddEdge):
        graph.add_edge(entry.edge.copy(), record=False)
    elif isinstance(entry, RemoveEdge):
        graph.remove_edge(entry.edge.id, record=False)
    else:
        raise TypeError(f"Unknown history entry: {entry!r}")


class HistoryStack:
    """
    Bounded undo/redo log with a single cursor.

    `cursor` is the index of the last applied entry (-1 when nothing can be
    undone).
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._entries: List[HistoryEntry] = []
        self._cursor = -1

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def entries(self) -> List[HistoryEntry]:
        return list(self._entries)

    @property
    def can_undo(self) -> bool:
        return self._cursor >= 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._entries) - 1

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, entry: HistoryEntry) -> None:
        # Truncate redo tail
        del self._entries[self._cursor + 1:]
        self._entries.append(entry)
        if len(self._entries) > self.capacity:
            self._entries.pop(0)
        self._cursor = len(self._entries) - 1

    def undo(self, graph: "GraphModel") -> bool:
        if not self.can_undo:
            return False
        entry = self._entries[self._cursor]
        apply_entry(inverse(entry), graph)
        self._cursor -= 1
        logger.debug("Undo %s", type(entry).__name__)
        return True

    def redo(self, graph: "GraphModel") -> bool:
        if not self.can_redo:
            return False
        self._cursor += 1
        entry = self._entries[self._cursor]
        apply_entry(entry, graph)
        logger.debug("Redo %s", type(entry).__name__)
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._cursor = -1
