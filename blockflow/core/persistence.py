# ═══════════════════════════════════════════════════════════════════════════════
# PART 15: NETWORK PERSISTENCE
# Design: I3 (State Management) | Implementation: I3 (State Management)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I3: "A network file is topology plus source configs. Engine handles are
process-local and never written. On load, sources come back first with their
seeds, blocks get fresh handles, then the wiring is replayed."
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import numpy as np

from blockflow.core.blocks import BlockKind
from blockflow.core.data_source import SourceKind
from blockflow.core.errors import BlockflowError, NetworkFormatError, PersistenceError, ValidationError
from blockflow.core.graph import EdgeKind, GraphEdge, GraphModel, GraphNode, edge_rule_error
from blockflow.core.source_registry import DataSourceRegistry

if TYPE_CHECKING:
    from blockflow.core.session import FlowSession

logger = logging.getLogger(__name__)

FORMAT_VERSION = "2.0"
SUPPORTED_MAJOR = "2"

# Node data that only means something inside a running process
_LIVE_KEYS = frozenset({"engine_handle", "state_preview", "current_value", "source_config"})


# ── Result Dataclasses ───────────────────────────────────────────────────────


@dataclass
class SaveResult:
    path: str
    timestamp: str
    node_count: int
    edge_count: int
    source_count: int
    size_bytes: int


@dataclass
class RestoreResult:
    node_count: int
    edge_count: int
    source_count: int
    id_map: Dict[str, str] = field(default_factory=dict)
    demo: Optional[str] = None


@dataclass
class VerificationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class NetworkDiff:
    nodes_added: List[dict] = field(default_factory=list)
    nodes_removed: List[dict] = field(default_factory=list)
    nodes_modified: List[Tuple[dict, dict]] = field(default_factory=list)
    edges_added: List[dict] = field(default_factory=list)
    edges_removed: List[dict] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.nodes_added or self.nodes_removed or self.nodes_modified
                    or self.edges_added or self.edges_removed)

    def to_dict(self) -> dict:
        return asdict(self)


class _NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        return super().default(obj)


# ── Serialization ────────────────────────────────────────────────────────────


def _persisted_node(node: GraphNode) -> dict:
    d = node.to_dict()
    d["data"] = {k: v for k, v in d["data"].items() if k not in _LIVE_KEYS}
    return d


def serialize_network(graph: GraphModel, registry: DataSourceRegistry,
                      demo: Optional[str] = None) -> dict:
    """Version-tagged, JSON-safe snapshot of the topology and every source config."""
    return {
        "version": FORMAT_VERSION,
        "timestamp": datetime.now().isoformat(),
        "demo": demo,
        "metadata": {
            "nodeCount": len(graph.nodes),
            "edgeCount": len(graph.edges),
        },
        "nodes": [_persisted_node(n) for n in graph.nodes],
        "edges": [e.to_dict() for e in graph.edges],
        "dataSources": registry.get_all_configs(),
    }


def validate_network_data(data: Any) -> List[str]:
    """Return a list of problems with a network file payload (empty when valid)."""
    if not isinstance(data, dict):
        return ["Network data must be a JSON object"]

    errors: List[str] = []
    version = data.get("version")
    if not version:
        errors.append("Missing version")
    elif str(version).split(".")[0] != SUPPORTED_MAJOR:
        errors.append(f"Unsupported version: {version}")
    if not isinstance(data.get("nodes"), list):
        errors.append("Missing nodes array")
    if not isinstance(data.get("edges"), list):
        errors.append("Missing edges array")
    if errors:
        return errors

    node_types: Dict[str, Optional[str]] = {}
    for i, node in enumerate(data["nodes"]):
        if not isinstance(node, dict):
            errors.append(f"Node {i}: not an object")
            continue
        block_type = node.get("type")
        if not block_type:
            errors.append(f"Node {i}: missing type")
        else:
            try:
                BlockKind.parse(block_type)
            except ValidationError:
                errors.append(f"Node {i}: unknown block type {block_type!r}")
                block_type = None
        node_id = node.get("id")
        if not node_id:
            errors.append(f"Node {i}: missing id")
        elif node_id in node_types:
            errors.append(f"Node {i}: duplicate id {node_id!r}")
        else:
            node_types[node_id] = block_type
        if not isinstance(node.get("position"), dict):
            errors.append(f"Node {i}: missing position")

    edge_types = {k.value for k in EdgeKind}
    edge_ids = set()
    for i, edge in enumerate(data["edges"]):
        if not isinstance(edge, dict):
            errors.append(f"Edge {i}: not an object")
            continue
        endpoints_known = True
        for end in ("source", "target"):
            if not edge.get(end):
                errors.append(f"Edge {i}: missing {end}")
                endpoints_known = False
            elif edge[end] not in node_types:
                errors.append(f"Edge {i}: {end} node {edge[end]!r} not found")
                endpoints_known = False

        edge_id = edge.get("id") or f"edge-{edge.get('source')}-{edge.get('target')}"
        if edge_id in edge_ids:
            errors.append(f"Edge {i}: duplicate id {edge_id!r}")
        edge_ids.add(edge_id)

        edge_type = edge.get("type") or EdgeKind.INPUT.value
        if edge_type not in edge_types:
            errors.append(f"Edge {i}: unknown edge type {edge.get('type')!r}")
            continue
        if endpoints_known:
            source_type = node_types[edge["source"]]
            target_type = node_types[edge["target"]]
            if source_type and target_type:
                rule = edge_rule_error(EdgeKind(edge_type), source_type, target_type)
                if rule:
                    errors.append(f"Edge {i}: {rule}")

    source_types = {k.value for k in SourceKind}
    for i, config in enumerate(data.get("dataSources") or []):
        if not isinstance(config, dict) or config.get("type") not in source_types:
            errors.append(f"Data source {i}: missing or unknown type")

    return errors


def diff_networks(a: dict, b: dict) -> NetworkDiff:
    """What changed going from network `a` to network `b` (by node and edge id)."""
    diff = NetworkDiff()
    nodes_a = {n["id"]: n for n in a.get("nodes", [])}
    nodes_b = {n["id"]: n for n in b.get("nodes", [])}

    for node_id, node in nodes_b.items():
        old = nodes_a.get(node_id)
        if old is None:
            diff.nodes_added.append(node)
        elif json.dumps(old, sort_keys=True, cls=_NumpyEncoder) != json.dumps(node, sort_keys=True, cls=_NumpyEncoder):
            diff.nodes_modified.append((old, node))
    diff.nodes_removed = [n for node_id, n in nodes_a.items() if node_id not in nodes_b]

    edges_a = {e["id"]: e for e in a.get("edges", [])}
    edges_b = {e["id"]: e for e in b.get("edges", [])}
    diff.edges_added = [e for edge_id, e in edges_b.items() if edge_id not in edges_a]
    diff.edges_removed = [e for edge_id, e in edges_a.items() if edge_id not in edges_b]
    return diff


# ── Persistence Class ────────────────────────────────────────────────────────


class NetworkPersistence:
    """
    Save and load networks for a FlowSession.

    Loading goes through the session's graph, so engine blocks and
    connections are recreated by the same code path as interactive edits.
    """

    # ── Public API ───────────────────────────────────────────────────────

    @classmethod
    def save(cls, session: "FlowSession", path: str) -> SaveResult:
        """Write the session's network to `path` (parent directories are created)."""
        data = serialize_network(session.graph, session.registry, session.demo)

        file_path = Path(path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "w") as f:
                json.dump(data, f, indent=2, cls=_NumpyEncoder)
        except OSError as exc:
            raise PersistenceError(f"Failed to save network to {path}: {exc}") from exc

        logger.info("Saved network to %s (%d nodes, %d edges)",
                    file_path, len(data["nodes"]), len(data["edges"]))
        return SaveResult(
            path=str(file_path),
            timestamp=data["timestamp"],
            node_count=len(data["nodes"]),
            edge_count=len(data["edges"]),
            source_count=len(data["dataSources"]),
            size_bytes=file_path.stat().st_size,
        )

    @classmethod
    def read(cls, path: str) -> dict:
        """Read and validate a network file without touching any session."""
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except OSError as exc:
            raise PersistenceError(f"Failed to read network file {path}: {exc}") from exc
        except ValueError as exc:
            raise NetworkFormatError(f"{path} is not valid JSON: {exc}") from exc

        errors = validate_network_data(data)
        if errors:
            raise NetworkFormatError(f"Invalid network file {path}: " + "; ".join(errors))
        return data

    @classmethod
    def load(cls, path: str, session: "FlowSession") -> RestoreResult:
        data = cls.read(path)
        result = cls.restore(data, session)
        logger.info("Loaded network from %s (%d nodes, %d edges, %d sources)",
                    path, result.node_count, result.edge_count, result.source_count)
        return result

    @classmethod
    def restore(cls, data: dict, session: "FlowSession") -> RestoreResult:
        """
        Replace the session's contents with a persisted network.

        Order: clear, sources (persisted seeds, fresh ids), nodes (fresh
        engine blocks), edges (engine connections), build. If anything
        fails part way, the session is left empty, never half loaded.
        """
        errors = validate_network_data(data)
        if errors:
            raise NetworkFormatError("; ".join(errors))

        session.clear()
        try:
            id_map = session.registry.load_from_configs(data.get("dataSources") or [], fresh_ids=True)

            with session.deferred_build():
                for raw in data["nodes"]:
                    node = GraphNode.from_dict(raw)
                    node.data = {k: v for k, v in node.data.items() if k not in _LIVE_KEYS}
                    if node.is_source:
                        cls._relink_source(node, id_map, session)
                    session.graph.add_node(node, record=False)

                for raw in data["edges"]:
                    session.graph.add_edge(GraphEdge.from_dict(raw), record=False)
        except BlockflowError as exc:
            logger.error("Failed to restore network; session cleared", exc_info=True)
            session.clear()
            raise NetworkFormatError(f"Failed to restore network: {exc}") from exc

        session.demo = data.get("demo")
        return RestoreResult(
            node_count=len(session.graph.nodes),
            edge_count=len(session.graph.edges),
            source_count=session.registry.source_count,
            id_map=id_map,
            demo=session.demo,
        )

    @classmethod
    def verify_file(cls, path: str) -> VerificationResult:
        """Check a network file without loading it."""
        try:
            cls.read(path)
        except PersistenceError as exc:
            return VerificationResult(valid=False, errors=[str(exc)])
        return VerificationResult(valid=True)

    @classmethod
    def to_json(cls, session: "FlowSession") -> str:
        return json.dumps(serialize_network(session.graph, session.registry, session.demo),
                          indent=2, cls=_NumpyEncoder)

    # ── Internal ─────────────────────────────────────────────────────────

    @staticmethod
    def _relink_source(node: GraphNode, id_map: Dict[str, str], session: "FlowSession") -> None:
        old_id = node.data.get("source_id")
        new_id = id_map.get(old_id)
        if new_id is None:
            logger.warning("Node %s references missing data source %s", node.id, old_id)
            return
        source = session.registry.get_source(new_id)
        node.data["source_id"] = new_id
        node.data["source_config"] = copy.deepcopy(source.get_config())
        node.data["current_value"] = source.get_value()
