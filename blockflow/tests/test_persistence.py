"""Tests for NetworkPersistence (BF-013)."""

import json
import os
import shutil
import tempfile

import numpy as np
import pytest

from blockflow.core.errors import NetworkFormatError, PersistenceError, StaleHandleError
from blockflow.core.persistence import (
    FORMAT_VERSION,
    NetworkPersistence,
    diff_networks,
    serialize_network,
    validate_network_data,
)
from blockflow.core.scheduler import ManualTimer
from blockflow.core.session import create_session


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory, cleaned up after test."""
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def session():
    s = create_session(timer=ManualTimer())
    s.load_demo("classification", seed=11)
    return s


def source_histories(session):
    return [session.registry.get_source_history(sid) for sid in session.registry.execution_order]


# ── Round trip ───────────────────────────────────────────────────────────────


def test_save_load_roundtrip(session, tmp_dir):
    path = os.path.join(tmp_dir, "net.json")
    saved = NetworkPersistence.save(session, path)
    assert saved.node_count == 6
    assert saved.edge_count == 5
    assert saved.source_count == 2
    assert saved.size_bytes > 0

    restored = create_session(timer=ManualTimer())
    result = NetworkPersistence.load(path, restored)

    assert result.node_count == 6
    assert result.edge_count == 5
    assert result.source_count == 2
    assert result.demo == "classification"
    assert [n.id for n in restored.graph.nodes] == [n.id for n in session.graph.nodes]
    assert {e.id for e in restored.graph.edges} == {e.id for e in session.graph.edges}


def test_reload_reproduces_source_sequences(session, tmp_dir):
    """Sources restart from their persisted seeds, so the first ticks replay."""
    session.step(8)
    expected = source_histories(session)

    path = os.path.join(tmp_dir, "net.json")
    NetworkPersistence.save(session, path)
    restored = create_session(timer=ManualTimer())
    NetworkPersistence.load(path, restored)
    restored.step(8)

    assert source_histories(restored) == expected


def test_reload_recreates_engine_blocks(session, tmp_dir):
    path = os.path.join(tmp_dir, "net.json")
    NetworkPersistence.save(session, path)
    restored = create_session(timer=ManualTimer())
    NetworkPersistence.load(path, restored)

    assert len(restored.handles) == 4
    calls = [c["method"] for c in restored.engine.call_log]
    assert calls.count("add_block") == 4
    assert calls.count("connect_to_input") == 3
    assert calls.count("init_block") == 2
    assert restored.step(3)[-1].step == 3


def test_restore_relinks_fresh_source_ids(session):
    data = serialize_network(session.graph, session.registry, session.demo)
    restored = create_session(timer=ManualTimer())
    result = NetworkPersistence.restore(data, restored)

    assert len(result.id_map) == 2
    for old_id, new_id in result.id_map.items():
        assert old_id != new_id
        node = restored.graph.find_node_by_source(new_id)
        assert node is not None
        assert node.data["source_config"]["id"] == new_id


def test_restore_is_not_undoable(session):
    data = serialize_network(session.graph, session.registry)
    restored = create_session(timer=ManualTimer())
    NetworkPersistence.restore(data, restored)
    assert len(restored.graph.history) == 0
    assert restored.undo() is False


def test_restore_replaces_existing_contents(session):
    data = serialize_network(session.graph, session.registry)
    other = create_session(timer=ManualTimer())
    other.load_demo("pooling")
    NetworkPersistence.restore(data, other)
    assert len(other.graph.nodes) == 6
    assert other.registry.source_count == 2
    assert len(other.handles) == 4


# ── File layout ──────────────────────────────────────────────────────────────


def test_saved_file_layout(session, tmp_dir):
    session.step(2)
    path = os.path.join(tmp_dir, "net.json")
    NetworkPersistence.save(session, path)
    with open(path) as f:
        data = json.load(f)

    assert data["version"] == FORMAT_VERSION
    assert data["metadata"] == {"nodeCount": 6, "edgeCount": 5}
    assert len(data["dataSources"]) == 2
    for node in data["nodes"]:
        for key in ("engine_handle", "state_preview", "current_value", "source_config"):
            assert key not in node["data"]
    assert {e["type"] for e in data["edges"]} == {"dataSourceLink", "input"}


def test_save_creates_parent_dirs(session, tmp_dir):
    path = os.path.join(tmp_dir, "a", "b", "net.json")
    NetworkPersistence.save(session, path)
    assert os.path.exists(path)


def test_to_json_handles_numpy_values(session):
    session.graph.update_node_data(session.graph.nodes[2].id, {"gain": np.float32(0.5)})
    data = json.loads(NetworkPersistence.to_json(session))
    assert data["nodes"][2]["data"]["gain"] == 0.5


# ── Validation ───────────────────────────────────────────────────────────────


def valid_payload():
    return {
        "version": "2.0",
        "nodes": [
            {"id": "a", "type": "ScalarTransformer", "position": {"x": 0, "y": 0}, "data": {}},
            {"id": "b", "type": "PatternPooler", "position": {"x": 0, "y": 0}, "data": {}},
        ],
        "edges": [{"id": "e", "source": "a", "target": "b", "type": "input"}],
        "dataSources": [],
    }


def test_valid_payload_has_no_errors():
    assert validate_network_data(valid_payload()) == []


def test_validation_messages():
    assert validate_network_data([]) == ["Network data must be a JSON object"]
    assert validate_network_data({"nodes": [], "edges": []}) == ["Missing version"]
    assert validate_network_data({"version": "3.0", "nodes": [], "edges": []}) == [
        "Unsupported version: 3.0",
    ]
    assert validate_network_data({"version": "2.0"}) == ["Missing nodes array", "Missing edges array"]


def test_validation_of_nodes_and_edges():
    data = valid_payload()
    data["nodes"][1]["type"] = "Mystery"
    del data["nodes"][0]["position"]
    data["edges"].append({"id": "f", "source": "a", "target": "ghost", "type": "wire"})
    data["dataSources"] = [{"type": "vector"}]

    errors = validate_network_data(data)
    assert "Node 0: missing position" in errors
    assert "Node 1: unknown block type 'Mystery'" in errors
    assert "Edge 1: target node 'ghost' not found" in errors
    assert "Edge 1: unknown edge type 'wire'" in errors
    assert "Data source 0: missing or unknown type" in errors


def test_validation_of_duplicates_and_edge_rules():
    data = valid_payload()
    data["nodes"].append({"id": "src", "type": "ScalarDataSource", "position": {"x": 0, "y": 0}, "data": {}})
    data["nodes"].append({"id": "a", "type": "SequenceLearner", "position": {"x": 0, "y": 0}, "data": {}})
    data["edges"] += [
        {"id": "e", "source": "b", "target": "a", "type": "input"},
        {"id": "ctx", "source": "a", "target": "b", "type": "context"},
        {"id": "link", "source": "a", "target": "b", "type": "dataSourceLink"},
        {"id": "into", "source": "a", "target": "src", "type": "input"},
        {"id": "from", "source": "src", "target": "b", "type": "input"},
    ]

    errors = validate_network_data(data)
    assert "Node 3: duplicate id 'a'" in errors
    assert "Edge 1: duplicate id 'e'" in errors
    assert "Edge 2: PatternPooler has no context input" in errors
    assert "Edge 3: dataSourceLink edges must start at a data source" in errors
    assert "Edge 4: ScalarDataSource is a data source and takes no inputs" in errors
    assert "Edge 5: edges leaving a data source must be dataSourceLink" in errors


def test_restore_rejects_context_edge_into_transformer():
    data = valid_payload()
    data["edges"] = [{"id": "bad", "source": "b", "target": "a", "type": "context"}]
    s = create_session(timer=ManualTimer())
    with pytest.raises(NetworkFormatError):
        NetworkPersistence.restore(data, s)
    assert s.graph.edges == []
    assert s.engine.blocks == {}


def test_failed_restore_leaves_session_empty(session):
    data = serialize_network(session.graph, session.registry, session.demo)
    restored = create_session(timer=ManualTimer())
    restored.load_demo("pooling")

    def refuse(source, target):
        raise StaleHandleError(f"Unknown engine handle: {source}")

    restored.engine.connect_to_input = refuse
    with pytest.raises(NetworkFormatError):
        NetworkPersistence.restore(data, restored)

    assert restored.graph.nodes == []
    assert restored.graph.edges == []
    assert restored.registry.source_count == 0
    assert len(restored.handles) == 0
    assert restored.engine.blocks == {}


def test_restore_rejects_invalid_data():
    s = create_session(timer=ManualTimer())
    with pytest.raises(NetworkFormatError):
        NetworkPersistence.restore({"version": "9.0", "nodes": [], "edges": []}, s)


def test_read_errors(tmp_dir):
    with pytest.raises(PersistenceError) as info:
        NetworkPersistence.read(os.path.join(tmp_dir, "missing.json"))
    assert not isinstance(info.value, NetworkFormatError)

    bad = os.path.join(tmp_dir, "bad.json")
    with open(bad, "w") as f:
        f.write("{ nope")
    with pytest.raises(NetworkFormatError):
        NetworkPersistence.read(bad)


def test_verify_file(session, tmp_dir):
    good = os.path.join(tmp_dir, "good.json")
    NetworkPersistence.save(session, good)
    assert NetworkPersistence.verify_file(good).valid

    bad = os.path.join(tmp_dir, "bad.json")
    with open(bad, "w") as f:
        json.dump({"version": "2.0", "nodes": "x", "edges": []}, f)
    result = NetworkPersistence.verify_file(bad)
    assert not result.valid
    assert "Missing nodes array" in result.errors[0]


# ── Diff ─────────────────────────────────────────────────────────────────────


def test_diff_networks():
    a = valid_payload()
    b = valid_payload()
    b["nodes"].append({"id": "c", "type": "SequenceLearner", "position": {"x": 0, "y": 0}, "data": {}})
    b["nodes"][0]["data"] = {"label": "renamed"}
    b["edges"] = []

    diff = diff_networks(a, b)
    assert [n["id"] for n in diff.nodes_added] == ["c"]
    assert [old["id"] for old, _new in diff.nodes_modified] == ["a"]
    assert [e["id"] for e in diff.edges_removed] == ["e"]
    assert diff.nodes_removed == []
    assert not diff.is_empty
    assert diff_networks(a, valid_payload()).is_empty
