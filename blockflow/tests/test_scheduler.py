"""Tests for ExecutionScheduler and timers (BF-012)."""

import json
import logging

import pytest

from blockflow.core.errors import EngineStepFailure
from blockflow.core.graph import GraphModel
from blockflow.core.scheduler import BlockingTimer, ExecutionScheduler, ManualTimer, TickTimings
from blockflow.core.session import FlowSession
from blockflow.core.source_registry import DataSourceRegistry
from blockflow.core.visualization import VisualizationBuffer


class FakeClock:
    """Monotonic fake time; sleep() advances it."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session(clock):
    s = FlowSession(timer=ManualTimer(), clock=clock)
    s.src = s.add_data_source("scalar", {"pattern": "constant", "offset": 0.5, "seed": 1}, label="Level")
    s.enc = s.add_block("ScalarTransformer", params={"size": 64})
    s.connect(s.src.id, s.enc.id)
    return s


def raise_error(*_args, **_kwargs):
    raise RuntimeError("boom")


# ── Control ──────────────────────────────────────────────────────────────────


def test_start_without_engine_fails():
    scheduler = ExecutionScheduler(DataSourceRegistry(), GraphModel(), VisualizationBuffer(),
                                   timer=ManualTimer())
    assert scheduler.start() is False
    assert not scheduler.running
    assert scheduler.step() is None


def test_manual_timer_drives_ticks(session):
    timer = session.scheduler.timer
    assert session.start() is True
    assert session.scheduler.running
    assert timer.interval_s == pytest.approx(0.05)

    assert timer.fire(3) == 3
    assert session.scheduler.step_counter == 3

    session.stop()
    assert not session.scheduler.running
    assert timer.fire() == 0


def test_state_snapshot(session):
    session.step(2)
    tick = session.scheduler.state
    assert tick.step_counter == 2
    assert tick.interval_ms == 50
    assert tick.learning_enabled is True
    assert tick.running is False


def test_reset_zeroes_counter(session):
    session.step(4)
    session.scheduler.reset()
    assert session.scheduler.step_counter == 0
    assert session.scheduler.last_result is None
    assert session.scheduler.timings.count == 0


def test_set_interval_updates_timer(session):
    session.start()
    session.scheduler.set_interval(20)
    assert session.scheduler.config.interval_ms == 20
    assert session.scheduler.timer.interval_s == pytest.approx(0.02)


def test_learning_flag_reaches_engine(session):
    session.scheduler.set_learning(False)
    session.step()
    assert session.engine.call_log[-2] == {"method": "execute", "learn": False}
    assert session.scheduler.toggle_learning() is True
    session.step()
    executes = [c for c in session.engine.call_log if c["method"] == "execute"]
    assert executes[-1]["learn"] is True


# ── Tick ─────────────────────────────────────────────────────────────────────


def test_tick_publishes_values_and_views(session, clock):
    result = session.step()[0]

    source_id = session.src.data["source_id"]
    assert result.step == 1
    assert result.values == {source_id: 0.5}
    assert result.dispatched == 1
    assert result.mismatches == []
    assert result.outputs[session.enc.id] == pytest.approx(6 / 64)

    assert session.src.data["current_value"] == 0.5
    bits = session.visualization.get_bitfield(session.enc.id)
    assert len(bits) == 64
    assert int(bits.sum()) == 6
    assert session.enc.data["state_preview"] == bits[:8].tolist()
    assert session.visualization.get_time_series(session.enc.id)[0].timestamp == clock.now


def test_dispatch_sets_engine_value(session):
    session.step()
    handle = session.handles.resolve(session.enc.id)
    sets = [c for c in session.engine.call_log if c["method"] == "set_scalar_value"]
    assert sets == [{"method": "set_scalar_value", "handle": handle.id, "value": 0.5}]


def test_tick_order(session):
    session.engine.call_log.clear()
    session.step()
    assert [c["method"] for c in session.engine.call_log] == [
        "set_scalar_value", "execute", "get_state_json",
    ]


def test_step_counter_is_monotonic(session):
    steps = [r.step for r in session.step(5)]
    assert steps == [1, 2, 3, 4, 5]
    assert len(session.visualization.get_values(session.enc.id)) == 5
    assert session.scheduler.timings.count == 5


def test_tick_listener(session):
    seen = []
    session.scheduler.add_tick_listener(lambda result: seen.append(result.step))
    session.step(3)
    assert seen == [1, 2, 3]


def test_failing_listener_does_not_break_the_tick(session, caplog):
    seen = []
    session.scheduler.add_tick_listener(raise_error)
    session.scheduler.add_tick_listener(lambda result: seen.append(result.step))

    with caplog.at_level(logging.ERROR):
        results = session.step(2)

    assert [r.step for r in results] == [1, 2]
    assert seen == [1, 2]
    assert session.scheduler.last_error is None
    assert "Tick listener failed at step 1" in caplog.text


def test_failing_listener_under_blocking_timer(clock):
    s = FlowSession(timer=BlockingTimer(max_ticks=3, sleep=clock.sleep, clock=clock), clock=clock)
    s.load_demo("sequence", seed=1)
    s.scheduler.add_tick_listener(raise_error)
    assert s.start() is True
    assert s.scheduler.step_counter == 3
    assert not s.scheduler.running


def test_disabled_source_is_not_dispatched(session):
    session.registry.set_source_enabled(session.src.data["source_id"], False)
    result = session.step()[0]
    assert result.values == {}
    assert result.dispatched == 0


# ── Failure isolation ────────────────────────────────────────────────────────


def test_throwing_source_does_not_stop_tick(session):
    other = session.add_data_source("scalar", {"pattern": "constant", "offset": 0.25, "seed": 2})
    broken_id = session.src.data["source_id"]
    session.registry.get_source(broken_id).generate_next = raise_error

    result = session.step()[0]

    assert result.step == 1
    assert result.values == {other.data["source_id"]: 0.25}
    assert broken_id in session.registry.last_errors
    assert session.scheduler.last_error is None


def test_kind_mismatch_is_skipped(session, caplog):
    discrete = session.add_data_source("discrete", {"pattern": "sequential", "seed": 3})
    session.connect(discrete.id, session.enc.id)

    with caplog.at_level(logging.WARNING):
        result = session.step()[0]

    assert result.dispatched == 1
    assert len(result.mismatches) == 1
    mismatch = result.mismatches[0]
    assert mismatch.source_kind == "discrete"
    assert mismatch.target_kind == "scalar"
    assert "Skipped dispatch" in caplog.text


def test_failing_setter_is_isolated(session, caplog):
    session.engine.set_scalar_value = raise_error
    with caplog.at_level(logging.ERROR):
        result = session.step()[0]
    assert result.dispatched == 0
    assert result.step == 1
    assert "Dispatch from" in caplog.text


def test_engine_failure_stops_run(session, caplog):
    session.step(2)
    session.start()
    session.engine.execute = raise_error

    with caplog.at_level(logging.ERROR):
        session.scheduler.timer.fire()

    error = session.scheduler.last_error
    assert isinstance(error, EngineStepFailure)
    assert error.step == 2
    assert isinstance(error.cause, RuntimeError)
    assert session.scheduler.step_counter == 2
    assert not session.scheduler.running
    assert not session.scheduler.timer.active
    assert "Execution failed at step 2" in caplog.text


def test_manual_step_failure_returns_none(session):
    session.engine.get_state_json = raise_error
    assert session.scheduler.step() is None
    assert session.scheduler.step_counter == 0
    assert session.step(3) == []


def test_malformed_state_publishes_zeros(session, caplog):
    session.engine.get_state_json = lambda: "not json"
    with caplog.at_level(logging.WARNING):
        result = session.step()[0]
    bits = session.visualization.get_bitfield(session.enc.id)
    assert len(bits) == 64
    assert not bits.any()
    assert result.outputs[session.enc.id] == 0.0
    assert "Unreadable engine state" in caplog.text


def test_wrongly_shaped_state_publishes_zeros(session, caplog):
    session.engine.get_state_json = lambda: json.dumps({"blocks": [{"num_bits": 4}]})
    with caplog.at_level(logging.WARNING):
        result = session.step()[0]
    assert result.step == 1
    assert session.scheduler.last_error is None
    assert not session.visualization.get_bitfield(session.enc.id).any()
    assert "Unreadable engine state" in caplog.text


def test_reentrant_tick_is_dropped(session, caplog):
    inner = []

    def reentrant():
        inner.append(session.scheduler.step())
        return 0.5

    session.registry.get_source(session.src.data["source_id"]).generate_next = reentrant
    with caplog.at_level(logging.WARNING):
        result = session.step()[0]
    assert inner == [None]
    assert result.step == 1
    assert "tick is in progress" in caplog.text


# ── Readouts ─────────────────────────────────────────────────────────────────


def test_anomaly_readout(session):
    seq = session.add_block("SequenceLearner", params={"num_c": 32})
    session.connect(session.enc.id, seq.id)
    first, second = session.step(2)
    assert first.outputs[seq.id] == 1.0
    assert second.outputs[seq.id] == 0.0


def test_probability_readout(session):
    cls = session.add_block("PatternClassifier", params={"numClasses": 4})
    session.connect(session.enc.id, cls.id)
    result = session.step()[0]
    assert 0.25 <= result.outputs[cls.id] <= 1.0


# ── Timers ───────────────────────────────────────────────────────────────────


def test_blocking_timer_runs_max_ticks(clock):
    calls = []
    timer = BlockingTimer(max_ticks=4, sleep=clock.sleep, clock=clock)
    timer.schedule(0.05, lambda: calls.append(clock.now))
    assert len(calls) == 4
    assert calls[1] - calls[0] == pytest.approx(0.05)
    assert timer.overruns == 0
    assert not timer.active


def test_blocking_timer_skips_missed_deadlines(clock):
    def slow_tick():
        clock.now += 0.12

    timer = BlockingTimer(max_ticks=3, sleep=clock.sleep, clock=clock)
    timer.schedule(0.05, slow_tick)
    assert timer.ticks == 3
    assert timer.overruns >= 2


def test_blocking_timer_cancel_from_callback(clock):
    timer = BlockingTimer(sleep=clock.sleep, clock=clock)
    calls = []

    def tick():
        calls.append(1)
        if len(calls) == 2:
            timer.cancel()

    timer.schedule(0.01, tick)
    assert len(calls) == 2


def test_blocking_timer_counts_ticks_per_schedule(clock):
    timer = BlockingTimer(max_ticks=2, sleep=clock.sleep, clock=clock)
    calls = []
    timer.schedule(0.01, lambda: calls.append(1))
    timer.schedule(0.01, lambda: calls.append(2))
    assert calls == [1, 1, 2, 2]
    assert timer.ticks == 2


def test_session_restarts_on_same_blocking_timer(clock):
    s = FlowSession(timer=BlockingTimer(max_ticks=4, sleep=clock.sleep, clock=clock), clock=clock)
    s.load_demo("sequence", seed=1)
    s.start()
    s.start()
    assert s.scheduler.step_counter == 8


def test_blocking_session_run(clock):
    s = FlowSession(timer=BlockingTimer(max_ticks=5, sleep=clock.sleep, clock=clock), clock=clock)
    s.load_demo("sequence", seed=1)
    assert s.start() is True
    assert s.scheduler.step_counter == 5
    assert not s.scheduler.running


def test_tick_timings():
    timings = TickTimings()
    assert timings.mean_ms == 0.0
    timings.record(2.0)
    timings.record(4.0)
    assert timings.mean_ms == pytest.approx(3.0)
    assert timings.max_ms == 4.0
