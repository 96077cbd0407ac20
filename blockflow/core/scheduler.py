# ═══════════════════════════════════════════════════════════════════════════════
# PART 14: EXECUTION SCHEDULER
# Design: I1 (Systems Architect) + S2 (Distributed Systems)
# Implementation: I1 (Systems Architect)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I1: "One tick, six steps, always in the same order: sources, dispatch,
engine, state pull, publish, count. Nothing interleaves with a tick."

S2: "Failures are scoped. A source or an edge fails alone. If the engine
fails, every view built from it is suspect, so the loop stops and keeps
the error for whoever looks next. No retry, no rollback."
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np

from blockflow.core.blocks import ReadoutKind, bit_width, get_block_spec
from blockflow.core.data_source import Number, SourceKind
from blockflow.core.engine import BlockHandle, ComputeEngine, HandleRegistry
from blockflow.core.engine_state import EngineState, decode_state, to_bitfield
from blockflow.core.errors import DispatchMismatch, EngineStepFailure, MalformedTraceData
from blockflow.core.graph import EdgeKind, GraphModel, GraphNode
from blockflow.core.source_registry import DataSourceRegistry
from blockflow.core.visualization import VisualizationBuffer

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    interval_ms: int = 50               # Tick period
    learning_enabled: bool = True
    max_points: int = 100               # Time-series capacity per node
    slow_step_warning_ms: float = 250.0


@dataclass
class ExecutionTick:
    running: bool
    interval_ms: int
    learning_enabled: bool
    step_counter: int


@dataclass
class TickResult:
    step: int
    values: Dict[str, Number]
    dispatched: int
    mismatches: List[DispatchMismatch] = field(default_factory=list)
    outputs: Dict[str, float] = field(default_factory=dict)
    duration_ms: float = 0.0


@dataclass
class TickTimings:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    overruns: int = 0

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def record(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)


# ── Timers ───────────────────────────────────────────────────────────────────


class Timer(ABC):
    """Periodic callback driver."""

    interval_s: float = 0.0
    overruns: int = 0

    @abstractmethod
    def schedule(self, interval_s: float, callback: Callable[[], None]) -> None:
        """Start calling `callback` every `interval_s` seconds."""

    @abstractmethod
    def cancel(self) -> None:
        pass

    @property
    @abstractmethod
    def active(self) -> bool:
        pass

    def set_interval(self, interval_s: float) -> None:
        self.interval_s = interval_s


class ManualTimer(Timer):
    """Fires only when told to. For tests and step-through debugging."""

    def __init__(self):
        self._callback: Optional[Callable[[], None]] = None

    @property
    def active(self) -> bool:
        return self._callback is not None

    def schedule(self, interval_s: float, callback: Callable[[], None]) -> None:
        self.interval_s = interval_s
        self._callback = callback

    def cancel(self) -> None:
        self._callback = None

    def fire(self, times: int = 1) -> int:
        """Invoke the callback up to `times` times. Returns how many fired."""
        fired = 0
        for _ in range(times):
            if self._callback is None:
                break
            self._callback()
            fired += 1
        return fired


class BlockingTimer(Timer):
    """
    Runs the callback in the calling thread until cancelled or `max_ticks`
    callbacks have run (counted per schedule() call).

    Deadlines missed because a callback overran the period are skipped,
    not queued, and counted in `overruns`.
    """

    def __init__(self, max_ticks: Optional[int] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.max_ticks = max_ticks
        self.ticks = 0
        self._sleep = sleep
        self._clock = clock
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def schedule(self, interval_s: float, callback: Callable[[], None]) -> None:
        self.interval_s = interval_s
        self.ticks = 0
        self._active = True
        deadline = self._clock() + self.interval_s

        try:
            while self._active and (self.max_ticks is None or self.ticks < self.max_ticks):
                now = self._clock()
                if now < deadline:
                    self._sleep(deadline - now)

                callback()
                self.ticks += 1

                deadline += self.interval_s
                now = self._clock()
                if now > deadline and self.interval_s > 0:
                    missed = int((now - deadline) // self.interval_s) + 1
                    self.overruns += missed
                    deadline += missed * self.interval_s
        finally:
            self._active = False

    def cancel(self) -> None:
        self._active = False


# ── Scheduler ────────────────────────────────────────────────────────────────


class ExecutionScheduler:
    """
    The tick loop.

    Each tick, synchronously:
    1. execute every enabled data source
    2. publish each value into its graph node and forward it along
       dataSourceLink edges into matching engine blocks
    3. engine.execute(learning_enabled)
    4. pull the engine state and decode per-node bitfields and readouts
    5. publish bitfields (replace) and readouts (append) to the buffers
    6. step_counter += 1

    Any failure in steps 1-5 outside the per-source and per-edge isolation
    stops the loop and is kept in `last_error`.
    """

    def __init__(
        self,
        registry: DataSourceRegistry,
        graph: GraphModel,
        visualization: VisualizationBuffer,
        engine: Optional[ComputeEngine] = None,
        config: Optional[SchedulerConfig] = None,
        timer: Optional[Timer] = None,
        clock: Callable[[], float] = time.time,
        handles: Optional[HandleRegistry] = None,
    ):
        self.registry = registry
        self.graph = graph
        self.visualization = visualization
        self.engine = engine
        self.config = config or SchedulerConfig()
        self.timer = timer or BlockingTimer()
        self.clock = clock
        self.handles = handles

        self.last_error: Optional[EngineStepFailure] = None
        self.last_result: Optional[TickResult] = None
        self.timings = TickTimings()

        self._running = False
        self._step_counter = 0
        self._in_tick = False
        self._tick_listeners: List[Callable[[TickResult], None]] = []

    # ── Properties ──────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def step_counter(self) -> int:
        return self._step_counter

    @property
    def state(self) -> ExecutionTick:
        return ExecutionTick(
            running=self._running,
            interval_ms=self.config.interval_ms,
            learning_enabled=self.config.learning_enabled,
            step_counter=self._step_counter,
        )

    # ── Control ─────────────────────────────────────────────────────────────

    def attach_engine(self, engine: ComputeEngine) -> None:
        self.engine = engine

    def detach_engine(self) -> None:
        self.stop()
        self.engine = None

    def start(self) -> bool:
        """
        Start the timer. Returns False when no engine is attached.

        With a BlockingTimer this call returns only once the loop ends.
        """
        if self.engine is None:
            logger.warning("Cannot start: no engine attached")
            return False
        if self._running:
            return True

        self._running = True
        self.last_error = None
        logger.info("Execution started (interval=%dms, learning=%s)",
                    self.config.interval_ms, self.config.learning_enabled)
        self.timer.schedule(self.config.interval_ms / 1000.0, self._on_timer)

        if not self.timer.active and self._running:
            self._running = False
            logger.info("Execution finished at step %d", self._step_counter)
        return True

    def stop(self) -> None:
        was_running = self._running
        self._running = False
        self.timer.cancel()
        if was_running:
            logger.info("Execution stopped at step %d", self._step_counter)

    def reset(self) -> None:
        self.stop()
        self._step_counter = 0
        self.last_error = None
        self.last_result = None
        self.timings = TickTimings()

    def set_interval(self, interval_ms: int) -> None:
        self.config.interval_ms = int(interval_ms)
        self.timer.set_interval(self.config.interval_ms / 1000.0)

    def set_learning(self, enabled: bool) -> None:
        self.config.learning_enabled = bool(enabled)

    def toggle_learning(self) -> bool:
        self.config.learning_enabled = not self.config.learning_enabled
        return self.config.learning_enabled

    def add_tick_listener(self, listener: Callable[[TickResult], None]) -> None:
        """
        Called with each successful TickResult, after publication. A listener
        that raises is logged and does not affect the tick.
        """
        self._tick_listeners.append(listener)

    def step(self) -> Optional[TickResult]:
        """Run exactly one tick, whether or not the timer is running."""
        if self.engine is None:
            logger.warning("Cannot step: no engine attached")
            return None
        return self._tick()

    # ── Tick ────────────────────────────────────────────────────────────────

    def _on_timer(self) -> None:
        if self._running and self.engine is not None:
            self._tick()

    def _tick(self) -> Optional[TickResult]:
        if self._in_tick:
            logger.warning("Tick requested while a tick is in progress; dropped")
            return None

        self._in_tick = True
        started = time.perf_counter()
        try:
            values = self.registry.execute_all_sources()
            dispatched, mismatches = self._dispatch(values)

            t0 = time.perf_counter()
            self.engine.execute(self.config.learning_enabled)
            self._check_slow("execute", t0)

            outputs = self._publish()
        except Exception as exc:
            self.last_error = EngineStepFailure(self._step_counter, exc)
            logger.error("Execution failed at step %d; stopping", self._step_counter, exc_info=True)
            self.stop()
            return None
        finally:
            self._in_tick = False

        self._step_counter += 1
        duration_ms = (time.perf_counter() - started) * 1000.0
        self.timings.record(duration_ms)
        self.timings.overruns = self.timer.overruns

        self.last_result = TickResult(
            step=self._step_counter,
            values=values,
            dispatched=dispatched,
            mismatches=mismatches,
            outputs=outputs,
            duration_ms=duration_ms,
        )
        for listener in list(self._tick_listeners):
            try:
                listener(self.last_result)
            except Exception:
                logger.error("Tick listener failed at step %d", self._step_counter, exc_info=True)
        return self.last_result

    def _dispatch(self, values: Dict[str, Number]):
        dispatched = 0
        mismatches: List[DispatchMismatch] = []

        for source_id, value in values.items():
            source = self.registry.get_source(source_id)
            node = self.graph.find_node_by_source(source_id)
            if source is None or node is None:
                continue
            self.graph.update_node_data(node.id, {"current_value": value})

            for edge in self.graph.outgoing_edges(node.id, EdgeKind.DATA_SOURCE_LINK):
                target = self.graph.find_node(edge.target)
                if target is None:
                    continue
                handle = self._handle_for(target)
                if handle is None:
                    continue

                consumes = get_block_spec(target.block_type).consumes
                if consumes is not source.kind:
                    mismatch = DispatchMismatch(
                        source_id=source_id,
                        source_kind=source.kind.value,
                        target_node=target.id,
                        target_kind=consumes.value if consumes else None,
                    )
                    logger.warning("Skipped dispatch: %s", mismatch.describe())
                    mismatches.append(mismatch)
                    continue

                try:
                    if consumes is SourceKind.SCALAR:
                        self.engine.set_scalar_value(handle.id, value)
                    else:
                        self.engine.set_discrete_value(handle.id, value)
                    dispatched += 1
                except Exception:
                    logger.error("Dispatch from %s to %s failed", source_id, target.id, exc_info=True)

        return dispatched, mismatches

    def _publish(self) -> Dict[str, float]:
        t0 = time.perf_counter()
        raw = self.engine.get_state_json()
        self._check_slow("get_state_json", t0)

        try:
            state = decode_state(raw)
        except MalformedTraceData as exc:
            logger.warning("Unreadable engine state, publishing empty bitfields: %s", exc)
            state = EngineState()

        now = self.clock()
        outputs: Dict[str, float] = {}
        for node in list(self.graph.nodes):
            handle = self._handle_for(node)
            if handle is None:
                continue

            width = bit_width(node.block_type, node.data.get("params"))
            trace = state.trace(handle.id)
            bits = to_bitfield(trace, width)
            value = self._readout(node, handle, trace)

            self.visualization.update_bitfield(node.id, bits)
            self.visualization.update_time_series(node.id, value, now)
            self.graph.update_node_data(node.id, {"state_preview": bits[:8].tolist()})
            outputs[node.id] = value

        return outputs

    def _readout(self, node: GraphNode, handle: BlockHandle, trace) -> float:
        readout = get_block_spec(node.block_type).readout
        if readout is ReadoutKind.PROBABILITY:
            probabilities = self.engine.get_probabilities(handle.id)
            return float(np.max(probabilities)) if len(probabilities) else 0.0
        if readout is ReadoutKind.ANOMALY:
            return float(self.engine.get_anomaly(handle.id))
        return trace.active_fraction if trace is not None else 0.0

    # ── Internal ────────────────────────────────────────────────────────────

    def _handle_for(self, node: GraphNode) -> Optional[BlockHandle]:
        if self.handles is not None:
            handle = self.handles.resolve(node.id)
            return handle if handle is not None and self.handles.is_live(handle) else None
        raw = node.data.get("engine_handle")
        if raw is None:
            return None
        return BlockHandle(int(raw), node.kind)

    def _check_slow(self, call: str, started: float) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if elapsed_ms > self.config.slow_step_warning_ms:
            logger.warning("Engine %s took %.1fms (threshold %.1fms)",
                           call, elapsed_ms, self.config.slow_step_warning_ms)
