#!/usr/bin/env python3
"""
Run a blockflow network headless against the mock engine.

Usage:
    # Run a built-in demo for 100 ticks:
    python run.py --demo sequence --ticks 100

    # Reproducible sources, no learning, fast ticks:
    python run.py --demo classification --seed 7 --no-learning --interval 0

    # Load a saved network, run it and save it back out:
    python run.py --network nets/my_net.json --ticks 50 --save nets/out.json

    # Print the session state every 10 ticks:
    python run.py --demo pooling --ticks 50 --show-state
"""

import argparse
import json
import sys

from blockflow.core.engine import MockEngineConfig
from blockflow.core.errors import BlockflowError
from blockflow.core.logging_setup import configure_logging
from blockflow.core.persistence import NetworkPersistence
from blockflow.core.scheduler import BlockingTimer, SchedulerConfig
from blockflow.core.session import SessionConfig, create_session, get_demo_names


def build_session(args):
    """Create the session and load the requested network."""
    config = SessionConfig(
        scheduler=SchedulerConfig(
            interval_ms=args.interval,
            learning_enabled=not args.no_learning,
        ),
        engine=MockEngineConfig(seed=args.seed if args.seed is not None else 42),
    )
    session = create_session(config=config, timer=BlockingTimer(max_ticks=args.ticks))

    if args.network:
        result = NetworkPersistence.load(args.network, session)
        print(f"[Loaded {args.network}: {result.node_count} nodes, "
              f"{result.edge_count} edges, {result.source_count} sources]")
    else:
        session.load_demo(args.demo, seed=args.seed)
        print(f"[Demo: {args.demo}]")
    return session


def format_state(session):
    """Compact per-tick line: step plus every block's latest output."""
    result = session.scheduler.last_result
    if result is None:
        return f"  step {session.scheduler.step_counter}: no output"
    outputs = ", ".join(
        f"{session.graph.find_node(node_id).label}={value:.3f}"
        for node_id, value in result.outputs.items()
    )
    return f"  step {result.step}: {outputs}"


def main():
    parser = argparse.ArgumentParser(description="Run a blockflow network against the mock engine")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--network", default=None, help="Network file to load")
    source.add_argument("--demo", default="sequence", choices=get_demo_names(),
                        help="Built-in demo network (default: sequence)")
    parser.add_argument("--ticks", type=int, default=100, help="Number of ticks to run (default: 100)")
    parser.add_argument("--interval", type=int, default=50, help="Tick interval in ms (default: 50)")
    parser.add_argument("--no-learning", action="store_true", help="Run the engine with learning disabled")
    parser.add_argument("--seed", type=int, default=None, help="Seed for demo sources and the mock engine")
    parser.add_argument("--save", default=None, help="Save the network to this path after the run")
    parser.add_argument("--show-state", action="store_true", help="Print block outputs every 10 ticks")
    parser.add_argument("--json", action="store_true", help="Print the final state as JSON")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    parser.add_argument("--log-file", default=None, help="Also log to this rotating file")
    args = parser.parse_args()

    configure_logging(args.log_level, args.log_file)

    try:
        session = build_session(args)
    except BlockflowError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    if args.show_state:
        def on_tick(result):
            if result.step % 10 == 0:
                print(format_state(session))
        session.scheduler.add_tick_listener(on_tick)

    print(f"{'=' * 60}")
    print(f"  Running {args.ticks} ticks at {args.interval}ms "
          f"(learning {'off' if args.no_learning else 'on'})")
    print(f"{'=' * 60}")

    try:
        session.start()
    except KeyboardInterrupt:
        session.stop()
        print("\nInterrupted.")

    if args.json:
        print(json.dumps(session.get_state(), indent=2))
    else:
        print(session.witness())

    if args.save:
        saved = NetworkPersistence.save(session, args.save)
        print(f"[Saved {saved.path}: {saved.size_bytes} bytes]")

    return 1 if session.scheduler.last_error else 0


if __name__ == "__main__":
    sys.exit(main())
