#!/usr/bin/env python3
"""
tickwork: run recurring tasks under a supervisor.

Usage:
    tickwork --task health=tasks/health.py@10000
    tickwork --task sync=jobs.sync:run@60000 --timeout 30000 --tick 500
    tickwork --task health=tasks/health.py@10000 --no-tui --verbose
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from datetime import datetime
from typing import Callable

from tickwork import Scheduler, UnkillablePolicy, Worker
from tickwork.worker import EXIT_GRACE_MS, KILL_GRACE_MS
from tickwork_console.config import RunConfig, TaskSpec
from tickwork_console.display import (
    SupervisorDisplay,
    SupervisorState,
    print_final_summary,
    print_simple_status,
)


def configure_logging(verbose: bool = False) -> None:
    """Configure logging for the tickwork library."""
    tickwork_logger = logging.getLogger("tickwork")
    if verbose:
        tickwork_logger.setLevel(logging.DEBUG)
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        tickwork_logger.addHandler(handler)
    else:
        # The dashboard owns the terminal
        tickwork_logger.setLevel(logging.CRITICAL)


def build_scheduler(config: RunConfig) -> Scheduler:
    """Create a scheduler with one worker per configured task."""
    policy = UnkillablePolicy.ISOLATE if config.isolate_unkillable else UnkillablePolicy.ABORT
    scheduler = Scheduler(timeout_ms=config.timeout_ms, tick_interval_ms=config.tick_interval_ms)
    for spec in config.tasks:
        scheduler.add_worker(
            Worker(spec.name, spec.ref, spec.interval_ms, unkillable_policy=policy)
        )
    return scheduler


def watch(worker: Worker, state: SupervisorState, echo: bool = False) -> None:
    """Feed a worker's events into the display state."""

    def record(event_type: str, details: str = "") -> None:
        state.add_event(event_type, worker.name, details)
        state.sync([worker])
        if echo:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            print(f"{ts} {event_type:<8} {worker.name:<16} {details}")

    worker.on_launch(lambda: record("launch"))
    worker.on_finish(lambda result: record("finish", repr(result)))
    worker.on_fail(lambda reason: record("fail", str(reason)))


async def _refresh_until(
    stop: asyncio.Event,
    duration: float | None,
    refresh: Callable[[], None],
    period: float,
) -> None:
    deadline = time.monotonic() + duration if duration else None
    while not stop.is_set():
        refresh()
        if deadline is not None and time.monotonic() >= deadline:
            return
        try:
            await asyncio.wait_for(stop.wait(), timeout=period)
        except asyncio.TimeoutError:
            pass


def drain_timeout(config: RunConfig) -> float:
    """Seconds a run may still need once no new runs start."""
    if config.drain_timeout is not None:
        return config.drain_timeout
    return (config.timeout_ms + EXIT_GRACE_MS + KILL_GRACE_MS) / 1000


async def drain(workers: list[Worker], timeout: float) -> list[Worker]:
    """
    Wait up to ``timeout`` seconds for in-flight runs to resolve.

    Isolated workers are not waited for: their process survived SIGKILL and
    may never exit. Returns the workers that still hold a process.
    """
    waits = [
        asyncio.ensure_future(worker.wait_exit())
        for worker in workers
        if worker.status.has_process and not worker.isolated
    ]
    if waits:
        _, pending = await asyncio.wait(waits, timeout=timeout)
        for task in pending:
            task.cancel()
    return [worker for worker in workers if worker.status.has_process]


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(sig)


async def run_supervisor(config: RunConfig, use_tui: bool = True, verbose: bool = False) -> SupervisorState:
    """
    Run the supervisor until interrupted or ``config.duration`` elapses.

    Args:
        config: Run configuration.
        use_tui: Render the rich live dashboard.
        verbose: Print one line per worker event instead of a status line.
    """
    state = SupervisorState(
        start_time=time.time(),
        timeout_ms=config.timeout_ms,
        tick_interval_ms=config.tick_interval_ms,
    )
    scheduler = build_scheduler(config)
    for worker in scheduler.get_workers():
        watch(worker, state, echo=verbose)
    state.sync(scheduler.get_workers())

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    def sync() -> None:
        state.ticks = scheduler.ticks
        state.sync(scheduler.get_workers())

    try:
        async with scheduler:
            if use_tui:
                with SupervisorDisplay(state) as display:

                    def refresh() -> None:
                        sync()
                        display.refresh()

                    await _refresh_until(stop, config.duration, refresh, 0.25)
            elif verbose:
                await _refresh_until(stop, config.duration, sync, 0.5)
            else:

                def refresh_line() -> None:
                    sync()
                    print_simple_status(state)

                await _refresh_until(stop, config.duration, refresh_line, 0.5)
                print()

            # A second interrupt now stops the drain itself
            _remove_signal_handlers(loop)

            # Let in-flight runs finish while the watchdogs are still ticking
            for worker in scheduler.get_workers():
                worker.deactivate()
            for worker in await drain(scheduler.get_workers(), drain_timeout(config)):
                state.add_event("detach", worker.name, f"still {worker.status_name} at shutdown")
    finally:
        _remove_signal_handlers(loop)

    sync()
    return state


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="tickwork - run recurring tasks in isolated subprocesses",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tickwork --task health=tasks/health.py@10000
  tickwork --task sync=jobs.sync:run@60000 --timeout 30000
  tickwork --task a=a.py@5000 --task b=b.py@5000 --duration 60 --no-tui
        """,
    )
    parser.add_argument(
        "--task", "-t",
        action="append",
        default=[],
        metavar="NAME=REF@INTERVAL_MS",
        help="Task to supervise; REF is a .py file or module[:function] (repeatable)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=RunConfig.timeout_ms,
        help=f"Maximum run time per task in ms (default: {RunConfig.timeout_ms})",
    )
    parser.add_argument(
        "--tick",
        type=int,
        default=RunConfig.tick_interval_ms,
        help=f"Supervision tick interval in ms (default: {RunConfig.tick_interval_ms})",
    )
    parser.add_argument(
        "--isolate-unkillable",
        action="store_true",
        help="SIGKILL and park an unkillable task instead of exiting the supervisor",
    )
    parser.add_argument(
        "--duration", "-d",
        type=float,
        default=None,
        help="Stop after N seconds (default: run until interrupted)",
    )
    parser.add_argument(
        "--no-tui",
        action="store_true",
        help="Disable the live dashboard, use simple text output",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print library logs and one line per event (implies --no-tui)",
    )

    args = parser.parse_args(argv)

    if not args.task:
        parser.error("at least one --task is required")
    try:
        tasks = [TaskSpec.parse(text) for text in args.task]
    except ValueError as e:
        parser.error(str(e))
    if args.timeout <= 0 or args.tick <= 0:
        parser.error("--timeout and --tick must be positive")

    configure_logging(verbose=args.verbose)

    config = RunConfig(
        tasks=tasks,
        timeout_ms=args.timeout,
        tick_interval_ms=args.tick,
        isolate_unkillable=args.isolate_unkillable,
        duration=args.duration,
    )
    use_tui = not (args.no_tui or args.verbose)

    try:
        state = asyncio.run(run_supervisor(config, use_tui=use_tui, verbose=args.verbose))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)

    print_final_summary(state)


if __name__ == "__main__":
    main()
