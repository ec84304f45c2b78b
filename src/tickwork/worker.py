"""Worker: the state machine for one recurring task."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from typing import Any, Callable

from tickwork.jitter import naturalized_next_run, now_ms
from tickwork.loader import DEFAULT_ENTRY_POINT
from tickwork.models import (
    FailReason,
    UnkillablePolicy,
    WorkerEvent,
    WorkerState,
    can_transition,
    transition,
)
from tickwork.protocol import Failure, Message, MessageKind, ProtocolError, decode

logger = logging.getLogger(__name__)

EXIT_GRACE_MS = 5000  # reported an outcome, process still alive
KILL_GRACE_MS = 10000  # kill signal sent, process still alive
ABORT_EXIT_CODE = 1
STREAM_LIMIT = 16 * 1024 * 1024
EXIT_POLL_S = 0.05
CHANNEL_DRAIN_S = 1.0  # after exit, for the message channel to reach EOF
OUTPUT_DRAIN_S = 0.2
UNEXPECTED_BYLINE = "SEVERE ERROR: Process terminated unexpectedly, worker deactivated"

_MESSAGE_EVENTS = {
    MessageKind.START: WorkerEvent.START,
    MessageKind.FINISH: WorkerEvent.FINISH,
    MessageKind.FATAL: WorkerEvent.FATAL,
}


class Worker:
    """
    One recurring task, run in its own subprocess.

    A worker is created QUEUED. Each scheduler tick calls ``do_tick``,
    which launches the task once ``next_run`` is due and enforces the
    timeout watchdogs. Everything else happens in response to the
    subprocess: its messages move the worker through RUNNING and
    FINISHED_WAITING/ERRORED_WAITING, and its exit resolves the run.

    Example:
        worker = Worker("cleanup", "jobs/cleanup.py", interval_ms=60_000)

        @worker.on_finish
        def done(result):
            print("cleanup returned", result)

        @worker.on_fail
        def failed(reason):
            alerting.send(f"cleanup failed: {reason}")

        scheduler.add_worker(worker)
    """

    #: Longest line accepted on the message channel or captured output
    stream_limit = STREAM_LIMIT

    def __init__(
        self,
        name: str,
        task: str,
        interval_ms: int,
        *,
        exit_grace_ms: int = EXIT_GRACE_MS,
        kill_grace_ms: int = KILL_GRACE_MS,
        unkillable_policy: UnkillablePolicy = UnkillablePolicy.ABORT,
        entry_point: str = DEFAULT_ENTRY_POINT,
        python: str | None = None,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError(f"Interval must be positive, got {interval_ms}")

        self.name = name
        self.task = task
        self.interval_ms = interval_ms
        self.exit_grace_ms = exit_grace_ms
        self.kill_grace_ms = kill_grace_ms
        self.unkillable_policy = UnkillablePolicy(unkillable_policy)
        self.entry_point = entry_point
        self.python = python or sys.executable

        self.status = WorkerState.INACTIVE
        self.is_active = True
        self.next_run = -1
        self.last_start = -1
        self.last_end = -1
        self.last_return_value: Any = None
        self.byline: str | None = None
        self.process: asyncio.subprocess.Process | None = None

        # Counters for dashboards
        self.launches = 0
        self.finishes = 0
        self.failures = 0

        self._listeners: dict[str, list[Callable[..., Any]]] = {
            "launch": [],
            "finish": [],
            "fail": [],
        }
        self._supervisor: asyncio.Task | None = None
        self._escalated = False

        self.enqueue()

    def __repr__(self) -> str:
        return f"<Worker {self.name!r} {self.status.value} task={self.task!r}>"

    @property
    def status_name(self) -> str:
        """Name of the current state, e.g. ``"FINISHED"``."""
        return self.status.value

    # --- Subscriptions ---

    def on_launch(self, func: Callable[[], Any]) -> Callable[[], Any]:
        """Subscribe to the subprocess reaching RUNNING. Usable as a decorator."""
        self._listeners["launch"].append(func)
        return func

    def on_finish(self, func: Callable[[Any], Any]) -> Callable[[Any], Any]:
        """Subscribe to successful completion; called with the return value."""
        self._listeners["finish"].append(func)
        return func

    def on_fail(self, func: Callable[[str], Any]) -> Callable[[str], Any]:
        """
        Subscribe to failures.

        Called with ``"TIMEOUT"``, ``"TERM_UNEXPECTED"`` or the task's
        error headline.
        """
        self._listeners["fail"].append(func)
        return func

    def remove_listener(self, func: Callable[..., Any]) -> None:
        """Unsubscribe ``func`` from every event it was registered for."""
        for listeners in self._listeners.values():
            while func in listeners:
                listeners.remove(func)

    def _emit(self, event: str, *args: Any) -> None:
        for func in list(self._listeners[event]):
            try:
                func(*args)
            except Exception:
                logger.exception("[%s] %s listener %r raised", self.name, event, func)

    # --- State ---

    def _apply(self, event: WorkerEvent) -> None:
        self.status = transition(self.status, event)
        logger.debug("[%s] Worker status changed to %s", self.name, self.status.value)

    def do_tick(self, now: int, timeout_ms: int) -> bool:
        """
        Evaluate this worker for one scheduler tick.

        Args:
            now: Tick timestamp in ms.
            timeout_ms: Maximum run time before the task counts as runaway.

        Returns:
            True if the task was launched on this tick.
        """
        if self.status is WorkerState.QUEUED and self.next_run <= now:
            self.launch()
            return True

        if self.status is WorkerState.RUNNING and now - self.last_start > timeout_ms:
            logger.warning(
                "[%s] Timeout! Been running for %i ms with no result; terminating.",
                self.name, now - self.last_start,
            )
            self.terminate(now)

        if (
            self.status in (WorkerState.FINISHED_WAITING, WorkerState.ERRORED_WAITING)
            and now - self.last_end > self.exit_grace_ms
        ):
            logger.warning(
                "[%s] Timeout! Waiting for process to close for %i ms; terminating.",
                self.name, now - self.last_end,
            )
            self.terminate(now)

        if self.status is WorkerState.KILLED_WAITING and now - self.last_end > self.kill_grace_ms:
            self._escalate()

        return False

    def enqueue(self, force: bool = False) -> None:
        """Queue the next run with a jittered start time.

        Inactive workers are only queued when ``force`` is set.
        """
        if not (self.is_active or force):
            logger.debug("[%s] Refusing to queue a non-active worker.", self.name)
            return
        self.next_run = naturalized_next_run(self.interval_ms)
        self._apply(WorkerEvent.ENQUEUE)

    def activate(self) -> None:
        """Resume scheduling.

        A worker with a live subprocess is re-queued when that run completes.
        """
        self.is_active = True
        if not self.status.has_process:
            self.enqueue()
        logger.debug("[%s] Worker activated", self.name)

    def deactivate(self) -> None:
        """
        Stop scheduling this worker.

        Without a live subprocess the worker goes INACTIVE right away.
        Otherwise the current run is left alone and the worker settles to
        INACTIVE when it completes.
        """
        self.is_active = False
        if self.status is WorkerState.INACTIVE:
            return
        if not self.status.has_process:
            self._apply(WorkerEvent.DEACTIVATE)
        logger.debug("[%s] Worker deactivated", self.name)

    def terminate(self, now: int | None = None) -> None:
        """Send SIGTERM to the subprocess and wait for it to exit.

        Only the watchdogs call this; normal completion never does.
        """
        self.last_end = now if now is not None else now_ms()
        if self.process is not None and self.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.process.terminate()
        logger.debug("[%s] Termination signal sent...", self.name)
        self._apply(WorkerEvent.KILL)

    def _escalate(self) -> None:
        if self.unkillable_policy is UnkillablePolicy.ISOLATE:
            if self._escalated:
                return
            self._escalated = True
            logger.error(
                "[%s] Process survived SIGTERM for %i ms; sending SIGKILL and isolating worker.",
                self.name, self.kill_grace_ms,
            )
            if self.process is not None and self.process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    self.process.kill()
            return

        logger.error("[%s] This worker did not exit after SIGTERM.", self.name)
        logger.error("[%s] Shutting down the supervisor process.", self.name)
        logger.error("[%s] Exiting with status %i.", self.name, ABORT_EXIT_CODE)
        self._abort()

    def _abort(self) -> None:
        logging.shutdown()
        os._exit(ABORT_EXIT_CODE)

    # --- Subprocess ---

    def command(self) -> list[str]:
        """Command line used to start the subprocess runner."""
        return [
            self.python, "-m", "tickwork.runner",
            "--entry-point", self.entry_point,
            self.task,
        ]

    def launch(self) -> None:
        """Start the task in a new subprocess.

        Must be called from a running event loop.
        """
        self._apply(WorkerEvent.LAUNCH)
        self.launches += 1
        self._escalated = False
        logger.debug("[%s] Spawning worker process", self.name)
        self._supervisor = asyncio.get_running_loop().create_task(
            self._supervise(), name=f"tickwork-{self.name}"
        )

    async def wait_exit(self) -> None:
        """Wait until the current subprocess, if any, has been resolved."""
        if self._supervisor is not None:
            await asyncio.shield(self._supervisor)

    @property
    def isolated(self) -> bool:
        """True while an unkillable process is parked after SIGKILL."""
        return self._escalated and self.status is WorkerState.KILLED_WAITING

    async def _supervise(self) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.stream_limit,
            )
        except OSError as e:
            logger.error("[%s] Could not start worker process: %s", self.name, e)
            self._fail_unexpected(WorkerEvent.EXIT_CRASH)
            return

        self.process = proc
        loop = asyncio.get_running_loop()
        messages = loop.create_task(self._read_messages(proc.stdout))
        output = loop.create_task(self._read_output(proc.stderr))

        code = await self._exit_status(proc)

        # Anything written to the channel before exit is already in the pipe,
        # so it is applied before the exit is classified. Descendants that
        # inherited a pipe must not hold the exit back.
        _, pending = await asyncio.wait({messages}, timeout=CHANNEL_DRAIN_S)
        if pending:
            logger.warning("[%s] Message channel still open after exit, closing it", self.name)
        _, still_open = await asyncio.wait({output}, timeout=OUTPUT_DRAIN_S)
        if still_open:
            logger.debug("[%s] Output still held open by a descendant, detaching", self.name)
        for task in pending | still_open:
            task.cancel()

        self._handle_exit(code)

    async def _exit_status(self, proc: asyncio.subprocess.Process) -> int:
        # Process.wait() only resolves once every pipe is closed, which a
        # grandchild holding stderr can postpone indefinitely.
        while proc.returncode is None:
            await asyncio.sleep(EXIT_POLL_S)
        return proc.returncode

    async def _read_messages(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError as e:
                # The reader discards the oversized chunk; keep draining
                logger.error("[%s] Dropped an oversized message: %s", self.name, e)
                continue
            if not line:
                return
            if not line.strip():
                continue
            try:
                message = decode(line)
            except ProtocolError as e:
                logger.warning("[%s] %s", self.name, e)
                continue
            self._handle_message(message)

    async def _read_output(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.debug("[%s] Dropped an oversized output line", self.name)
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self.byline = line
                logger.debug("[%s] OUT: %s", self.name, line)

    def _handle_message(self, message: Message) -> None:
        if message.kind is MessageKind.LOG:
            self.byline = str(message.payload)
            logger.debug("[%s] LOG: %s", self.name, message.payload)
            return

        event = _MESSAGE_EVENTS[message.kind]
        if not can_transition(self.status, event):
            logger.warning(
                "[%s] Ignoring %s message while %s", self.name, message.kind.value, self.status.value
            )
            return

        if message.kind is MessageKind.START:
            self.last_start = message.timestamp if message.timestamp is not None else now_ms()
            self._apply(event)
            self._emit("launch")

        elif message.kind is MessageKind.FINISH:
            self.last_end = message.timestamp if message.timestamp is not None else now_ms()
            self.last_return_value = message.payload
            logger.debug(
                "[%s] Worker finished & returned %r under %i msecs. Waiting for process to stop...",
                self.name, message.payload, self.last_end - self.last_start,
            )
            self._apply(event)

        else:
            self.last_end = message.timestamp if message.timestamp is not None else now_ms()
            payload = message.payload
            stack = payload.get("stack", "") if isinstance(payload, dict) else str(payload)
            headline = Failure(stack).headline
            self.byline = headline
            self.last_return_value = headline
            logger.warning("[%s] FATAL: %s", self.name, headline)
            logger.debug("[%s] TRACE: %s", self.name, stack)
            self._apply(event)

    def _handle_exit(self, code: int) -> None:
        self.process = None
        event = WorkerEvent.EXIT_CLEAN if code == 0 else WorkerEvent.EXIT_CRASH

        if self.status is WorkerState.KILLED_WAITING:
            logger.debug("[%s] Process terminated after timeout (code %s)", self.name, code)
            self._apply(event)
            self.is_active = False
            self.failures += 1
            self._emit("fail", FailReason.TIMEOUT.value)
            return

        if code != 0 or self.status not in (WorkerState.FINISHED_WAITING, WorkerState.ERRORED_WAITING):
            logger.error(
                "[%s] Process terminated unexpectedly with code %s while %s, NOT QUEUING IT AGAIN!",
                self.name, code, self.status.value,
            )
            logger.error(
                "[%s] This may be the result of a premature exit or a crash in the task process.",
                self.name,
            )
            self._fail_unexpected(event)
            return

        logger.debug("[%s] Worker process exited (code 0)", self.name)
        if self.status is WorkerState.FINISHED_WAITING:
            self._apply(event)
            self.finishes += 1
            self._emit("finish", self.last_return_value)
        else:
            self._apply(event)
            self.failures += 1
            self._emit("fail", self.last_return_value)

        if self.is_active:
            self.enqueue()
        elif self.status is not WorkerState.INACTIVE:
            self._apply(WorkerEvent.DEACTIVATE)

    def _fail_unexpected(self, event: WorkerEvent) -> None:
        self._apply(event)
        self.is_active = False
        self.byline = UNEXPECTED_BYLINE
        self.failures += 1
        self._emit("fail", FailReason.TERM_UNEXPECTED.value)
