"""Scheduler: worker registry and supervision tick loop."""

from __future__ import annotations

import asyncio
import logging

from tickwork.jitter import now_ms
from tickwork.worker import Worker

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 1800 * 1000
DEFAULT_TICK_INTERVAL_MS = 1000


class Scheduler:
    """
    Drives every registered worker on a fixed cadence.

    The scheduler owns no subprocess state. Each tick hands the current
    time and the default timeout to every worker, which decides on its own
    whether to launch, terminate or escalate.

    Example:
        scheduler = Scheduler(timeout_ms=60_000, tick_interval_ms=500)
        scheduler.add_worker(Worker("health", "tasks/health.py", 10_000))

        scheduler.start()
        ...
        scheduler.shutdown()
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS,
    ) -> None:
        if timeout_ms <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout_ms}")
        if tick_interval_ms <= 0:
            raise ValueError(f"Tick interval must be positive, got {tick_interval_ms}")

        self.timeout_ms = timeout_ms
        self.tick_interval_ms = tick_interval_ms
        self.workers: list[Worker] = []

        self.ticks = 0
        self.last_tick_launches = 0
        self._tick_task: asyncio.Task | None = None

    async def __aenter__(self) -> Scheduler:
        self.start()
        return self

    async def __aexit__(self, *args) -> None:
        self.shutdown()
        await self.wait_closed()

    # --- Registry ---

    def add_worker(self, worker: Worker) -> Worker:
        """Register a worker and return it."""
        self.workers.append(worker)
        logger.debug("Registered new worker %r", worker.name)
        return worker

    def get_workers(self) -> list[Worker]:
        """The live registry, in registration order."""
        return self.workers

    def get_worker_by_name(self, name: str) -> Worker | None:
        """First worker with the given name, or None."""
        for worker in self.workers:
            if worker.name == name:
                return worker
        return None

    # --- Ticking ---

    def tick(self) -> int:
        """
        Evaluate every worker once.

        Returns:
            Number of workers launched on this tick.
        """
        tick_time = now_ms()
        launches = 0
        for worker in list(self.workers):
            launches += worker.do_tick(tick_time, self.timeout_ms)

        self.ticks += 1
        self.last_tick_launches = launches
        logger.debug(
            "Tick finished, %i tasks launched under %i msecs", launches, now_ms() - tick_time
        )
        return launches

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    def start(self) -> None:
        """
        Start ticking.

        Non-blocking - runs the tick loop as a background asyncio task.
        """
        if self.running:
            return
        logger.debug("Starting scheduler, tick interval %i msecs", self.tick_interval_ms)
        self._tick_task = asyncio.get_running_loop().create_task(
            self._run(), name="tickwork-scheduler"
        )

    def shutdown(self) -> None:
        """
        Stop future ticks.

        Subprocesses already running are left alone; their workers still
        resolve them when they report or exit.
        """
        if self._tick_task is None:
            return
        logger.debug("Shutting down tick loop; running workers will finish on their own.")
        self._tick_task.cancel()

    async def wait_closed(self) -> None:
        """Wait for the tick loop to stop after ``shutdown``."""
        if self._tick_task is None:
            return
        try:
            await self._tick_task
        except asyncio.CancelledError:
            pass
        self._tick_task = None

    async def _run(self) -> None:
        interval = self.tick_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.tick()
