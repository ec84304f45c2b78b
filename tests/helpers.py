"""Test helpers: task fixtures and a stand-in subprocess handle."""

from __future__ import annotations

import asyncio
from pathlib import Path

from tickwork import Worker
from tickwork.models import WorkerState
from tickwork.protocol import Message, MessageKind

ASSETS = Path(__file__).parent / "assets"


def asset(name: str) -> str:
    """Absolute path of a task fixture."""
    return str(ASSETS / f"{name}.py")


def outcome_of(worker: Worker) -> asyncio.Future:
    """Future resolved with (event, value, status) on the first finish or fail."""
    future = asyncio.get_running_loop().create_future()

    def settle(event, value):
        if not future.done():
            future.set_result((event, value, worker.status_name))

    worker.on_finish(lambda value: settle("finish", value))
    worker.on_fail(lambda reason: settle("fail", reason))
    return future


class FakeProcess:
    """Records signals instead of delivering them."""

    def __init__(self) -> None:
        self.returncode: int | None = None
        self.terminated = 0
        self.killed = 0

    def terminate(self) -> None:
        self.terminated += 1

    def kill(self) -> None:
        self.killed += 1


def running_worker(started_at: int = 1_000, **kwargs) -> tuple[Worker, FakeProcess]:
    """A worker in RUNNING with a fake process and no event loop involved."""
    worker = Worker("fake", "unused.py", 1000, **kwargs)
    worker.status = WorkerState.AWAITING_HANDOFF
    worker.process = FakeProcess()
    worker._handle_message(Message(MessageKind.START, timestamp=started_at))
    return worker, worker.process
