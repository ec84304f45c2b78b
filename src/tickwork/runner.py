"""Subprocess runner: executes exactly one task invocation.

Started by a worker as ``python -m tickwork.runner <task-ref>``. The
original stdout becomes the message channel and file descriptor 1 is
pointed at stderr, so anything the task prints shows up as captured output
instead of corrupting the protocol stream.

The task is resolved before ``start`` is sent. A task that cannot be loaded
exits with LOAD_ERROR_EXIT_CODE and no messages at all, which the worker
treats as an unexpected termination. A failure while the task runs is
reported with a ``fatal`` message and a clean exit; only a crash or an exit
from inside the task produces a non-zero status.
"""

from __future__ import annotations

import argparse
import asyncio
import inspect
import os
import sys
import traceback
from typing import Any, BinaryIO, Callable

from tickwork.jitter import now_ms
from tickwork.loader import DEFAULT_ENTRY_POINT, TaskLoader
from tickwork.protocol import Failure, Message, MessageKind, Outcome, Success, encode

LOAD_ERROR_EXIT_CODE = 2



def open_channel() -> BinaryIO:
    """Detach the real stdout for protocol messages and redirect fd 1 to stderr."""
    sys.stdout.flush()
    channel_fd = os.dup(1)
    os.dup2(2, 1)
    return os.fdopen(channel_fd, "wb", buffering=0)


def send(channel: BinaryIO, message: Message) -> None:
    channel.write(encode(message))


def execute(func: Callable[..., Any], log: Callable[[str], None]) -> Outcome:
    """
    Invoke a loaded task, folding the result into an outcome.

    Sync entry points are called directly; coroutine functions are run to
    completion on a fresh event loop. ``SystemExit`` and other
    ``BaseException``s are not caught: they end the process the way the
    task asked for, which the worker classifies as an unexpected exit.
    """
    try:
        if inspect.iscoroutinefunction(func):
            result = asyncio.run(func(log))
        else:
            result = func(log)
    except Exception:
        return Failure(traceback.format_exc())
    return Success(result)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m tickwork.runner",
        description="Run one tickwork task and report over stdout",
    )
    parser.add_argument("task", help="Task reference: file path or module[:function]")
    parser.add_argument(
        "--entry-point",
        default=DEFAULT_ENTRY_POINT,
        help=f"Function to call when the reference names none (default: {DEFAULT_ENTRY_POINT})",
    )
    args = parser.parse_args(argv)

    channel = open_channel()

    def log(msg: str) -> None:
        send(channel, Message(MessageKind.LOG, payload=str(msg)))

    try:
        func = TaskLoader(args.entry_point).load(args.task)
    except Exception:
        traceback.print_exc()
        channel.close()
        return LOAD_ERROR_EXIT_CODE

    send(channel, Message(MessageKind.START, timestamp=now_ms()))
    outcome = execute(func, log)
    send(channel, outcome.to_message(now_ms()))
    channel.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
