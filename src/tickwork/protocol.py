"""Message contract between a worker and its subprocess runner.

The runner writes one JSON object per line to its message channel::

    {"kind": "start", "timestamp": 1700000000000, "payload": null}
    {"kind": "log", "timestamp": null, "payload": "syncing 12 rows"}
    {"kind": "finish", "timestamp": 1700000000420, "payload": true}

Exactly one terminal message (``finish`` or ``fatal``) is sent per
subprocess, always after ``start``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class MessageKind(str, Enum):
    """Kinds of messages a runner can send."""

    START = "start"
    LOG = "log"
    FINISH = "finish"
    FATAL = "fatal"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageKind.FINISH, MessageKind.FATAL)


class ProtocolError(ValueError):
    """Raised for a line that is not a valid message."""


@dataclass
class Message:
    """Envelope sent from the runner to the worker."""

    kind: MessageKind
    timestamp: int | None = None
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "timestamp": self.timestamp, "payload": self.payload}


@dataclass
class Success:
    """The task returned a value."""

    value: Any

    def to_message(self, timestamp: int) -> Message:
        return Message(MessageKind.FINISH, timestamp=timestamp, payload=self.value)


@dataclass
class Failure:
    """The task raised; ``stack`` is the formatted traceback."""

    stack: str

    @property
    def headline(self) -> str:
        """Last line of the traceback, i.e. ``ExcType: message``."""
        lines = [line for line in self.stack.strip().splitlines() if line.strip()]
        return lines[-1].strip() if lines else ""

    def to_message(self, timestamp: int) -> Message:
        return Message(MessageKind.FATAL, timestamp=timestamp, payload={"stack": self.stack})


Outcome = Union[Success, Failure]


def encode(message: Message) -> bytes:
    """Serialize a message to a newline-terminated JSON line.

    Payloads that JSON cannot represent are sent as their ``str()``.
    """
    return (json.dumps(message.to_dict(), default=str) + "\n").encode("utf-8")


def decode(line: bytes | str) -> Message:
    """
    Parse one line from the message channel.

    Raises:
        ProtocolError: If the line is not JSON, not an object, or has an
            unknown kind.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed message: {line.strip()[:80]!r}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Message must be an object, got {type(data).__name__}")

    try:
        kind = MessageKind(data.get("kind"))
    except ValueError:
        raise ProtocolError(f"Unknown message kind: {data.get('kind')!r}") from None

    timestamp = data.get("timestamp")
    if timestamp is not None and not isinstance(timestamp, (int, float)):
        raise ProtocolError(f"Invalid timestamp: {timestamp!r}")

    return Message(
        kind=kind,
        timestamp=int(timestamp) if timestamp is not None else None,
        payload=data.get("payload"),
    )
