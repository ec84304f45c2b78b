"""Run configuration for the tickwork command."""

from __future__ import annotations

from dataclasses import dataclass, field

from tickwork.scheduler import DEFAULT_TICK_INTERVAL_MS, DEFAULT_TIMEOUT_MS


@dataclass
class TaskSpec:
    """One ``--task NAME=REF@INTERVAL_MS`` argument."""

    name: str
    ref: str
    interval_ms: int

    @classmethod
    def parse(cls, text: str) -> TaskSpec:
        """
        Parse ``name=ref@interval_ms``.

        Raises:
            ValueError: If a part is missing or the interval is not a
                positive integer.
        """
        name, sep, rest = text.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Task must be NAME=REF@INTERVAL_MS, got {text!r}")

        ref, sep, interval = rest.rpartition("@")
        if not sep or not ref.strip():
            raise ValueError(f"Task must be NAME=REF@INTERVAL_MS, got {text!r}")

        try:
            interval_ms = int(interval)
        except ValueError:
            raise ValueError(f"Invalid interval {interval!r} for task {name!r}") from None
        if interval_ms <= 0:
            raise ValueError(f"Interval for task {name!r} must be positive")

        return cls(name=name.strip(), ref=ref.strip(), interval_ms=interval_ms)


@dataclass
class RunConfig:
    """Configuration for a supervisor run."""

    tasks: list[TaskSpec] = field(default_factory=list)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS
    isolate_unkillable: bool = False
    duration: float | None = None  # seconds, None = until interrupted
    drain_timeout: float | None = None  # seconds, None = timeout plus grace periods
