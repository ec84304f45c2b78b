"""Core data models for tickwork."""

from __future__ import annotations

from enum import Enum


class WorkerState(str, Enum):
    """Possible states of a worker."""

    INACTIVE = "INACTIVE"
    QUEUED = "QUEUED"
    AWAITING_HANDOFF = "AWAITING_HANDOFF"
    RUNNING = "RUNNING"
    FINISHED_WAITING = "FINISHED_WAITING"
    FINISHED = "FINISHED"
    ERRORED_WAITING = "ERRORED_WAITING"
    ERRORED = "ERRORED"
    KILLED_WAITING = "KILLED_WAITING"

    @property
    def has_process(self) -> bool:
        """Whether a worker in this state owns a live subprocess."""
        return self in LIVE_STATES


class WorkerEvent(str, Enum):
    """Inputs that drive the worker state machine."""

    ENQUEUE = "enqueue"
    LAUNCH = "launch"
    START = "start"
    FINISH = "finish"
    FATAL = "fatal"
    KILL = "kill"
    EXIT_CLEAN = "exit_clean"  # exit code 0
    EXIT_CRASH = "exit_crash"  # any other exit code
    DEACTIVATE = "deactivate"


class FailReason(str, Enum):
    """Failure reasons raised by the supervisor itself."""

    TIMEOUT = "TIMEOUT"
    TERM_UNEXPECTED = "TERM_UNEXPECTED"


class UnkillablePolicy(str, Enum):
    """What to do when a killed subprocess refuses to exit."""

    ABORT = "abort"  # hard-exit the supervisor process
    ISOLATE = "isolate"  # SIGKILL once, park the worker, keep going


class InvalidTransition(ValueError):
    """Raised when an event has no edge from the current state."""

    def __init__(self, state: WorkerState, event: WorkerEvent) -> None:
        super().__init__(f"No transition from {state.value} on {event.value}")
        self.state = state
        self.event = event


S = WorkerState
E = WorkerEvent

LIVE_STATES = frozenset({
    S.AWAITING_HANDOFF,
    S.RUNNING,
    S.FINISHED_WAITING,
    S.ERRORED_WAITING,
    S.KILLED_WAITING,
})

_IDLE_STATES = (S.INACTIVE, S.QUEUED, S.FINISHED, S.ERRORED)

TRANSITIONS: dict[tuple[WorkerState, WorkerEvent], WorkerState] = {
    **{(state, E.ENQUEUE): S.QUEUED for state in _IDLE_STATES},
    **{(state, E.DEACTIVATE): S.INACTIVE for state in _IDLE_STATES},
    (S.QUEUED, E.LAUNCH): S.AWAITING_HANDOFF,
    (S.AWAITING_HANDOFF, E.START): S.RUNNING,
    (S.RUNNING, E.FINISH): S.FINISHED_WAITING,
    (S.RUNNING, E.FATAL): S.ERRORED_WAITING,
    (S.RUNNING, E.KILL): S.KILLED_WAITING,
    (S.FINISHED_WAITING, E.KILL): S.KILLED_WAITING,
    (S.ERRORED_WAITING, E.KILL): S.KILLED_WAITING,
    (S.FINISHED_WAITING, E.EXIT_CLEAN): S.FINISHED,
    (S.ERRORED_WAITING, E.EXIT_CLEAN): S.ERRORED,
    (S.KILLED_WAITING, E.EXIT_CLEAN): S.INACTIVE,
    (S.KILLED_WAITING, E.EXIT_CRASH): S.INACTIVE,
    # Exited before sending a terminal message
    (S.AWAITING_HANDOFF, E.EXIT_CLEAN): S.INACTIVE,
    (S.RUNNING, E.EXIT_CLEAN): S.INACTIVE,
    (S.AWAITING_HANDOFF, E.EXIT_CRASH): S.INACTIVE,
    (S.RUNNING, E.EXIT_CRASH): S.INACTIVE,
    (S.FINISHED_WAITING, E.EXIT_CRASH): S.INACTIVE,
    (S.ERRORED_WAITING, E.EXIT_CRASH): S.INACTIVE,
}


def can_transition(state: WorkerState, event: WorkerEvent) -> bool:
    """Check whether ``event`` is accepted in ``state``."""
    return (state, event) in TRANSITIONS


def transition(state: WorkerState, event: WorkerEvent) -> WorkerState:
    """
    Apply an event to a state.

    Returns:
        The next state.

    Raises:
        InvalidTransition: If the table has no edge for (state, event).
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state, event) from None
