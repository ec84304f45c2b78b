"""tickwork - run recurring tasks in isolated subprocesses."""

from tickwork.models import FailReason, UnkillablePolicy, WorkerState
from tickwork.scheduler import Scheduler
from tickwork.worker import Worker

__version__ = "0.1.0"
__all__ = ["Scheduler", "Worker", "WorkerState", "FailReason", "UnkillablePolicy"]
