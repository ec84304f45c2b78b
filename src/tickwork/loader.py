"""Resolve task references to callables.

A reference is one of:

- a path to a Python file (``jobs/cleanup.py``), entry point ``run``
- ``package.module:function``
- ``package.module``, entry point ``run``
"""

from __future__ import annotations

import importlib
import importlib.util
from pathlib import Path
from typing import Any, Callable

DEFAULT_ENTRY_POINT = "run"


class TaskLoadError(ImportError):
    """Raised when a task reference cannot be resolved."""


class TaskLoader:
    """Loads the entry point of a task unit.

    Example:
        loader = TaskLoader()
        run = loader.load("tasks/healthcheck.py")
        run(print)
    """

    def __init__(self, entry_point: str = DEFAULT_ENTRY_POINT) -> None:
        self.entry_point = entry_point

    def load(self, ref: str) -> Callable[..., Any]:
        """
        Resolve ``ref`` to its entry point.

        Raises:
            TaskLoadError: If the file or module cannot be imported, or the
                entry point is missing or not callable.
        """
        if not ref:
            raise TaskLoadError("Empty task reference")

        if ref.endswith(".py") or Path(ref).is_file():
            module = self._load_file(Path(ref))
            attr = self.entry_point
        else:
            module_name, _, attr = ref.partition(":")
            attr = attr or self.entry_point
            try:
                module = importlib.import_module(module_name)
            except ImportError as e:
                raise TaskLoadError(f"Cannot import task module {module_name!r}: {e}") from e

        func = getattr(module, attr, None)
        if func is None:
            raise TaskLoadError(f"Task {ref!r} has no entry point {attr!r}")
        if not callable(func):
            raise TaskLoadError(f"Entry point {attr!r} of {ref!r} is not callable")
        return func

    def _load_file(self, path: Path) -> Any:
        if not path.is_file():
            raise TaskLoadError(f"Task file not found: {path}")

        spec = importlib.util.spec_from_file_location(f"tickwork_task_{path.stem}", path)
        if spec is None or spec.loader is None:
            raise TaskLoadError(f"Cannot load task file: {path}")

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
