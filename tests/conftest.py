# tests/conftest.py

from __future__ import annotations

import pytest

from tickwork import Scheduler


@pytest.fixture
async def scheduler():
    """A started scheduler with a short tick and a 3 second timeout."""
    s = Scheduler(timeout_ms=3000, tick_interval_ms=50)
    s.start()
    yield s
    s.shutdown()
    await s.wait_closed()
    for worker in s.get_workers():
        worker.deactivate()
        if worker.process is not None and worker.process.returncode is None:
            worker.process.kill()
        await worker.wait_exit()
