"""Tests for the tickwork command and its dashboard."""

import asyncio
import io
import logging

import pytest
from rich.console import Console

from tickwork import UnkillablePolicy, Worker, WorkerState
from tickwork.protocol import Message, MessageKind
from tickwork_console.cli import (
    build_scheduler,
    configure_logging,
    drain,
    drain_timeout,
    main,
    run_supervisor,
    watch,
)
from tickwork_console.config import RunConfig, TaskSpec
from tickwork_console.display import (
    SupervisorDisplay,
    SupervisorState,
    WorkerRow,
    print_final_summary,
)

from .helpers import asset, running_worker


class TestTaskSpec:
    def test_parse(self):
        spec = TaskSpec.parse("health=tasks/health.py@10000")
        assert spec == TaskSpec(name="health", ref="tasks/health.py", interval_ms=10000)

    def test_module_reference_with_colon(self):
        spec = TaskSpec.parse("sync=jobs.sync:go@500")
        assert spec.ref == "jobs.sync:go"

    def test_at_sign_in_path_uses_last(self):
        assert TaskSpec.parse("x=/data/a@b/job.py@100").ref == "/data/a@b/job.py"

    @pytest.mark.parametrize("text", [
        "no-equals@100",
        "=job.py@100",
        "name=job.py",
        "name=@100",
        "name=job.py@soon",
        "name=job.py@0",
    ])
    def test_rejects_malformed(self, text):
        with pytest.raises(ValueError):
            TaskSpec.parse(text)


class TestBuildScheduler:
    def test_one_worker_per_task(self):
        config = RunConfig(
            tasks=[TaskSpec("a", "a.py", 100), TaskSpec("b", "b.py", 200)],
            timeout_ms=5000,
            tick_interval_ms=250,
        )
        scheduler = build_scheduler(config)
        assert [w.name for w in scheduler.get_workers()] == ["a", "b"]
        assert scheduler.timeout_ms == 5000
        assert scheduler.tick_interval_ms == 250
        assert scheduler.get_worker_by_name("b").interval_ms == 200

    def test_isolate_policy(self):
        config = RunConfig(tasks=[TaskSpec("a", "a.py", 100)], isolate_unkillable=True)
        worker = build_scheduler(config).get_workers()[0]
        assert worker.unkillable_policy is UnkillablePolicy.ISOLATE

    def test_default_policy_aborts(self):
        worker = build_scheduler(RunConfig(tasks=[TaskSpec("a", "a.py", 100)])).get_workers()[0]
        assert worker.unkillable_policy is UnkillablePolicy.ABORT


class TestState:
    def test_events_are_bounded_newest_first(self):
        state = SupervisorState(max_events=3)
        for i in range(5):
            state.add_event("finish", f"w{i}")
        assert [e.worker for e in state.events] == ["w4", "w3", "w2"]

    def test_row_from_worker(self):
        worker = Worker("w", "task.py", 1000)
        worker.last_start, worker.last_end = 1_000, 1_750
        row = WorkerRow.from_worker(worker)
        assert row.status == "QUEUED"
        assert row.last_duration_ms == 750
        assert row.interval_ms == 1000

    def test_watch_records_events(self):
        worker = Worker("w", "task.py", 1000)
        state = SupervisorState()
        watch(worker, state)
        worker._emit("fail", "TIMEOUT")
        assert state.events[0].event_type == "fail"
        assert state.events[0].details == "TIMEOUT"
        assert "w" in state.rows

    def test_totals(self):
        state = SupervisorState(rows={
            "a": WorkerRow("a", status="RUNNING", finishes=2, failures=1),
            "b": WorkerRow("b", finishes=3),
        })
        assert state.finished == 5
        assert state.failed == 1
        assert state.running == 1


class TestDisplay:
    def test_renders_workers_and_events(self):
        state = SupervisorState(rows={"health": WorkerRow("health", status="RUNNING", byline="checking")})
        state.add_event("launch", "health")
        console = Console(file=io.StringIO(), width=120)

        console.print(SupervisorDisplay(state, console=console)._build_layout())

        output = console.file.getvalue()
        assert "health" in output
        assert "RUNNING" in output
        assert "launch" in output

    def test_final_summary(self):
        state = SupervisorState(rows={"a": WorkerRow("a", status="INACTIVE", launches=2, failures=1)})
        console = Console(file=io.StringIO(), width=120)
        print_final_summary(state, console=console)
        assert "Supervisor Results" in console.file.getvalue()


class TestCli:
    def test_requires_a_task(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2

    def test_rejects_bad_task(self):
        with pytest.raises(SystemExit):
            main(["--task", "broken"])

    def test_configure_logging_levels(self):
        logger = logging.getLogger("tickwork")
        handlers = list(logger.handlers)
        try:
            configure_logging(verbose=False)
            assert logger.level == logging.CRITICAL
            configure_logging(verbose=True)
            assert logger.level == logging.DEBUG
        finally:
            logger.handlers = handlers
            logger.setLevel(logging.NOTSET)

    async def test_run_supervisor_for_duration(self, capsys):
        config = RunConfig(
            tasks=[TaskSpec("normal", asset("normal"), 100)],
            tick_interval_ms=50,
            duration=1.0,
        )
        state = await run_supervisor(config, use_tui=False, verbose=True)
        row = state.rows["normal"]
        assert row.launches >= 1
        assert row.finishes >= 1
        assert "finish" in capsys.readouterr().out


class TestDrain:
    """Waiting for in-flight runs when the command stops."""

    def test_default_timeout_covers_watchdogs(self):
        assert drain_timeout(RunConfig(timeout_ms=1000)) == 16.0
        assert drain_timeout(RunConfig(drain_timeout=2.5)) == 2.5

    async def test_waits_for_run_to_resolve(self):
        worker, _ = running_worker()
        worker.deactivate()

        async def resolve():
            await asyncio.sleep(0.05)
            worker._handle_message(Message(MessageKind.FINISH, payload=True))
            worker._handle_exit(0)

        worker._supervisor = asyncio.ensure_future(resolve())

        assert await drain([worker], timeout=5) == []
        assert worker.status is WorkerState.INACTIVE

    async def test_gives_up_after_timeout(self):
        worker, _ = running_worker()
        never = asyncio.get_running_loop().create_future()
        worker._supervisor = never

        stuck = await asyncio.wait_for(drain([worker], timeout=0.1), 5)

        assert stuck == [worker]
        assert not never.cancelled()

    async def test_does_not_wait_for_isolated_worker(self):
        worker, _ = running_worker(kill_grace_ms=1_000, unkillable_policy=UnkillablePolicy.ISOLATE)
        worker.terminate(now=10_000)
        worker.do_tick(11_001, 3000)
        worker._supervisor = asyncio.get_running_loop().create_future()

        stuck = await asyncio.wait_for(drain([worker], timeout=60), 5)

        assert stuck == [worker]
        assert worker.isolated is True
