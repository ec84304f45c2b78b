"""Rich-based dashboard for a running supervisor.

The display only renders a ``SupervisorState``; observers attached to the
workers keep that state current.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tickwork import Worker


@dataclass
class WorkerRow:
    """Snapshot of one worker for display."""

    name: str
    status: str = "INACTIVE"
    interval_ms: int = 0
    next_run: int = -1
    last_duration_ms: int | None = None
    byline: str | None = None
    launches: int = 0
    finishes: int = 0
    failures: int = 0

    @classmethod
    def from_worker(cls, worker: Worker) -> WorkerRow:
        duration = None
        if worker.last_start >= 0 and worker.last_end >= worker.last_start:
            duration = worker.last_end - worker.last_start
        return cls(
            name=worker.name,
            status=worker.status_name,
            interval_ms=worker.interval_ms,
            next_run=worker.next_run,
            last_duration_ms=duration,
            byline=worker.byline,
            launches=worker.launches,
            finishes=worker.finishes,
            failures=worker.failures,
        )


@dataclass
class EventRecord:
    """A recent event for display."""

    timestamp: datetime
    event_type: str
    worker: str
    details: str = ""


@dataclass
class SupervisorState:
    """Current state of the supervisor for display.

    The CLI updates this; the display renders it.
    """

    rows: dict[str, WorkerRow] = field(default_factory=dict)
    events: list[EventRecord] = field(default_factory=list)
    max_events: int = 10

    start_time: float = 0.0
    timeout_ms: int = 0
    tick_interval_ms: int = 0
    ticks: int = 0

    @property
    def elapsed(self) -> float:
        if self.start_time <= 0:
            return 0.0
        return time.time() - self.start_time

    @property
    def finished(self) -> int:
        return sum(row.finishes for row in self.rows.values())

    @property
    def failed(self) -> int:
        return sum(row.failures for row in self.rows.values())

    @property
    def running(self) -> int:
        return sum(1 for row in self.rows.values() if row.status == "RUNNING")

    def sync(self, workers: list[Worker]) -> None:
        """Refresh the rows from the live workers."""
        for worker in workers:
            self.rows[worker.name] = WorkerRow.from_worker(worker)

    def add_event(self, event_type: str, worker: str, details: str = "") -> None:
        """Add an event to the display log."""
        self.events.insert(0, EventRecord(
            timestamp=datetime.now(),
            event_type=event_type,
            worker=worker,
            details=details,
        ))
        if len(self.events) > self.max_events:
            self.events = self.events[:self.max_events]


STATUS_STYLES = {
    "QUEUED": "dim",
    "AWAITING_HANDOFF": "cyan",
    "RUNNING": "yellow",
    "FINISHED_WAITING": "green",
    "FINISHED": "green",
    "ERRORED_WAITING": "red",
    "ERRORED": "red",
    "KILLED_WAITING": "bold red",
    "INACTIVE": "magenta",
}

EVENT_STYLES = {
    "launch": "yellow",
    "finish": "green",
    "fail": "red",
    "detach": "magenta",
}


class SupervisorDisplay:
    """Live TUI with a workers table and a recent events log."""

    def __init__(self, state: SupervisorState, console: Console | None = None):
        self.state = state
        self.console = console or Console()
        self._live: Live | None = None

    def __enter__(self) -> SupervisorDisplay:
        self._live = Live(
            self._build_layout(),
            console=self.console,
            refresh_per_second=4,
            screen=False,
        )
        self._live.__enter__()
        return self

    def __exit__(self, *args) -> None:
        if self._live:
            self._live.__exit__(*args)
            self._live = None

    def refresh(self) -> None:
        """Update the display with current state."""
        if self._live:
            self._live.update(self._build_layout())

    def _build_layout(self) -> Panel:
        s = self.state
        layout = Layout()
        layout.split_column(
            Layout(name="summary", size=3),
            Layout(name="workers", size=4 + max(len(s.rows), 1)),
            Layout(name="events", size=7),
        )
        layout["summary"].update(self._build_summary_section())
        layout["workers"].update(self._build_workers_section())
        layout["events"].update(self._build_events_section())

        return Panel(
            layout,
            title="[bold cyan]tickwork[/bold cyan]",
            border_style="cyan",
        )

    def _build_summary_section(self) -> Panel:
        s = self.state
        stats = Table.grid(expand=True, padding=(0, 2))
        for _ in range(5):
            stats.add_column(justify="left")
        stats.add_row(
            f"[dim]Workers:[/dim] [bold]{len(s.rows)}[/bold]",
            f"[dim]Running:[/dim] [bold yellow]{s.running}[/bold yellow]",
            f"[dim]Finished:[/dim] [bold green]{s.finished:,}[/bold green]",
            f"[dim]Failed:[/dim] [bold red]{s.failed}[/bold red]",
            f"[dim]Uptime:[/dim] [bold]{s.elapsed:.0f}s[/bold]",
        )
        return Panel(stats, title="[bold]Supervisor[/bold]", border_style="blue")

    def _build_workers_section(self) -> Panel:
        s = self.state
        now = time.time() * 1000

        table = Table(box=None, expand=True, padding=(0, 1))
        table.add_column("Worker", width=16)
        table.add_column("Status", width=17)
        table.add_column("Next", width=8, justify="right")
        table.add_column("Last", width=8, justify="right")
        table.add_column("Runs", width=12, justify="right")
        table.add_column("Byline", ratio=1)

        for row in s.rows.values():
            style = STATUS_STYLES.get(row.status, "white")
            if row.status == "QUEUED" and row.next_run > 0:
                next_in = f"{max(row.next_run - now, 0) / 1000:.1f}s"
            else:
                next_in = "[dim]—[/dim]"
            last = f"{row.last_duration_ms / 1000:.1f}s" if row.last_duration_ms is not None else "[dim]—[/dim]"
            runs = f"[green]{row.finishes}[/green]"
            if row.failures:
                runs += f"/[red]{row.failures}[/red]"
            byline = (row.byline or "")[:60]
            table.add_row(
                f"[bold]{row.name}[/bold]",
                f"[{style}]{row.status}[/{style}]",
                next_in,
                last,
                runs,
                f"[dim]{byline}[/dim]",
            )

        if not s.rows:
            table.add_row("[dim]No workers registered[/dim]", "", "", "", "", "")

        return Panel(table, title="[bold]Workers[/bold]", border_style="blue")

    def _build_events_section(self) -> Panel:
        s = self.state
        table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
        table.add_column("Time", width=10, style="dim")
        table.add_column("Event", width=8)
        table.add_column("Worker", width=16)
        table.add_column("Details")

        for event in s.events[:5]:
            style = EVENT_STYLES.get(event.event_type, "white")
            table.add_row(
                event.timestamp.strftime("%H:%M:%S"),
                f"[{style}]{event.event_type}[/{style}]",
                event.worker,
                event.details[:50],
            )

        if not s.events:
            table.add_row("[dim]No events yet[/dim]", "", "", "")

        return Panel(table, title="[bold]Recent Events[/bold]", border_style="blue")


def print_final_summary(state: SupervisorState, console: Console | None = None) -> None:
    """Print per-worker results after the supervisor stops."""
    console = console or Console()
    console.print()

    table = Table(title="Supervisor Results", border_style="green")
    table.add_column("Worker", style="bold")
    table.add_column("Status")
    table.add_column("Launches", justify="right")
    table.add_column("Finished", justify="right")
    table.add_column("Failed", justify="right")

    for row in state.rows.values():
        table.add_row(
            row.name,
            row.status,
            str(row.launches),
            f"[green]{row.finishes}[/green]",
            f"[red]{row.failures}[/red]" if row.failures else "0",
        )

    console.print(table)
    summary = Text()
    summary.append("Uptime: ", style="dim")
    summary.append(f"{state.elapsed:.1f}s", style="bold")
    summary.append("  Ticks: ", style="dim")
    summary.append(str(state.ticks), style="bold")
    console.print(summary)


def print_simple_status(state: SupervisorState) -> None:
    """One-line status for terminals without the live display."""
    parts = [f"{row.name}:{row.status}" for row in state.rows.values()]
    print(
        f"\r[{state.elapsed:.0f}s] ✓:{state.finished} ✗:{state.failed} " + " ".join(parts),
        end="",
        flush=True,
    )
