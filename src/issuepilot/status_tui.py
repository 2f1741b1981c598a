from __future__ import annotations

from datetime import datetime
import time
from typing import Callable

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import DataTable, Footer, Header, Static

from issuepilot.poller import Poller
from issuepilot.worker_pool import PoolSummary, TaskRecord, WorkerPool


_ERROR_MAX_CHARS = 60


class StatusApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    #summary {
        padding: 0 1;
        text-style: bold;
    }
    #tasks-table {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        pool: WorkerPool,
        poller: Poller,
        refresh_seconds: float,
        on_shutdown: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._pool = pool
        self._poller = poller
        self._refresh_seconds = refresh_seconds
        self._on_shutdown = on_shutdown
        self._clock = clock
        self.summary_text = ""

    def compose(self) -> ComposeResult:
        yield Header()
        yield Static("", id="summary")
        yield DataTable(id="tasks-table")
        yield Footer()

    def on_mount(self) -> None:
        self.title = "issuepilot"
        table = self.query_one("#tasks-table", DataTable)
        table.add_columns("Key", "Kind", "Number", "Status", "Age", "Error")
        self.action_refresh()
        self.set_interval(self._refresh_seconds, self.action_refresh)

    def action_refresh(self) -> None:
        self.summary_text = _summary_text(
            self._pool.summary(),
            last_cycle_at=self._poller.last_cycle_at,
            last_cycle_ok=self._poller.last_cycle_ok,
            held_feedback=self._poller.held_feedback_count(),
        )
        self.query_one("#summary", Static).update(self.summary_text)
        table = self.query_one("#tasks-table", DataTable)
        table.clear(columns=False)
        for row in _task_rows(self._pool.snapshot(), now=self._clock()):
            table.add_row(*row)

    async def action_quit(self) -> None:
        if self._on_shutdown is not None:
            self._on_shutdown()
        self.exit()


def run_status_tui(
    *,
    pool: WorkerPool,
    poller: Poller,
    refresh_seconds: float,
    on_shutdown: Callable[[], None] | None = None,
) -> None:
    StatusApp(
        pool=pool,
        poller=poller,
        refresh_seconds=refresh_seconds,
        on_shutdown=on_shutdown,
    ).run()


def _summary_text(
    summary: PoolSummary,
    *,
    last_cycle_at: datetime | None,
    last_cycle_ok: bool | None,
    held_feedback: int,
) -> str:
    if last_cycle_at is None:
        last_poll = "never"
    else:
        outcome = "ok" if last_cycle_ok else "failed"
        last_poll = f"{last_cycle_at.strftime('%H:%M:%S')} ({outcome})"
    return (
        f"active={summary.active}/{summary.max_concurrency} "
        f"completed={summary.completed} failed={summary.failed} "
        f"held_feedback={held_feedback} last_poll={last_poll}"
    )


def _task_rows(
    records: tuple[TaskRecord, ...], *, now: float
) -> list[tuple[str, str, str, str, str, str]]:
    rows: list[tuple[str, str, str, str, str, str]] = []
    # Newest first.
    for record in reversed(records):
        end = record.finished_at if record.finished_at is not None else now
        rows.append(
            (
                record.key,
                record.kind,
                f"#{record.associated_id}",
                record.status,
                _render_seconds(max(0.0, end - record.submitted_at)),
                _truncate(record.error or "", _ERROR_MAX_CHARS),
            )
        )
    return rows


def _render_seconds(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


def _truncate(text: str, limit: int) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return f"{compact[: limit - 3]}..."
