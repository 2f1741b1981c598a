from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import threading
from typing import cast

import pytest
from textual.widgets import DataTable

from issuepilot import status_tui as tui
from issuepilot.poller import Poller
from issuepilot.worker_pool import PoolSummary, TaskRecord, WorkerPool


def _record(
    key: str,
    *,
    status: str = "in-progress",
    submitted_at: float = 100.0,
    finished_at: float | None = None,
    error: str | None = None,
) -> TaskRecord:
    kind, number = key.split(":")[:2]
    return TaskRecord(
        key=key,
        kind=kind,  # type: ignore[arg-type]
        associated_id=int(number),
        status=status,  # type: ignore[arg-type]
        cancel=threading.Event(),
        submitted_at=submitted_at,
        finished_at=finished_at,
        error=error,
    )


class FakePool:
    def __init__(self, records: tuple[TaskRecord, ...]) -> None:
        self.records = records

    def snapshot(self) -> tuple[TaskRecord, ...]:
        return self.records

    def summary(self) -> PoolSummary:
        return PoolSummary(active=1, max_concurrency=3, completed=1, failed=0)


class FakePoller:
    last_cycle_at = datetime(2026, 3, 1, 10, 15, 0, tzinfo=timezone.utc)
    last_cycle_ok = True

    def held_feedback_count(self) -> int:
        return 2


def test_summary_text_before_first_poll() -> None:
    text = tui._summary_text(
        PoolSummary(active=0, max_concurrency=3, completed=0, failed=0),
        last_cycle_at=None,
        last_cycle_ok=None,
        held_feedback=0,
    )

    assert text == "active=0/3 completed=0 failed=0 held_feedback=0 last_poll=never"


def test_summary_text_reports_failed_poll() -> None:
    text = tui._summary_text(
        PoolSummary(active=2, max_concurrency=3, completed=4, failed=1),
        last_cycle_at=datetime(2026, 3, 1, 9, 5, 7, tzinfo=timezone.utc),
        last_cycle_ok=False,
        held_feedback=3,
    )

    assert "active=2/3" in text
    assert "held_feedback=3" in text
    assert text.endswith("last_poll=09:05:07 (failed)")


def test_task_rows_newest_first_with_ages() -> None:
    records = (
        _record("implement:4", status="completed", submitted_at=10.0, finished_at=100.0),
        _record("review:7:c1", submitted_at=200.0),
        _record(
            "implement:9",
            status="failed",
            submitted_at=300.0,
            finished_at=7500.0,
            error="Agent exited with code 1\n" + "x" * 200,
        ),
    )

    rows = tui._task_rows(records, now=230.0)

    assert [row[0] for row in rows] == ["implement:9", "review:7:c1", "implement:4"]
    assert rows[1] == ("review:7:c1", "review", "#7", "in-progress", "30s", "")
    assert rows[2][4] == "1.5m"
    assert rows[0][4] == "2.0h"
    assert rows[0][5].startswith("Agent exited with code 1 x")
    assert len(rows[0][5]) == 60
    assert rows[0][5].endswith("...")


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(0.0, "0s"), (59.4, "59s"), (90.0, "1.5m"), (5400.0, "1.5h")],
)
def test_render_seconds(seconds: float, expected: str) -> None:
    assert tui._render_seconds(seconds) == expected


def test_status_app_renders_pool_and_quits() -> None:
    records = (
        _record("implement:4", status="completed", submitted_at=10.0, finished_at=20.0),
        _record("review:7:c1", submitted_at=15.0),
    )
    shutdown_calls: list[int] = []
    app = tui.StatusApp(
        pool=cast(WorkerPool, FakePool(records)),
        poller=cast(Poller, FakePoller()),
        refresh_seconds=60,
        on_shutdown=lambda: shutdown_calls.append(1),
        clock=lambda: 25.0,
    )

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            table = app.query_one("#tasks-table", DataTable)
            assert table.row_count == 2
            assert "held_feedback=2" in app.summary_text
            assert "last_poll=10:15:00 (ok)" in app.summary_text
            app.action_refresh()
            assert table.row_count == 2
            await pilot.press("q")

    asyncio.run(run_app())

    assert shutdown_calls == [1]


def test_run_status_tui_builds_and_runs_app(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_run(self: tui.StatusApp) -> None:
        captured["app"] = self

    monkeypatch.setattr(tui.StatusApp, "run", fake_run)

    tui.run_status_tui(
        pool=cast(WorkerPool, FakePool(())),
        poller=cast(Poller, FakePoller()),
        refresh_seconds=2,
        on_shutdown=None,
    )

    assert isinstance(captured["app"], tui.StatusApp)
