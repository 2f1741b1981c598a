from __future__ import annotations

from datetime import datetime, timezone
from functools import partial
import logging
import threading
from typing import Callable

from issuepilot.config import AppConfig
from issuepilot.github_gateway import GitHubGateway
from issuepilot.models import FeedbackBatch, FeedbackEntry
from issuepilot.observability import log_event, log_warning_event
from issuepilot.tasks import ImplementTask, ReviewTask
from issuepilot.worker_pool import WorkerPool


LOGGER = logging.getLogger("issuepilot.poller")


class Poller:
    """The control loop: each cycle scans for new work and for new review feedback.

    The two scans fail independently. The feedback window only moves forward when both
    scans finish, so a failed cycle re-reads the same window next time. Feedback for a
    pull request that cannot be dispatched yet (pool full, or a review of that pull
    request still running) is held and merged into the next cycle's batch.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        pool: WorkerPool,
        implement_task: ImplementTask,
        review_task: ReviewTask,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._github = github
        self._pool = pool
        self._implement_task = implement_task
        self._review_task = review_task
        self._clock = clock or _utc_now
        self._since = _github_timestamp(self._clock())
        self._seen_comment_ids: set[int] = set()
        self._held_feedback: dict[int, list[FeedbackEntry]] = {}
        self.last_cycle_at: datetime | None = None
        self.last_cycle_ok: bool | None = None

    @property
    def since(self) -> str:
        return self._since

    def held_feedback_count(self) -> int:
        return sum(len(entries) for entries in self._held_feedback.values())

    def run(self, stop: threading.Event) -> None:
        log_event(
            LOGGER,
            "poller_started",
            interval_seconds=self._config.runtime.poll_interval_seconds,
            since=self._since,
        )
        while not stop.is_set():
            self.poll_once()
            if stop.wait(self._config.runtime.poll_interval_seconds):
                break
        log_event(LOGGER, "poller_stopped")

    def poll_once(self) -> bool:
        started_at = self._clock()
        log_event(LOGGER, "poll_started", since=self._since, active=self._pool.active_count)

        ok = True
        try:
            self._scan_new_work()
        except Exception as exc:  # noqa: BLE001
            ok = False
            log_warning_event(
                LOGGER,
                "poll_cycle_failed",
                scan="new_work",
                error_type=type(exc).__name__,
                error=str(exc),
            )

        fetched_ids: set[int] = set()
        try:
            fetched_ids = self._scan_feedback(_cycle_token(started_at))
        except Exception as exc:  # noqa: BLE001
            ok = False
            log_warning_event(
                LOGGER,
                "poll_cycle_failed",
                scan="feedback",
                error_type=type(exc).__name__,
                error=str(exc),
            )

        if ok:
            # The window restarts where this cycle's fetch began; ids from this fetch guard
            # the shared boundary second against double dispatch.
            self._since = _github_timestamp(started_at)
            self._seen_comment_ids = fetched_ids
        self.last_cycle_at = started_at
        self.last_cycle_ok = ok
        log_event(
            LOGGER,
            "poll_completed",
            ok=ok,
            since=self._since,
            active=self._pool.active_count,
            held_feedback=self.held_feedback_count(),
        )
        return ok

    def _scan_new_work(self) -> None:
        items = self._github.list_open_issues_with_label(self._config.labels.trigger)
        log_event(LOGGER, "work_items_fetched", count=len(items))
        for item in items:
            key = f"implement:{item.number}"
            if self._pool.has(key):
                log_event(LOGGER, "work_item_skipped", issue_number=item.number, reason="active")
                continue
            if not self._pool.can_accept():
                log_event(
                    LOGGER, "work_item_skipped", issue_number=item.number, reason="pool_full"
                )
                break
            self._pool.submit(key, "implement", item.number, partial(self._implement_task.run, item))

    def _scan_feedback(self, cycle_token: str) -> set[int]:
        entries = self._github.list_feedback_since(self._since)
        fetched_ids = {entry.comment_id for entry in entries}
        fresh = [entry for entry in entries if entry.comment_id not in self._seen_comment_ids]
        self._seen_comment_ids |= fetched_ids
        for entry in fresh:
            self._held_feedback.setdefault(entry.request_number, []).append(entry)
        log_event(
            LOGGER,
            "feedback_fetched",
            count=len(entries),
            fresh=len(fresh),
            pull_requests=len(self._held_feedback),
        )

        for pr_number in list(self._held_feedback):
            if self._pool.is_busy("review", pr_number):
                log_event(LOGGER, "feedback_held", pr_number=pr_number, reason="review_active")
                continue
            if not self._pool.can_accept():
                log_event(LOGGER, "feedback_held", pr_number=pr_number, reason="pool_full")
                break
            batch = FeedbackBatch(
                request_number=pr_number, entries=tuple(self._held_feedback[pr_number])
            )
            key = f"review:{pr_number}:{cycle_token}"
            if self._pool.submit(key, "review", pr_number, partial(self._review_task.run, batch)):
                del self._held_feedback[pr_number]
        return fetched_ids


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _github_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _cycle_token(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
