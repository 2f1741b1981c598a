from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
import logging
import re
import threading
import time
from typing import Callable

from issuepilot.models import TaskKind, TaskStatus
from issuepilot.observability import log_event, log_warning_event


LOGGER = logging.getLogger("issuepilot.worker_pool")
_KEY_PATTERNS: dict[TaskKind, re.Pattern[str]] = {
    "implement": re.compile(r"implement:[1-9][0-9]*"),
    "review": re.compile(r"review:[1-9][0-9]*:[A-Za-z0-9_.-]+"),
}
_ACTIVE_STATUSES: frozenset[TaskStatus] = frozenset({"pending", "in-progress"})

TaskHandler = Callable[[threading.Event], None]


@dataclass
class TaskRecord:
    key: str
    kind: TaskKind
    associated_id: int
    status: TaskStatus
    cancel: threading.Event
    submitted_at: float
    finished_at: float | None = None
    error: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in _ACTIVE_STATUSES


@dataclass(frozen=True)
class PoolSummary:
    active: int
    max_concurrency: int
    completed: int
    failed: int


class WorkerPool:
    """Concurrency-bounded registry of in-flight tasks.

    ``submit`` never blocks on the handler: it registers the task and hands it to a thread
    pool. Callers observe completion only through the registry. All registry reads and
    writes happen under one lock, so the poll loop and finishing handlers can race freely.
    """

    def __init__(
        self,
        max_concurrency: int,
        *,
        wait_poll_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._max_concurrency = max_concurrency
        self._wait_poll_seconds = wait_poll_seconds
        self._clock = clock
        self._tasks: dict[str, TaskRecord] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrency, thread_name_prefix="issuepilot-worker"
        )

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active_count_locked()

    def can_accept(self) -> bool:
        with self._lock:
            return self._active_count_locked() < self._max_concurrency

    def has(self, key: str) -> bool:
        with self._lock:
            record = self._tasks.get(key)
            return record is not None and record.is_active

    def is_busy(self, kind: TaskKind, associated_id: int) -> bool:
        with self._lock:
            return any(
                record.is_active and record.kind == kind and record.associated_id == associated_id
                for record in self._tasks.values()
            )

    def submit(self, key: str, kind: TaskKind, associated_id: int, handler: TaskHandler) -> bool:
        """Start ``handler`` under ``key`` unless the pool is full or the key is active.

        Returns whether the task was started. A full pool or a duplicate key is not an
        error; the caller retries on a later poll. A malformed key is a programming error.
        """
        _validate_key(key, kind)
        with self._lock:
            active = self._active_count_locked()
            if active >= self._max_concurrency:
                log_event(
                    LOGGER,
                    "task_rejected",
                    key=key,
                    reason="pool_full",
                    active=active,
                    max_concurrency=self._max_concurrency,
                )
                return False
            existing = self._tasks.get(key)
            if existing is not None and existing.is_active:
                log_event(LOGGER, "task_rejected", key=key, reason="already_active")
                return False
            record = TaskRecord(
                key=key,
                kind=kind,
                associated_id=associated_id,
                status="in-progress",
                cancel=threading.Event(),
                submitted_at=self._clock(),
            )
            self._tasks[key] = record
            active += 1

        log_event(
            LOGGER,
            "task_submitted",
            key=key,
            kind=kind,
            associated_id=associated_id,
            active=active,
        )
        try:
            self._executor.submit(self._execute, record, handler)
        except RuntimeError as exc:
            # Executor already shut down.
            self._finish(record, "failed", error=str(exc))
            return False
        return True

    def cancel_all(self) -> None:
        with self._lock:
            in_flight = [record for record in self._tasks.values() if record.is_active]
            for record in in_flight:
                record.cancel.set()
                record.status = "failed"
                record.error = "cancelled during shutdown"
                record.finished_at = self._clock()
        log_warning_event(LOGGER, "tasks_cancelled", count=len(in_flight))

    def wait_for_all(self, timeout_seconds: float) -> bool:
        """Wait for in-flight tasks; cancel whatever is still running at the deadline.

        Returns True when everything finished in time.
        """
        deadline = self._clock() + timeout_seconds
        active = self.active_count
        if active:
            log_event(LOGGER, "waiting_for_tasks", active=active, timeout_seconds=timeout_seconds)
        while active:
            remaining = deadline - self._clock()
            if remaining <= 0:
                log_warning_event(LOGGER, "wait_for_tasks_timed_out", active=active)
                self.cancel_all()
                return False
            time.sleep(min(self._wait_poll_seconds, remaining))
            active = self.active_count
        return True

    def snapshot(self) -> tuple[TaskRecord, ...]:
        with self._lock:
            records = [replace(record) for record in self._tasks.values()]
        return tuple(sorted(records, key=lambda record: record.submitted_at))

    def summary(self) -> PoolSummary:
        with self._lock:
            statuses = [record.status for record in self._tasks.values()]
        return PoolSummary(
            active=sum(1 for status in statuses if status in _ACTIVE_STATUSES),
            max_concurrency=self._max_concurrency,
            completed=statuses.count("completed"),
            failed=statuses.count("failed"),
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _execute(self, record: TaskRecord, handler: TaskHandler) -> None:
        try:
            handler(record.cancel)
        except Exception as exc:  # noqa: BLE001
            # Handlers report failure by raising; the pool only records it.
            self._finish(record, "failed", error=str(exc) or type(exc).__name__)
            return
        self._finish(record, "completed")

    def _finish(self, record: TaskRecord, status: TaskStatus, *, error: str | None = None) -> None:
        with self._lock:
            if record.status != "in-progress":
                return
            record.status = status
            record.error = error
            record.finished_at = self._clock()
            duration = record.finished_at - record.submitted_at
        log_event(
            LOGGER,
            "task_finished",
            key=record.key,
            status=status,
            duration_seconds=round(duration, 3),
            error=error,
        )

    def _active_count_locked(self) -> int:
        return sum(1 for record in self._tasks.values() if record.is_active)


def _validate_key(key: str, kind: TaskKind) -> None:
    pattern = _KEY_PATTERNS.get(kind)
    if pattern is None:
        raise ValueError(f"Unknown task kind: {kind!r}")
    if pattern.fullmatch(key) is None:
        raise ValueError(f"Malformed idempotency key {key!r} for {kind} task")
