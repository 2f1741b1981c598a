from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO, cast


_LOGGER_NAME: Final[str] = "issuepilot"
_MAX_VALUE_LEN: Final[int] = 120
_LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"

# Events that still reach the sinks in "low" mode. Warnings always do.
_LIFECYCLE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "task_submitted",
        "task_finished",
        "implement_task_completed",
        "review_task_completed",
        "agent_invocation_started",
        "agent_invocation_finished",
        "agent_cancelled",
        "github_pr_created",
        "poll_cycle_failed",
        "shutdown_requested",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
    to_stderr: bool = True,
) -> None:
    """Install the handlers of the ``issuepilot`` logger.

    ``verbose`` is ``True``/``"high"`` for every event, ``False``/``"low"`` for lifecycle
    events and warnings only, and ``None`` to silence the logger. Logs go to stderr unless
    ``to_stderr`` is false, and to ``<state_dir>/logs/<utc-date>.log`` when a state dir is
    given. Calling it again replaces the previous handlers.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    mode = _parse_verbose_mode(verbose)
    handlers = [] if mode is None else _build_handlers(mode, state_dir=state_dir, to_stderr=to_stderr)
    if not handlers:
        handlers.append(logging.NullHandler())
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(logging.CRITICAL + 1 if mode is None else logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_format_event(event, fields), extra={"event": event})


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_format_event(event, fields), extra={"event": event})


def _build_handlers(
    mode: VerboseMode, *, state_dir: Path | None, to_stderr: bool
) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if to_stderr:
        handlers.append(logging.StreamHandler(sys.stderr))
    if state_dir is not None:
        handlers.append(_DailyLogFileHandler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        if mode == "low":
            handler.addFilter(_LifecycleFilter())
    return handlers


def _format_event(event: str, fields: dict[str, object]) -> str:
    rendered = [f"{key}={_normalize_field_value(fields[key])}" for key in sorted(fields)]
    return " ".join([f"event={_normalize_field_value(event)}", *rendered])


def _normalize_field_value(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return str(value)
    if not isinstance(value, str):
        return f"<{type(value).__name__}>"

    text = " ".join(value.split())
    if not text:
        return "<empty>"
    if len(text) > _MAX_VALUE_LEN:
        text = text[:_MAX_VALUE_LEN] + "..."
    if " " in text or "=" in text:
        return json.dumps(text)
    return text


def _parse_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else "low"
    mode = verbose.strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, mode)


class _LifecycleFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return getattr(record, "event", None) in _LIFECYCLE_EVENTS


class _DailyLogFileHandler(logging.StreamHandler):
    """Append to one file per UTC day, switching files when the date changes."""

    def __init__(self, logs_dir: Path) -> None:
        super().__init__(stream=None)
        self.stream: TextIO | None = None  # type: ignore[assignment]
        self._logs_dir = logs_dir
        self._day = ""

    def emit(self, record: logging.LogRecord) -> None:
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if day != self._day or self.stream is None:
            try:
                self._open_for_day(day)
            except OSError:
                self.handleError(record)
                return
        super().emit(record)

    def close(self) -> None:
        self.acquire()
        try:
            if self.stream is not None:
                self.stream.close()
                self.stream = None
            super().close()
        finally:
            self.release()

    def _open_for_day(self, day: str) -> None:
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        stream = (self._logs_dir / f"{day}.log").open("a", encoding="utf-8")
        self.acquire()
        try:
            previous, self.stream = self.stream, stream
            self._day = day
        finally:
            self.release()
        if previous is not None:
            previous.close()
