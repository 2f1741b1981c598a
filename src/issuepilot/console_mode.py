from __future__ import annotations

import sys
from threading import Event, Thread

from issuepilot.service_runner import ServiceRuntime, run_service
from issuepilot.status_tui import run_status_tui


def run_console_mode(runtime: ServiceRuntime) -> None:
    """Run the service in a background thread with the status view in the foreground.

    Quitting the view stops the poller and drains tasks the same way a signal would.
    """
    if not _is_interactive_terminal():
        raise RuntimeError(
            "Console mode requires an interactive terminal. Use `issuepilot run` instead."
        )

    stop_event = Event()
    service_errors: list[BaseException] = []

    def run_service_thread() -> None:
        try:
            run_service(runtime, once=False, stop_event=stop_event)
        except BaseException as exc:  # noqa: BLE001
            service_errors.append(exc)
            stop_event.set()

    service_thread = Thread(target=run_service_thread, name="issuepilot-service", daemon=True)
    service_thread.start()

    tui_error: BaseException | None = None
    try:
        run_status_tui(
            pool=runtime.pool,
            poller=runtime.poller,
            refresh_seconds=float(runtime.config.runtime.status_refresh_seconds),
            on_shutdown=stop_event.set,
        )
    except BaseException as exc:  # noqa: BLE001
        tui_error = exc
    finally:
        stop_event.set()
        service_thread.join(timeout=_service_join_timeout_seconds(runtime))

    if service_thread.is_alive():
        raise RuntimeError("Service thread did not stop after the status view closed.")
    if service_errors:
        error = service_errors[0]
        if isinstance(error, Exception):
            raise error
        raise RuntimeError("Service thread failed with a non-Exception error.") from error
    if tui_error is not None:
        raise tui_error


def _service_join_timeout_seconds(runtime: ServiceRuntime) -> float:
    return float(runtime.config.runtime.shutdown_grace_seconds) + 10.0


def _is_interactive_terminal() -> bool:
    return bool(sys.stdin.isatty() and sys.stdout.isatty())
