from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import subprocess
import threading

from issuepilot.observability import log_event, log_warning_event


class CommandError(RuntimeError):
    pass


class CommandCancelledError(RuntimeError):
    pass


LOGGER = logging.getLogger("issuepilot.shell")
_CANCEL_POLL_SECONDS = 0.2
_TERMINATE_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.strip().replace("\n", "\\n")
    if not compact:
        return "<empty>"
    return compact if len(compact) <= limit else f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
) -> str:
    """Run ``argv`` to completion and return its stdout.

    With ``check`` a non-zero exit raises ``CommandError`` carrying the full output, which
    callers such as the GitHub gateway inspect (for example for ``HTTP 404``).
    """
    completed = subprocess.run(
        argv,
        cwd=None if cwd is None else str(cwd),
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
    )
    result = CommandResult(
        returncode=completed.returncode, stdout=completed.stdout, stderr=completed.stderr
    )
    if check and result.returncode != 0:
        command = " ".join(argv)
        log_warning_event(
            LOGGER,
            "command_failed",
            command=command,
            exit_code=result.returncode,
            stderr=_preview(result.stderr),
            stdout=_preview(result.stdout),
        )
        raise CommandError(
            f"Command failed: {command} (exit {result.returncode})\n"
            f"stdout:\n{result.stdout}\n"
            f"stderr:\n{result.stderr}"
        )
    return result.stdout


def run_cancellable(
    argv: list[str],
    *,
    cwd: Path,
    cancel: threading.Event,
) -> CommandResult:
    """Run ``argv`` to completion unless ``cancel`` is set first.

    Output is captured in full. On cancellation the child gets SIGTERM, then SIGKILL if it
    is still alive after a grace period, and ``CommandCancelledError`` is raised. Errors
    starting the process (missing binary, bad cwd) propagate as ``OSError``.
    """
    if cancel.is_set():
        raise CommandCancelledError(f"Cancelled before start: {argv[0]}")

    proc = subprocess.Popen(
        argv,
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=_CANCEL_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if not cancel.is_set():
                continue
        log_event(LOGGER, "command_cancelled", command=argv[0], pid=proc.pid)
        proc.terminate()
        try:
            proc.communicate(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
        raise CommandCancelledError(f"Cancelled while running: {argv[0]}")

    return CommandResult(returncode=proc.returncode, stdout=stdout, stderr=stderr)
