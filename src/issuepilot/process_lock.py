from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import os
from pathlib import Path
from typing import Iterator


_LOCK_FILENAME = "orchestrator.lock"


class ProcessLockError(RuntimeError):
    """Another orchestrator already owns the state directory."""


@contextmanager
def orchestrator_process_lock(*, state_dir: Path, command: str) -> Iterator[Path]:
    """Hold an exclusive lock file in ``state_dir`` for the duration of the block.

    A lock left behind by a process that no longer exists is taken over.
    """
    lock_path = state_dir / _LOCK_FILENAME
    state_dir.mkdir(parents=True, exist_ok=True)
    _acquire(lock_path, command=command)
    try:
        yield lock_path
    finally:
        _release(lock_path)


def _acquire(lock_path: Path, *, command: str) -> None:
    payload = json.dumps(
        {
            "pid": os.getpid(),
            "command": command,
            "started_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        },
        sort_keys=True,
    )
    for _ in range(2):
        try:
            fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            owner_pid = _read_owner_pid(lock_path)
            if owner_pid is not None and owner_pid != os.getpid() and not _pid_is_running(owner_pid):
                lock_path.unlink(missing_ok=True)
                continue
            detail = f" (pid={owner_pid})" if owner_pid is not None else ""
            raise ProcessLockError(
                f"Another issuepilot process appears active{detail}. Lock file: {lock_path}"
            ) from None
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload + "\n")
        return
    raise ProcessLockError(f"Could not acquire lock file: {lock_path}")


def _release(lock_path: Path) -> None:
    if _read_owner_pid(lock_path) == os.getpid():
        lock_path.unlink(missing_ok=True)


def _read_owner_pid(lock_path: Path) -> int | None:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    pid = payload.get("pid")
    return pid if isinstance(pid, int) and not isinstance(pid, bool) else None


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
