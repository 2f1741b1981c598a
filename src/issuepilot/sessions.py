from __future__ import annotations

import threading


class SessionStore:
    """Agent continuation tokens keyed by pull request number.

    Lives for the process lifetime; a restart simply starts the next review without a
    token. Last write wins.
    """

    def __init__(self) -> None:
        self._tokens: dict[int, str] = {}
        self._lock = threading.Lock()

    def get(self, pr_number: int) -> str | None:
        with self._lock:
            return self._tokens.get(pr_number)

    def set(self, pr_number: int, session_id: str) -> None:
        with self._lock:
            self._tokens[pr_number] = session_id
