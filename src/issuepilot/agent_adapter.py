from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
import threading

from issuepilot.models import AgentResult


class AgentError(RuntimeError):
    """The agent could not be started or exited unsuccessfully."""


class AgentCancelledError(AgentError):
    """The agent run was cancelled through its cancellation handle."""


class AgentAdapter(ABC):
    @abstractmethod
    def run(
        self,
        *,
        prompt: str,
        cwd: Path,
        cancel: threading.Event,
        resume_session_id: str | None = None,
    ) -> AgentResult:
        """Run one agent turn in ``cwd``.

        Returns the raw result whatever the exit code; callers decide what a non-zero exit
        means. Raises ``AgentCancelledError`` when ``cancel`` fires and ``AgentError`` when
        the process cannot be started.
        """
