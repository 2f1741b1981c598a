from __future__ import annotations

from pathlib import Path
import json
import logging
import threading

from issuepilot.agent_adapter import AgentAdapter, AgentCancelledError, AgentError
from issuepilot.config import AgentConfig
from issuepilot.models import AgentResult
from issuepilot.observability import log_event
from issuepilot.shell import CommandCancelledError, run_cancellable


LOGGER = logging.getLogger("issuepilot.claude_adapter")


class ClaudeCliAdapter(AgentAdapter):
    """Runs the Claude Code CLI headless (``-p``) with JSON output."""

    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    def run(
        self,
        *,
        prompt: str,
        cwd: Path,
        cancel: threading.Event,
        resume_session_id: str | None = None,
    ) -> AgentResult:
        cmd = self.build_command(prompt=prompt, resume_session_id=resume_session_id)
        log_event(
            LOGGER,
            "agent_invocation_started",
            cwd=str(cwd),
            has_resume=resume_session_id is not None,
            prompt_length=len(prompt),
        )
        try:
            completed = run_cancellable(cmd, cwd=cwd, cancel=cancel)
        except CommandCancelledError as exc:
            log_event(LOGGER, "agent_cancelled", cwd=str(cwd))
            raise AgentCancelledError("Agent run was cancelled") from exc
        except OSError as exc:
            log_event(
                LOGGER,
                "agent_start_failed",
                command=self._config.command,
                error_type=type(exc).__name__,
            )
            raise AgentError(f"Could not start {self._config.command}: {exc}") from exc

        session_id = extract_session_id(completed.stdout)
        log_event(
            LOGGER,
            "agent_invocation_finished",
            exit_code=completed.returncode,
            session_id=session_id,
            stdout_length=len(completed.stdout),
        )
        return AgentResult(
            exit_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            session_id=session_id,
        )

    def build_command(self, *, prompt: str, resume_session_id: str | None) -> list[str]:
        cmd = [self._config.command, "-p", prompt, "--output-format", "json"]
        if resume_session_id:
            cmd.extend(["--resume", resume_session_id])
        for tool in self._config.allowed_tools:
            cmd.extend(["--allowedTools", tool])
        cmd.extend(self._config.extra_args)
        return cmd


def extract_session_id(stdout: str) -> str | None:
    """Find the continuation token in newline-delimited JSON output.

    The last record normally carries ``session_id``; earlier records are scanned backward
    when it does not, skipping lines that are not valid JSON objects.
    """
    lines = [line.strip() for line in stdout.strip().splitlines() if line.strip()]
    for line in reversed(lines):
        payload = _parse_record(line)
        if payload is None:
            continue
        session_id = payload.get("session_id")
        if isinstance(session_id, str) and session_id:
            return session_id
    return None


def _parse_record(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload
