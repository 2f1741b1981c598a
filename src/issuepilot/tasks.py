from __future__ import annotations

from pathlib import Path
import logging
import threading
from typing import Callable, Literal, TypeVar

from issuepilot.agent_adapter import AgentAdapter, AgentError
from issuepilot.config import AppConfig
from issuepilot.git_ops import WorktreeManager
from issuepilot.github_gateway import GitHubGateway
from issuepilot.models import AgentResult, FeedbackBatch, WorkItem
from issuepilot.observability import log_event, log_warning_event
from issuepilot.prompts import (
    build_implement_prompt,
    build_review_prompt,
    extract_decision_points,
    render_failure_comment,
    render_implement_completed_comment,
    render_implement_started_comment,
    render_pull_request_body,
    render_pull_request_title,
    render_review_completed_comment,
    render_review_started_comment,
)
from issuepilot.sessions import SessionStore


LOGGER = logging.getLogger("issuepilot.tasks")
_MAX_ERROR_CHARS = 4000
_MAX_STDERR_PREVIEW_CHARS = 1000

ImplementState = Literal[
    "labeling", "workspace-ready", "agent-running", "published", "notified", "failed"
]
ReviewState = Literal["resolving-branch", "workspace-ready", "agent-running", "published", "failed"]
_StateT = TypeVar("_StateT", bound=str)


class TaskFailedError(RuntimeError):
    """Raised after a task's compensating actions so the pool records the failure."""


class TaskCancelledError(RuntimeError):
    pass


class ImplementTask:
    """Turns one labeled issue into a pull request.

    Labels are swapped first so the issue stops matching the trigger, then a worktree is
    created on ``<prefix>issue-<n>`` (resuming the remote branch if a previous run pushed
    it), the agent runs, and the result is pushed and opened as a pull request. Any failure
    swaps the in-progress label for the failure label and comments the error. The worktree
    is discarded on every exit path.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        workspaces: WorktreeManager,
        agent: AgentAdapter,
    ) -> None:
        self._config = config
        self._github = github
        self._workspaces = workspaces
        self._agent = agent

    def run(self, item: WorkItem, cancel: threading.Event) -> None:
        labels = self._config.labels
        branch = self._config.repo.issue_branch(item.number)
        path = self._workspaces.issue_workspace_path(item.number)
        state: ImplementState = "labeling"
        log_event(LOGGER, "implement_task_started", issue_number=item.number, branch=branch)
        try:
            self._github.remove_label(item.number, labels.trigger)
            self._github.add_label(item.number, labels.in_progress)
            self._github.post_issue_comment(item.number, render_implement_started_comment())

            _raise_if_cancelled(cancel)
            self._workspaces.create(path, branch)
            state = _advance("implement", item.number, state, "workspace-ready")

            task_list_path = self._config.repo.task_list_path
            prompt = build_implement_prompt(
                item=item,
                task_list_path=task_list_path,
                task_list=self._workspaces.read_text(path, task_list_path),
            )
            state = _advance("implement", item.number, state, "agent-running")
            result = self._agent.run(prompt=prompt, cwd=path, cancel=cancel)
            _require_success(result)

            _raise_if_cancelled(cancel)
            self._workspaces.publish(path, branch)
            pull_request = self._github.create_pull_request(
                title=render_pull_request_title(item),
                head=branch,
                base=self._config.repo.default_branch,
                body=render_pull_request_body(
                    item=item,
                    decision_points=extract_decision_points(result.stdout),
                    session_id=result.session_id,
                ),
            )
            state = _advance("implement", item.number, state, "published")

            self._github.post_issue_comment(
                item.number,
                render_implement_completed_comment(
                    pr_url=pull_request.html_url,
                    pr_number=pull_request.number,
                    session_id=result.session_id,
                ),
            )
            self._github.remove_label(item.number, labels.in_progress)
            state = _advance("implement", item.number, state, "notified")
            log_event(
                LOGGER,
                "implement_task_completed",
                issue_number=item.number,
                pr_number=pull_request.number,
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "implement_task_failed",
                issue_number=item.number,
                state=state,
                error_type=type(exc).__name__,
            )
            self._report_failure(item.number, exc)
            _advance("implement", item.number, state, "failed")
            raise TaskFailedError(
                f"Implement task for issue #{item.number} failed during {state}: {exc}"
            ) from exc
        finally:
            _discard_workspace(self._workspaces, path)

    def _report_failure(self, issue_number: int, exc: Exception) -> None:
        labels = self._config.labels
        _best_effort(
            "remove_in_progress_label",
            lambda: self._github.remove_label(issue_number, labels.in_progress),
            issue_number=issue_number,
        )
        _best_effort(
            "add_failed_label",
            lambda: self._github.add_label(issue_number, labels.failed),
            issue_number=issue_number,
        )
        _best_effort(
            "post_failure_comment",
            lambda: self._github.post_issue_comment(
                issue_number,
                render_failure_comment(action="Automated implementation", error=_error_text(exc)),
            ),
            issue_number=issue_number,
        )


class ReviewTask:
    """Applies one batch of review feedback to an existing pull request branch.

    The agent resumes the session stored for the pull request when one exists; the store
    is only updated after a successful agent run. Review tasks never touch labels.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        workspaces: WorktreeManager,
        agent: AgentAdapter,
        sessions: SessionStore,
    ) -> None:
        self._config = config
        self._github = github
        self._workspaces = workspaces
        self._agent = agent
        self._sessions = sessions

    def run(self, batch: FeedbackBatch, cancel: threading.Event) -> None:
        pr_number = batch.request_number
        path = self._workspaces.review_workspace_path(pr_number)
        state: ReviewState = "resolving-branch"
        log_event(
            LOGGER,
            "review_task_started",
            pr_number=pr_number,
            feedback_count=len(batch.entries),
        )
        try:
            branch = self._github.get_pull_request_branch(pr_number)
            _raise_if_cancelled(cancel)
            self._workspaces.attach(path, branch)
            state = _advance("review", pr_number, state, "workspace-ready")
            self._github.post_issue_comment(
                pr_number, render_review_started_comment(len(batch.entries))
            )

            prompt = build_review_prompt(entries=batch.entries)
            state = _advance("review", pr_number, state, "agent-running")
            result = self._agent.run(
                prompt=prompt,
                cwd=path,
                cancel=cancel,
                resume_session_id=self._sessions.get(pr_number),
            )
            _require_success(result)
            if result.session_id:
                self._sessions.set(pr_number, result.session_id)

            _raise_if_cancelled(cancel)
            self._workspaces.publish(path, branch)
            self._github.post_issue_comment(pr_number, render_review_completed_comment())
            state = _advance("review", pr_number, state, "published")
            log_event(LOGGER, "review_task_completed", pr_number=pr_number)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "review_task_failed",
                pr_number=pr_number,
                state=state,
                error_type=type(exc).__name__,
            )
            _best_effort(
                "post_failure_comment",
                lambda: self._github.post_issue_comment(
                    pr_number,
                    render_failure_comment(action="Review follow-up", error=_error_text(exc)),
                ),
                pr_number=pr_number,
            )
            _advance("review", pr_number, state, "failed")
            raise TaskFailedError(
                f"Review task for pull request #{pr_number} failed during {state}: {exc}"
            ) from exc
        finally:
            _discard_workspace(self._workspaces, path)


def _advance(kind: str, number: int, current: _StateT, target: _StateT) -> _StateT:
    log_event(LOGGER, "task_state_changed", kind=kind, number=number, previous=current, state=target)
    return target


def _require_success(result: AgentResult) -> None:
    if result.exit_code == 0:
        return
    message = f"Agent exited with code {result.exit_code}"
    stderr = result.stderr.strip()
    if stderr:
        message += f"\n{stderr[-_MAX_STDERR_PREVIEW_CHARS:]}"
    raise AgentError(message)


def _raise_if_cancelled(cancel: threading.Event) -> None:
    if cancel.is_set():
        raise TaskCancelledError("Task was cancelled")


def _discard_workspace(workspaces: WorktreeManager, path: Path) -> None:
    _best_effort("discard_workspace", lambda: workspaces.discard(path), path=str(path))


def _best_effort(action: str, step: Callable[[], None], **fields: object) -> None:
    try:
        step()
    except Exception as exc:  # noqa: BLE001
        log_warning_event(
            LOGGER,
            "best_effort_step_failed",
            action=action,
            error_type=type(exc).__name__,
            error=str(exc),
            **fields,
        )


def _error_text(exc: Exception) -> str:
    text = str(exc) or type(exc).__name__
    if len(text) > _MAX_ERROR_CHARS:
        return f"{text[:_MAX_ERROR_CHARS]}..."
    return text
