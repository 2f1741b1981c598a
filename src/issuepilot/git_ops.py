from __future__ import annotations

from pathlib import Path
import logging
import shutil

from issuepilot.config import RepoConfig
from issuepilot.observability import log_event
from issuepilot.shell import CommandError, run


LOGGER = logging.getLogger("issuepilot.git_ops")


class WorkspaceError(RuntimeError):
    """A workspace could not be created or published."""


class WorktreeManager:
    """Branch-scoped git worktrees of the configured clone, one per task."""

    def __init__(self, repo: RepoConfig) -> None:
        self.repo = repo
        self.repo_root = repo.path
        self.worktrees_root = repo.effective_worktrees_dir

    def ensure_layout(self) -> None:
        if not (self.repo_root / ".git").exists():
            raise WorkspaceError(f"Not a git clone: {self.repo_root}")
        self.worktrees_root.mkdir(parents=True, exist_ok=True)

    def issue_workspace_path(self, issue_number: int) -> Path:
        return self.worktrees_root / f"issue-{issue_number}"

    def review_workspace_path(self, pr_number: int) -> Path:
        return self.worktrees_root / f"review-pr-{pr_number}"

    def create(self, path: Path, branch: str) -> None:
        """Create a worktree on ``branch``, resuming it if it already exists on origin."""
        self._clear_stale(path)
        try:
            if self.remote_branch_exists(branch):
                log_event(LOGGER, "workspace_resume_branch", path=str(path), branch=branch)
                self._checkout_remote_branch(path, branch)
            else:
                trunk = self.repo.default_branch
                log_event(
                    LOGGER, "workspace_new_branch", path=str(path), branch=branch, base=trunk
                )
                self._git("fetch", "origin", trunk)
                self._git("worktree", "add", "-B", branch, str(path), f"origin/{trunk}")
        except CommandError as exc:
            raise WorkspaceError(f"Could not create workspace for {branch}: {exc}") from exc

    def attach(self, path: Path, branch: str) -> None:
        """Create a worktree tracking the existing remote ``branch``."""
        self._clear_stale(path)
        log_event(LOGGER, "workspace_attach_branch", path=str(path), branch=branch)
        try:
            self._checkout_remote_branch(path, branch)
        except CommandError as exc:
            raise WorkspaceError(f"Could not attach workspace to {branch}: {exc}") from exc

    def publish(self, path: Path, branch: str) -> None:
        log_event(LOGGER, "git_push", path=str(path), branch=branch)
        try:
            run(["git", "-C", str(path), "push", "-u", "origin", branch])
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                path=str(path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise WorkspaceError(f"Could not push {branch}: {exc}") from exc

    def discard(self, path: Path) -> None:
        log_event(LOGGER, "workspace_discard", path=str(path))
        if path.exists():
            self._git("worktree", "remove", "--force", str(path))
        self._git("worktree", "prune")

    def remote_branch_exists(self, branch: str) -> bool:
        out = self._git("ls-remote", "--heads", "origin", branch)
        return bool(out.strip())

    def read_text(self, path: Path, relpath: str) -> str | None:
        target = path / relpath
        try:
            return target.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError, UnicodeDecodeError):
            return None

    def _checkout_remote_branch(self, path: Path, branch: str) -> None:
        self._git("fetch", "origin", branch)
        self._git("worktree", "add", "--detach", str(path), f"origin/{branch}")
        run(["git", "-C", str(path), "checkout", "-B", branch, f"origin/{branch}"])

    def _clear_stale(self, path: Path) -> None:
        if not path.exists():
            return
        log_event(LOGGER, "workspace_stale_removed", path=str(path))
        try:
            self._git("worktree", "remove", "--force", str(path))
        except CommandError:
            shutil.rmtree(path, ignore_errors=True)
            self._git("worktree", "prune")

    def _git(self, *args: str) -> str:
        return run(["git", "-C", str(self.repo_root), *args])
