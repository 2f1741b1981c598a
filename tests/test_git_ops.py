from __future__ import annotations

from pathlib import Path

import pytest

from issuepilot.config import RepoConfig
from issuepilot.git_ops import WorkspaceError, WorktreeManager
from issuepilot.shell import CommandError


def _manager(tmp_path: Path) -> WorktreeManager:
    clone = tmp_path / "clone"
    (clone / ".git").mkdir(parents=True)
    return WorktreeManager(RepoConfig(owner="acme", name="widgets", path=clone))


class FakeRun:
    def __init__(self, *, remote_heads: str = "", fail_on: tuple[str, ...] = ()) -> None:
        self.calls: list[list[str]] = []
        self.remote_heads = remote_heads
        self.fail_on = fail_on

    def __call__(self, argv: list[str], **kwargs: object) -> str:
        _ = kwargs
        self.calls.append(argv)
        joined = " ".join(argv)
        for marker in self.fail_on:
            if marker in joined:
                raise CommandError(f"failed: {joined}")
        if "ls-remote" in argv:
            return self.remote_heads
        return ""


def test_ensure_layout_requires_git_clone(tmp_path: Path) -> None:
    manager = WorktreeManager(RepoConfig(owner="acme", name="widgets", path=tmp_path / "missing"))

    with pytest.raises(WorkspaceError, match="Not a git clone"):
        manager.ensure_layout()


def test_ensure_layout_creates_worktree_root(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    manager.ensure_layout()

    assert manager.worktrees_root.is_dir()
    assert manager.issue_workspace_path(4) == manager.worktrees_root / "issue-4"
    assert manager.review_workspace_path(7) == manager.worktrees_root / "review-pr-7"


def test_create_new_branch_from_default_branch(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    fake = FakeRun()
    monkeypatch.setattr("issuepilot.git_ops.run", fake)
    path = manager.issue_workspace_path(4)
    root = str(manager.repo_root)

    manager.create(path, "auto/issue-4")

    assert fake.calls == [
        ["git", "-C", root, "ls-remote", "--heads", "origin", "auto/issue-4"],
        ["git", "-C", root, "fetch", "origin", "main"],
        ["git", "-C", root, "worktree", "add", "-B", "auto/issue-4", str(path), "origin/main"],
    ]


def test_create_resumes_existing_remote_branch(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    fake = FakeRun(remote_heads="abc123\trefs/heads/auto/issue-4\n")
    monkeypatch.setattr("issuepilot.git_ops.run", fake)
    path = manager.issue_workspace_path(4)
    root = str(manager.repo_root)

    manager.create(path, "auto/issue-4")

    assert fake.calls[1:] == [
        ["git", "-C", root, "fetch", "origin", "auto/issue-4"],
        ["git", "-C", root, "worktree", "add", "--detach", str(path), "origin/auto/issue-4"],
        ["git", "-C", str(path), "checkout", "-B", "auto/issue-4", "origin/auto/issue-4"],
    ]


def test_create_clears_stale_workspace_first(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    fake = FakeRun(fail_on=("worktree remove",))
    monkeypatch.setattr("issuepilot.git_ops.run", fake)
    path = manager.issue_workspace_path(4)
    path.mkdir(parents=True)
    (path / "leftover.txt").write_text("x", encoding="utf-8")

    manager.create(path, "auto/issue-4")

    assert not path.exists()
    assert fake.calls[0][3:] == ["worktree", "remove", "--force", str(path)]
    assert fake.calls[1][3:] == ["worktree", "prune"]


def test_create_wraps_git_failures(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    monkeypatch.setattr("issuepilot.git_ops.run", FakeRun(fail_on=("fetch",)))

    with pytest.raises(WorkspaceError, match="Could not create workspace for auto/issue-4"):
        manager.create(manager.issue_workspace_path(4), "auto/issue-4")


def test_attach_checks_out_remote_branch(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    fake = FakeRun()
    monkeypatch.setattr("issuepilot.git_ops.run", fake)
    path = manager.review_workspace_path(7)

    manager.attach(path, "auto/issue-3")

    assert fake.calls[-1] == ["git", "-C", str(path), "checkout", "-B", "auto/issue-3", "origin/auto/issue-3"]


def test_attach_wraps_git_failures(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    monkeypatch.setattr("issuepilot.git_ops.run", FakeRun(fail_on=("worktree add",)))

    with pytest.raises(WorkspaceError, match="Could not attach workspace"):
        manager.attach(manager.review_workspace_path(7), "auto/issue-3")


def test_publish_pushes_branch(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    fake = FakeRun()
    monkeypatch.setattr("issuepilot.git_ops.run", fake)
    path = manager.issue_workspace_path(4)

    manager.publish(path, "auto/issue-4")

    assert fake.calls == [["git", "-C", str(path), "push", "-u", "origin", "auto/issue-4"]]


def test_publish_failure_raises_workspace_error(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    monkeypatch.setattr("issuepilot.git_ops.run", FakeRun(fail_on=("push",)))

    with pytest.raises(WorkspaceError, match="Could not push auto/issue-4"):
        manager.publish(manager.issue_workspace_path(4), "auto/issue-4")


def test_discard_removes_existing_worktree_and_prunes(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    fake = FakeRun()
    monkeypatch.setattr("issuepilot.git_ops.run", fake)
    present = manager.issue_workspace_path(4)
    present.mkdir(parents=True)
    absent = manager.issue_workspace_path(5)

    manager.discard(present)
    manager.discard(absent)

    assert [call[3:] for call in fake.calls] == [
        ["worktree", "remove", "--force", str(present)],
        ["worktree", "prune"],
        ["worktree", "prune"],
    ]


def test_read_text_returns_none_for_missing_file(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    workspace = tmp_path / "ws"
    (workspace / "docs").mkdir(parents=True)
    (workspace / "docs" / "todo.md").write_text("- [ ] a\n", encoding="utf-8")

    assert manager.read_text(workspace, "docs/todo.md") == "- [ ] a\n"
    assert manager.read_text(workspace, "docs/missing.md") is None
    assert manager.read_text(workspace, "docs") is None
