from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    state_dir: Path
    poll_interval_seconds: int = 60
    max_concurrency: int = 3
    shutdown_grace_seconds: int = 30
    status_refresh_seconds: int = 2


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    path: Path
    default_branch: str = "main"
    branch_prefix: str = "auto/"
    worktrees_dir: Path | None = None
    task_list_path: str = "docs/todo/todo.md"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def effective_worktrees_dir(self) -> Path:
        if self.worktrees_dir is not None:
            return self.worktrees_dir
        return self.path / ".worktrees"

    def issue_branch(self, issue_number: int) -> str:
        return f"{self.branch_prefix}issue-{issue_number}"


@dataclass(frozen=True)
class LabelConfig:
    trigger: str = "auto-implement"
    in_progress: str = "auto-in-progress"
    failed: str = "auto-failed"


@dataclass(frozen=True)
class AgentConfig:
    command: str = "claude"
    allowed_tools: tuple[str, ...] = ()
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    labels: LabelConfig
    agent: AgentConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    """Read ``path`` (TOML). Only ``[repo]`` with ``owner``, ``name`` and ``path`` is required."""
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_table = _Table.from_root(data, "runtime")
    repo_table = _Table.from_root(data, "repo", required=True)
    labels_table = _Table.from_root(data, "labels")
    agent_table = _Table.from_root(data, "agent")

    runtime = RuntimeConfig(
        state_dir=Path(runtime_table.string("state_dir", "~/.issuepilot")).expanduser(),
        poll_interval_seconds=runtime_table.integer("poll_interval_seconds", 60, minimum=5),
        max_concurrency=runtime_table.integer("max_concurrency", 3, minimum=1),
        shutdown_grace_seconds=runtime_table.integer("shutdown_grace_seconds", 30, minimum=1),
        status_refresh_seconds=runtime_table.integer("status_refresh_seconds", 2, minimum=1),
    )
    repo = RepoConfig(
        owner=repo_table.string("owner"),
        name=repo_table.string("name"),
        path=Path(repo_table.string("path")).expanduser(),
        default_branch=repo_table.string("default_branch", "main"),
        branch_prefix=repo_table.string("branch_prefix", "auto/"),
        worktrees_dir=repo_table.optional_path("worktrees_dir"),
        task_list_path=repo_table.string("task_list_path", "docs/todo/todo.md"),
    )
    labels = LabelConfig(
        trigger=labels_table.string("trigger", "auto-implement"),
        in_progress=labels_table.string("in_progress", "auto-in-progress"),
        failed=labels_table.string("failed", "auto-failed"),
    )
    if len({labels.trigger, labels.in_progress, labels.failed}) != 3:
        raise ConfigError("labels.trigger, labels.in_progress and labels.failed must differ")
    agent = AgentConfig(
        command=agent_table.string("command", "claude"),
        allowed_tools=agent_table.strings("allowed_tools"),
        extra_args=agent_table.strings("extra_args"),
    )
    return AppConfig(runtime=runtime, repo=repo, labels=labels, agent=agent)


@dataclass(frozen=True)
class _Table:
    name: str
    values: dict[str, object]

    @classmethod
    def from_root(cls, root: dict[str, object], name: str, *, required: bool = False) -> _Table:
        value = root.get(name)
        if value is None and not required:
            return cls(name, {})
        if not isinstance(value, dict):
            if required:
                raise ConfigError(f"[{name}] is required and must be a TOML table")
            raise ConfigError(f"[{name}] must be a TOML table when provided")
        return cls(name, cast(dict[str, object], value))

    def string(self, key: str, default: str | None = None) -> str:
        value = self.values.get(key, default)
        if value is None:
            raise ConfigError(f"{self.name}.{key} is required and must be a non-empty string")
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{self.name}.{key} must be a non-empty string")
        return value

    def optional_path(self, key: str) -> Path | None:
        if self.values.get(key) is None:
            return None
        return Path(self.string(key)).expanduser()

    def integer(self, key: str, default: int, *, minimum: int) -> int:
        value = self.values.get(key, default)
        # bool is an int subclass.
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{self.name}.{key} must be an integer")
        if value < minimum:
            raise ConfigError(f"{self.name}.{key} must be >= {minimum}")
        return value

    def strings(self, key: str) -> tuple[str, ...]:
        value = self.values.get(key, [])
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigError(f"{self.name}.{key} must be a list of strings")
        return tuple(item.strip() for item in value if item.strip())
