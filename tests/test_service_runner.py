from __future__ import annotations

from pathlib import Path
import signal
import threading
from typing import cast

import pytest

from issuepilot.claude_adapter import ClaudeCliAdapter
from issuepilot.config import AgentConfig, AppConfig, LabelConfig, RepoConfig, RuntimeConfig
from issuepilot.git_ops import WorktreeManager
from issuepilot.github_gateway import GitHubGateway
from issuepilot.poller import Poller
from issuepilot.service_runner import ServiceRuntime, build_runtime, run_service
from issuepilot.sessions import SessionStore
from issuepilot.worker_pool import WorkerPool


def _config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(
            state_dir=tmp_path / "state", max_concurrency=2, shutdown_grace_seconds=7
        ),
        repo=RepoConfig(owner="acme", name="widgets", path=tmp_path / "clone", branch_prefix="bot/"),
        labels=LabelConfig(),
        agent=AgentConfig(),
    )


class FakeWorkspaces:
    def __init__(self) -> None:
        self.layout_calls = 0

    def ensure_layout(self) -> None:
        self.layout_calls += 1


class FakePool:
    def __init__(self, active_sequence: list[int]) -> None:
        self.active_sequence = active_sequence
        self.wait_calls: list[float] = []
        self.shutdown_calls = 0

    @property
    def active_count(self) -> int:
        if len(self.active_sequence) > 1:
            return self.active_sequence.pop(0)
        return self.active_sequence[0]

    def wait_for_all(self, timeout_seconds: float) -> bool:
        self.wait_calls.append(timeout_seconds)
        return True

    def shutdown(self) -> None:
        self.shutdown_calls += 1


class FakePoller:
    def __init__(self) -> None:
        self.poll_once_calls = 0
        self.run_stop: threading.Event | None = None
        self.on_run = None

    def poll_once(self) -> bool:
        self.poll_once_calls += 1
        return True

    def run(self, stop: threading.Event) -> None:
        self.run_stop = stop
        if self.on_run is not None:
            self.on_run(stop)


def _runtime(
    tmp_path: Path, *, pool: FakePool, poller: FakePoller, workspaces: FakeWorkspaces
) -> ServiceRuntime:
    return ServiceRuntime(
        config=_config(tmp_path),
        github=cast(GitHubGateway, object()),
        workspaces=cast(WorktreeManager, workspaces),
        agent=cast(ClaudeCliAdapter, object()),
        sessions=SessionStore(),
        pool=cast(WorkerPool, pool),
        poller=cast(Poller, poller),
    )


def test_build_runtime_wires_components(tmp_path: Path) -> None:
    runtime = build_runtime(_config(tmp_path))

    assert isinstance(runtime.github, GitHubGateway)
    assert runtime.github.full_name == "acme/widgets"
    assert runtime.github.branch_prefix == "bot/"
    assert isinstance(runtime.workspaces, WorktreeManager)
    assert isinstance(runtime.agent, ClaudeCliAdapter)
    assert runtime.pool.max_concurrency == 2
    assert isinstance(runtime.poller, Poller)
    runtime.pool.shutdown()


def test_build_runtime_accepts_overrides(tmp_path: Path) -> None:
    github = GitHubGateway("other", "repo")

    runtime = build_runtime(_config(tmp_path), github=github)

    assert runtime.github is github
    runtime.pool.shutdown()


def test_run_service_once_polls_and_drains(tmp_path: Path) -> None:
    workspaces = FakeWorkspaces()
    pool = FakePool([0])
    poller = FakePoller()

    run_service(_runtime(tmp_path, pool=pool, poller=poller, workspaces=workspaces), once=True)

    assert workspaces.layout_calls == 1
    assert poller.poll_once_calls == 1
    assert poller.run_stop is None
    assert pool.wait_calls == [7]
    assert pool.shutdown_calls == 1


def test_run_service_once_returns_early_when_stopped(tmp_path: Path) -> None:
    pool = FakePool([1])
    poller = FakePoller()
    stop = threading.Event()
    stop.set()

    run_service(
        _runtime(tmp_path, pool=pool, poller=poller, workspaces=FakeWorkspaces()),
        once=True,
        stop_event=stop,
    )

    assert pool.wait_calls == [7]


def test_run_service_loop_uses_stop_event_and_restores_signal_handlers(tmp_path: Path) -> None:
    pool = FakePool([0])
    poller = FakePoller()
    stop = threading.Event()
    before = signal.getsignal(signal.SIGTERM)
    seen: dict[str, object] = {}

    def on_run(event: threading.Event) -> None:
        handler = signal.getsignal(signal.SIGTERM)
        assert callable(handler)
        handler(signal.SIGTERM, None)
        seen["stopped"] = event.is_set()

    poller.on_run = on_run  # type: ignore[assignment]

    run_service(
        _runtime(tmp_path, pool=pool, poller=poller, workspaces=FakeWorkspaces()),
        once=False,
        stop_event=stop,
    )

    assert poller.run_stop is stop
    assert seen["stopped"] is True
    assert signal.getsignal(signal.SIGTERM) == before
    assert pool.shutdown_calls == 1


def test_run_service_drains_even_when_poller_raises(tmp_path: Path) -> None:
    pool = FakePool([0])
    poller = FakePoller()

    def on_run(event: threading.Event) -> None:
        _ = event
        raise RuntimeError("poller crashed")

    poller.on_run = on_run  # type: ignore[assignment]

    with pytest.raises(RuntimeError, match="poller crashed"):
        run_service(
            _runtime(tmp_path, pool=pool, poller=poller, workspaces=FakeWorkspaces()), once=False
        )

    assert pool.wait_calls == [7]
    assert pool.shutdown_calls == 1


def test_run_service_off_main_thread_skips_signal_handlers(tmp_path: Path) -> None:
    pool = FakePool([0])
    poller = FakePoller()
    before = signal.getsignal(signal.SIGINT)
    errors: list[BaseException] = []

    def target() -> None:
        try:
            run_service(
                _runtime(tmp_path, pool=pool, poller=poller, workspaces=FakeWorkspaces()),
                once=True,
            )
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    thread = threading.Thread(target=target)
    thread.start()
    thread.join(timeout=5)

    assert errors == []
    assert poller.poll_once_calls == 1
    assert signal.getsignal(signal.SIGINT) == before
