from __future__ import annotations

from dataclasses import dataclass
import logging
import signal
import threading
from types import FrameType

from issuepilot.agent_adapter import AgentAdapter
from issuepilot.claude_adapter import ClaudeCliAdapter
from issuepilot.config import AppConfig
from issuepilot.git_ops import WorktreeManager
from issuepilot.github_gateway import GitHubGateway
from issuepilot.observability import log_event, log_warning_event
from issuepilot.poller import Poller
from issuepilot.sessions import SessionStore
from issuepilot.tasks import ImplementTask, ReviewTask
from issuepilot.worker_pool import WorkerPool


LOGGER = logging.getLogger("issuepilot.service_runner")
_ONCE_DRAIN_POLL_SECONDS = 1.0
_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass(frozen=True)
class ServiceRuntime:
    config: AppConfig
    github: GitHubGateway
    workspaces: WorktreeManager
    agent: AgentAdapter
    sessions: SessionStore
    pool: WorkerPool
    poller: Poller


def build_runtime(
    config: AppConfig,
    *,
    github: GitHubGateway | None = None,
    workspaces: WorktreeManager | None = None,
    agent: AgentAdapter | None = None,
) -> ServiceRuntime:
    github = github or GitHubGateway(
        config.repo.owner, config.repo.name, branch_prefix=config.repo.branch_prefix
    )
    workspaces = workspaces or WorktreeManager(config.repo)
    agent = agent or ClaudeCliAdapter(config.agent)
    sessions = SessionStore()
    pool = WorkerPool(config.runtime.max_concurrency)
    poller = Poller(
        config,
        github=github,
        pool=pool,
        implement_task=ImplementTask(config, github=github, workspaces=workspaces, agent=agent),
        review_task=ReviewTask(
            config, github=github, workspaces=workspaces, agent=agent, sessions=sessions
        ),
    )
    return ServiceRuntime(
        config=config,
        github=github,
        workspaces=workspaces,
        agent=agent,
        sessions=sessions,
        pool=pool,
        poller=poller,
    )


def run_service(
    runtime: ServiceRuntime,
    *,
    once: bool,
    stop_event: threading.Event | None = None,
) -> None:
    """Run the poll loop until ``stop_event`` is set (or one cycle with ``once``).

    On the way out no new cycles start; in-flight tasks get the configured grace period
    and are cancelled if they are still running after it.
    """
    stop = stop_event or threading.Event()
    runtime.workspaces.ensure_layout()
    previous_handlers = _install_signal_handlers(stop)
    log_event(
        LOGGER,
        "service_started",
        repo=runtime.config.repo.full_name,
        once=once,
        max_concurrency=runtime.config.runtime.max_concurrency,
        poll_interval_seconds=runtime.config.runtime.poll_interval_seconds,
    )
    try:
        if once:
            runtime.poller.poll_once()
            while runtime.pool.active_count and not stop.wait(_ONCE_DRAIN_POLL_SECONDS):
                pass
        else:
            runtime.poller.run(stop)
    finally:
        _restore_signal_handlers(previous_handlers)
        grace = runtime.config.runtime.shutdown_grace_seconds
        log_event(
            LOGGER, "service_draining", active=runtime.pool.active_count, grace_seconds=grace
        )
        drained = runtime.pool.wait_for_all(grace)
        runtime.pool.shutdown()
        log_event(LOGGER, "service_stopped", drained=drained)


def _install_signal_handlers(
    stop: threading.Event,
) -> dict[signal.Signals, object] | None:
    # signal.signal only works from the main thread; console mode runs us elsewhere.
    if threading.current_thread() is not threading.main_thread():
        return None

    def request_stop(signum: int, frame: FrameType | None) -> None:
        _ = frame
        if stop.is_set():
            return
        log_warning_event(LOGGER, "shutdown_requested", signal=signal.Signals(signum).name)
        stop.set()

    previous: dict[signal.Signals, object] = {}
    for signum in _SHUTDOWN_SIGNALS:
        previous[signum] = signal.signal(signum, request_stop)
    return previous


def _restore_signal_handlers(previous: dict[signal.Signals, object] | None) -> None:
    if previous is None:
        return
    for signum, handler in previous.items():
        signal.signal(signum, handler)  # type: ignore[arg-type]
