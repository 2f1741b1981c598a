from __future__ import annotations

import argparse
from pathlib import Path

from issuepilot.config import AppConfig, load_config
from issuepilot.console_mode import run_console_mode
from issuepilot.git_ops import WorktreeManager
from issuepilot.observability import configure_logging
from issuepilot.process_lock import orchestrator_process_lock
from issuepilot.service_runner import build_runtime, run_service


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="issuepilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init", help="Create the state directory and worktree root for the configured clone"
    )
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser(
        "run", help="Poll for labeled issues and pull request feedback and dispatch agents"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--once", action="store_true", help="Poll once and wait for dispatched tasks"
    )

    console_parser = subparsers.add_parser(
        "console", help="Run the service with a live status view of the worker pool"
    )
    _add_common_arguments(console_parser)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("issuepilot.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every event instead of task lifecycle events only",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    verbose = bool(getattr(args, "verbose", False))

    if args.command == "init":
        configure_logging(verbose)
        _cmd_init(config)
        return
    if args.command == "run":
        configure_logging(verbose, state_dir=config.runtime.state_dir)
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "console":
        # stderr belongs to the status view; events go to the daily log file only.
        configure_logging(verbose, state_dir=config.runtime.state_dir, to_stderr=False)
        _cmd_console(config)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.state_dir.mkdir(parents=True, exist_ok=True)
    workspaces = WorktreeManager(config.repo)
    workspaces.ensure_layout()

    print(f"Initialized issuepilot state dir: {config.runtime.state_dir}")
    print(f"Repo: {config.repo.full_name}")
    print(f"Clone: {workspaces.repo_root}")
    print(f"Worktrees: {workspaces.worktrees_root}")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    with orchestrator_process_lock(state_dir=config.runtime.state_dir, command="run"):
        run_service(build_runtime(config), once=once)


def _cmd_console(config: AppConfig) -> None:
    with orchestrator_process_lock(state_dir=config.runtime.state_dir, command="console"):
        run_console_mode(build_runtime(config))
