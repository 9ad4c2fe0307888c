#!/usr/bin/env python3
"""
Session Keeper maintenance CLI - entry point for python -m session_keeper
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from .app import open_resume_history
from .registry.lifecycle import SessionProcessTracker
from .registry.storage import ProcessPidRepository
from .registry.tracker import ProcessDetectionService
from .scheduler.models import SchedulerJob
from .scheduler.service import SchedulerService
from .utils.config import SessionKeeperConfig, load_config
from .utils.errors import SessionKeeperError, error_context
from .utils.logging import get_logger, setup_logging

logger = get_logger("session-keeper.cli")

stdout = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="session-keeper",
        description="Inspect and maintain Session Keeper state"
    )
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--config", type=str, help="Config file path")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("pids", help="List tracked session processes")
    commands.add_parser("reconcile", help="Drop records of processes that are gone")
    clear = commands.add_parser("clear-pids", help="Terminate tracked processes and clear the PID file")
    clear.add_argument(
        "--no-kill",
        action="store_true",
        help="Clear records without signalling processes"
    )
    commands.add_parser("jobs", help="List scheduler jobs")
    commands.add_parser("resumes", help="List recorded rate-limit resumes")
    return parser


def make_tracker(config: SessionKeeperConfig) -> SessionProcessTracker:
    return SessionProcessTracker(
        ProcessPidRepository(config.storage.pid_file_path),
        ProcessDetectionService(),
        config.detection,
    )


async def _not_run(job: SchedulerJob) -> None:
    logger.warning("cli_scheduler_does_not_execute", job_id=job.id)


async def show_pids(config: SessionKeeperConfig) -> None:
    tracker = make_tracker(config)

    table = Table(title="Tracked session processes")
    table.add_column("Session process")
    table.add_column("PID", justify="right")
    table.add_column("Project")
    table.add_column("CWD")
    table.add_column("Created")
    table.add_column("Alive")

    for record in await tracker.repository.get_all_pids():
        alive = await tracker.detection.is_process_alive(record.pid)
        table.add_row(
            record.session_process_id,
            str(record.pid),
            record.project_id,
            record.cwd,
            record.created_at.isoformat(),
            "yes" if alive else "no",
        )

    stdout.print(table)


async def reconcile(config: SessionKeeperConfig) -> None:
    removed = await make_tracker(config).reconcile()
    for record in removed:
        stdout.print(f"removed {record.session_process_id} (pid {record.pid})")
    stdout.print(f"{len(removed)} stale record(s) removed")


async def clear_pids(config: SessionKeeperConfig, kill: bool) -> None:
    await make_tracker(config).shutdown(kill=kill)
    stdout.print("PID file cleared")


async def show_jobs(config: SessionKeeperConfig) -> None:
    scheduler = SchedulerService(config.storage.scheduler_config_path, _not_run)

    table = Table(title="Scheduler jobs")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Schedule")
    table.add_column("Enabled")
    table.add_column("Last run")

    for job in await scheduler.get_jobs():
        schedule = job.schedule.to_json()
        detail = ", ".join(f"{k}={v}" for k, v in schedule.items() if k != "type")
        table.add_row(
            job.id,
            job.name,
            f"{job.schedule.type} ({detail})",
            "yes" if job.enabled else "no",
            f"{job.last_run_at or '-'} {job.last_run_status or ''}".strip(),
        )

    stdout.print(table)


async def show_resumes(config: SessionKeeperConfig) -> None:
    history = open_resume_history(config)
    await history.initialize()

    table = Table(title="Rate-limit resumes")
    table.add_column("Session")
    table.add_column("Project")
    table.add_column("Reset")
    table.add_column("Resume at")
    table.add_column("Job")

    for session_id, record in (await history.get_all()).items():
        table.add_row(session_id, record.project_id, record.reset_time, record.resume_at, record.job_id)

    stdout.print(table)


async def run(args: argparse.Namespace) -> None:
    extra = {"debug": True, "logging": {"level": "DEBUG"}} if args.debug else None
    config = await load_config(
        config_paths=[args.config] if args.config else None,
        extra_config=extra,
    )

    setup_logging(
        app_name=config.app_name,
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
    )

    if args.command == "pids":
        await show_pids(config)
    elif args.command == "reconcile":
        await reconcile(config)
    elif args.command == "clear-pids":
        await clear_pids(config, kill=not args.no_kill)
    elif args.command == "jobs":
        await show_jobs(config)
    elif args.command == "resumes":
        await show_resumes(config)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for python -m session_keeper"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"Session Keeper v{__version__}")
        return 0

    if args.command is None:
        parser.print_help()
        return 2

    try:
        with error_context("cli", args.command):
            asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nSession Keeper interrupted", file=sys.stderr)
        return 130
    except SessionKeeperError as e:
        print(f"Session Keeper error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
