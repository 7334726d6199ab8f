from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from croniter import croniter
from zoneinfo import ZoneInfo

from .config import ConfigurationError, SchedulerConfig, load_config
from .logger import configure_logging
from .orchestrator import BackupOrchestrator
from .runner import ToolNotFoundError
from .scheduling import ScheduledTask, SchedulingError

DEFAULT_CONFIG_PATH = "backup-config.yaml"
DEFAULT_TASK_NAME = "restic-backup"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FATAL = 2


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scheduled restic backups with retention and notifications.")
    parser.add_argument(
        "--config",
        default=os.getenv("RESTIC_BACKUP_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration YAML/JSON file.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Console log level (default INFO).",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Back up the configured source, apply retention and notify.")
    commands.add_parser("snapshots", help="List snapshots in the configured repository.")
    commands.add_parser("init", help="Initialize the configured repository.")
    commands.add_parser("daemon", help="Run backups in-process on the configured cron schedule.")

    schedule = commands.add_parser("schedule", help="Register a daily OS-level task running this backup.")
    schedule.add_argument("--time", required=True, help="Daily start time as HH:MM.")
    schedule.add_argument("--name", default=DEFAULT_TASK_NAME, help="Scheduled task name.")
    schedule.add_argument("--user", help="Account the task runs as.")
    schedule.add_argument("--workdir", default=os.getcwd(), help="Working directory for the task.")
    schedule.add_argument("--description", default="Daily restic backup", help="Task description.")
    return parser.parse_args(argv)


def build_task(args: argparse.Namespace, config_path: Path) -> ScheduledTask:
    return ScheduledTask(
        name=args.name,
        command=[sys.executable, "-m", "restic_backup.cli", "--config", str(config_path.resolve()), "run"],
        daily_time=args.time,
        run_as_user=args.user,
        working_directory=Path(args.workdir),
        description=args.description,
    )


def run_once(orchestrator: BackupOrchestrator) -> int:
    result = orchestrator.run_backup()
    if result.success:
        logging.info("Backup succeeded in %.2fs", result.duration.total_seconds())
        return EXIT_OK
    logging.error("Backup failed: %s", "; ".join(result.errors))
    return EXIT_FAILED


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    config_path = Path(args.config).expanduser()
    orchestrator = BackupOrchestrator(config_path)

    try:
        if args.command == "run":
            return run_once(orchestrator)
        if args.command == "snapshots":
            result = orchestrator.list_snapshots()
            print(result.output, end="")
            return EXIT_OK if result.success else EXIT_FAILED
        if args.command == "init":
            result = orchestrator.init_repository()
            return EXIT_OK if result.success else EXIT_FAILED
        if args.command == "schedule":
            orchestrator.schedule_daily_run(build_task(args, config_path))
            return EXIT_OK
        if args.command == "daemon":
            return run_with_scheduler(orchestrator)
    except (ConfigurationError, ToolNotFoundError) as exc:
        logging.error("%s", exc)
        return EXIT_FATAL
    except SchedulingError as exc:
        logging.error("Scheduling failed: %s", exc)
        return EXIT_FAILED
    raise SystemExit(f"Unknown command {args.command}")


def run_with_scheduler(orchestrator: BackupOrchestrator) -> int:
    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        logging.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    config = load_config(orchestrator.config_path)
    scheduler = _require_scheduler(config.scheduler)
    timezone = ZoneInfo(scheduler.timezone)
    next_run = datetime.now(timezone) if scheduler.run_on_startup else _next_run(scheduler.cron, datetime.now(timezone))

    if scheduler.run_on_startup:
        logging.info("Executing initial run immediately")
    else:
        logging.info("Next run scheduled for %s", next_run.isoformat())

    while not stop_event.is_set():
        now = datetime.now(timezone)
        if now >= next_run:
            try:
                exit_code = run_once(orchestrator)
            except (ConfigurationError, ToolNotFoundError) as exc:
                logging.error("Scheduled run aborted: %s", exc)
                exit_code = EXIT_FATAL
            if exit_code != EXIT_OK:
                logging.warning("Scheduled run completed with errors (exit code %s)", exit_code)

            try:
                config = load_config(orchestrator.config_path)
            except ConfigurationError as exc:
                logging.error("Failed to reload configuration: %s; continuing with previous settings", exc)
            else:
                if not config.scheduler:
                    logging.info("Scheduler removed from configuration; exiting loop")
                    break
                scheduler = config.scheduler
                timezone = ZoneInfo(scheduler.timezone)

            next_run = _next_run(scheduler.cron, datetime.now(timezone))
            logging.info("Next run scheduled for %s", next_run.isoformat())
            continue

        sleep_for = max((next_run - now).total_seconds(), 0)
        stop_event.wait(min(sleep_for, 60))

    logging.info("Scheduler stopped")
    return EXIT_OK


def _require_scheduler(scheduler: Optional[SchedulerConfig]) -> SchedulerConfig:
    if not scheduler:
        raise ConfigurationError("The 'scheduler' section is required for daemon mode")
    return scheduler


def _next_run(cron_expression: str, reference: datetime) -> datetime:
    return croniter(cron_expression, reference).get_next(datetime)


if __name__ == "__main__":
    sys.exit(main())
