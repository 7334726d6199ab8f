from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

from .config import (
    BACKUP_SETTINGS,
    REPOSITORY_SETTINGS,
    BackupConfig,
    ConfigurationError,
    MissingSettingError,
    load_config,
)
from .logger import RunLogger, open_run_log
from .notifier import notify
from .report import RunResult
from .retention import enforce_retention
from .runner import (
    CommandResult,
    RepositoryState,
    ResticRunner,
    ToolNotFoundError,
    ensure_tool,
    is_already_initialized,
)
from .scheduling import ScheduledTask, TaskScheduler, default_scheduler
from .secret_scope import build_secret_env, secret_scope

LOG = logging.getLogger(__name__)

RunnerFactory = Callable[..., ResticRunner]
Notifier = Callable[..., object]
Clock = Callable[[], datetime]

class BackupOrchestrator:
    """Runs backup operations for the target described by one configuration file.

    ``run_backup`` walks LOAD_CONFIG, VALIDATE_TOOL_PATH, the secret-scoped
    repository/backup/stats/retention steps and finally NOTIFY. Only the first
    two steps can abort a run; later failures are recorded on the result.
    """

    def __init__(
        self,
        config_path: Path,
        *,
        runner_factory: RunnerFactory = ResticRunner,
        notifier: Notifier = notify,
        clock: Clock = datetime.now,
        scheduler: Optional[TaskScheduler] = None,
    ) -> None:
        self._config_path = Path(config_path)
        self._runner_factory = runner_factory
        self._notifier = notifier
        self._clock = clock
        self._scheduler = scheduler

    @property
    def config_path(self) -> Path:
        return self._config_path

    # Entry operations ------------------------------------------------------
    def run_backup(self, target: Optional[Path] = None) -> RunResult:
        started_at = self._clock()
        config = self._load(target)
        log = self._open_log(config, started_at)
        result = RunResult(
            project_name=config.project_name,
            started_at=started_at,
            log_file_path=log.path,
        )
        try:
            log.info("Starting backup of %s to %s", config.backup_source, config.repository)
            runner = self._prepare(config, log, BACKUP_SETTINGS)

            with secret_scope(build_secret_env(config)):
                try:
                    self._check_or_init(runner, result, log)
                    self._backup(runner, config, result, log)
                    result.total_size = runner.stats()
                    retention = enforce_retention(runner, config.retention_policy, log)
                    if retention is not None and not retention.success:
                        result.record_failure(f"Retention failed ({retention.describe()})")
                except Exception as exc:  # noqa: BLE001
                    log.error("Unexpected error during backup run: %s", exc)
                    result.record_failure(f"Unexpected error: {exc}")

            result.duration = self._clock() - started_at
            log.info(
                "Backup run finished with status %s (size: %s)",
                result.status.value,
                result.total_size or "unknown",
            )
            try:
                self._notifier(config.email_settings, result, log, config.notifications)
            except Exception as exc:  # noqa: BLE001
                log.error("Notification failed: %s", exc)
            return result
        finally:
            log.close()

    def list_snapshots(self, target: Optional[Path] = None) -> CommandResult:
        config = self._load(target)
        log = self._open_log(config, self._clock())
        try:
            runner = self._prepare(config, log, REPOSITORY_SETTINGS)
            with secret_scope(build_secret_env(config)):
                result = runner.snapshots()
            if not result.success:
                log.error("Listing snapshots failed (%s)", result.describe())
            return result
        finally:
            log.close()

    def init_repository(self, target: Optional[Path] = None) -> CommandResult:
        config = self._load(target)
        log = self._open_log(config, self._clock())
        try:
            runner = self._prepare(config, log, REPOSITORY_SETTINGS)
            with secret_scope(build_secret_env(config)):
                result = runner.init_repository()
            if result.success:
                log.info("Repository %s initialized", config.repository)
            elif is_already_initialized(result):
                log.warning("Repository %s is already initialized", config.repository)
            else:
                log.error("Repository initialization failed (%s)", result.describe())
            return result
        finally:
            log.close()

    def schedule_daily_run(self, task: ScheduledTask) -> None:
        scheduler = self._scheduler or default_scheduler()
        LOG.info("Registering daily task %s at %s", task.name, task.daily_time)
        scheduler.register(task)

    # Steps -----------------------------------------------------------------
    def _load(self, target: Optional[Path]) -> BackupConfig:
        path = Path(target) if target else self._config_path
        try:
            return load_config(path)
        except ConfigurationError as exc:
            LOG.error("Configuration error: %s", exc)
            raise

    def _open_log(self, config: BackupConfig, started_at: datetime) -> RunLogger:
        return open_run_log(
            config.log_path,
            config.project_name,
            started_at,
            secrets=config.secret_values(),
        )

    def _prepare(
        self,
        config: BackupConfig,
        log: RunLogger,
        settings: Sequence[str],
    ) -> ResticRunner:
        try:
            tool = ensure_tool(config.backup_tool_path)
            config.require_all(settings)
        except (ToolNotFoundError, MissingSettingError) as exc:
            log.error("%s", exc)
            raise
        return self._runner_factory(
            tool,
            config.repository,
            log=log,
            timeout=config.command_timeout,
        )

    def _check_or_init(self, runner: ResticRunner, result: RunResult, log: RunLogger) -> None:
        state = runner.check_repository()
        if state is RepositoryState.PRESENT:
            log.info("Repository found")
            return
        if state is RepositoryState.ERROR:
            log.error("Repository check failed; not initializing")
            result.record_failure("Repository check failed")
            return

        log.warning("Repository not found; initializing")
        init = runner.init_repository()
        if init.success:
            log.info("Repository initialized")
        elif is_already_initialized(init):
            log.warning("Repository already initialized; continuing")
        else:
            log.error("Repository initialization failed (%s)", init.describe())
            result.record_failure(f"Repository initialization failed ({init.describe()})")

    def _backup(
        self,
        runner: ResticRunner,
        config: BackupConfig,
        result: RunResult,
        log: RunLogger,
    ) -> None:
        backup = runner.backup(config.backup_source, config.use_filesystem_snapshot)
        if backup.success:
            log.info("Backup completed")
        else:
            log.error("Backup failed (%s)", backup.describe())
            result.record_failure(f"Backup failed ({backup.describe()})")
