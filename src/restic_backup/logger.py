from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, MutableMapping, Optional, Tuple

RUN_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(project)s: %(message)s"
CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MASK = "********"


def configure_logging(level: str = "INFO") -> None:
    """Configure console logging for the CLI process."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    console = [handler for handler in root.handlers if getattr(handler, "_restic_backup_console", False)]
    if not console:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
        handler._restic_backup_console = True  # type: ignore[attr-defined]
        root.addHandler(handler)
        console = [handler]
    # Run loggers log at DEBUG into their file; the console filters on its own level.
    for handler in console:
        handler.setLevel(level.upper())


def run_log_path(prefix: str, started_at: datetime) -> Path:
    return Path(f"{prefix}-{started_at.strftime('%Y%m%d%H%M%S')}.log")


class SecretMaskingFilter(logging.Filter):
    """Replaces known secret values in log records before they are written."""

    def __init__(self, secrets: Iterable[str]) -> None:
        super().__init__()
        self._secrets = sorted({value for value in secrets if value}, key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        for secret in self._secrets:
            message = message.replace(secret, MASK)
        record.msg = message
        record.args = None
        return True


class RunLogger(logging.LoggerAdapter):
    """Logger bound to a single run: one log file, one project name."""

    def __init__(
        self,
        logger: logging.Logger,
        project: str,
        path: Path,
        handler: logging.Handler,
        masking: logging.Filter,
    ) -> None:
        super().__init__(logger, {"project": project})
        self.path = path
        self._handler = handler
        self._masking = masking

    def process(self, msg: str, kwargs: MutableMapping) -> Tuple[str, MutableMapping]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("project", self.extra["project"])
        kwargs["extra"] = extra
        return msg, kwargs

    def close(self) -> None:
        self.logger.removeFilter(self._masking)
        self.logger.removeHandler(self._handler)
        self._handler.close()


def open_run_log(
    prefix: str,
    project: str,
    started_at: datetime,
    secrets: Optional[List[str]] = None,
) -> RunLogger:
    """Open the per-run log file ``<prefix>-<YYYYMMDDHHMMSS>.log`` in append mode."""
    path = run_log_path(prefix, started_at)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(RUN_LOG_FORMAT, datefmt=DATE_FORMAT))

    logger = logging.getLogger(f"restic_backup.run.{project}")
    logger.setLevel(logging.DEBUG)
    masking = SecretMaskingFilter(secrets or [])
    logger.addFilter(masking)
    logger.addHandler(handler)
    return RunLogger(logger, project, path, handler, masking)
