from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

from croniter import croniter

LOG = logging.getLogger(__name__)

CRONTAB_TAG = "# restic-backup:"
DAILY_TIME_PATTERN = re.compile(r"^(?P<hour>\d{1,2}):(?P<minute>\d{2})$")


class SchedulingError(Exception):
    """Raised when a recurring task cannot be registered."""


def parse_daily_time(value: str) -> Tuple[int, int]:
    match = DAILY_TIME_PATTERN.match(value.strip())
    if not match:
        raise SchedulingError(f"Invalid daily time '{value}'; expected HH:MM")
    hour, minute = int(match.group("hour")), int(match.group("minute"))
    if hour > 23 or minute > 59:
        raise SchedulingError(f"Invalid daily time '{value}'; expected HH:MM")
    return hour, minute


@dataclass(frozen=True)
class ScheduledTask:
    name: str
    command: List[str]
    daily_time: str
    run_as_user: Optional[str] = None
    working_directory: Optional[Path] = None
    description: str = ""
    hour: int = field(init=False)
    minute: int = field(init=False)

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise SchedulingError("Task name must not be empty")
        if not self.command:
            raise SchedulingError("Task command must not be empty")
        hour, minute = parse_daily_time(self.daily_time)
        object.__setattr__(self, "hour", hour)
        object.__setattr__(self, "minute", minute)

    @property
    def cron_expression(self) -> str:
        expression = f"{self.minute} {self.hour} * * *"
        if not croniter.is_valid(expression):  # pragma: no cover - guarded by parse_daily_time
            raise SchedulingError(f"Invalid cron expression '{expression}'")
        return expression


class TaskScheduler(Protocol):
    def register(self, task: ScheduledTask) -> None:
        ...


class CrontabScheduler:
    """Registers the task as a tagged line in the user's crontab."""

    def __init__(self, binary: str = "crontab") -> None:
        self._binary = binary

    def render(self, task: ScheduledTask) -> List[str]:
        command = shlex.join(task.command)
        if task.working_directory:
            command = f"cd {shlex.quote(str(task.working_directory))} && {command}"
        lines = []
        if task.description:
            lines.append(f"{CRONTAB_TAG}{task.name} {task.description}")
        lines.append(f"{task.cron_expression} {command} {CRONTAB_TAG}{task.name}")
        return lines

    def register(self, task: ScheduledTask) -> None:
        existing = self._read(task)
        kept = [line for line in existing.splitlines() if not _is_tagged(line, task.name)]
        content = "\n".join(kept + self.render(task)) + "\n"
        result = subprocess.run(
            self._base(task) + ["-"],
            input=content,
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            raise SchedulingError(f"crontab update failed: {result.stderr.strip()}")
        LOG.info("Registered crontab entry %s (%s)", task.name, task.cron_expression)

    def _base(self, task: ScheduledTask) -> List[str]:
        cmd = [self._binary]
        if task.run_as_user:
            cmd.extend(["-u", task.run_as_user])
        return cmd

    def _read(self, task: ScheduledTask) -> str:
        try:
            result = subprocess.run(
                self._base(task) + ["-l"],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SchedulingError(f"{self._binary} is not available") from exc
        if result.returncode == 0:
            return result.stdout
        if "no crontab" in result.stderr.lower():
            return ""
        raise SchedulingError(f"Reading crontab failed: {result.stderr.strip()}")


class SchtasksScheduler:
    """Registers the task with the Windows Task Scheduler."""

    def __init__(self, binary: str = "schtasks") -> None:
        self._binary = binary

    def build_command(self, task: ScheduledTask) -> List[str]:
        action = subprocess.list2cmdline(task.command)
        if task.working_directory:
            workdir = subprocess.list2cmdline([str(task.working_directory)])
            action = f'cmd /c "cd /d {workdir} && {action}"'
        cmd = [
            self._binary,
            "/Create",
            "/F",
            "/TN",
            task.name,
            "/TR",
            action,
            "/SC",
            "DAILY",
            "/ST",
            f"{task.hour:02d}:{task.minute:02d}",
        ]
        if task.run_as_user:
            cmd.extend(["/RU", task.run_as_user])
        return cmd

    def register(self, task: ScheduledTask) -> None:
        if task.description:
            LOG.debug("schtasks does not store descriptions; ignoring '%s'", task.description)
        try:
            result = subprocess.run(
                self.build_command(task),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SchedulingError(f"{self._binary} is not available") from exc
        if result.returncode != 0:
            raise SchedulingError(f"schtasks failed: {(result.stderr or result.stdout).strip()}")
        LOG.info("Registered scheduled task %s at %02d:%02d", task.name, task.hour, task.minute)


def default_scheduler() -> TaskScheduler:
    if os.name == "nt":
        return SchtasksScheduler()
    return CrontabScheduler()


def _is_tagged(line: str, name: str) -> bool:
    tag = f"{CRONTAB_TAG}{name}"
    return line.endswith(tag) or line.startswith(f"{tag} ")
