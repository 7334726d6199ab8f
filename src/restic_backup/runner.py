from __future__ import annotations

import enum
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .config import RetentionPolicy

LOG = logging.getLogger(__name__)

# restic >= 0.17 reports a missing repository with exit code 10.
REPOSITORY_MISSING_EXIT_CODE = 10
REPOSITORY_MISSING_MARKERS = (
    "repository does not exist",
    "is there a repository at the following location",
    "unable to open config file",
)
ALREADY_INITIALIZED_MARKERS = (
    "config file already exists",
    "repository master key and config already initialized",
)
TOTAL_SIZE_PATTERN = re.compile(r"^\s*Total Size:\s*(?P<size>\S.*?)\s*$", re.MULTILINE)

RETENTION_FLAGS = (
    ("keep_last", "--keep-last"),
    ("keep_daily", "--keep-daily"),
    ("keep_weekly", "--keep-weekly"),
    ("keep_monthly", "--keep-monthly"),
    ("keep_yearly", "--keep-yearly"),
)


class ToolNotFoundError(Exception):
    """Raised when the backup tool executable is absent."""


class RepositoryState(enum.Enum):
    PRESENT = "present"
    MISSING = "missing"
    ERROR = "error"


@dataclass(frozen=True)
class CommandResult:
    args: List[str]
    exit_code: Optional[int]
    output: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def describe(self) -> str:
        if self.timed_out:
            return "timed out"
        return f"exit code {self.exit_code}"


def ensure_tool(path: Optional[Path]) -> Path:
    if path is None:
        raise ToolNotFoundError("Backup tool path is not configured.")
    tool = Path(path).expanduser()
    if not tool.is_file():
        raise ToolNotFoundError(f"Backup tool not found at {tool}")
    return tool


def build_forget_args(policy: RetentionPolicy) -> List[str]:
    args = ["forget", "--prune"]
    for field_name, flag in RETENTION_FLAGS:
        value = getattr(policy, field_name)
        if value is not None:
            args.extend([flag, str(value)])
    return args


def parse_total_size(output: str) -> Optional[str]:
    match = TOTAL_SIZE_PATTERN.search(output or "")
    if not match:
        return None
    return match.group("size")


class ResticRunner:
    """Builds restic argument lists and executes them against one repository.

    Credentials are expected in the environment (see ``secret_scope``); they are
    never placed on the command line.
    """

    def __init__(
        self,
        tool_path: Union[str, Path],
        repository: str,
        log: Union[logging.Logger, logging.LoggerAdapter] = LOG,
        timeout: Optional[float] = None,
    ) -> None:
        self._tool = str(tool_path)
        self._repository = repository
        self._log = log
        self._timeout = timeout

    def command(self, args: Sequence[str]) -> List[str]:
        return [self._tool, "-r", self._repository, *args]

    def execute(self, args: Sequence[str]) -> CommandResult:
        cmd = self.command(args)
        self._log.info("Running: %s", " ".join(cmd))
        try:
            completed = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise ToolNotFoundError(f"Backup tool could not be executed: {self._tool}") from exc
        except subprocess.TimeoutExpired as exc:
            output = exc.output or ""
            if isinstance(output, bytes):
                output = output.decode("utf-8", "replace")
            self._log.error("Command timed out after %ss: %s", self._timeout, args[0] if args else "")
            return CommandResult(args=cmd, exit_code=None, output=output, timed_out=True)

        result = CommandResult(args=cmd, exit_code=completed.returncode, output=completed.stdout or "")
        if result.output.strip():
            self._log.info("Output of %s:\n%s", args[0] if args else "command", result.output.rstrip())
        return result

    # Repository ------------------------------------------------------------
    def check_repository(self) -> RepositoryState:
        result = self.execute(["snapshots"])
        if result.success:
            return RepositoryState.PRESENT
        if result.exit_code == REPOSITORY_MISSING_EXIT_CODE or _contains_any(
            result.output, REPOSITORY_MISSING_MARKERS
        ):
            return RepositoryState.MISSING
        return RepositoryState.ERROR

    def repository_exists(self) -> bool:
        return self.check_repository() is RepositoryState.PRESENT

    def init_repository(self) -> CommandResult:
        return self.execute(["init"])

    def snapshots(self) -> CommandResult:
        return self.execute(["snapshots"])

    # Backup ----------------------------------------------------------------
    def backup(self, source: Union[str, Path], use_snapshot: bool = False) -> CommandResult:
        args = ["backup", str(source)]
        if use_snapshot:
            args.append("--use-fs-snapshot")
        return self.execute(args)

    def stats(self) -> Optional[str]:
        result = self.execute(["stats"])
        if not result.success:
            self._log.warning("Could not collect repository stats (%s)", result.describe())
            return None
        size = parse_total_size(result.output)
        if size is None:
            self._log.warning("Could not parse total size from stats output")
        return size

    def forget(self, policy: RetentionPolicy) -> CommandResult:
        return self.execute(build_forget_args(policy))


def is_already_initialized(result: CommandResult) -> bool:
    return _contains_any(result.output, ALREADY_INITIALIZED_MARKERS)


def _contains_any(text: str, markers: Sequence[str]) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in markers)
