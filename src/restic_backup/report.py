from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional


class RunStatus(str, enum.Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"


@dataclass
class RunResult:
    project_name: str
    started_at: datetime
    log_file_path: Path
    status: RunStatus = RunStatus.SUCCESS
    total_size: Optional[str] = None
    duration: timedelta = timedelta(0)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status is RunStatus.SUCCESS

    def record_failure(self, message: str) -> None:
        self.status = RunStatus.FAILURE
        self.errors.append(message)


def format_duration(duration: timedelta) -> str:
    total = int(round(duration.total_seconds()))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
