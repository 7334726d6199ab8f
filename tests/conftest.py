from __future__ import annotations

import os
from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import yaml

from restic_backup.runner import LOG, CommandResult, ResticRunner

SECRET_NAMES = ("RESTIC_PASSWORD", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")
STATS_OUTPUT = "scanning...\nStats in restore-size mode:\n     Snapshots processed:  3\n        Total File Count:  120\n              Total Size:  1.234 GiB\n"


class FixedClock:
    """Returns ``start`` on the first call and ``start + step`` on every later call."""

    def __init__(self, start: datetime = datetime(2026, 2, 16, 1, 2, 3), step: timedelta = timedelta(seconds=75)) -> None:
        self.start = start
        self._step = step
        self.calls = 0

    def __call__(self) -> datetime:
        self.calls += 1
        if self.calls == 1:
            return self.start
        return self.start + self._step


class FakeRunner(ResticRunner):
    """ResticRunner that records argument lists instead of spawning restic."""

    instances: List["FakeRunner"] = []
    responses: Dict[str, CommandResult] = {}

    def __init__(self, tool_path: Any, repository: str, log: Any = LOG, timeout: Optional[float] = None) -> None:
        super().__init__(tool_path, repository, log=log, timeout=timeout)
        self.calls: List[List[str]] = []
        self.env_seen: List[Dict[str, Optional[str]]] = []
        self.timeout = timeout
        FakeRunner.instances.append(self)

    def execute(self, args: Sequence[str]) -> CommandResult:
        current = list(args)
        self.calls.append(current)
        self.env_seen.append({name: os.environ.get(name) for name in SECRET_NAMES})
        response = self.responses.get(current[0])
        if response is None:
            response = result(0, STATS_OUTPUT if current[0] == "stats" else "")
        if response.output.strip():
            self._log.info("Output of %s:\n%s", current[0], response.output.rstrip())
        return CommandResult(
            args=self.command(current),
            exit_code=response.exit_code,
            output=response.output,
            timed_out=response.timed_out,
        )


def result(exit_code: Optional[int], output: str = "", timed_out: bool = False) -> CommandResult:
    return CommandResult(args=[], exit_code=exit_code, output=output, timed_out=timed_out)


@pytest.fixture
def fake_runner():
    FakeRunner.instances = []
    FakeRunner.responses = {}
    yield FakeRunner
    FakeRunner.instances = []
    FakeRunner.responses = {}


@pytest.fixture
def fixed_clock() -> FixedClock:
    return FixedClock()


@pytest.fixture(autouse=True)
def _clean_secret_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in SECRET_NAMES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def tool_path(tmp_path: Path) -> Path:
    tool = tmp_path / "bin" / "restic"
    tool.parent.mkdir(parents=True, exist_ok=True)
    tool.write_text("#!/bin/sh\n", encoding="utf-8")
    return tool


@pytest.fixture
def config_data(tmp_path: Path, tool_path: Path) -> Dict[str, Any]:
    source = tmp_path / "data"
    source.mkdir()
    return {
        "project_name": "fileserver",
        "log_path": str(tmp_path / "logs" / "fileserver"),
        "backup_source": str(source),
        "backup_tool_path": str(tool_path),
        "repository": "sftp:backup@nas:/srv/restic",
        "repository_password": "unit-test-password",
        "retention_policy": {"keep_daily": 7, "keep_weekly": 4},
    }


@pytest.fixture
def write_config(tmp_path: Path):
    def _write(data: Dict[str, Any], name: str = "config.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def config_path(config_data: Dict[str, Any], write_config) -> Path:
    return write_config(config_data)
