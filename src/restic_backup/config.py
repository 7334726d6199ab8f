from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator
from pydantic.alias_generators import to_camel

REPOSITORY_SETTINGS = ("repository", "repository_password")
BACKUP_SETTINGS = ("backup_source",) + REPOSITORY_SETTINGS


class ConfigurationError(Exception):
    """Raised when the backup configuration is invalid."""


class ConfigNotFoundError(ConfigurationError):
    """Raised when the configuration path does not resolve to a readable file."""


class ConfigMalformedError(ConfigurationError):
    """Raised when the configuration cannot be parsed into the expected shape."""


class MissingSettingError(ConfigurationError):
    """Raised when a required setting is absent at first use."""

    def __init__(self, setting: str) -> None:
        super().__init__(f"Required setting '{setting}' is missing from the configuration.")
        self.setting = setting


class SecretRef(BaseModel):
    """Reference to a secret stored in an environment variable or file."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    env: Optional[str] = Field(default=None, description="Environment variable name.")
    file: Optional[Path] = Field(default=None, description="Path to a file containing the secret.")

    def resolve(self) -> Optional[str]:
        if self.env:
            value = os.getenv(self.env)
            if value:
                return value
        if self.file:
            file_path = Path(self.file).expanduser()
            if file_path.exists():
                return file_path.read_text(encoding="utf-8").strip()
        return None


Secret = Union[SecretRef, SecretStr]


def reveal(secret: Optional[Secret]) -> Optional[str]:
    """Return the plain value of a secret field, or None when it cannot be resolved."""
    if secret is None:
        return None
    if isinstance(secret, SecretRef):
        return secret.resolve()
    return secret.get_secret_value() or None


class _FrozenModel(BaseModel):
    # Keys may be written camelCase (projectName, keepDaily) or snake_case.
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class RetentionPolicy(_FrozenModel):
    keep_last: Optional[int] = Field(default=None, ge=0)
    keep_daily: Optional[int] = Field(default=None, ge=0)
    keep_weekly: Optional[int] = Field(default=None, ge=0)
    keep_monthly: Optional[int] = Field(default=None, ge=0)
    keep_yearly: Optional[int] = Field(default=None, ge=0)

    def present_rules(self) -> Dict[str, int]:
        return {name: value for name, value in self.model_dump().items() if value is not None}


class EmailSettings(_FrozenModel):
    smtp_server: str
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[Secret] = None
    from_address: str = Field(alias="from")
    to: List[str]
    subject: str = "Backup report"

    @field_validator("to", mode="before")
    def split_recipients(cls, value: Any) -> Any:  # noqa: N805
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("to")
    def require_recipients(cls, value: List[str]) -> List[str]:  # noqa: N805
        if not value:
            raise ValueError("At least one email recipient must be configured.")
        return value


class CloudCredentials(_FrozenModel):
    access_key_id: Secret
    secret_access_key: Secret


class NotificationsConfig(_FrozenModel):
    slack_webhook_env: Optional[str] = None

    def resolve_slack_webhook(self) -> Optional[str]:
        if not self.slack_webhook_env:
            return None
        return os.getenv(self.slack_webhook_env)


class SchedulerConfig(_FrozenModel):
    cron: str
    timezone: str = "UTC"
    run_on_startup: bool = False

    @field_validator("cron")
    def validate_cron(cls, value: str) -> str:  # noqa: N805
        try:
            croniter(value, datetime.now())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @field_validator("timezone")
    def validate_timezone(cls, value: str) -> str:  # noqa: N805
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


class BackupConfig(_FrozenModel):
    project_name: str = "backup"
    log_path: str = "logs/backup"
    backup_source: Optional[Path] = None
    backup_tool_path: Optional[Path] = None
    repository: Optional[str] = None
    repository_password: Optional[Secret] = None
    use_filesystem_snapshot: bool = False
    retention_policy: Optional[RetentionPolicy] = None
    email_settings: Optional[EmailSettings] = None
    cloud_credentials: Optional[CloudCredentials] = None
    command_timeout: Optional[float] = Field(default=None, gt=0)
    notifications: NotificationsConfig = NotificationsConfig()
    scheduler: Optional[SchedulerConfig] = None

    @field_validator("repository")
    def reject_blank_repository(cls, value: Optional[str]) -> Optional[str]:  # noqa: N805
        if value is not None and not value.strip():
            return None
        return value

    def require(self, setting: str) -> Any:
        value = getattr(self, setting)
        if setting == "repository_password":
            value = reveal(value)
        if value is None or value == "":
            raise MissingSettingError(setting)
        return value

    def require_all(self, settings: Iterable[str] = BACKUP_SETTINGS) -> None:
        for setting in settings:
            self.require(setting)

    def secret_values(self) -> List[str]:
        """Resolved secret values, used to mask accidental leaks in the run log."""
        candidates: List[Optional[Secret]] = [self.repository_password]
        if self.cloud_credentials:
            candidates.extend(
                [self.cloud_credentials.access_key_id, self.cloud_credentials.secret_access_key]
            )
        if self.email_settings:
            candidates.append(self.email_settings.smtp_password)
        return [value for value in (reveal(item) for item in candidates) if value]


def load_config(path: Path) -> BackupConfig:
    if not path.is_file():
        raise ConfigNotFoundError(f"Configuration file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except OSError as exc:
        raise ConfigNotFoundError(f"Configuration file is not readable: {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigMalformedError(f"Configuration file could not be parsed: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigMalformedError("Configuration root must be a mapping.")

    try:
        return BackupConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigMalformedError(str(exc)) from exc


def dump_config(config: BackupConfig, path: Path) -> None:
    """Write ``config`` as YAML so that :func:`load_config` reads it back unchanged."""
    payload = _plain(config.model_dump(by_alias=True, exclude_none=True))
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(payload, fh, sort_keys=False)


def _plain(value: Any) -> Any:
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value
