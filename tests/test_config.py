from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import pytest
from pydantic import SecretStr

from restic_backup.config import (
    BACKUP_SETTINGS,
    REPOSITORY_SETTINGS,
    BackupConfig,
    ConfigMalformedError,
    ConfigNotFoundError,
    ConfigurationError,
    MissingSettingError,
    SecretRef,
    dump_config,
    load_config,
    reveal,
)


def test_load_config_reads_all_fields(config_path: Path, tool_path: Path) -> None:
    config = load_config(config_path)

    assert config.project_name == "fileserver"
    assert config.backup_tool_path == tool_path
    assert config.repository == "sftp:backup@nas:/srv/restic"
    assert reveal(config.repository_password) == "unit-test-password"
    assert config.retention_policy is not None
    assert config.retention_policy.keep_daily == 7
    assert config.retention_policy.keep_last is None
    assert config.email_settings is None
    assert config.cloud_credentials is None
    assert config.use_filesystem_snapshot is False


def test_load_config_accepts_json(tmp_path: Path, config_data: Dict[str, Any]) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config_data), encoding="utf-8")

    config = load_config(path)

    assert config.project_name == "fileserver"


def test_load_config_accepts_camel_case_keys(tmp_path: Path, tool_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "projectName": "fileserver",
                "logPath": str(tmp_path / "logs" / "fileserver"),
                "backupSource": str(tmp_path),
                "backupToolPath": str(tool_path),
                "repository": "s3:s3.amazonaws.com/bucket/restic",
                "repositoryPassword": "unit-test-password",
                "useFilesystemSnapshot": True,
                "retentionPolicy": {"keepDaily": 7, "keepMonthly": 6},
                "emailSettings": {
                    "smtpServer": "smtp.example.com",
                    "smtpPort": 2525,
                    "from": "backup@example.com",
                    "to": "ops@example.com",
                },
                "cloudCredentials": {"accessKeyId": "AKIAEXAMPLE", "secretAccessKey": "s3-secret"},
            }
        ),
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.project_name == "fileserver"
    assert config.backup_tool_path == tool_path
    assert config.use_filesystem_snapshot is True
    assert config.retention_policy is not None
    assert config.retention_policy.present_rules() == {"keep_daily": 7, "keep_monthly": 6}
    assert config.email_settings is not None
    assert config.email_settings.smtp_port == 2525
    assert config.email_settings.from_address == "backup@example.com"
    assert reveal(config.cloud_credentials.secret_access_key) == "s3-secret"


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigNotFoundError, match="not found"):
        load_config(tmp_path / "missing.yaml")


def test_load_config_directory_is_not_found(tmp_path: Path) -> None:
    with pytest.raises(ConfigNotFoundError):
        load_config(tmp_path)


@pytest.mark.parametrize(
    "content",
    [
        "project_name: [unclosed",
        "- just\n- a list\n",
        "retention_policy:\n  keep_daily: -1\n",
        "unknown_field: 1\n",
        "email_settings:\n  smtp_server: mail\n",
    ],
)
def test_load_config_malformed(tmp_path: Path, content: str) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigMalformedError):
        load_config(path)


def test_errors_share_configuration_base() -> None:
    assert issubclass(ConfigNotFoundError, ConfigurationError)
    assert issubclass(ConfigMalformedError, ConfigurationError)
    assert issubclass(MissingSettingError, ConfigurationError)


def test_required_settings_are_not_defaulted(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("project_name: empty\n", encoding="utf-8")

    config = load_config(path)

    assert config.backup_source is None
    assert config.repository is None
    with pytest.raises(MissingSettingError, match="'repository'"):
        config.require("repository")
    with pytest.raises(MissingSettingError, match="backup_source"):
        config.require_all(BACKUP_SETTINGS)
    with pytest.raises(MissingSettingError, match="'repository'"):
        config.require_all(REPOSITORY_SETTINGS)


def test_require_rejects_unresolvable_password_ref(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BACKUP_PASSWORD", raising=False)
    config = BackupConfig(repository_password={"env": "BACKUP_PASSWORD"})

    with pytest.raises(MissingSettingError, match="repository_password"):
        config.require("repository_password")


def test_secret_ref_resolves_env_then_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    secret_file = tmp_path / "password.txt"
    secret_file.write_text("from-file\n", encoding="utf-8")
    ref = SecretRef(env="BACKUP_PASSWORD", file=secret_file)

    monkeypatch.delenv("BACKUP_PASSWORD", raising=False)
    assert ref.resolve() == "from-file"

    monkeypatch.setenv("BACKUP_PASSWORD", "from-env")
    assert ref.resolve() == "from-env"


def test_secrets_do_not_leak_through_repr(config_path: Path) -> None:
    config = load_config(config_path)

    assert isinstance(config.repository_password, SecretStr)
    assert "unit-test-password" not in repr(config)


def test_email_settings_accept_from_alias_and_recipient_string(
    write_config, config_data: Dict[str, Any]
) -> None:
    config_data["email_settings"] = {
        "smtp_server": "smtp.example.com",
        "smtp_user": "bot",
        "smtp_password": "smtp-secret",
        "from": "backup@example.com",
        "to": "ops@example.com, admin@example.com",
        "subject": "Nightly backup",
    }

    config = load_config(write_config(config_data))

    assert config.email_settings is not None
    assert config.email_settings.from_address == "backup@example.com"
    assert config.email_settings.to == ["ops@example.com", "admin@example.com"]
    assert config.email_settings.smtp_port == 587
    assert sorted(config.secret_values()) == ["smtp-secret", "unit-test-password"]


def test_round_trip_preserves_populated_and_omitted_fields(
    tmp_path: Path, write_config, config_data: Dict[str, Any]
) -> None:
    config_data.update(
        {
            "use_filesystem_snapshot": True,
            "command_timeout": 3600,
            "repository": "s3:s3.amazonaws.com/bucket/restic",
            "cloud_credentials": {
                "access_key_id": "AKIAEXAMPLE",
                "secret_access_key": {"env": "S3_SECRET"},
            },
            "email_settings": {
                "smtp_server": "smtp.example.com",
                "smtp_port": 2525,
                "from": "backup@example.com",
                "to": ["ops@example.com"],
                "subject": "Nightly backup",
            },
        }
    )
    original = load_config(write_config(config_data))

    copy_path = tmp_path / "copy" / "config.yaml"
    dump_config(original, copy_path)
    restored = load_config(copy_path)

    assert restored == original
    assert restored.retention_policy is not None
    assert restored.retention_policy.keep_monthly is None
    assert restored.email_settings is not None
    assert restored.email_settings.smtp_password is None
    assert restored.scheduler is None
    assert reveal(restored.cloud_credentials.access_key_id) == "AKIAEXAMPLE"
    assert restored.cloud_credentials.secret_access_key == SecretRef(env="S3_SECRET")


def test_scheduler_rejects_bad_cron(write_config, config_data: Dict[str, Any]) -> None:
    config_data["scheduler"] = {"cron": "not a cron"}

    with pytest.raises(ConfigMalformedError):
        load_config(write_config(config_data))
