from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Mapping, Optional, TypeVar

from .config import BackupConfig, reveal

LOG = logging.getLogger(__name__)

RESTIC_PASSWORD_ENV = "RESTIC_PASSWORD"
ACCESS_KEY_ENV = "AWS_ACCESS_KEY_ID"
SECRET_KEY_ENV = "AWS_SECRET_ACCESS_KEY"

_ENV_LOCK = threading.RLock()

T = TypeVar("T")


def build_secret_env(config: BackupConfig) -> Dict[str, str]:
    """Map the configured credentials onto the environment names restic reads."""
    secrets: Dict[str, Optional[str]] = {RESTIC_PASSWORD_ENV: reveal(config.repository_password)}
    if config.cloud_credentials:
        secrets[ACCESS_KEY_ENV] = reveal(config.cloud_credentials.access_key_id)
        secrets[SECRET_KEY_ENV] = reveal(config.cloud_credentials.secret_access_key)
    return {name: value for name, value in secrets.items() if value}


@contextmanager
def secret_scope(secrets: Mapping[str, str]) -> Iterator[None]:
    """Expose ``secrets`` as environment entries for the body of the ``with`` block.

    Entries are removed on every exit path. A value that was already present
    before entry is restored rather than deleted.
    """
    with _ENV_LOCK:
        previous: Dict[str, Optional[str]] = {}
        try:
            for name, value in secrets.items():
                previous[name] = os.environ.get(name)
                os.environ[name] = value
            LOG.debug("Exposed %d secret environment entries", len(secrets))
            yield
        finally:
            for name, old_value in previous.items():
                if old_value is None:
                    os.environ.pop(name, None)
                else:
                    os.environ[name] = old_value
            LOG.debug("Cleared %d secret environment entries", len(previous))


def with_secrets(secrets: Mapping[str, str], body: Callable[[], T]) -> T:
    with secret_scope(secrets):
        return body()
