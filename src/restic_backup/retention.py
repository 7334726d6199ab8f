from __future__ import annotations

import logging
from typing import Optional, Union

from .config import RetentionPolicy
from .runner import CommandResult, ResticRunner

LOG = logging.getLogger(__name__)


def describe_policy(policy: RetentionPolicy) -> str:
    rules = policy.present_rules()
    if not rules:
        return "none"
    return " ".join(f"{name}={value}" for name, value in rules.items())


def enforce_retention(
    runner: ResticRunner,
    policy: Optional[RetentionPolicy],
    log: Union[logging.Logger, logging.LoggerAdapter] = LOG,
) -> Optional[CommandResult]:
    if policy is None:
        return None

    log.info("Applying retention policy: %s", describe_policy(policy))
    result = runner.forget(policy)
    if result.success:
        log.info("Retention policy applied")
    else:
        log.error("Retention (forget --prune) failed: %s", result.describe())
    return result
