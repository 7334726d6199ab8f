"""Status notifications for finished backup runs.

Sending is best effort: by the time a run is reported its outcome is final,
so transport failures are logged and never raised to the caller.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional, Tuple, Union

import requests

from .config import EmailSettings, NotificationsConfig, reveal
from .report import RunResult, format_duration

LOG = logging.getLogger(__name__)

SMTP_TIMEOUT = 30
WEBHOOK_TIMEOUT = 10


class NotificationError(Exception):
    """Raised when a notification could not be delivered."""


def compose_body(report: RunResult) -> str:
    lines = [
        f"Project: {report.project_name}",
        f"Status: {report.status.value}",
        f"Started: {report.started_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Duration: {format_duration(report.duration)}",
        f"Total size: {report.total_size or 'unknown'}",
        f"Log file: {report.log_file_path}",
    ]
    if report.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"- {error}" for error in report.errors)
    return "\n".join(lines) + "\n"


def compose_message(settings: EmailSettings, report: RunResult) -> Tuple[str, str]:
    subject = f"{settings.subject} - {report.project_name}: {report.status.value}"
    return subject, compose_body(report)


def send_email(settings: EmailSettings, subject: str, body: str) -> None:
    msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = settings.from_address
    msg["To"] = ", ".join(settings.to)

    try:
        with smtplib.SMTP(settings.smtp_server, settings.smtp_port, timeout=SMTP_TIMEOUT) as smtp:
            smtp.starttls(context=ssl.create_default_context())
            if settings.smtp_user:
                smtp.login(settings.smtp_user, reveal(settings.smtp_password) or "")
            smtp.sendmail(settings.from_address, settings.to, msg.as_string())
    except (smtplib.SMTPException, OSError) as exc:
        raise NotificationError(f"Email to {', '.join(settings.to)} failed: {exc}") from exc


def post_webhook(url: str, text: str) -> None:
    try:
        response = requests.post(url, json={"text": text}, timeout=WEBHOOK_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise NotificationError(f"Webhook notification failed: {exc}") from exc


def notify(
    settings: Optional[EmailSettings],
    report: RunResult,
    log: Union[logging.Logger, logging.LoggerAdapter] = LOG,
    notifications: Optional[NotificationsConfig] = None,
) -> bool:
    """Deliver the run report; returns True when every configured channel succeeded."""
    delivered = True

    if settings is None:
        log.info("Email notification not configured; skipping")
    else:
        subject, body = compose_message(settings, report)
        try:
            send_email(settings, subject, body)
        except NotificationError as exc:
            delivered = False
            log.error("Notification failed: %s", exc)
        except Exception as exc:  # noqa: BLE001
            delivered = False
            log.error("Unexpected notification error: %s", exc)
        else:
            log.info("Notification email sent to %s", ", ".join(settings.to))

    webhook = notifications.resolve_slack_webhook() if notifications else None
    if webhook:
        try:
            post_webhook(webhook, compose_body(report))
        except NotificationError as exc:
            delivered = False
            log.error("%s", exc)
        except Exception as exc:  # noqa: BLE001
            delivered = False
            log.error("Unexpected webhook error: %s", exc)
        else:
            log.info("Webhook notification sent")

    return delivered
