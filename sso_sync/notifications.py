"""
E-mail notifications for sync runs.

A failed run reports the operation and entity it stopped at; a successful run can
optionally report its change counters.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from datetime import datetime
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

FOOTER = "This is an automated message from SSO Sync."


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send a plain-text e-mail through the configured SMTP relay.

    Args:
        subject: Subject line
        body: Message body
        config: The ``notifications`` configuration section

    Returns:
        True if the message was handed to the relay
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]

    if not smtp_server or not email_to:
        logger.error(f"Email not sent, missing smtp_server or email_to: subject={subject!r}")
        return False

    msg = MIMEText(body, 'plain')
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()
        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email: server={smtp_server}:{smtp_port} error={e}")
        return False

    logger.info(f"Email sent: subject={subject!r} recipients={len(email_to)}")
    return True


def _report(heading: str, lines: List[str]) -> str:
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    return '\n'.join([heading, f"Timestamp: {timestamp}", ""] + lines + ["", FOOTER])


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    operation: Optional[str] = None,
    key: Optional[str] = None
) -> bool:
    """Report a failed run, naming the operation and entity it stopped at."""
    if not config.get('email_on_failure', True):
        return False

    lines = [f"Failure: {title}", f"Error: {error_message}"]
    if operation:
        lines.append(f"Failed operation: {operation}")
    if key:
        lines.append(f"Entity: {key}")
    lines.extend([
        "",
        "Changes applied before the failure were kept. The next run starts from a",
        "fresh snapshot and converges what is left.",
    ])
    return send_email(f"SSO Sync failed: {title}", _report("SSO Sync failure report", lines), config)


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        return f"{minutes}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_success_summary(
    counters: Dict[str, int],
    config: Dict[str, Any],
    sync_method: str = '',
    runtime_seconds: float = 0
) -> bool:
    """Report the ApplyResult counters of a successful run, when enabled."""
    if not config.get('email_on_success', False):
        return False

    lines = [
        f"Sync method: {sync_method or 'unknown'}",
        f"Runtime: {format_runtime(runtime_seconds)}",
    ]
    lines.extend(f"{name.replace('_', ' ').capitalize()}: {value}" for name, value in counters.items())
    return send_email("SSO Sync completed", _report("SSO Sync summary", lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """Send a test message with the given settings; used by ``--test-email``."""
    body = _report("SSO Sync test message", [
        f"SMTP server: {config.get('smtp_server', 'not configured')}:{config.get('smtp_port', 587)}",
        "Failure reports will be delivered with these settings.",
    ])
    return send_email("SSO Sync test message", body, config)
