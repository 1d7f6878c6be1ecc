from __future__ import annotations

import logging
import smtplib
from collections.abc import Iterable, Mapping
from email.message import EmailMessage

logger = logging.getLogger(__name__)


def smtp_configured(config: Mapping) -> bool:
    return bool((config.get("SMTP_SERVER") or "").strip() and (config.get("EMAIL_FROM") or "").strip())


def send_email(config: Mapping, to: str | Iterable[str], subject: str, body: str) -> tuple[bool, str]:
    """
    Send a plain-text email over SMTP.

    Returns (success, error_message); never raises for transport errors so callers
    can record the failure on the queue item or job run.
    """
    smtp_server = (config.get("SMTP_SERVER") or "").strip()
    smtp_port = (str(config.get("SMTP_PORT") or "")).strip()
    smtp_use_tls = bool(config.get("SMTP_USE_TLS", True))
    smtp_username = (config.get("SMTP_USERNAME") or "").strip()
    smtp_password = config.get("SMTP_PASSWORD") or ""
    email_from = (config.get("EMAIL_FROM") or "").strip()

    if not smtp_server:
        return False, "SMTP server not configured (SMTP_SERVER environment variable missing)"
    if not email_from:
        return False, "Email from address not configured (EMAIL_FROM environment variable missing)"

    recipients = [to] if isinstance(to, str) else [r for r in to if r]
    if not recipients:
        return False, "No recipients"

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = email_from
    msg["To"] = ", ".join(recipients)
    msg.set_content(body)

    try:
        with smtplib.SMTP(smtp_server, int(smtp_port) if smtp_port else 0, timeout=30) as server:
            if smtp_use_tls:
                server.starttls()
            if smtp_username:
                server.login(smtp_username, smtp_password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError, ValueError) as e:
        logger.error("Email send failed (subject=%r to=%s): %s", subject, recipients, e)
        return False, str(e)

    logger.info("Email sent (subject=%r to=%s)", subject, recipients)
    return True, ""


def notify_admins(s, config: Mapping, subject: str, body: str) -> bool:
    """Email every active admin user. Skipped (False) when SMTP is not configured."""
    from app.aba.models import Role, User

    if not smtp_configured(config):
        logger.info("SMTP not configured; admin notification skipped (subject=%r)", subject)
        return False
    admins = (
        s.query(User)
        .filter(User.is_active.is_(True), User.deleted_at.is_(None), User.roles.any(Role.is_admin.is_(True)))
        .all()
    )
    recipients = [u.email for u in admins if u.email]
    if not recipients:
        logger.warning("No active admin users to notify (subject=%r)", subject)
        return False
    ok, _err = send_email(config, recipients, subject, body)
    return ok
