from __future__ import annotations

import logging
import smtplib
from collections.abc import Mapping
from email.mime.text import MIMEText
from typing import Any

logger = logging.getLogger(__name__)


class MailError(RuntimeError):
    pass


def mail_configured(config: Mapping[str, Any]) -> bool:
    return bool((config.get("MAIL_HOST") or "").strip() and (config.get("MAIL_FROM") or "").strip())


def send_email(config: Mapping[str, Any], to: str, subject: str, body: str, *, html: bool = False) -> None:
    """
    Send a single email using the MAIL_* settings from app.config.
    Raises MailError on any SMTP failure.
    """
    host = (config.get("MAIL_HOST") or "").strip()
    port = int(config.get("MAIL_PORT") or 587)
    username = (config.get("MAIL_USERNAME") or "").strip()
    password = config.get("MAIL_PASSWORD") or ""
    sender = (config.get("MAIL_FROM") or "").strip()
    use_tls = bool(config.get("MAIL_USE_TLS", True))

    if not host:
        raise MailError("SMTP server not configured (MAIL_HOST missing)")
    if not sender:
        raise MailError("Sender address not configured (MAIL_FROM missing)")

    msg = MIMEText(body, "html" if html else "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to

    try:
        if port == 465:
            server: smtplib.SMTP = smtplib.SMTP_SSL(host, port, timeout=20)
        else:
            server = smtplib.SMTP(host, port, timeout=20)
        try:
            if use_tls and port != 465:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        finally:
            server.quit()
    except smtplib.SMTPAuthenticationError as e:
        raise MailError(f"SMTP authentication failed: {e}") from e
    except (smtplib.SMTPException, OSError) as e:
        raise MailError(f"SMTP error: {e}") from e

    logger.info("Sent email to %s (subject=%s)", to, subject)
