from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)


def send_email(config: dict, *, to: str, subject: str, body: str, html: str | None = None) -> tuple[bool, str]:
    """
    Send a single email through the configured SMTP server.

    Returns (success, error_message). Misconfiguration is reported, not raised,
    so callers like password reset never leak whether an account exists.
    """
    smtp_server = (config.get("SMTP_SERVER") or "").strip()
    smtp_port = int(config.get("SMTP_PORT") or 587)
    smtp_use_tls = bool(config.get("SMTP_USE_TLS", True))
    smtp_username = (config.get("SMTP_USERNAME") or "").strip()
    smtp_password = (config.get("SMTP_PASSWORD") or "").strip()
    email_from = (config.get("EMAIL_FROM") or "").strip()

    if not smtp_server:
        logger.warning("Email not sent (SMTP_SERVER not configured): to=%s subject=%s", to, subject)
        return False, "SMTP server not configured"
    if not email_from:
        logger.warning("Email not sent (EMAIL_FROM not configured): to=%s subject=%s", to, subject)
        return False, "Email from address not configured"

    if html:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(body, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
    else:
        msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = email_from
    msg["To"] = to

    try:
        with smtplib.SMTP(smtp_server, smtp_port, timeout=30) as server:
            if smtp_use_tls:
                server.starttls()
            if smtp_username:
                server.login(smtp_username, smtp_password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email send failed: to=%s subject=%s error=%s", to, subject, e)
        return False, str(e)

    logger.info("Email sent: to=%s subject=%s", to, subject)
    return True, ""
