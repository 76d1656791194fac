"""
mail/service.py -- Outbound HTML mail over SMTP.

send_email() never raises: it returns (ok, error_message) so callers can log
the failure and carry on. Password reset in particular must answer the
client identically whether or not delivery worked.

SMTP settings come from core.config (SMTP_HOST, SMTP_PORT, SMTP_TLS,
SMTP_USERNAME, SMTP_PASSWORD, MAIL_FROM, MAIL_FROM_NAME). An empty SMTP_HOST
disables delivery.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from core.config import Settings, get_settings

logger = logging.getLogger("restaurant.mail")


class MailService:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_host and self.settings.mail_from)

    def send_email(self, to_email: str, subject: str, html_body: str) -> tuple[bool, str]:
        """Send one HTML message. Returns (success, error_message)."""
        s = self.settings
        if not s.smtp_host:
            return False, "SMTP host not configured"
        if not s.mail_from:
            return False, "From address not configured"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{s.mail_from_name} <{s.mail_from}>" if s.mail_from_name else s.mail_from
        msg["To"] = to_email
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout_seconds) as server:
                if s.smtp_tls:
                    server.starttls(context=ssl.create_default_context())
                if s.smtp_username and s.smtp_password:
                    server.login(s.smtp_username, s.smtp_password)
                server.sendmail(s.mail_from, [to_email], msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("SMTP authentication failed: %s", e)
            return False, f"SMTP authentication failed: {e}"
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP error sending to %s: %s", to_email, e)
            return False, f"SMTP error: {e}"

        logger.info("Email '%s' sent to %s", subject, to_email)
        return True, ""
