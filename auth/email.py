"""
auth/email.py -- Outbound email adapter for reset and verification links.

Delivery is an external collaborator: this module only renders a short
message around a token URL and hands it to an SMTP server. When SMTP_HOST is
not configured (local development, tests) the message is logged with a
redacted recipient instead of being sent.

send_* methods never raise. Routes call them from BackgroundTasks, and a
failed delivery must not change what the client sees (the reset-request
endpoint in particular must look identical whether or not a mail went out).
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from urllib.parse import quote

logger = logging.getLogger("gsoauth.email")


def redact_email(email: str) -> str:
    """Redact an address for logging: 'alice@x.com' -> 'al***@x.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        from_name: str = "GSO Inventory",
        base_url: str = "http://localhost:5173",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info("Email not configured; would send %r to %s: %s", subject, redact_email(to_email), text_body)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error("Email to %s failed (%s): %s", redact_email(to_email), type(e).__name__, e)
            return False
        logger.info("Email %r sent to %s", subject, redact_email(to_email))
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/reset-password?token={quote(token)}"
        body = (
            "We received a request to reset your password.\n\n"
            f"Open this link within the hour to choose a new one:\n{url}\n\n"
            "If you did not ask for this, you can ignore this message."
        )
        return self._send(to_email, "Reset your password", body)

    def send_verification(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/verify-email?token={quote(token)}"
        body = f"Welcome! Confirm your email address to activate your account:\n{url}\n"
        return self._send(to_email, "Verify your email address", body)
