"""
mail/sender.py -- SMTP delivery of verification, reset and welcome emails.

Every send_* method returns a bool and never raises: a mail failure must not
fail the request that triggered it. The orchestrator logs a False result.

Dev mode: when smtp_host or from_email is empty the message is logged (with
the recipient redacted) instead of sent, and the call reports success. The
link -- which carries the raw token -- is only logged at DEBUG level.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from urllib.parse import urlencode

from auth.models import User

logger = logging.getLogger("sessiongate.mail")

_SMTP_TIMEOUT = 30  # seconds


def _redact_email(email: str) -> str:
    """Redact an address for logging: 'alice@example.com' -> 'al***@example.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailSender:
    """SMTP client for the three transactional messages.

    Usage:
        sender = EmailSender(smtp_host="smtp.example.com", from_email="no-reply@example.com",
                             base_url="https://app.example.com")
        sender.send_verification(user, raw_token)
    """

    def __init__(
        self,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        from_name: str = "SessionGate",
        base_url: str = "http://localhost:3000",
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

    def _link(self, path: str, token: str) -> str:
        return f"{self.base_url}{path}?{urlencode({'token': token})}"

    def _send(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        if not self.is_configured:
            logger.info("SMTP not configured; email to %s not sent (%s)", _redact_email(to_email), subject)
            logger.debug("Undelivered email body: %s", text_body)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=_SMTP_TIMEOUT) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=_SMTP_TIMEOUT
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("SMTP login rejected for %s@%s: %s", self.smtp_user, self.smtp_host, exc)
            return False
        except smtplib.SMTPException as exc:
            logger.error("SMTP error sending to %s: %s: %s", _redact_email(to_email), type(exc).__name__, exc)
            return False
        except OSError as exc:
            # Connection refused, TLS failure, timeout
            logger.error("Could not reach SMTP server %s:%s: %s", self.smtp_host, self.smtp_port, exc)
            return False

        logger.info("Email sent to %s (%s)", _redact_email(to_email), subject)
        return True

    # ---------------------------------------------------------------------------
    # Messages
    # ---------------------------------------------------------------------------

    def send_verification(self, user: User, token: str) -> bool:
        link = self._link("/verify", token)
        text = (
            f"Hi {user.name},\n\n"
            f"Confirm your email address by opening the link below:\n\n{link}\n\n"
            "The link is valid for 24 hours. If you did not create an account, ignore this email.\n"
        )
        html = (
            f"<p>Hi {escape(user.name)},</p>"
            f'<p>Confirm your email address by opening <a href="{link}">this link</a>.</p>'
            "<p>The link is valid for 24 hours. If you did not create an account, ignore this email.</p>"
        )
        return self._send(user.email, "Email Verification", text, html)

    def send_password_reset(self, user: User, token: str) -> bool:
        link = self._link("/reset-password", token)
        text = (
            f"Hi {user.name},\n\n"
            f"Reset your password by opening the link below:\n\n{link}\n\n"
            "The link is valid for 1 hour and works once. "
            "If you did not ask for a reset, ignore this email.\n"
        )
        html = (
            f"<p>Hi {escape(user.name)},</p>"
            f'<p>Reset your password by opening <a href="{link}">this link</a>.</p>'
            "<p>The link is valid for 1 hour and works once. "
            "If you did not ask for a reset, ignore this email.</p>"
        )
        return self._send(user.email, "Reset your Password", text, html)

    def send_welcome(self, user: User) -> bool:
        text = f"Hi {user.name},\n\nYour account is verified. Welcome to {self.from_name}.\n"
        html = f"<p>Hi {escape(user.name)},</p><p>Your account is verified. Welcome to {escape(self.from_name)}.</p>"
        return self._send(user.email, f"Welcome to {self.from_name}", text, html)
