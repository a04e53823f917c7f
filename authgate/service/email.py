from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from authgate.logging import get_logger, hash_email

logger = get_logger(__name__)


class EmailService:
    """Transactional mail for account flows.

    Without an SMTP host the message is logged instead of sent, which is the
    normal setup for development and tests.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Platform",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Returns True when the message was handed to SMTP (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to_hash=hash_email(to_email),
                subject=subject,
                body_chars=len(text_body),
            )
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
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to_hash=hash_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to_hash=hash_email(to_email), subject=subject)
        return True

    def reset_url(self, token: str) -> str:
        return f"{self.base_url}/reset-password?{urlencode({'token': token})}"

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = self.reset_url(token)
        subject = f"Reset your {self.from_name} password"
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <h1>Reset your password</h1>
    <p>We received a request to reset your password. Use the link below to choose a new one:</p>
    <p><a href="{reset_url}">Reset Password</a></p>
    <p>This link expires in {self.reset_ttl_minutes} minutes and can be used once.</p>
    <p>If you didn't request this, you can ignore this email.</p>
</body>
</html>
"""
        text_body = (
            f"Reset your {self.from_name} password\n\n"
            f"Visit the link below to choose a new password:\n\n{reset_url}\n\n"
            f"This link expires in {self.reset_ttl_minutes} minutes and can be used once.\n"
            "If you didn't request this, you can ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        subject = f"Your {self.from_name} password was changed"
        text_body = (
            "The password on your account was just changed and every signed-in "
            "device has been signed out.\n"
            "If this wasn't you, reset your password immediately.\n"
        )
        html_body = f"<p>{text_body.replace(chr(10), '<br>')}</p>"
        return self._send_email(to_email, subject, html_body, text_body)
