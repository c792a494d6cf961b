from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from accountcore.config import Settings
from accountcore.logging import get_logger

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
    <h2>{heading}</h2>
    <p>{intro}</p>
    <p><a href="{url}" style="background: #2563eb; color: #fff; padding: 10px 18px;
       border-radius: 6px; text-decoration: none;">{action}</a></p>
    <p style="font-size: 13px; color: #52606d;">{footer}</p>
    <p style="font-size: 12px; color: #9aa5b1; word-break: break-all;">{url}</p>
  </div>
</body>
</html>
"""


class EmailService:
    """Sends account emails over SMTP.

    When no SMTP host is configured the message is logged instead of sent,
    which keeps local development and tests free of a mail server.
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
        from_name: str = "AccountCore",
        base_url: str = "http://localhost:8000",
        reset_ttl_minutes: int = 15,
        verify_ttl_minutes: int = 1440,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verify_ttl_minutes = verify_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
            verify_ttl_minutes=settings.verify_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def reset_url(self, token: str) -> str:
        return f"{self.base_url}/reset-password?token={quote(token)}"

    def verification_url(self, token: str) -> str:
        return f"{self.base_url}/v1/users/verify-email/{quote(token)}"

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; returns False when delivery failed."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
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
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=exc.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused=len(exc.recipients),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        url = self.reset_url(token)
        subject = f"Reset your {self.from_name} password"
        footer = (
            f"This link expires in {self.reset_ttl_minutes} minutes. "
            "If you did not ask for a reset you can ignore this email."
        )
        html_body = _LAYOUT.format(
            heading="Password reset",
            intro="We received a request to reset the password for your account.",
            url=url,
            action="Choose a new password",
            footer=footer,
        )
        text_body = f"Reset your password by opening this link:\n\n{url}\n\n{footer}\n"
        return self._send_email(to_email, subject, html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        url = self.verification_url(token)
        subject = f"Verify your {self.from_name} email address"
        hours = max(1, self.verify_ttl_minutes // 60)
        footer = f"This link expires in {hours} hours."
        html_body = _LAYOUT.format(
            heading="Confirm your email",
            intro="Thanks for signing up. Please confirm this address belongs to you.",
            url=url,
            action="Verify email",
            footer=footer,
        )
        text_body = f"Verify your email address by opening this link:\n\n{url}\n\n{footer}\n"
        return self._send_email(to_email, subject, html_body, text_body)
