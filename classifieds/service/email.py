from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from classifieds.config import Settings
from classifieds.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """Out-of-band delivery for password reset links.

    Without SMTP configuration nothing is sent. Outside production the reset
    link is written to the log instead so local flows can be completed; in
    production it is never logged.
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
        from_name: str = "Fish Classifieds",
        public_app_url: str = "http://localhost:5173",
        production: bool = False,
        reset_ttl_minutes: int = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.public_app_url = public_app_url.rstrip("/")
        self.production = production
        self.reset_ttl_minutes = reset_ttl_minutes

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
            public_app_url=settings.public_app_url,
            production=settings.is_production,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def reset_link(self, email: str, token: str) -> str:
        return f"{self.public_app_url}/reset-password?{urlencode({'email': email, 'token': token})}"

    def _send_email(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
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
            logger.error("email_auth_failed", to=redact_email(to_email), error=str(exc))
            return False
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = self.reset_link(to_email, token)
        if not self.is_configured:
            if self.production:
                logger.warning("password_reset_email_unconfigured", to=redact_email(to_email))
                return False
            logger.info("password_reset_link_dev", to=redact_email(to_email), reset_url=reset_url)
            return True

        subject = "Reset your password"
        text_body = (
            "We received a request to reset your password.\n\n"
            f"Visit the link below within {self.reset_ttl_minutes} minutes to choose a new one:\n\n{reset_url}\n\n"
            "If you didn't ask for this, you can ignore this email."
        )
        html_body = f"""<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.5; color: #222;">
  <h2>Reset your password</h2>
  <p>We received a request to reset your password. The link below is valid for {self.reset_ttl_minutes} minutes.</p>
  <p><a href="{reset_url}">Choose a new password</a></p>
  <p>If you didn't ask for this, you can ignore this email.</p>
</body>
</html>"""
        return self._send_email(to_email, subject, text_body, html_body)
