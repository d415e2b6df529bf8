from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from passless.config import Settings
from passless.logging import get_logger, redact_email

logger = get_logger(__name__)

VERIFY_EMAIL = "verify_email"
LOGIN = "login"

_SUBJECTS = {
    VERIFY_EMAIL: "Confirm your email address",
    LOGIN: "Your sign-in code",
}

_INTROS = {
    VERIFY_EMAIL: "Use the code below to finish creating your account.",
    LOGIN: "Use the code below to sign in.",
}


class Notifier(Protocol):
    """Out-of-band delivery of one-time codes.

    Implementations report failure by returning ``False``; callers log it and
    carry on so delivery problems never fail a registration or login.
    """

    def send_code(self, to_email: str, code: str, *, purpose: str = VERIFY_EMAIL) -> bool: ...


class EmailService:
    """SMTP delivery of one-time codes.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification and login code messages
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Passless",
        code_ttl_minutes: int = 15,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes

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
            code_ttl_minutes=settings.verification_code_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _render(self, code: str, purpose: str) -> tuple[str, str, str]:
        subject = _SUBJECTS.get(purpose, _SUBJECTS[VERIFY_EMAIL])
        intro = _INTROS.get(purpose, _INTROS[VERIFY_EMAIL])
        text_body = (
            f"{intro}\n\n"
            f"    {code}\n\n"
            f"The code expires in {self.code_ttl_minutes} minutes.\n"
            "If you did not request it, you can ignore this message.\n\n"
            f"---\n{self.from_name}\n"
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <p>{intro}</p>
    <p style="font-size: 28px; letter-spacing: 6px; font-weight: 600;">{code}</p>
    <p>The code expires in {self.code_ttl_minutes} minutes.</p>
    <p style="font-size: 12px; color: #5b6470;">If you did not request it, you can ignore this message.</p>
</body>
</html>
"""
        return subject, html_body, text_body

    def send_code(self, to_email: str, code: str, *, purpose: str = VERIFY_EMAIL) -> bool:
        subject, html_body, text_body = self._render(code, purpose)
        return self._send_email(to_email, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True
