from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from synodic.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Sends password reset codes over SMTP.

    When SMTP is not configured the message is not sent; a redacted log line
    is written instead so local development keeps working.
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
        from_name: str = "Synodic AI",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text email. Returns True if it was handed to the server."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
            )
            return False

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
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email_send_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        subject = "Your Synodic AI password reset code"
        text_body = (
            f"Your password reset code is {code}.\n\n"
            f"It expires in {ttl_minutes} minutes and can be used once. "
            "If you did not ask to reset your password you can ignore this email."
        )
        return self._send_email(to_email, subject, text_body)
