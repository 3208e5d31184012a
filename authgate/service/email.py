from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authgate.logging import get_logger
from authgate.service.errors import ServerError

logger = get_logger(__name__)


class DeliveryError(ServerError):
    """A verification code could not be handed to the provider."""
    status_code = 502
    error_code = "DeliveryFailed"


class EmailService:
    """Sends verification codes by SMTP.

    Falls back to logging the message when SMTP is not configured (dev mode).
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
        from_name: str = "Authgate",
        allow_dev_mode: bool = True,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.allow_dev_mode = allow_dev_mode

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
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

    async def send_otp(self, identifier: str, code: str) -> None:
        subject = f"Your {self.from_name} verification code"
        text_body = (
            f"Your verification code is {code}.\n\n"
            "If you did not request this code, you can ignore this email."
        )
        html_body = (
            "<p>Your verification code is:</p>"
            f"<p style=\"font-size:24px;letter-spacing:4px\"><strong>{code}</strong></p>"
            "<p>If you did not request this code, you can ignore this email.</p>"
        )

        if not self.is_configured:
            if not self.allow_dev_mode:
                logger.error("email_not_configured", to=self._redact_email(identifier))
                raise DeliveryError("Email delivery is not configured.")
            logger.info(
                "email_dev_mode",
                to=self._redact_email(identifier),
                subject=subject,
                otp_value=code,
            )
            return

        try:
            await asyncio.to_thread(
                self._send_email, identifier, subject, html_body, text_body
            )
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(identifier),
                error=str(exc),
            )
            raise DeliveryError("Unable to send verification email.") from exc
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_email(identifier),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise DeliveryError("Unable to send verification email.") from exc
        logger.info("email_sent", to=self._redact_email(identifier), subject=subject)


__all__ = ["DeliveryError", "EmailService"]
