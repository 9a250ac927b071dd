"""SMTP mail delivery for the emailSend node."""

from email.message import EmailMessage
from typing import Dict, Any, Optional

import aiosmtplib

from core.config import Settings
from core.logging import get_logger
from services.errors import ConfigurationError, HandlerError

logger = get_logger(__name__)


class Mailer:
    """Sends plain-text mail through the configured SMTP server."""

    def __init__(self, host: Optional[str], port: int = 465, user: Optional[str] = None,
                 password: Optional[str] = None, use_ssl: bool = True, timeout: int = 30,
                 default_sender: Optional[str] = None):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout
        self.default_sender = default_sender or user

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mailer":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_ssl=settings.smtp_use_ssl,
            timeout=settings.smtp_timeout,
            default_sender=settings.mail_from,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def build_message(self, to: str, subject: str, body: str,
                      sender: Optional[str] = None) -> EmailMessage:
        message = EmailMessage()
        message["From"] = sender or self.default_sender or ""
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        return message

    async def send(self, to: str, subject: str, body: str,
                   sender: Optional[str] = None) -> Dict[str, Any]:
        """Send one message.

        Raises:
            ConfigurationError: SMTP host is not configured.
            HandlerError: The SMTP server refused or the connection failed.
        """
        if not self.configured:
            raise ConfigurationError("SMTP is not configured (set SMTP_HOST)")

        message = self.build_message(to, subject, body, sender)
        try:
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.user,
                password=self.password,
                use_tls=self.use_ssl,
                start_tls=not self.use_ssl and self.port == 587,
                timeout=self.timeout,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("Email send failed", to=to, smtp_host=self.host, error=str(e))
            raise HandlerError(f"Failed to send email to {to}: {e}") from e

        logger.info("Email sent", to=to, subject=subject, smtp_host=self.host)
        return {"sent": True, "to": to, "subject": subject}
