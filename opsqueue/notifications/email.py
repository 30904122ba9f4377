"""
SMTP email transport.
"""

from email.message import EmailMessage
from typing import Protocol

import aiosmtplib

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import Settings
from opsqueue.core.exceptions import OpsQueueException

logger = get_logger(__name__)

# RFC 2606 reserved domains used by seed and mock data
TEST_EMAIL_DOMAINS = ("example.com", "example.org", "example.net")


def is_test_email(address: str) -> bool:
    domain = address.rpartition("@")[2].strip().lower()
    return domain in TEST_EMAIL_DOMAINS


class EmailDeliveryError(OpsQueueException):
    """SMTP delivery failed; `transient` says whether a retry can help."""

    def __init__(self, message: str, transient: bool):
        self.transient = transient
        super().__init__(message, details={"transient": transient})


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, html: str, text: str) -> None: ...


def classify_smtp_error(error: aiosmtplib.SMTPException) -> bool:
    """True when the failure is worth retrying."""
    if isinstance(error, aiosmtplib.SMTPAuthenticationError):
        return False
    if isinstance(error, aiosmtplib.SMTPRecipientsRefused):
        return all(400 <= refused.code < 500 for refused in error.recipients)
    if isinstance(error, aiosmtplib.SMTPResponseException):
        return 400 <= error.code < 500
    # Connection, timeout and disconnect errors
    return True


class EmailTransport:
    """Sends multipart (text + HTML) email over SMTP."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def build_message(self, to: str, subject: str, html: str, text: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.settings.smtp_from
        message["To"] = to
        # Header values cannot carry line breaks
        message["Subject"] = " ".join(subject.split())
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")
        return message

    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        try:
            message = self.build_message(to, subject, html, text)
        except ValueError as e:
            raise EmailDeliveryError(f"invalid message headers: {e}", transient=False) from e

        try:
            await aiosmtplib.send(
                message,
                hostname=self.settings.smtp_host,
                port=self.settings.smtp_port,
                username=self.settings.smtp_username or None,
                password=self.settings.smtp_password or None,
                start_tls=self.settings.smtp_starttls,
                timeout=self.settings.smtp_timeout_s,
            )
        except aiosmtplib.SMTPException as e:
            transient = classify_smtp_error(e)
            raise EmailDeliveryError(f"SMTP delivery failed: {e}", transient) from e
        except OSError as e:
            raise EmailDeliveryError(f"SMTP connection failed: {e}", transient=True) from e

        logger.info("Email sent", to=to, subject=subject)
