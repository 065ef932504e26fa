"""Mail transports used by the notification dispatcher."""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from ..config import MailSettings
from ..domain.errors import TransportFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    sender: str
    recipient: str
    subject: str
    html: str

    def to_email(self) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = self.recipient
        msg["Subject"] = self.subject
        msg.set_content(self.html, subtype="html")
        return msg


class MailTransport(Protocol):
    def deliver(self, message: OutgoingMessage) -> None: ...


class SmtpTransport:
    """Opens one SMTP session per message, with STARTTLS or implicit TLS."""

    def __init__(self, settings: MailSettings) -> None:
        if not settings.host:
            raise ValueError("SMTP host must be configured")
        self._settings = settings

    def _connect(self) -> smtplib.SMTP:
        settings = self._settings
        timeout = settings.timeout_seconds
        if settings.use_ssl:
            return smtplib.SMTP_SSL(settings.host, settings.port, timeout=timeout)
        client = smtplib.SMTP(settings.host, settings.port, timeout=timeout)
        if settings.use_tls:
            client.starttls()
        return client

    def deliver(self, message: OutgoingMessage) -> None:
        try:
            with self._connect() as client:
                if self._settings.username and self._settings.password:
                    client.login(self._settings.username, self._settings.password)
                client.send_message(message.to_email())
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportFailure(f"smtp delivery to {message.recipient} failed: {exc}") from exc
        logger.info("smtp sent to=%s subject=%s", message.recipient, message.subject)


class LogTransport:
    """Writes messages to the log instead of sending them; for unconfigured environments."""

    def deliver(self, message: OutgoingMessage) -> None:
        # body carries live codes and is never written out
        logger.info(
            "mail log-only to=%s subject=%s length=%d",
            message.recipient,
            message.subject,
            len(message.html),
        )


def build_transport(settings: MailSettings) -> MailTransport:
    if settings.host:
        return SmtpTransport(settings)
    logger.warning("SMTP_HOST not set; outbound mail will only be logged")
    return LogTransport()
