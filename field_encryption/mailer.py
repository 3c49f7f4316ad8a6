"""
Mail transport.

This module provides:
- Mailer: Abstract send operation used by the delivery queue and the intercept
- SmtpMailer: SMTP implementation (blocking smtplib run in a worker thread)
- InMemoryMailer: Captures messages for testing
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from typing import List, Optional

from .errors import DeliveryError
from .models import OutboundEmail

logger = logging.getLogger(__name__)


def split_addresses(value: str) -> List[str]:
    """Split a comma/semicolon separated address list."""
    return [part.strip() for part in value.replace(";", ",").split(",") if part.strip()]


class Mailer(ABC):
    """Send operation of the host platform."""

    @abstractmethod
    async def send(self, message: OutboundEmail) -> None:
        """
        Send one message.

        Raises:
            DeliveryError: If the transport rejects or fails to send the message
        """
        ...


@dataclass
class SmtpSettings:
    """SMTP connection settings."""

    host: str
    port: int = 587
    username: str = ""
    password: str = ""
    starttls: bool = True
    timeout: float = 30.0

    def __repr__(self) -> str:
        return f"SmtpSettings(host={self.host!r}, port={self.port}, username={self.username!r})"


class SmtpMailer(Mailer):
    """Send through an SMTP relay."""

    def __init__(self, settings: SmtpSettings) -> None:
        self._settings = settings

    async def send(self, message: OutboundEmail) -> None:
        await asyncio.to_thread(self._send_blocking, message)

    def _send_blocking(self, message: OutboundEmail) -> None:
        recipients = (
            split_addresses(message.to)
            + split_addresses(message.cc)
            + split_addresses(message.bcc)
        )
        if not recipients:
            raise DeliveryError("No recipient address")

        mime = build_mime_message(message)
        settings = self._settings
        try:
            with smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout) as server:
                if settings.starttls:
                    server.starttls(context=ssl.create_default_context())
                if settings.username:
                    server.login(settings.username, settings.password)
                server.sendmail(message.sender, recipients, mime.as_string())
        except smtplib.SMTPAuthenticationError:
            raise DeliveryError("SMTP authentication failed") from None
        except smtplib.SMTPRecipientsRefused:
            # The refusal lists the addresses; keep them out of the error
            raise DeliveryError("SMTP recipients refused") from None
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP send failed: {type(e).__name__}") from None

        logger.info("Sent message via %s (%d recipient(s))", settings.host, len(recipients))


def build_mime_message(message: OutboundEmail) -> MIMEMultipart:
    """Build the MIME message for an outbound email. Bcc is not written as a header."""
    mime = MIMEMultipart("mixed")
    mime["From"] = formataddr((message.sender_name, message.sender)) if message.sender_name else message.sender
    mime["To"] = ", ".join(split_addresses(message.to))
    if message.cc:
        mime["Cc"] = ", ".join(split_addresses(message.cc))
    mime["Subject"] = message.subject
    mime["Date"] = formatdate(localtime=False)
    mime.attach(MIMEText(message.body, "html", "utf-8"))

    for attachment in message.attachments:
        maintype, _, subtype = attachment.mime_type.partition("/")
        part = MIMEBase(maintype or "application", subtype or "octet-stream")
        part.set_payload(attachment.content)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
        mime.attach(part)

    return mime


class InMemoryMailer(Mailer):
    """Collect sent messages; optionally fail every send."""

    def __init__(self, fail_with: Optional[str] = None) -> None:
        self.sent: List[OutboundEmail] = []
        self.fail_with = fail_with

    async def send(self, message: OutboundEmail) -> None:
        if self.fail_with is not None:
            raise DeliveryError(self.fail_with)
        self.sent.append(message)
