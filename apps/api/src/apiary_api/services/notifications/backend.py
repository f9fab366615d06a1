"""Mail transports used by the email notifier."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol, Sequence

from apiary_api.core.settings import Settings


@dataclass(slots=True)
class EmailAttachment:
    """File attached to a notification, such as a certificate or an export."""

    filename: str
    content_type: str
    payload: bytes


def compose_email(
    sender: str,
    recipient: str,
    subject: str,
    body_text: str,
    *,
    body_html: str | None = None,
    attachments: Sequence[EmailAttachment] = (),
) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = recipient
    message["Subject"] = subject
    message.set_content(body_text)
    if body_html:
        message.add_alternative(body_html, subtype="html")
    for attachment in attachments:
        maintype, _, subtype = (attachment.content_type or "").partition("/")
        message.add_attachment(
            attachment.payload,
            maintype=maintype if subtype else "application",
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return message


class EmailBackend(Protocol):
    sender: str

    async def deliver(self, message: EmailMessage) -> None:
        ...


class SMTPEmailBackend:
    """Relays messages through the configured SMTP server from a worker thread."""

    def __init__(self, settings: Settings) -> None:
        self.sender = settings.smtp_sender_email
        self._settings = settings

    async def deliver(self, message: EmailMessage) -> None:
        await asyncio.to_thread(self._relay, message)

    def _relay(self, message: EmailMessage) -> None:
        config = self._settings
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=config.notifier_timeout_seconds) as smtp:
            if config.smtp_use_tls:
                smtp.starttls()
            if config.smtp_username and config.smtp_password:
                smtp.login(config.smtp_username, config.smtp_password)
            smtp.send_message(message)


class InMemoryEmailBackend:
    """Keeps every delivered message in ``outbox``."""

    def __init__(self, sender: str = "apiary@localhost") -> None:
        self.sender = sender
        self.outbox: list[EmailMessage] = []

    async def deliver(self, message: EmailMessage) -> None:
        self.outbox.append(message)


__all__ = ["EmailAttachment", "EmailBackend", "InMemoryEmailBackend", "SMTPEmailBackend", "compose_email"]
