"""Notifier capability used by the ledgers and the export batcher."""

from __future__ import annotations

import smtplib
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from loguru import logger

from apiary_api.core.settings import Settings, get_settings

from .backend import EmailAttachment, EmailBackend, InMemoryEmailBackend, SMTPEmailBackend, compose_email


@dataclass(slots=True)
class NotificationContent:
    """Rendered message handed to a notifier."""

    subject: str
    body_text: str
    body_html: str | None = None
    attachments: Sequence[EmailAttachment] = field(default_factory=tuple)


class Notifier(Protocol):
    """Deliver ``content`` to ``address``; return whether delivery succeeded."""

    async def notify(self, address: str, content: NotificationContent) -> bool:
        ...


class EmailNotifier:
    """Notifier backed by an email backend."""

    def __init__(self, backend: EmailBackend) -> None:
        self._backend = backend

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "EmailNotifier":
        resolved = settings or get_settings()
        if not resolved.smtp_host or not resolved.smtp_sender_email:
            logger.warning("SMTP not configured; notifications are kept in memory")
            return cls(InMemoryEmailBackend())
        return cls(SMTPEmailBackend(resolved))

    async def notify(self, address: str, content: NotificationContent) -> bool:
        try:
            await self._backend.deliver(
                compose_email(
                    self._backend.sender,
                    address,
                    content.subject,
                    content.body_text,
                    body_html=content.body_html,
                    attachments=content.attachments,
                )
            )
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Notification delivery failed", recipient=address, subject=content.subject, error=str(exc))
            return False
        logger.info("Notification delivered", recipient=address, subject=content.subject)
        return True


__all__ = ["EmailNotifier", "NotificationContent", "Notifier"]
