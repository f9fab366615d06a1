from __future__ import annotations

import smtplib

import pytest

from apiary_api.core.settings import Settings
from apiary_api.services.notifications import (
    EmailAttachment,
    EmailNotifier,
    InMemoryEmailBackend,
    NotificationContent,
    SMTPEmailBackend,
)


class RefusingBackend(InMemoryEmailBackend):
    async def deliver(self, message) -> None:
        raise smtplib.SMTPRecipientsRefused({message["To"]: (550, b"mailbox unavailable")})


@pytest.mark.asyncio
async def test_notify_composes_message_with_attachment():
    backend = InMemoryEmailBackend(sender="bureau@apiary.example")
    notifier = EmailNotifier(backend)
    content = NotificationContent(
        subject="Export partenaire",
        body_text="Fichier en pièce jointe.",
        body_html="<p>Fichier en pièce jointe.</p>",
        attachments=(EmailAttachment("export.csv", "text/csv", b"a;b\n1;2\n"),),
    )

    assert await notifier.notify("unaf@example.org", content) is True

    assert len(backend.outbox) == 1
    message = backend.outbox[0]
    assert message["From"] == "bureau@apiary.example"
    assert message["To"] == "unaf@example.org"
    assert message["Subject"] == "Export partenaire"
    attachments = list(message.iter_attachments())
    assert [part.get_filename() for part in attachments] == ["export.csv"]
    assert attachments[0].get_content_type() == "text/csv"


@pytest.mark.asyncio
async def test_notify_reports_refused_delivery():
    notifier = EmailNotifier(RefusingBackend())

    delivered = await notifier.notify("gone@example.org", NotificationContent(subject="Relance", body_text="..."))

    assert delivered is False


def test_from_settings_picks_transport():
    in_memory = EmailNotifier.from_settings(Settings(smtp_host="", smtp_sender_email=""))
    relayed = EmailNotifier.from_settings(Settings(smtp_host="smtp.example.org", smtp_sender_email="bureau@example.org"))

    assert isinstance(in_memory._backend, InMemoryEmailBackend)
    assert isinstance(relayed._backend, SMTPEmailBackend)
    assert relayed._backend.sender == "bureau@example.org"
