"""Plain-text message builders for member and partner notifications."""

from __future__ import annotations

from decimal import Decimal

from apiary_api.core.settings import settings
from apiary_api.models.export_batch import ExportBatch
from apiary_api.models.membership import Membership

from .backend import EmailAttachment
from .notifier import NotificationContent


def _format_amount(amount: Decimal | None) -> str:
    return f"{Decimal(amount or 0):.2f} EUR"


def payment_link_url(membership: Membership) -> str:
    return f"{settings.frontend_url.rstrip('/')}/memberships/{membership.id}/payment"


def build_payment_request(membership: Membership) -> NotificationContent:
    """Pay link sent when staff approves a membership application."""

    organization = membership.organization.value
    subject = f"{organization} {membership.year}: your membership is ready for payment"
    body = "\n".join(
        [
            "Hello,",
            "",
            f"Your {organization} membership application for {membership.year} has been approved.",
            f"Amount due: {_format_amount(membership.amount)}",
            "",
            f"Pay online: {payment_link_url(membership)}",
            "",
            "Your membership certificate will be sent once the payment is received.",
        ]
    )
    return NotificationContent(subject=subject, body_text=body)


def build_partner_export(batch: ExportBatch, payload: bytes) -> NotificationContent:
    """Export file delivered to the partner, attached as CSV."""

    subject = f"Export {batch.year} - {batch.batch_date.strftime('%d/%m/%Y')}"
    body = "\n".join(
        [
            "Hello,",
            "",
            f"Please find attached the subscriptions export dated {batch.batch_date.strftime('%d/%m/%Y')}.",
            f"Rows: {batch.item_count}",
            f"Total collected: {_format_amount(batch.total_amount)}",
            f"First export of the year: {'yes' if batch.is_first_of_year else 'no'}",
        ]
    )
    attachment = EmailAttachment(filename=batch.file_name, content_type="text/csv", payload=payload)
    return NotificationContent(subject=subject, body_text=body, attachments=(attachment,))


__all__ = ["build_partner_export", "build_payment_request", "payment_link_url"]
