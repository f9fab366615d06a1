"""Notification services."""

from .backend import EmailAttachment, EmailBackend, InMemoryEmailBackend, SMTPEmailBackend
from .notifier import EmailNotifier, NotificationContent, Notifier
from .templates import build_partner_export, build_payment_request, payment_link_url

__all__ = [
    "EmailAttachment",
    "EmailBackend",
    "EmailNotifier",
    "InMemoryEmailBackend",
    "NotificationContent",
    "Notifier",
    "SMTPEmailBackend",
    "build_partner_export",
    "build_payment_request",
    "payment_link_url",
]
