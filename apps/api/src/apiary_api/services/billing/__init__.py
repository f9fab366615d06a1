"""Billing services: Stripe provider and the payment gateway adapter."""

from .gateway import CheckoutSession, DispatchOutcome, PaymentGatewayAdapter, WebhookOutcome
from .providers import StripeBillingProvider, StripeHostedSession, StripeWebhookEvent

__all__ = [
    "CheckoutSession",
    "DispatchOutcome",
    "PaymentGatewayAdapter",
    "StripeBillingProvider",
    "StripeHostedSession",
    "StripeWebhookEvent",
    "WebhookOutcome",
]
