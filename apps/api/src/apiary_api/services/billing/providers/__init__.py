"""Payment processor provider adapters for billing operations."""

from .stripe import CHECKOUT_COMPLETED, StripeBillingProvider, StripeHostedSession, StripeWebhookEvent

__all__ = ["CHECKOUT_COMPLETED", "StripeBillingProvider", "StripeHostedSession", "StripeWebhookEvent"]
