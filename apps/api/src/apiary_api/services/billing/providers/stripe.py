"""Stripe provider abstractions for checkout, webhooks and event history."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Mapping

import stripe

from apiary_api.core.settings import settings
from apiary_api.domain.errors import InvalidSignature, UpstreamTimeout

CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass(slots=True)
class StripeHostedSession:
    """Hosted checkout session description."""

    session_id: str
    url: str
    expires_at: datetime | None


@dataclass(slots=True)
class StripeWebhookEvent:
    """Verified webhook event with its decoded payload."""

    event_id: str
    event_type: str
    data_object: dict[str, Any]
    payload: dict[str, Any]


class StripeBillingProvider:
    """Thin asynchronous wrapper around the official Stripe SDK."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        if not secret_key:
            raise ValueError("Stripe secret key must be provided")
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds
        stripe.api_key = secret_key

    @classmethod
    def from_settings(cls) -> "StripeBillingProvider":
        """Build the provider using application settings."""

        return cls(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            timeout_seconds=settings.gateway_timeout_seconds,
        )

    async def _run(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Execute a blocking Stripe SDK call in a worker thread, bounded by the gateway timeout."""

        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeout(operation, self._timeout_seconds) from exc

    @staticmethod
    def _to_cents(amount: Decimal) -> int:
        """Normalize decimal currency amounts to Stripe-compatible cents."""

        quantized = amount.quantize(Decimal("0.01"))
        return int((quantized * 100).to_integral_value())

    @staticmethod
    def _from_cents(amount: int) -> Decimal:
        """Convert Stripe integer cents into Decimal amounts."""

        return Decimal(amount) / Decimal(100)

    async def create_checkout_session(
        self,
        *,
        amount: Decimal,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str] | None = None,
        destination: str | None = None,
        customer_email: str | None = None,
    ) -> StripeHostedSession:
        """Create a hosted checkout session for one line item."""

        metadata_payload = dict(metadata or {})
        payment_intent_data: dict[str, Any] = {"metadata": metadata_payload}
        if destination:
            payment_intent_data["transfer_data"] = {"destination": destination}

        payload: dict[str, Any] = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata_payload,
            "payment_intent_data": payment_intent_data,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": description},
                        "unit_amount": self._to_cents(amount),
                    },
                    "quantity": 1,
                }
            ],
        }
        if customer_email:
            payload["customer_email"] = customer_email

        session = await self._run("create_checkout", stripe.checkout.Session.create, **payload)
        expires_raw = session.get("expires_at")
        expires_at = datetime.fromtimestamp(expires_raw, tz=timezone.utc) if expires_raw else None
        return StripeHostedSession(session_id=session["id"], url=session["url"], expires_at=expires_at)

    def construct_event(self, payload: bytes, signature: str | None) -> StripeWebhookEvent:
        """Verify the Stripe signature header and decode the event body."""

        if not self._webhook_secret:
            raise InvalidSignature("Stripe webhook secret not configured")
        if not signature:
            raise InvalidSignature("Missing Stripe signature header")

        try:
            payload_text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidSignature("Invalid payload body") from exc
        try:
            stripe.WebhookSignature.verify_header(payload_text, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature("Invalid Stripe signature") from exc

        try:
            body = json.loads(payload_text)
        except json.JSONDecodeError as exc:
            raise InvalidSignature("Invalid payload body") from exc

        data_object = body.get("data", {}).get("object", {}) if isinstance(body, dict) else {}
        return StripeWebhookEvent(
            event_id=str(body.get("id", "")),
            event_type=str(body.get("type", "")),
            data_object=dict(data_object or {}),
            payload=body,
        )

    async def iter_completed_checkout_sessions(
        self,
        *,
        created_gte: datetime,
        page_size: int = 100,
    ) -> AsyncIterator[tuple[str, Mapping[str, Any]]]:
        """Yield ``(event_id, session)`` for every completed checkout event since ``created_gte``."""

        params: dict[str, Any] = {
            "type": CHECKOUT_COMPLETED,
            "created": {"gte": int(created_gte.timestamp())},
            "limit": page_size,
        }
        while True:
            response = await self._run("list_events", stripe.Event.list, **params)
            items = list(response.get("data", []))
            for item in items:
                yield str(item.get("id")), item["data"]["object"]
            if not response.get("has_more") or not items:
                break
            params["starting_after"] = items[-1]["id"]

    @property
    def webhook_secret(self) -> str | None:
        """Expose configured webhook signing secret."""

        return self._webhook_secret


__all__ = ["CHECKOUT_COMPLETED", "StripeBillingProvider", "StripeHostedSession", "StripeWebhookEvent"]
