"""Gateway adapter: checkout creation, webhook intake and payment dispatch.

The live webhook and the reconciliation sweeper both end in
:meth:`PaymentGatewayAdapter.apply_checkout_session`, which only calls the
idempotent ledger operations.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.core.settings import Settings, get_settings
from apiary_api.domain.errors import (
    BelowMinimumChargeable,
    EntityNotFound,
    InvalidTransition,
    LedgerError,
)
from apiary_api.models.membership import Membership
from apiary_api.models.payment import PaymentSourceEnum, PaymentStatusEnum
from apiary_api.models.processor_event import record_dispatch_outcome, record_processor_event
from apiary_api.models.subscription import Subscription, SubscriptionModification
from apiary_api.services.documents import CertificateIssuer
from apiary_api.services.memberships import MembershipLedger
from apiary_api.services.notifications import EmailNotifier, Notifier
from apiary_api.services.subscriptions import SubscriptionLedger

from .providers import CHECKOUT_COMPLETED, StripeBillingProvider

ENTITY_MEMBERSHIP = "membership"
ENTITY_SUBSCRIPTION = "subscription"
ENTITY_MODIFICATION = "modification"

CheckoutTarget = Membership | Subscription | tuple[Subscription, int]


@dataclass(slots=True)
class CheckoutSession:
    session_ref: str
    redirect_url: str
    expires_at: datetime | None = None


@dataclass(slots=True)
class DispatchOutcome:
    """Result of applying one paid checkout session to the ledgers."""

    outcome: str
    entity_type: str | None = None
    entity_id: str | None = None
    modification_index: int | None = None
    detail: str | None = None


@dataclass(slots=True)
class WebhookOutcome:
    status: str
    event_id: str
    event_type: str
    duplicate: bool = False
    dispatch: DispatchOutcome | None = None


@dataclass(slots=True)
class _ResolvedTarget:
    entity_type: str
    entity_id: UUID
    owner_id: str
    organization: str
    amount: Decimal
    description: str
    email: str | None
    modification: SubscriptionModification | None = None


class PaymentGatewayAdapter:
    """Translate between Stripe checkout sessions and ledger operations."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        provider: StripeBillingProvider,
        memberships: MembershipLedger,
        subscriptions: SubscriptionLedger,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._provider = provider
        self._memberships = memberships
        self._subscriptions = subscriptions
        self._settings = settings or get_settings()

    @classmethod
    def for_session(
        cls,
        session: AsyncSession,
        *,
        provider: StripeBillingProvider | None = None,
        notifier: Notifier | None = None,
        certificates: CertificateIssuer | None = None,
    ) -> "PaymentGatewayAdapter":
        """Wire the adapter and both ledgers around one database session."""

        return cls(
            session,
            provider=provider or StripeBillingProvider.from_settings(),
            memberships=MembershipLedger(
                session,
                notifier=notifier or EmailNotifier.from_settings(),
                certificates=certificates,
            ),
            subscriptions=SubscriptionLedger(session, certificates=certificates),
        )

    async def create_checkout(self, target: CheckoutTarget) -> CheckoutSession:
        resolved = self._resolve_target(target)
        minimum = self._settings.minimum_chargeable_amount
        if resolved.amount < minimum:
            raise BelowMinimumChargeable(resolved.amount, minimum)

        metadata = {
            "entityType": resolved.entity_type,
            "entityId": str(resolved.entity_id),
            "ownerId": resolved.owner_id,
            "organization": resolved.organization,
        }
        if resolved.modification is not None:
            metadata["modificationIndex"] = str(resolved.modification.position)

        base_url = self._settings.frontend_url.rstrip("/")
        hosted = await self._provider.create_checkout_session(
            amount=resolved.amount,
            currency=self._settings.payment_currency,
            description=resolved.description,
            success_url=f"{base_url}/payments/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/payments/cancelled",
            metadata=metadata,
            destination=self._settings.stripe_connected_accounts.get(resolved.organization),
            customer_email=resolved.email,
        )

        model = type(resolved.modification) if resolved.modification is not None else type(target)
        row_id = resolved.modification.id if resolved.modification is not None else resolved.entity_id
        await self._session.execute(
            update(model)
            .where(model.id == row_id)
            .values(checkout_session_id=hosted.session_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()

        logger.info(
            "Checkout session created",
            entity_type=resolved.entity_type,
            entity_id=str(resolved.entity_id),
            session_id=hosted.session_id,
            amount=str(resolved.amount),
        )
        return CheckoutSession(session_ref=hosted.session_id, redirect_url=hosted.url, expires_at=hosted.expires_at)

    async def handle_webhook(self, raw_payload: bytes, signature: str | None) -> WebhookOutcome:
        """Verify, record and dispatch one webhook delivery.

        Raises :class:`InvalidSignature` when verification fails; every other
        problem is reported in the outcome so the gateway stops retrying.
        """

        event = self._provider.construct_event(raw_payload, signature)
        data_object = event.data_object
        metadata = data_object.get("metadata") or {}

        record = await record_processor_event(
            self._session,
            external_id=event.event_id,
            event_type=event.event_type,
            payload_hash=hashlib.sha256(raw_payload).hexdigest(),
            payload=event.payload,
            entity_type=metadata.get("entityType"),
            entity_id=metadata.get("entityId"),
        )
        event_row_id = record.event.id
        duplicate = not record.created

        if event.event_type != CHECKOUT_COMPLETED or data_object.get("payment_status") != "paid":
            await record_dispatch_outcome(self._session, event_id=event_row_id, outcome="ignored")
            logger.info("Webhook acknowledged without dispatch", event_id=event.event_id, event_type=event.event_type)
            return WebhookOutcome(
                status="ignored",
                event_id=event.event_id,
                event_type=event.event_type,
                duplicate=duplicate,
            )

        dispatch = await self.apply_checkout_session(data_object, source=PaymentSourceEnum.GATEWAY)
        await record_dispatch_outcome(
            self._session,
            event_id=event_row_id,
            outcome=dispatch.outcome,
            detail=dispatch.detail,
        )
        logger.info(
            "Webhook dispatched",
            event_id=event.event_id,
            outcome=dispatch.outcome,
            entity_type=dispatch.entity_type,
            entity_id=dispatch.entity_id,
            duplicate=duplicate,
        )
        return WebhookOutcome(
            status=dispatch.outcome,
            event_id=event.event_id,
            event_type=event.event_type,
            duplicate=duplicate,
            dispatch=dispatch,
        )

    async def apply_checkout_session(
        self,
        checkout: Mapping[str, Any],
        *,
        source: PaymentSourceEnum = PaymentSourceEnum.GATEWAY,
    ) -> DispatchOutcome:
        """Route a paid checkout session to the matching ledger operation."""

        metadata = checkout.get("metadata") or {}
        entity_type = metadata.get("entityType")
        raw_entity_id = metadata.get("entityId")
        if checkout.get("payment_status") != "paid":
            return DispatchOutcome("skipped", entity_type, raw_entity_id, detail="not_paid")
        if entity_type not in {ENTITY_MEMBERSHIP, ENTITY_SUBSCRIPTION, ENTITY_MODIFICATION}:
            return DispatchOutcome("skipped", entity_type, raw_entity_id, detail="unknown_entity_type")
        try:
            entity_id = UUID(str(raw_entity_id))
        except ValueError:
            return DispatchOutcome("skipped", entity_type, raw_entity_id, detail="invalid_entity_id")

        payment_ref = checkout.get("payment_intent") or checkout.get("id")
        session_id = checkout.get("id")
        paid_at = _checkout_paid_at(checkout)
        modification_index: int | None = None
        try:
            if entity_type == ENTITY_MEMBERSHIP:
                application = await self._memberships.mark_paid(
                    entity_id,
                    payment_ref,
                    source,
                    checkout_session_id=session_id,
                    paid_at=paid_at,
                )
            elif entity_type == ENTITY_SUBSCRIPTION:
                application = await self._subscriptions.mark_paid(
                    entity_id,
                    payment_ref,
                    checkout_session_id=session_id,
                    paid_at=paid_at,
                )
            else:
                try:
                    modification_index = int(metadata.get("modificationIndex"))
                except (TypeError, ValueError):
                    return DispatchOutcome("skipped", entity_type, str(entity_id), detail="invalid_modification_index")
                application = await self._subscriptions.confirm_modification(
                    entity_id,
                    modification_index,
                    payment_ref,
                    checkout_session_id=session_id,
                    paid_at=paid_at,
                )
        except EntityNotFound as exc:
            logger.warning("Paid checkout references a missing record", entity_type=entity_type, entity_id=str(entity_id))
            return DispatchOutcome("skipped", entity_type, str(entity_id), modification_index, detail=str(exc))
        except LedgerError as exc:
            logger.error(
                "Paid checkout could not be applied",
                entity_type=entity_type,
                entity_id=str(entity_id),
                payment_ref=payment_ref,
                error=str(exc),
            )
            return DispatchOutcome("error", entity_type, str(entity_id), modification_index, detail=str(exc))
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.exception(
                "Paid checkout failed on the database",
                entity_type=entity_type,
                entity_id=str(entity_id),
                payment_ref=payment_ref,
            )
            return DispatchOutcome("error", entity_type, str(entity_id), modification_index, detail=str(exc))

        outcome = "processed" if application.applied else "already_processed"
        return DispatchOutcome(outcome, entity_type, str(entity_id), modification_index, detail=application.status)

    def _resolve_target(self, target: CheckoutTarget) -> _ResolvedTarget:
        if isinstance(target, tuple):
            subscription, index = target
            modification = next((item for item in subscription.modifications if item.position == index), None)
            if modification is None:
                raise EntityNotFound("modification", f"{subscription.id}#{index}")
            if modification.payment_status == PaymentStatusEnum.PAID:
                raise InvalidTransition("modification", "paid", "checkout")
            return _ResolvedTarget(
                entity_type=ENTITY_MODIFICATION,
                entity_id=subscription.id,
                owner_id=subscription.owner_id,
                organization=subscription.organization.value,
                amount=Decimal(modification.extra_amount),
                description=f"{subscription.service_kind.value} {subscription.year} modification #{index + 1}",
                email=_contact_email(subscription),
                modification=modification,
            )

        if isinstance(target, Membership):
            if target.payment_status == PaymentStatusEnum.PAID or not target.is_open:
                raise InvalidTransition("membership", target.status.value, "checkout")
            return _ResolvedTarget(
                entity_type=ENTITY_MEMBERSHIP,
                entity_id=target.id,
                owner_id=target.owner_id,
                organization=target.organization.value,
                amount=Decimal(target.amount),
                description=f"{target.organization.value} membership {target.year}",
                email=target.contact_email,
            )

        if target.payment_status == PaymentStatusEnum.PAID:
            raise InvalidTransition("subscription", target.status.value, "checkout")
        return _ResolvedTarget(
            entity_type=ENTITY_SUBSCRIPTION,
            entity_id=target.id,
            owner_id=target.owner_id,
            organization=target.organization.value,
            amount=Decimal(target.amount),
            description=f"{target.service_kind.value} {target.year}",
            email=_contact_email(target),
        )


def _contact_email(subscription: Subscription) -> str | None:
    info = subscription.personal_info_json or {}
    email = info.get("email")
    return str(email) if email else None


def _checkout_paid_at(checkout: Mapping[str, Any]) -> datetime | None:
    """Creation time of the checkout session; replays keep the original payment time."""

    created = checkout.get("created")
    if created in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(created), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


__all__ = [
    "CheckoutSession",
    "CheckoutTarget",
    "DispatchOutcome",
    "ENTITY_MEMBERSHIP",
    "ENTITY_MODIFICATION",
    "ENTITY_SUBSCRIPTION",
    "PaymentGatewayAdapter",
    "WebhookOutcome",
]
