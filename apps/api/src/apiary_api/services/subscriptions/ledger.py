"""Subscription ledger: add-on services, deposits and paid modifications."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.domain.errors import (
    DownstreamSideEffectFailed,
    DuplicateEntity,
    DuplicateSubscription,
    EntityNotFound,
    InvalidTransition,
    UpgradeOnlyViolation,
)
from apiary_api.domain.results import PaymentApplication
from apiary_api.models.membership import Membership, MembershipStatusEnum
from apiary_api.models.payment import PaymentStatusEnum
from apiary_api.models.subscription import (
    DepositStatusEnum,
    ServiceKindEnum,
    Subscription,
    SubscriptionModification,
    SubscriptionStatusEnum,
)
from apiary_api.services.documents import CertificateIssuer
from apiary_api.services.tariffs import (
    RateSheet,
    compute_subscription_amount,
    normalize_options,
    rate_sheet_for,
    validate_modification,
)

from .status import DEPOSIT_KINDS, DEPOSIT_TRANSITIONS, PARTNER_VALIDATED_KINDS, can_transition, derive_status

_SETTLE_ATTEMPTS = 3


class SubscriptionLedger:
    """Sole writer of subscription status, payment, deposit and option fields."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        certificates: CertificateIssuer | None = None,
        rates_resolver: Callable[[int], RateSheet] = rate_sheet_for,
    ) -> None:
        self._session = session
        self._certificates = certificates
        self._rates_resolver = rates_resolver

    async def get(self, subscription_id: UUID) -> Subscription:
        stmt = (
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        subscription = (await self._session.execute(stmt)).scalar_one_or_none()
        if subscription is None:
            raise EntityNotFound("subscription", subscription_id)
        return subscription

    async def create(
        self,
        owner_id: str,
        membership_id: UUID,
        service_kind: ServiceKindEnum,
        option_selections: Mapping[str, Any] | None = None,
        personal_info: Mapping[str, Any] | None = None,
        *,
        hive_count: int | None = None,
    ) -> Subscription:
        membership = await self._session.get(Membership, membership_id, populate_existing=True)
        if membership is None or membership.owner_id != owner_id:
            raise EntityNotFound("membership", membership_id)
        if membership.status != MembershipStatusEnum.ACTIVE:
            raise InvalidTransition("membership", membership.status.value, f"subscribe:{service_kind.value}")

        year = membership.year
        rates = self._rates_resolver(year)
        required_organization = rates.service_organizations[service_kind]
        if membership.organization != required_organization:
            raise InvalidTransition(
                "membership",
                membership.organization.value,
                f"subscribe:{service_kind.value} requires {required_organization.value}",
            )

        existing = await self._session.execute(
            select(Subscription.id).where(
                Subscription.owner_id == owner_id,
                Subscription.service_kind == service_kind,
                Subscription.year == year,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateSubscription(owner_id, service_kind.value, year)

        hives = hive_count if hive_count is not None else (membership.hive_count or 0)
        quote = compute_subscription_amount(rates, service_kind, option_selections, hives)
        options = (
            normalize_options(rates, option_selections)
            if service_kind == ServiceKindEnum.PARTNER_INSURANCE
            else dict(option_selections or {})
        )

        subscription = Subscription(
            owner_id=owner_id,
            membership_id=membership_id,
            organization=membership.organization,
            service_kind=service_kind,
            year=year,
            hive_count=hives,
            options_json=options,
            amount_breakdown_json=quote.breakdown_json(),
            personal_info_json=dict(personal_info or {}) or None,
            amount=quote.amount,
            status=SubscriptionStatusEnum.AWAITING_PAYMENT,
        )
        if service_kind in DEPOSIT_KINDS:
            subscription.deposit_amount = quote.deposit
            subscription.deposit_status = DepositStatusEnum.PENDING

        self._session.add(subscription)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise DuplicateSubscription(owner_id, service_kind.value, year) from exc

        logger.info(
            "Subscription created",
            subscription_id=str(subscription.id),
            owner_id=owner_id,
            service_kind=service_kind.value,
            year=year,
            amount=str(quote.amount),
        )
        return subscription

    async def mark_paid(
        self,
        subscription_id: UUID,
        payment_ref: str | None,
        *,
        checkout_session_id: str | None = None,
        paid_at: datetime | None = None,
    ) -> PaymentApplication:
        """Record the fee payment once, then settle the derived status."""

        subscription = await self.get(subscription_id)
        if subscription.payment_status == PaymentStatusEnum.PAID:
            return self._already_paid(subscription, payment_ref)

        values: dict[str, Any] = {
            "payment_status": PaymentStatusEnum.PAID,
            "payment_ref": payment_ref,
            "paid_at": paid_at or datetime.now(timezone.utc),
        }
        if checkout_session_id:
            values["checkout_session_id"] = checkout_session_id
        result = await self._session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.payment_status == PaymentStatusEnum.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        if result.rowcount == 0:
            return self._already_paid(await self.get(subscription_id), payment_ref)

        logger.info("Subscription payment recorded", subscription_id=str(subscription_id), payment_ref=payment_ref)
        await self._settle(subscription_id)
        subscription = await self.get(subscription_id)
        return PaymentApplication(
            entity_type="subscription",
            entity_id=subscription_id,
            applied=True,
            status=subscription.status.value,
        )

    async def set_deposit_status(
        self,
        subscription_id: UUID,
        new_status: DepositStatusEnum,
        *,
        note: str | None = None,
    ) -> Subscription:
        subscription = await self.get(subscription_id)
        if subscription.service_kind not in DEPOSIT_KINDS or subscription.deposit_status is None:
            raise InvalidTransition("deposit", "none", new_status.value)

        current = subscription.deposit_status
        if current == new_status:
            return subscription
        if new_status not in DEPOSIT_TRANSITIONS[current]:
            raise InvalidTransition("deposit", current.value, new_status.value)

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {"deposit_status": new_status}
        if new_status == DepositStatusEnum.RECEIVED:
            values["deposit_received_at"] = now
        if new_status == DepositStatusEnum.RETURNED:
            values["deposit_returned_at"] = now
        if note is not None:
            values["deposit_note"] = note

        result = await self._session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.deposit_status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        if result.rowcount == 0:
            subscription = await self.get(subscription_id)
            if subscription.deposit_status == new_status:
                return subscription
            raise InvalidTransition("deposit", subscription.deposit_status.value, new_status.value)

        logger.info(
            "Subscription deposit updated",
            subscription_id=str(subscription_id),
            deposit_status=new_status.value,
        )
        if new_status == DepositStatusEnum.RECEIVED:
            await self._settle(subscription_id)
        return await self.get(subscription_id)

    async def request_modification(
        self,
        subscription_id: UUID,
        requested_changes: Mapping[str, Any],
    ) -> SubscriptionModification:
        """Append an unpaid, priced upgrade. Live options stay untouched."""

        subscription = await self.get(subscription_id)
        if subscription.service_kind != ServiceKindEnum.PARTNER_INSURANCE:
            raise InvalidTransition("subscription", subscription.service_kind.value, "modification")
        if subscription.payment_status != PaymentStatusEnum.PAID:
            raise InvalidTransition("subscription", subscription.status.value, "modification")
        if any(entry.payment_status != PaymentStatusEnum.PAID for entry in subscription.modifications):
            raise InvalidTransition("modification", "awaiting_payment", "requested")

        rates = self._rates_resolver(subscription.year)
        assessment = validate_modification(
            rates,
            subscription.options_json,
            requested_changes,
            hive_count=subscription.hive_count,
        )
        if not assessment.ok:
            raise UpgradeOnlyViolation(assessment.errors)

        position = len(subscription.modifications)
        entry = SubscriptionModification(
            subscription_id=subscription_id,
            position=position,
            requested_changes_json=dict(requested_changes),
            options_before_json=normalize_options(rates, subscription.options_json),
            options_after_json=assessment.options_after,
            delta_json={
                key: {**change, "amount": str(change["amount"])} for key, change in assessment.delta.items()
            },
            extra_amount=assessment.extra_amount,
        )
        self._session.add(entry)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise DuplicateEntity(f"Modification {position} already exists for subscription {subscription_id}") from exc

        logger.info(
            "Subscription modification requested",
            subscription_id=str(subscription_id),
            modification_index=position,
            extra_amount=str(assessment.extra_amount),
        )
        return entry

    async def withdraw_modification(self, subscription_id: UUID, index: int) -> None:
        """Drop the latest modification while it is still unpaid."""

        result = await self._session.execute(
            delete(SubscriptionModification).where(
                SubscriptionModification.subscription_id == subscription_id,
                SubscriptionModification.position == index,
                SubscriptionModification.payment_status == PaymentStatusEnum.PENDING,
            )
        )
        await self._session.commit()
        if result.rowcount == 0:
            entry = await self.get_modification(subscription_id, index)
            raise InvalidTransition("modification", entry.payment_status.value, "withdrawn")
        logger.info("Subscription modification withdrawn", subscription_id=str(subscription_id), modification_index=index)

    async def confirm_modification(
        self,
        subscription_id: UUID,
        index: int,
        payment_ref: str | None,
        *,
        checkout_session_id: str | None = None,
        paid_at: datetime | None = None,
    ) -> PaymentApplication:
        """Mark the entry paid and apply its delta to the live options, once."""

        entry = await self.get_modification(subscription_id, index)
        if entry.payment_status == PaymentStatusEnum.PAID:
            return self._modification_already_paid(entry, payment_ref)

        subscription = await self.get(subscription_id)
        rates = self._rates_resolver(subscription.year)
        options = normalize_options(rates, subscription.options_json)
        for key, change in (entry.delta_json or {}).items():
            options[key] = change["to"]
        quote = compute_subscription_amount(rates, subscription.service_kind, options, subscription.hive_count)
        paid_modifications = sum(
            (Decimal(item.extra_amount) for item in subscription.modifications if item.payment_status == PaymentStatusEnum.PAID),
            Decimal("0"),
        ) + Decimal(entry.extra_amount)
        breakdown = quote.breakdown_json()
        breakdown["initial_payment"] = str(subscription.amount)
        breakdown["modifications_paid"] = str(paid_modifications)

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "payment_status": PaymentStatusEnum.PAID,
            "payment_ref": payment_ref,
            "paid_at": paid_at or now,
            "applied": True,
            "applied_at": now,
        }
        if checkout_session_id:
            values["checkout_session_id"] = checkout_session_id
        result = await self._session.execute(
            update(SubscriptionModification)
            .where(
                SubscriptionModification.id == entry.id,
                SubscriptionModification.payment_status == PaymentStatusEnum.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self._session.rollback()
            return self._modification_already_paid(await self.get_modification(subscription_id, index), payment_ref)

        await self._session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(options_json=options, amount_breakdown_json=breakdown)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()

        logger.info(
            "Subscription modification applied",
            subscription_id=str(subscription_id),
            modification_index=index,
            payment_ref=payment_ref,
        )
        subscription = await self.get(subscription_id)
        if subscription.status == SubscriptionStatusEnum.ACTIVE and self._certificates is not None:
            await self._certificates.issue_for_subscription(self._session, subscription)
        return PaymentApplication(
            entity_type="modification",
            entity_id=subscription_id,
            applied=True,
            status=subscription.status.value,
            modification_index=index,
        )

    async def validate_by_partner(self, subscription_id: UUID) -> bool:
        """Record the partner's validation; returns True when this call activated the subscription."""

        subscription = await self.get(subscription_id)
        if subscription.service_kind not in PARTNER_VALIDATED_KINDS:
            raise InvalidTransition("subscription", subscription.service_kind.value, "partner_validation")
        if subscription.payment_status != PaymentStatusEnum.PAID:
            raise InvalidTransition("subscription", subscription.status.value, SubscriptionStatusEnum.ACTIVE.value)

        await self._session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.partner_validated_at.is_(None))
            .values(partner_validated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        activated = await self._settle(subscription_id)
        if activated:
            await self._attest_eco_contribution(await self.get(subscription_id))
        return activated

    async def validate_modification_by_partner(self, subscription_id: UUID, index: int) -> bool:
        entry = await self.get_modification(subscription_id, index)
        if entry.payment_status != PaymentStatusEnum.PAID:
            raise InvalidTransition("modification", entry.payment_status.value, "partner_validation")

        result = await self._session.execute(
            update(SubscriptionModification)
            .where(
                SubscriptionModification.id == entry.id,
                SubscriptionModification.partner_validated_at.is_(None),
            )
            .values(partner_validated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        if result.rowcount == 0:
            return False

        subscription = await self.get(subscription_id)
        if subscription.status == SubscriptionStatusEnum.ACTIVE and self._certificates is not None:
            await self._certificates.issue_for_subscription(self._session, subscription)
            await self._attest_eco_contribution(await self.get(subscription_id))
        return True

    async def reissue_certificate(self, subscription_id: UUID) -> str | None:
        subscription = await self.get(subscription_id)
        if subscription.status != SubscriptionStatusEnum.ACTIVE:
            raise InvalidTransition("subscription", subscription.status.value, "certificate")
        if self._certificates is None:
            raise DownstreamSideEffectFailed("render", "no certificate issuer configured")
        return await self._certificates.issue_for_subscription(self._session, subscription)

    async def _attest_eco_contribution(self, subscription: Subscription) -> str | None:
        if self._certificates is None or not (subscription.options_json or {}).get("eco_contribution"):
            return None
        return await self._certificates.issue_eco_contribution(self._session, subscription)

    async def get_modification(self, subscription_id: UUID, index: int) -> SubscriptionModification:
        stmt = (
            select(SubscriptionModification)
            .where(
                SubscriptionModification.subscription_id == subscription_id,
                SubscriptionModification.position == index,
            )
            .execution_options(populate_existing=True)
        )
        entry = (await self._session.execute(stmt)).scalar_one_or_none()
        if entry is None:
            raise EntityNotFound("modification", f"{subscription_id}#{index}")
        return entry

    async def _settle(self, subscription_id: UUID) -> bool:
        """Move the stored status toward the derived one.

        Returns True when this caller performed the transition into ``active``;
        only that caller issues the certificate.
        """

        for _ in range(_SETTLE_ATTEMPTS):
            subscription = await self.get(subscription_id)
            current = subscription.status
            target = derive_status(
                subscription.service_kind,
                subscription.payment_status,
                subscription.deposit_status,
                subscription.partner_validated_at,
            )
            if target == current or not can_transition(current, target):
                return False

            values: dict[str, Any] = {"status": target}
            if target == SubscriptionStatusEnum.ACTIVE:
                values["activated_at"] = datetime.now(timezone.utc)
            result = await self._session.execute(
                update(Subscription)
                .where(Subscription.id == subscription_id, Subscription.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self._session.commit()
            if result.rowcount == 1:
                logger.info(
                    "Subscription status changed",
                    subscription_id=str(subscription_id),
                    previous=current.value,
                    status=target.value,
                )
                if target != SubscriptionStatusEnum.ACTIVE:
                    return False
                if self._certificates is not None:
                    await self._certificates.issue_for_subscription(self._session, await self.get(subscription_id))
                return True

        logger.warning("Subscription status did not settle", subscription_id=str(subscription_id))
        return False

    @staticmethod
    def _already_paid(subscription: Subscription, payment_ref: str | None) -> PaymentApplication:
        if payment_ref and subscription.payment_ref and subscription.payment_ref != payment_ref:
            logger.warning(
                "Subscription already paid under a different payment reference",
                subscription_id=str(subscription.id),
                recorded_ref=subscription.payment_ref,
                incoming_ref=payment_ref,
            )
        return PaymentApplication(
            entity_type="subscription",
            entity_id=subscription.id,
            applied=False,
            status=subscription.status.value,
            detail="already_paid",
        )

    @staticmethod
    def _modification_already_paid(entry: SubscriptionModification, payment_ref: str | None) -> PaymentApplication:
        if payment_ref and entry.payment_ref and entry.payment_ref != payment_ref:
            logger.warning(
                "Modification already paid under a different payment reference",
                subscription_id=str(entry.subscription_id),
                modification_index=entry.position,
                recorded_ref=entry.payment_ref,
                incoming_ref=payment_ref,
            )
        return PaymentApplication(
            entity_type="modification",
            entity_id=entry.subscription_id,
            applied=False,
            status="paid",
            modification_index=entry.position,
            detail="already_paid",
        )


__all__ = ["SubscriptionLedger"]
