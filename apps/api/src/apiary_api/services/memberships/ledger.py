"""Membership ledger: creation, payment requests and guarded status transitions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.core.settings import settings
from apiary_api.domain.errors import (
    DownstreamSideEffectFailed,
    DuplicateMembership,
    EntityNotFound,
    InvalidTransition,
    UpstreamTimeout,
)
from apiary_api.domain.results import PaymentApplication
from apiary_api.models.membership import Membership, MembershipCategoryEnum, MembershipStatusEnum
from apiary_api.models.payment import Organization, PaymentSourceEnum, PaymentStatusEnum
from apiary_api.services.documents import CertificateIssuer
from apiary_api.services.notifications import Notifier, build_payment_request
from apiary_api.services.tariffs import RateSheet, compute_membership_amount, rate_sheet_for

from .companion import CompanionMembershipResolver


@dataclass(slots=True)
class MembershipDetails:
    """Application data captured when a membership is created."""

    category: MembershipCategoryEnum
    contact_email: str | None = None
    apiary_registration: str | None = None
    hive_count: int | None = None
    grants_free_companion: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


class MembershipLedger:
    """Sole writer of membership lifecycle fields."""

    _ALLOWED_TRANSITIONS: dict[MembershipStatusEnum, set[MembershipStatusEnum]] = {
        MembershipStatusEnum.PENDING: {
            MembershipStatusEnum.PAYMENT_REQUESTED,
            MembershipStatusEnum.ACTIVE,
            MembershipStatusEnum.REFUSED,
            MembershipStatusEnum.EXPIRED,
        },
        MembershipStatusEnum.PAYMENT_REQUESTED: {
            MembershipStatusEnum.ACTIVE,
            MembershipStatusEnum.REFUSED,
            MembershipStatusEnum.EXPIRED,
        },
        MembershipStatusEnum.ACTIVE: {MembershipStatusEnum.EXPIRED},
        MembershipStatusEnum.REFUSED: set(),
        MembershipStatusEnum.EXPIRED: set(),
    }

    def __init__(
        self,
        session: AsyncSession,
        *,
        notifier: Notifier,
        certificates: CertificateIssuer | None = None,
        companion_resolver: CompanionMembershipResolver | None = None,
        rates_resolver: Callable[[int], RateSheet] = rate_sheet_for,
        notifier_timeout_seconds: float | None = None,
    ) -> None:
        self._session = session
        self._notifier = notifier
        self._certificates = certificates
        self._companions = companion_resolver or CompanionMembershipResolver(session, certificates=certificates)
        self._rates_resolver = rates_resolver
        self._notifier_timeout_seconds = notifier_timeout_seconds or settings.notifier_timeout_seconds

    async def get(self, membership_id: UUID) -> Membership:
        stmt = select(Membership).where(Membership.id == membership_id).execution_options(populate_existing=True)
        membership = (await self._session.execute(stmt)).scalar_one_or_none()
        if membership is None:
            raise EntityNotFound("membership", membership_id)
        return membership

    async def create(
        self,
        owner_id: str,
        organization: Organization,
        year: int,
        details: MembershipDetails,
    ) -> Membership:
        existing = await self._session.execute(
            select(Membership.id).where(
                Membership.owner_id == owner_id,
                Membership.organization == organization,
                Membership.year == year,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateMembership(owner_id, organization.value, year)

        amount = compute_membership_amount(self._rates_resolver(year), organization, details.category)
        membership = Membership(
            owner_id=owner_id,
            contact_email=details.contact_email,
            organization=organization,
            year=year,
            category=details.category,
            apiary_registration=details.apiary_registration,
            hive_count=details.hive_count,
            apiary_details_json=dict(details.extra) or None,
            amount=amount,
            grants_free_companion=details.grants_free_companion,
        )
        self._session.add(membership)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise DuplicateMembership(owner_id, organization.value, year) from exc

        logger.info(
            "Membership created",
            membership_id=str(membership.id),
            owner_id=owner_id,
            organization=organization.value,
            year=year,
            amount=str(amount),
        )
        return membership

    async def request_payment(self, membership_id: UUID) -> Membership:
        """Send the pay link, then move ``pending`` to ``payment_requested``."""

        membership = await self.get(membership_id)
        if membership.status != MembershipStatusEnum.PENDING:
            raise InvalidTransition("membership", membership.status.value, MembershipStatusEnum.PAYMENT_REQUESTED.value)
        if not membership.contact_email:
            raise DownstreamSideEffectFailed("notify", "membership has no contact email")

        content = build_payment_request(membership)
        try:
            delivered = await asyncio.wait_for(
                self._notifier.notify(membership.contact_email, content),
                timeout=self._notifier_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Payment link notification timed out", membership_id=str(membership_id))
            raise UpstreamTimeout("notify", self._notifier_timeout_seconds) from exc
        if not delivered:
            logger.error("Payment link notification failed", membership_id=str(membership_id))
            raise DownstreamSideEffectFailed("notify", "payment link was not delivered")

        won = await self._compare_and_set(
            membership_id,
            MembershipStatusEnum.PAYMENT_REQUESTED,
            from_statuses=(MembershipStatusEnum.PENDING,),
            payment_requested_at=datetime.now(timezone.utc),
        )
        membership = await self.get(membership_id)
        if not won:
            raise InvalidTransition("membership", membership.status.value, MembershipStatusEnum.PAYMENT_REQUESTED.value)
        logger.info("Membership payment requested", membership_id=str(membership_id))
        return membership

    async def mark_paid(
        self,
        membership_id: UUID,
        payment_ref: str | None,
        source: PaymentSourceEnum = PaymentSourceEnum.MANUAL,
        *,
        checkout_session_id: str | None = None,
        paid_at: datetime | None = None,
    ) -> PaymentApplication:
        """Activate the membership once; replays return ``applied=False``."""

        membership = await self.get(membership_id)
        if membership.status == MembershipStatusEnum.ACTIVE:
            return self._already_applied(membership, payment_ref)
        if membership.status not in self._sources_for(MembershipStatusEnum.ACTIVE):
            raise InvalidTransition("membership", membership.status.value, MembershipStatusEnum.ACTIVE.value)

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "payment_status": PaymentStatusEnum.PAID,
            "payment_ref": payment_ref,
            "payment_source": source,
            "paid_at": paid_at or now,
            "validated_at": now,
        }
        if checkout_session_id:
            values["checkout_session_id"] = checkout_session_id
        won = await self._compare_and_set(membership_id, MembershipStatusEnum.ACTIVE, **values)
        if not won:
            membership = await self.get(membership_id)
            if membership.status == MembershipStatusEnum.ACTIVE:
                return self._already_applied(membership, payment_ref)
            raise InvalidTransition("membership", membership.status.value, MembershipStatusEnum.ACTIVE.value)

        logger.info(
            "Membership activated",
            membership_id=str(membership_id),
            payment_ref=payment_ref,
            source=source.value,
        )
        await self._after_activation(membership_id)
        return PaymentApplication(
            entity_type="membership",
            entity_id=membership_id,
            applied=True,
            status=MembershipStatusEnum.ACTIVE.value,
        )

    async def mark_refused(self, membership_id: UUID) -> Membership:
        return await self._terminal(membership_id, MembershipStatusEnum.REFUSED, refused_at=datetime.now(timezone.utc))

    async def mark_expired(self, membership_id: UUID) -> Membership:
        return await self._terminal(membership_id, MembershipStatusEnum.EXPIRED, expired_at=datetime.now(timezone.utc))

    async def expire_year(self, year: int) -> int:
        """Expire every open or active membership of ``year``."""

        result = await self._session.execute(
            update(Membership)
            .where(
                Membership.year == year,
                Membership.status.in_(self._sources_for(MembershipStatusEnum.EXPIRED)),
            )
            .values(status=MembershipStatusEnum.EXPIRED, expired_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        logger.info("Memberships expired for year", year=year, expired=result.rowcount)
        return result.rowcount

    async def reissue_certificate(self, membership_id: UUID) -> str | None:
        membership = await self.get(membership_id)
        if membership.status != MembershipStatusEnum.ACTIVE:
            raise InvalidTransition("membership", membership.status.value, "certificate")
        if self._certificates is None:
            raise DownstreamSideEffectFailed("render", "no certificate issuer configured")
        return await self._certificates.issue_for_membership(self._session, membership)

    async def _after_activation(self, membership_id: UUID) -> None:
        membership = await self.get(membership_id)
        if self._companions.is_eligible(membership):
            try:
                await self._companions.ensure_companion(membership)
            except Exception as exc:
                await self._session.rollback()
                logger.exception(
                    "Companion membership cascade failed",
                    membership_id=str(membership_id),
                    operation="ensure_companion",
                    error=str(exc),
                )
            membership = await self.get(membership_id)

        if self._certificates is not None:
            await self._certificates.issue_for_membership(self._session, membership)

    async def _terminal(self, membership_id: UUID, target: MembershipStatusEnum, **values: Any) -> Membership:
        won = await self._compare_and_set(membership_id, target, **values)
        membership = await self.get(membership_id)
        if not won:
            raise InvalidTransition("membership", membership.status.value, target.value)
        logger.info("Membership status changed", membership_id=str(membership_id), status=target.value)
        return membership

    async def _compare_and_set(
        self,
        membership_id: UUID,
        target: MembershipStatusEnum,
        *,
        from_statuses: Iterable[MembershipStatusEnum] | None = None,
        **values: Any,
    ) -> bool:
        allowed = tuple(from_statuses) if from_statuses is not None else self._sources_for(target)
        result = await self._session.execute(
            update(Membership)
            .where(Membership.id == membership_id, Membership.status.in_(allowed))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        if result.rowcount == 0:
            await self.get(membership_id)
        return result.rowcount == 1

    @classmethod
    def _sources_for(cls, target: MembershipStatusEnum) -> tuple[MembershipStatusEnum, ...]:
        return tuple(status for status, targets in cls._ALLOWED_TRANSITIONS.items() if target in targets)

    @staticmethod
    def _already_applied(membership: Membership, payment_ref: str | None) -> PaymentApplication:
        if payment_ref and membership.payment_ref and membership.payment_ref != payment_ref:
            logger.warning(
                "Membership already active under a different payment reference",
                membership_id=str(membership.id),
                recorded_ref=membership.payment_ref,
                incoming_ref=payment_ref,
            )
        return PaymentApplication(
            entity_type="membership",
            entity_id=membership.id,
            applied=False,
            status=membership.status.value,
            detail="already_active",
        )


__all__ = ["MembershipDetails", "MembershipLedger"]
