"""Companion membership cascade.

An active primary membership carrying the free-companion flag implies one
active, zero-amount membership in the companion organization for the same
owner and year.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.models.membership import Membership, MembershipStatusEnum
from apiary_api.models.payment import Organization, PaymentSourceEnum, PaymentStatusEnum
from apiary_api.services.documents import CertificateIssuer

_OPEN_STATUSES = (MembershipStatusEnum.PENDING, MembershipStatusEnum.PAYMENT_REQUESTED)


@dataclass(slots=True)
class CompanionOutcome:
    """What ``ensure_companion`` did for one primary membership."""

    primary_id: UUID
    action: str
    companion_id: UUID | None = None
    detail: str | None = None


class CompanionMembershipResolver:
    """Creates or absorbs companion memberships, at most one per (owner, year)."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        certificates: CertificateIssuer | None = None,
        primary_organization: Organization = Organization.SAR,
        companion_organization: Organization = Organization.AMAIR,
    ) -> None:
        self._session = session
        self._certificates = certificates
        self._primary_organization = primary_organization
        self._companion_organization = companion_organization

    def is_eligible(self, primary: Membership) -> bool:
        return (
            primary.organization == self._primary_organization
            and bool(primary.grants_free_companion)
            and primary.status == MembershipStatusEnum.ACTIVE
        )

    async def ensure_companion(self, primary: Membership) -> CompanionOutcome:
        primary_id = primary.id
        if not self.is_eligible(primary):
            return CompanionOutcome(primary_id=primary_id, action="not_eligible")

        owner_id = primary.owner_id
        year = primary.year
        existing = await self._find(owner_id, year)
        if existing is not None:
            return await self._absorb(primary_id, existing)

        now = datetime.now(timezone.utc)
        companion = Membership(
            owner_id=owner_id,
            contact_email=primary.contact_email,
            organization=self._companion_organization,
            year=year,
            category=primary.category,
            apiary_registration=primary.apiary_registration,
            hive_count=primary.hive_count,
            amount=0,
            payment_status=PaymentStatusEnum.PAID,
            payment_source=PaymentSourceEnum.COMPANION,
            paid_at=now,
            status=MembershipStatusEnum.ACTIVE,
            validated_at=now,
            free_via_companion=True,
            companion_of_id=primary_id,
        )
        self._session.add(companion)
        try:
            await self._session.commit()
        except IntegrityError:
            # A concurrent trigger created it first.
            await self._session.rollback()
            existing = await self._find(owner_id, year)
            if existing is None:
                raise
            return await self._absorb(primary_id, existing)

        logger.info(
            "Companion membership created",
            primary_id=str(primary_id),
            companion_id=str(companion.id),
            owner_id=owner_id,
            year=year,
        )
        await self._issue_certificate(companion.id)
        return CompanionOutcome(primary_id=primary_id, action="created", companion_id=companion.id)

    async def backfill(self, year: int) -> list[CompanionOutcome]:
        """Ensure companions for every active, paid primary membership of ``year``."""

        stmt = select(Membership.id).where(
            Membership.organization == self._primary_organization,
            Membership.year == year,
            Membership.status == MembershipStatusEnum.ACTIVE,
            Membership.payment_status == PaymentStatusEnum.PAID,
            Membership.grants_free_companion.is_(True),
        )
        primary_ids = list((await self._session.execute(stmt)).scalars())
        outcomes: list[CompanionOutcome] = []
        for primary_id in primary_ids:
            try:
                primary = await self._load(primary_id)
                outcomes.append(await self.ensure_companion(primary))
            except Exception as exc:
                await self._session.rollback()
                logger.exception("Companion backfill failed", primary_id=str(primary_id), error=str(exc))
                outcomes.append(CompanionOutcome(primary_id=primary_id, action="error", detail=str(exc)))

        logger.info(
            "Companion backfill completed",
            year=year,
            examined=len(outcomes),
            created=sum(1 for outcome in outcomes if outcome.action == "created"),
            promoted=sum(1 for outcome in outcomes if outcome.action == "promoted"),
        )
        return outcomes

    async def _absorb(self, primary_id: UUID, existing: Membership) -> CompanionOutcome:
        companion_id = existing.id
        if existing.status == MembershipStatusEnum.ACTIVE:
            return CompanionOutcome(primary_id=primary_id, action="already_active", companion_id=companion_id)

        if existing.status in _OPEN_STATUSES:
            now = datetime.now(timezone.utc)
            result = await self._session.execute(
                update(Membership)
                .where(Membership.id == companion_id, Membership.status.in_(_OPEN_STATUSES))
                .values(
                    status=MembershipStatusEnum.ACTIVE,
                    amount=0,
                    payment_status=PaymentStatusEnum.PAID,
                    payment_source=PaymentSourceEnum.COMPANION,
                    paid_at=now,
                    validated_at=now,
                    free_via_companion=True,
                    companion_of_id=primary_id,
                )
                .execution_options(synchronize_session=False)
            )
            await self._session.commit()
            if result.rowcount == 1:
                logger.info(
                    "Pending companion membership absorbed",
                    primary_id=str(primary_id),
                    companion_id=str(companion_id),
                )
                await self._issue_certificate(companion_id)
                return CompanionOutcome(primary_id=primary_id, action="promoted", companion_id=companion_id)

            existing = await self._load(companion_id)
            if existing.status == MembershipStatusEnum.ACTIVE:
                return CompanionOutcome(primary_id=primary_id, action="already_active", companion_id=companion_id)

        logger.warning(
            "Companion membership left untouched",
            primary_id=str(primary_id),
            companion_id=str(companion_id),
            status=existing.status.value,
        )
        return CompanionOutcome(
            primary_id=primary_id,
            action="blocked",
            companion_id=companion_id,
            detail=existing.status.value,
        )

    async def _issue_certificate(self, companion_id: UUID) -> None:
        if self._certificates is None:
            return
        companion = await self._load(companion_id)
        await self._certificates.issue_for_membership(self._session, companion)

    async def _find(self, owner_id: str, year: int) -> Membership | None:
        stmt = (
            select(Membership)
            .where(
                Membership.owner_id == owner_id,
                Membership.organization == self._companion_organization,
                Membership.year == year,
            )
            .execution_options(populate_existing=True)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def _load(self, membership_id: UUID) -> Membership:
        stmt = select(Membership).where(Membership.id == membership_id).execution_options(populate_existing=True)
        return (await self._session.execute(stmt)).scalar_one()


__all__ = ["CompanionMembershipResolver", "CompanionOutcome"]
