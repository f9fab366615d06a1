"""Certificate issuance: render, store, then link the locator on the ledger row."""

from __future__ import annotations

from datetime import date, datetime, timezone

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.core.settings import Settings, get_settings
from apiary_api.models.membership import Membership
from apiary_api.models.subscription import Subscription

from .renderer import CertificateRecord, DocumentRenderer, HttpDocumentRenderer
from .storage import ObjectStore, S3ObjectStore


def membership_record(membership: Membership, *, issued_on: date | None = None) -> CertificateRecord:
    return CertificateRecord(
        kind="membership",
        entity_id=str(membership.id),
        owner_id=membership.owner_id,
        organization=membership.organization.value,
        year=membership.year,
        holder=membership.contact_email or membership.owner_id,
        issued_on=issued_on or date.today(),
        details={
            "category": membership.category.value,
            "amount": str(membership.amount),
            "apiary_registration": membership.apiary_registration,
            "hive_count": membership.hive_count,
            "free_via_companion": bool(membership.free_via_companion),
        },
    )


def subscription_record(subscription: Subscription, *, issued_on: date | None = None) -> CertificateRecord:
    info = subscription.personal_info_json or {}
    holder = " ".join(part for part in (info.get("given_name"), info.get("surname")) if part)
    return CertificateRecord(
        kind="subscription",
        entity_id=str(subscription.id),
        owner_id=subscription.owner_id,
        organization=subscription.organization.value,
        year=subscription.year,
        holder=holder or info.get("email") or subscription.owner_id,
        issued_on=issued_on or date.today(),
        details={
            "service_kind": subscription.service_kind.value,
            "hive_count": subscription.hive_count,
            "options": dict(subscription.options_json or {}),
            "amount": str(subscription.amount),
            "modifications": len(subscription.modifications or []),
        },
    )


def eco_contribution_record(subscription: Subscription, *, issued_on: date | None = None) -> CertificateRecord:
    """Attestation that the holder funds the eco-contribution for every declared hive."""

    info = subscription.personal_info_json or {}
    holder = " ".join(part for part in (info.get("given_name"), info.get("surname")) if part)
    return CertificateRecord(
        kind="eco_contribution",
        entity_id=str(subscription.id),
        owner_id=subscription.owner_id,
        organization=subscription.organization.value,
        year=subscription.year,
        holder=holder or info.get("email") or subscription.owner_id,
        issued_on=issued_on or date.today(),
        details={
            "service_kind": subscription.service_kind.value,
            "hive_count": subscription.hive_count,
            "amount": (subscription.amount_breakdown_json or {}).get("eco_contribution"),
        },
    )


class CertificateIssuer:
    """Issues certificates for activated memberships and subscriptions.

    Failures are logged and reported as ``None``; the ledger row keeps its
    status with no certificate linked so a reissue can retry later.
    """

    def __init__(self, renderer: DocumentRenderer, store: ObjectStore) -> None:
        self._renderer = renderer
        self._store = store

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CertificateIssuer | None":
        """Build the issuer, or ``None`` when rendering or storage is not configured."""

        resolved = settings or get_settings()
        if not resolved.document_renderer_url or not resolved.document_storage_bucket:
            logger.warning("Certificate issuance disabled; renderer or storage bucket not configured")
            return None
        return cls(HttpDocumentRenderer.from_settings(resolved), S3ObjectStore(settings=resolved))

    async def issue_for_membership(self, session: AsyncSession, membership: Membership) -> str | None:
        key = f"certificates/{membership.year}/{membership.organization.value}/membership-{membership.id}.pdf"
        return await self._issue(session, Membership, membership.id, membership_record(membership), key)

    async def issue_for_subscription(self, session: AsyncSession, subscription: Subscription) -> str | None:
        revision = len(subscription.modifications or [])
        key = (
            f"certificates/{subscription.year}/{subscription.service_kind.value}/"
            f"subscription-{subscription.id}-r{revision}.pdf"
        )
        return await self._issue(session, Subscription, subscription.id, subscription_record(subscription), key)

    async def issue_eco_contribution(self, session: AsyncSession, subscription: Subscription) -> str | None:
        revision = len(subscription.modifications or [])
        key = f"certificates/{subscription.year}/eco_contribution/subscription-{subscription.id}-r{revision}.pdf"
        return await self._issue(
            session,
            Subscription,
            subscription.id,
            eco_contribution_record(subscription),
            key,
            columns=("eco_contribution_locator", "eco_contribution_issued_at"),
        )

    async def _issue(
        self,
        session: AsyncSession,
        model,
        entity_id,
        record: CertificateRecord,
        key: str,
        *,
        columns: tuple[str, str] = ("certificate_locator", "certificate_issued_at"),
    ) -> str | None:
        try:
            document = await self._renderer.render(record)
            locator = await self._store.store(document, key, content_type="application/pdf")
        except Exception as exc:
            logger.exception(
                "Certificate issuance failed",
                entity_type=record.kind,
                entity_id=str(entity_id),
                operation="render",
                error=str(exc),
            )
            return None

        try:
            await session.execute(
                update(model)
                .where(model.id == entity_id)
                .values({columns[0]: locator, columns[1]: datetime.now(timezone.utc)})
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error(
                "Certificate stored but not linked",
                entity_type=record.kind,
                entity_id=str(entity_id),
                locator=locator,
                error=str(exc),
            )
            return None

        logger.info("Certificate issued", entity_type=record.kind, entity_id=str(entity_id), locator=locator)
        return locator


__all__ = ["CertificateIssuer", "eco_contribution_record", "membership_record", "subscription_record"]
