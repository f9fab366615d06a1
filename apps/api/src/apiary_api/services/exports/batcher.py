"""Partner export batches: collect paid items, claim them once, deliver, activate."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.core.settings import Settings, get_settings
from apiary_api.domain.errors import (
    AlreadySent,
    DownstreamSideEffectFailed,
    DuplicateEntity,
    EntityNotFound,
    LedgerError,
    NothingToExport,
    UpstreamTimeout,
)
from apiary_api.models.export_batch import (
    ExportBatch,
    ExportBatchItem,
    ExportBatchStatusEnum,
    ExportItemKindEnum,
)
from apiary_api.models.payment import PaymentStatusEnum
from apiary_api.models.subscription import Subscription, SubscriptionModification
from apiary_api.services.documents import ObjectStore
from apiary_api.services.notifications import Notifier, build_partner_export
from apiary_api.services.subscriptions import SubscriptionLedger
from apiary_api.services.subscriptions.status import EXPORTED_KINDS

from .layout import ExportItem, export_file_name, render_csv
from .schedule import ExportSchedule


@dataclass(slots=True)
class ActivationReport:
    """Per-item results of activating an export batch."""

    batch_id: UUID
    activated: list[str] = field(default_factory=list)
    modifications_validated: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class ExportSummary:
    year: int
    paid_subscriptions: int
    exported_subscriptions: int
    paid_modifications: int
    exported_modifications: int
    batches: int

    @property
    def pending_subscriptions(self) -> int:
        return self.paid_subscriptions - self.exported_subscriptions

    @property
    def pending_modifications(self) -> int:
        return self.paid_modifications - self.exported_modifications

    @property
    def total_pending(self) -> int:
        return self.pending_subscriptions + self.pending_modifications


class ExportBatcher:
    """Builds the partner file and flips each item's exported flag exactly once."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        store: ObjectStore,
        notifier: Notifier,
        subscriptions: SubscriptionLedger | None = None,
        settings: Settings | None = None,
        schedule: ExportSchedule | None = None,
    ) -> None:
        self._session = session
        self._store = store
        self._notifier = notifier
        self._subscriptions = subscriptions or SubscriptionLedger(session)
        self._settings = settings or get_settings()
        self._schedule = schedule or ExportSchedule.from_settings(self._settings)

    async def _is_first_of_year(self, year: int, export_date: date) -> bool:
        """The first calendar export date of the year; without a calendar, the first batch."""

        first = self._schedule.first_export_date(year)
        if first is not None:
            return export_date == first
        prior_batches = await self._session.scalar(
            select(func.count()).select_from(ExportBatch).where(ExportBatch.year == year)
        )
        return not prior_batches

    async def collect_pending(self, year: int) -> list[ExportItem]:
        """Paid, unexported subscriptions and modification entries of ``year``."""

        subscription_rows = await self._session.execute(
            select(Subscription)
            .where(
                Subscription.year == year,
                Subscription.service_kind.in_(EXPORTED_KINDS),
                Subscription.payment_status == PaymentStatusEnum.PAID,
                Subscription.payment_exported.is_(False),
            )
            .order_by(Subscription.paid_at, Subscription.created_at)
            .execution_options(populate_existing=True)
        )
        items = [
            ExportItem(
                kind=ExportItemKindEnum.SUBSCRIPTION,
                subscription=subscription,
                amount=Decimal(subscription.amount),
                paid_at=subscription.paid_at,
            )
            for subscription in subscription_rows.scalars()
        ]

        modification_rows = await self._session.execute(
            select(SubscriptionModification, Subscription)
            .join(Subscription, SubscriptionModification.subscription_id == Subscription.id)
            .where(
                Subscription.year == year,
                Subscription.service_kind.in_(EXPORTED_KINDS),
                SubscriptionModification.payment_status == PaymentStatusEnum.PAID,
                SubscriptionModification.exported.is_(False),
            )
            .order_by(SubscriptionModification.paid_at, SubscriptionModification.position)
            .execution_options(populate_existing=True)
        )
        for modification, subscription in modification_rows.all():
            items.append(
                ExportItem(
                    kind=ExportItemKindEnum.MODIFICATION,
                    subscription=subscription,
                    amount=Decimal(modification.extra_amount),
                    paid_at=modification.paid_at,
                    modification_position=modification.position,
                )
            )
        return items

    async def generate(
        self,
        year: int,
        items: Sequence[ExportItem] | None = None,
        export_date: date | None = None,
    ) -> ExportBatch:
        """Store the file, then claim every item and record the batch in one transaction.

        A storage failure leaves every item unexported. A concurrent exporter
        that claimed an item first makes this call raise :class:`DuplicateEntity`
        with nothing flipped.
        """

        selected = list(items) if items is not None else await self.collect_pending(year)
        if not selected:
            raise NothingToExport(f"No paid items awaiting export for {year}")

        export_date = export_date or date.today()
        is_first_of_year = await self._is_first_of_year(year, export_date)

        claims = [
            (item.item_key, item.kind, item.subscription_id, item.modification_position, item.amount)
            for item in selected
        ]
        total_amount = sum((amount for *_, amount in claims), Decimal("0"))
        payload = render_csv(selected, export_date=export_date, is_first_of_year=is_first_of_year)
        batch_id = uuid4()
        file_name = export_file_name(year, export_date)

        locator = await self._store.store(
            payload,
            f"partner-exports/{year}/{batch_id}/{file_name}",
            content_type="text/csv",
        )

        now = datetime.now(timezone.utc)
        try:
            for item_key, kind, subscription_id, position, _ in claims:
                if kind == ExportItemKindEnum.SUBSCRIPTION:
                    stmt = (
                        update(Subscription)
                        .where(Subscription.id == subscription_id, Subscription.payment_exported.is_(False))
                        .values(payment_exported=True, payment_exported_at=now)
                    )
                else:
                    stmt = (
                        update(SubscriptionModification)
                        .where(
                            SubscriptionModification.subscription_id == subscription_id,
                            SubscriptionModification.position == position,
                            SubscriptionModification.exported.is_(False),
                        )
                        .values(exported=True, exported_at=now)
                    )
                result = await self._session.execute(stmt.execution_options(synchronize_session=False))
                if result.rowcount != 1:
                    raise DuplicateEntity(f"Export item {item_key} was already claimed")

            batch = ExportBatch(
                id=batch_id,
                year=year,
                batch_date=export_date,
                is_first_of_year=is_first_of_year,
                item_count=len(claims),
                total_amount=total_amount,
                file_name=file_name,
                file_locator=locator,
                status=ExportBatchStatusEnum.GENERATED,
            )
            batch.items = [
                ExportBatchItem(
                    item_key=item_key,
                    item_kind=kind,
                    subscription_id=subscription_id,
                    modification_position=position,
                    amount=amount,
                )
                for item_key, kind, subscription_id, position, amount in claims
            ]
            self._session.add(batch)
            await self._session.commit()
        except DuplicateEntity:
            await self._session.rollback()
            logger.warning("Export batch lost an item claim", batch_id=str(batch_id), year=year, locator=locator)
            raise
        except IntegrityError as exc:
            await self._session.rollback()
            logger.warning("Export batch lost an item claim", batch_id=str(batch_id), year=year, locator=locator)
            raise DuplicateEntity(f"Export batch {batch_id} overlaps an existing batch") from exc

        logger.info(
            "Export batch generated",
            batch_id=str(batch_id),
            year=year,
            items=len(claims),
            total_amount=str(total_amount),
            first_of_year=is_first_of_year,
        )
        return await self.get(batch_id)

    async def send(self, batch_id: UUID) -> ExportBatch:
        """Deliver the stored file to the partner; the batch is ``sent`` only after delivery."""

        batch = await self.get(batch_id)
        if batch.status == ExportBatchStatusEnum.SENT:
            raise AlreadySent(f"Export batch {batch_id} was already sent")
        recipients = list(self._settings.partner_export_recipients)
        if not recipients:
            raise DownstreamSideEffectFailed("notify", "no partner export recipients configured")

        payload = await self._store.fetch(batch.file_locator)
        content = build_partner_export(batch, payload)
        timeout = self._settings.notifier_timeout_seconds
        for address in recipients:
            try:
                delivered = await asyncio.wait_for(self._notifier.notify(address, content), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise UpstreamTimeout("notify", timeout) from exc
            if not delivered:
                logger.error("Export batch delivery failed", batch_id=str(batch_id), recipient=address)
                raise DownstreamSideEffectFailed("notify", f"export batch was not delivered to {address}")

        now = datetime.now(timezone.utc)
        notes = dict(batch.notes_json or {})
        notes["sent_to"] = recipients
        result = await self._session.execute(
            update(ExportBatch)
            .where(ExportBatch.id == batch_id, ExportBatch.status == ExportBatchStatusEnum.GENERATED)
            .values(status=ExportBatchStatusEnum.SENT, sent_at=now, notes_json=notes)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        if result.rowcount == 0:
            raise AlreadySent(f"Export batch {batch_id} was already sent")

        logger.info("Export batch sent", batch_id=str(batch_id), recipients=len(recipients))
        return await self.get(batch_id)

    async def activate(self, batch_id: UUID) -> ActivationReport:
        """Apply the partner's validation to every item of the batch."""

        batch = await self.get(batch_id)
        subscription_ids = list(batch.subscription_ids)
        modification_keys = list(batch.modification_keys)
        notes = dict(batch.notes_json or {})
        report = ActivationReport(batch_id=batch_id)

        for subscription_id in subscription_ids:
            try:
                if await self._subscriptions.validate_by_partner(subscription_id):
                    report.activated.append(str(subscription_id))
            except (LedgerError, SQLAlchemyError) as exc:
                await self._session.rollback()
                logger.warning(
                    "Export activation failed for subscription",
                    batch_id=str(batch_id),
                    subscription_id=str(subscription_id),
                    error=str(exc),
                )
                report.errors.append({"item": f"sub:{subscription_id}", "error": str(exc)})

        for subscription_id, position in modification_keys:
            item_key = f"mod:{subscription_id}:{position}"
            try:
                if await self._subscriptions.validate_modification_by_partner(subscription_id, position):
                    report.modifications_validated.append(item_key)
            except (LedgerError, SQLAlchemyError) as exc:
                await self._session.rollback()
                logger.warning(
                    "Export activation failed for modification",
                    batch_id=str(batch_id),
                    item_key=item_key,
                    error=str(exc),
                )
                report.errors.append({"item": item_key, "error": str(exc)})

        notes["activation"] = {
            "activated": len(report.activated),
            "modifications_validated": len(report.modifications_validated),
            "errors": len(report.errors),
        }
        await self._session.execute(
            update(ExportBatch)
            .where(ExportBatch.id == batch_id)
            .values(activated_at=datetime.now(timezone.utc), notes_json=notes)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()

        logger.info(
            "Export batch activated",
            batch_id=str(batch_id),
            activated=len(report.activated),
            modifications_validated=len(report.modifications_validated),
            errors=len(report.errors),
        )
        return report

    async def summary(self, year: int) -> ExportSummary:
        paid_subscriptions = Subscription.payment_status == PaymentStatusEnum.PAID
        subscription_scope = (Subscription.year == year, Subscription.service_kind.in_(EXPORTED_KINDS))

        async def _count(stmt: Any) -> int:
            return int(await self._session.scalar(stmt) or 0)

        base_modifications = (
            select(func.count())
            .select_from(SubscriptionModification)
            .join(Subscription, SubscriptionModification.subscription_id == Subscription.id)
            .where(*subscription_scope, SubscriptionModification.payment_status == PaymentStatusEnum.PAID)
        )
        return ExportSummary(
            year=year,
            paid_subscriptions=await _count(
                select(func.count()).select_from(Subscription).where(*subscription_scope, paid_subscriptions)
            ),
            exported_subscriptions=await _count(
                select(func.count())
                .select_from(Subscription)
                .where(*subscription_scope, paid_subscriptions, Subscription.payment_exported.is_(True))
            ),
            paid_modifications=await _count(base_modifications),
            exported_modifications=await _count(
                base_modifications.where(SubscriptionModification.exported.is_(True))
            ),
            batches=await _count(select(func.count()).select_from(ExportBatch).where(ExportBatch.year == year)),
        )

    async def get(self, batch_id: UUID) -> ExportBatch:
        stmt = select(ExportBatch).where(ExportBatch.id == batch_id).execution_options(populate_existing=True)
        batch = (await self._session.execute(stmt)).scalar_one_or_none()
        if batch is None:
            raise EntityNotFound("export_batch", batch_id)
        return batch


__all__ = ["ActivationReport", "ExportBatcher", "ExportSummary"]
