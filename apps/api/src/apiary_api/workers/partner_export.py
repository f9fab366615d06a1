"""Worker generating and delivering partner export batches on calendar dates."""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Awaitable, Callable

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.core.settings import settings
from apiary_api.domain.errors import LedgerError, NothingToExport
from apiary_api.models.export_batch import ExportBatch
from apiary_api.services.documents import CertificateIssuer, ObjectStore, S3ObjectStore
from apiary_api.services.exports import ExportBatcher, ExportSchedule
from apiary_api.services.notifications import EmailNotifier, Notifier
from apiary_api.services.subscriptions import SubscriptionLedger

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class PartnerExportWorker:
    """Runs one export per scheduled date, then delivers it to the partner."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        schedule: ExportSchedule | None = None,
        store_factory: Callable[[], ObjectStore] | None = None,
        notifier_factory: Callable[[], Notifier] | None = None,
        certificates_factory: Callable[[], CertificateIssuer | None] | None = None,
        interval_seconds: int | None = None,
        deliver: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._schedule = schedule or ExportSchedule.from_settings()
        self._store_factory = store_factory or (lambda: S3ObjectStore(settings=settings))
        self._notifier_factory = notifier_factory or EmailNotifier.from_settings
        self._certificates_factory = certificates_factory or CertificateIssuer.from_settings
        self.interval_seconds = interval_seconds or settings.partner_export_interval_seconds
        self._deliver = deliver
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Partner export worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Partner export worker stopped")

    async def run_once(self, today: date | None = None) -> ExportBatch | None:
        """Generate today's batch when today is an export date and no batch exists for it yet."""

        today = today or date.today()
        if not self._schedule.is_export_date(today):
            logger.debug("Not an export date", today=today.isoformat())
            return None

        session = await self._ensure_session()
        async with session as managed_session:
            existing = await managed_session.execute(
                select(ExportBatch.id).where(ExportBatch.batch_date == today).limit(1)
            )
            if existing.scalar_one_or_none() is not None:
                logger.info("Export batch already generated for date", export_date=today.isoformat())
                return None

            batcher = ExportBatcher(
                managed_session,
                store=self._store_factory(),
                notifier=self._notifier_factory(),
                subscriptions=SubscriptionLedger(managed_session, certificates=self._certificates_factory()),
                schedule=self._schedule,
            )
            try:
                batch = await batcher.generate(today.year, export_date=today)
            except NothingToExport:
                logger.info("No paid items awaiting export", export_date=today.isoformat())
                return None

            batch_id = batch.id
            if self._deliver:
                try:
                    batch = await batcher.send(batch_id)
                except LedgerError as exc:
                    logger.error(
                        "Export batch generated but not delivered",
                        batch_id=str(batch_id),
                        error=str(exc),
                    )
                    batch = await batcher.get(batch_id)
            return batch

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("Partner export iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["PartnerExportWorker"]
