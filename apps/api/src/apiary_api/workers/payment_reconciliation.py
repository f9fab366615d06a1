"""Sweeper replaying the gateway's completed checkout history through the ledgers."""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.core.settings import settings
from apiary_api.models.payment import PaymentSourceEnum
from apiary_api.models.reconciliation import PaymentReconciliationRun
from apiary_api.services.billing import DispatchOutcome, PaymentGatewayAdapter, StripeBillingProvider
from apiary_api.services.documents import CertificateIssuer

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]
ProviderFactory = Callable[[], StripeBillingProvider]
GatewayFactory = Callable[[AsyncSession, StripeBillingProvider], PaymentGatewayAdapter]

OUTCOMES = ("processed", "already_processed", "skipped", "error")


@dataclass(slots=True)
class ReconciliationReport:
    """Per-event outcomes of one sweep."""

    run_id: UUID
    window_days: int
    triggered_by: str
    outcomes: list[tuple[str, DispatchOutcome]] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        tally = Counter(outcome.outcome for _, outcome in self.outcomes)
        return {name: tally.get(name, 0) for name in OUTCOMES}

    @property
    def total(self) -> int:
        return len(self.outcomes)


def _default_gateway(session: AsyncSession, provider: StripeBillingProvider) -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter.for_session(
        session,
        provider=provider,
        certificates=CertificateIssuer.from_settings(),
    )


class PaymentReconciliationSweeper:
    """Periodically replays recent paid checkout sessions.

    Correctness relies on the ledger operations being idempotent; the sweeper
    never tries to detect which events the live webhook already handled.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        provider_factory: ProviderFactory | None = None,
        gateway_factory: GatewayFactory | None = None,
        interval_seconds: int | None = None,
        window_days: int | None = None,
        page_size: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider_factory = provider_factory or StripeBillingProvider.from_settings
        self._gateway_factory = gateway_factory or _default_gateway
        self.interval_seconds = interval_seconds or settings.reconciliation_interval_seconds
        self._window_days = window_days or settings.reconciliation_window_days
        self._page_size = page_size or settings.reconciliation_page_size
        self._trigger_label = trigger_label or settings.reconciliation_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Payment reconciliation sweeper started",
            interval_seconds=self.interval_seconds,
            window_days=self._window_days,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Payment reconciliation sweeper stopped")

    async def run_once(self, window_days: int | None = None, *, triggered_by: str | None = None) -> ReconciliationReport:
        """Replay every completed checkout of the trailing window; one failure never stops the sweep."""

        window = window_days or self._window_days
        trigger = triggered_by or self._trigger_label
        provider = self._provider_factory()

        session = await self._ensure_session()
        async with session as managed_session:
            run = PaymentReconciliationRun(triggered_by=trigger, window_days=window)
            managed_session.add(run)
            await managed_session.commit()
            run_id = run.id
            report = ReconciliationReport(run_id=run_id, window_days=window, triggered_by=trigger)

            gateway = self._gateway_factory(managed_session, provider)
            created_gte = datetime.now(timezone.utc) - timedelta(days=window)
            try:
                async for event_id, checkout in provider.iter_completed_checkout_sessions(
                    created_gte=created_gte,
                    page_size=self._page_size,
                ):
                    report.outcomes.append((event_id, await self._apply(managed_session, gateway, event_id, checkout)))
            except Exception as exc:
                await managed_session.rollback()
                await self._finish(managed_session, report, status="failed", error=str(exc))
                logger.exception("Payment reconciliation sweep failed", run_id=str(run_id), error=str(exc))
                raise

            await self._finish(managed_session, report, status="completed")

        logger.info(
            "Payment reconciliation sweep completed",
            run_id=str(run_id),
            window_days=window,
            trigger=trigger,
            total=report.total,
            **report.counts,
        )
        return report

    async def _apply(
        self,
        session: AsyncSession,
        gateway: PaymentGatewayAdapter,
        event_id: str,
        checkout: Mapping[str, Any],
    ) -> DispatchOutcome:
        metadata = checkout.get("metadata") or {}
        try:
            outcome = await gateway.apply_checkout_session(checkout, source=PaymentSourceEnum.RECONCILIATION)
        except Exception as exc:
            await session.rollback()
            logger.exception("Reconciliation replay failed", event_id=event_id, error=str(exc))
            return DispatchOutcome(
                "error",
                metadata.get("entityType"),
                metadata.get("entityId"),
                detail=str(exc),
            )
        if outcome.outcome == "processed":
            logger.info(
                "Missed payment recovered",
                event_id=event_id,
                entity_type=outcome.entity_type,
                entity_id=outcome.entity_id,
            )
        return outcome

    async def _finish(
        self,
        session: AsyncSession,
        report: ReconciliationReport,
        *,
        status: str,
        error: str | None = None,
    ) -> None:
        counts = report.counts
        notes = {
            "triggered_by": report.triggered_by,
            "events": [
                {
                    "event_id": event_id,
                    "outcome": outcome.outcome,
                    "entity_type": outcome.entity_type,
                    "entity_id": outcome.entity_id,
                    "detail": outcome.detail,
                }
                for event_id, outcome in report.outcomes
                if outcome.outcome != "already_processed"
            ],
        }
        await session.execute(
            update(PaymentReconciliationRun)
            .where(PaymentReconciliationRun.id == report.run_id)
            .values(
                status=status,
                completed_at=datetime.now(timezone.utc),
                total_sessions=report.total,
                processed_count=counts["processed"],
                already_processed_count=counts["already_processed"],
                skipped_count=counts["skipped"],
                error_count=counts["error"],
                notes_json=notes,
                error_message=error,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("Payment reconciliation iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["OUTCOMES", "PaymentReconciliationSweeper", "ReconciliationReport"]
