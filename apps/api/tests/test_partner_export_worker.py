from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from apiary_api.core.settings import settings
from apiary_api.models.export_batch import ExportBatchStatusEnum
from apiary_api.models.membership import Membership, MembershipCategoryEnum, MembershipStatusEnum
from apiary_api.models.payment import Organization, PaymentStatusEnum
from apiary_api.models.subscription import ServiceKindEnum
from apiary_api.services.exports import ExportSchedule
from apiary_api.services.subscriptions import SubscriptionLedger
from apiary_api.workers.partner_export import PartnerExportWorker

EXPORT_DAY = date(2026, 3, 2)


@pytest.fixture
def partner_recipients(monkeypatch):
    monkeypatch.setattr(settings, "partner_export_recipients", ["unaf@example.org"])
    return settings.partner_export_recipients


def _worker(session_factory, object_store, notifier, *, deliver: bool = True) -> PartnerExportWorker:
    return PartnerExportWorker(
        session_factory,
        schedule=ExportSchedule([EXPORT_DAY]),
        store_factory=lambda: object_store,
        notifier_factory=lambda: notifier,
        certificates_factory=lambda: None,
        deliver=deliver,
    )


async def _paid_insurance(session_factory, owner_id: str = "U1"):
    async with session_factory() as session:
        membership = Membership(
            owner_id=owner_id,
            organization=Organization.SAR,
            year=2026,
            category=MembershipCategoryEnum.HOBBYIST,
            hive_count=5,
            amount=Decimal("30.00"),
            payment_status=PaymentStatusEnum.PAID,
            status=MembershipStatusEnum.ACTIVE,
        )
        session.add(membership)
        await session.commit()
        ledger = SubscriptionLedger(session)
        subscription = await ledger.create(
            owner_id,
            membership.id,
            ServiceKindEnum.PARTNER_INSURANCE,
            {"insurance_tier": "tier1"},
            {"surname": owner_id, "email": f"{owner_id}@example.org"},
        )
        await ledger.mark_paid(subscription.id, f"pi_{owner_id}")
        return subscription.id


@pytest.mark.asyncio
async def test_worker_skips_days_outside_the_calendar(session_factory, object_store, notifier):
    await _paid_insurance(session_factory)

    batch = await _worker(session_factory, object_store, notifier).run_once(date(2026, 3, 3))

    assert batch is None
    assert object_store.objects == {}


@pytest.mark.asyncio
async def test_worker_generates_and_sends_once_per_date(
    session_factory,
    object_store,
    notifier,
    partner_recipients,
):
    subscription_id = await _paid_insurance(session_factory)
    worker = _worker(session_factory, object_store, notifier)

    batch = await worker.run_once(EXPORT_DAY)
    await _paid_insurance(session_factory, owner_id="U2")
    repeat = await worker.run_once(EXPORT_DAY)

    assert batch is not None
    assert batch.status == ExportBatchStatusEnum.SENT
    assert batch.subscription_ids == [subscription_id]
    assert batch.batch_date == EXPORT_DAY
    assert [address for address, _ in notifier.sent] == ["unaf@example.org"]
    assert repeat is None


@pytest.mark.asyncio
async def test_worker_returns_none_when_nothing_is_paid(session_factory, object_store, notifier):
    batch = await _worker(session_factory, object_store, notifier).run_once(EXPORT_DAY)

    assert batch is None
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_worker_keeps_batch_generated_when_delivery_fails(
    session_factory,
    object_store,
    notifier,
    partner_recipients,
):
    await _paid_insurance(session_factory)
    notifier.delivered = False

    batch = await _worker(session_factory, object_store, notifier).run_once(EXPORT_DAY)

    assert batch is not None
    assert batch.status == ExportBatchStatusEnum.GENERATED
    assert batch.sent_at is None


@pytest.mark.asyncio
async def test_worker_without_delivery_only_generates(session_factory, object_store, notifier, partner_recipients):
    await _paid_insurance(session_factory)

    batch = await _worker(session_factory, object_store, notifier, deliver=False).run_once(EXPORT_DAY)

    assert batch is not None
    assert batch.status == ExportBatchStatusEnum.GENERATED
    assert batch.file_locator in object_store.objects
    assert notifier.sent == []
