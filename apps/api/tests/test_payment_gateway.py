from __future__ import annotations

import hashlib
import hmac
import json
import time
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from apiary_api.core.settings import Settings
from apiary_api.domain.errors import BelowMinimumChargeable, InvalidSignature, InvalidTransition
from apiary_api.models.membership import Membership, MembershipCategoryEnum, MembershipStatusEnum
from apiary_api.models.payment import Organization, PaymentSourceEnum
from apiary_api.models.processor_event import ProcessorEvent
from apiary_api.models.subscription import ServiceKindEnum
from apiary_api.services.billing import PaymentGatewayAdapter, StripeBillingProvider
from apiary_api.services.memberships import MembershipDetails, MembershipLedger
from apiary_api.services.subscriptions import SubscriptionLedger

WEBHOOK_SECRET = "whsec_test_gateway"


def _signature(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event(event_id: str, checkout: dict, event_type: str = "checkout.session.completed") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": checkout}}).encode("utf-8")


def _gateway(session, provider, notifier, certificates=None, settings: Settings | None = None) -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter(
        session,
        provider=provider,
        memberships=MembershipLedger(session, notifier=notifier, certificates=certificates),
        subscriptions=SubscriptionLedger(session, certificates=certificates),
        settings=settings,
    )


async def _pending_membership(session, notifier, owner_id: str = "U1") -> Membership:
    ledger = MembershipLedger(session, notifier=notifier)
    return await ledger.create(
        owner_id,
        Organization.SAR,
        2026,
        MembershipDetails(category=MembershipCategoryEnum.HOBBYIST, contact_email=f"{owner_id}@example.org"),
    )


async def _paid_insurance_with_modification(session, notifier):
    membership = await _pending_membership(session, notifier)
    await MembershipLedger(session, notifier=notifier).mark_paid(membership.id, "pi_membership")
    ledger = SubscriptionLedger(session)
    subscription = await ledger.create(
        "U1",
        membership.id,
        ServiceKindEnum.PARTNER_INSURANCE,
        {"insurance_tier": "tier2"},
        {"email": "claire@example.org"},
        hive_count=20,
    )
    await ledger.mark_paid(subscription.id, "pi_subscription")
    await ledger.request_modification(subscription.id, {"insurance_tier": "tier3"})
    return await ledger.get(subscription.id)


def test_stripe_provider_rejects_bad_signatures():
    provider = StripeBillingProvider("sk_test_dummy", WEBHOOK_SECRET)
    payload = _event("evt_1", {"id": "cs_1"})

    with pytest.raises(InvalidSignature):
        provider.construct_event(payload, None)
    with pytest.raises(InvalidSignature):
        provider.construct_event(payload, _signature(payload, "whsec_other"))
    with pytest.raises(InvalidSignature):
        StripeBillingProvider("sk_test_dummy", None).construct_event(payload, _signature(payload))

    event = provider.construct_event(payload, _signature(payload))
    assert event.event_id == "evt_1"
    assert event.event_type == "checkout.session.completed"
    assert event.data_object == {"id": "cs_1"}


def test_stripe_provider_requires_secret_key_and_converts_cents():
    with pytest.raises(ValueError):
        StripeBillingProvider("")

    assert StripeBillingProvider._to_cents(Decimal("117.50")) == 11750
    assert StripeBillingProvider._to_cents(Decimal("0.5")) == 50
    assert StripeBillingProvider._from_cents(2300) == Decimal("23")


@pytest.mark.asyncio
async def test_create_checkout_for_membership_carries_routing_metadata(session_factory, notifier, stripe_provider):
    settings = Settings(stripe_connected_accounts={"SAR": "acct_sar"}, frontend_url="https://apiary.test/")
    async with session_factory() as session:
        membership = await _pending_membership(session, notifier)
        gateway = _gateway(session, stripe_provider, notifier, settings=settings)

        checkout = await gateway.create_checkout(membership)

        assert checkout.session_ref == "cs_test_1"
        assert checkout.redirect_url == "https://checkout.test/cs_test_1"
        call = stripe_provider.created[0]
        assert call["amount"] == Decimal("30.00")
        assert call["destination"] == "acct_sar"
        assert call["customer_email"] == "U1@example.org"
        assert call["success_url"] == "https://apiary.test/payments/success?session_id={CHECKOUT_SESSION_ID}"
        assert call["metadata"] == {
            "entityType": "membership",
            "entityId": str(membership.id),
            "ownerId": "U1",
            "organization": "SAR",
        }

        stored = await MembershipLedger(session, notifier=notifier).get(membership.id)
        assert stored.checkout_session_id == "cs_test_1"


@pytest.mark.asyncio
async def test_create_checkout_refuses_paid_and_below_minimum_targets(session_factory, notifier, stripe_provider):
    async with session_factory() as session:
        gateway = _gateway(session, stripe_provider, notifier)
        paid = await _pending_membership(session, notifier)
        await MembershipLedger(session, notifier=notifier).mark_paid(paid.id, "pi_paid")
        free = Membership(
            owner_id="U2",
            organization=Organization.AMAIR,
            year=2026,
            category=MembershipCategoryEnum.HOBBYIST,
            amount=Decimal("0.00"),
            status=MembershipStatusEnum.PENDING,
        )
        session.add(free)
        await session.commit()

        with pytest.raises(InvalidTransition):
            await gateway.create_checkout(await MembershipLedger(session, notifier=notifier).get(paid.id))
        with pytest.raises(BelowMinimumChargeable):
            await gateway.create_checkout(free)
        assert stripe_provider.created == []


@pytest.mark.asyncio
async def test_create_checkout_for_modification(session_factory, notifier, stripe_provider):
    async with session_factory() as session:
        subscription = await _paid_insurance_with_modification(session, notifier)
        gateway = _gateway(session, stripe_provider, notifier)

        await gateway.create_checkout((subscription, 0))

        call = stripe_provider.created[0]
        assert call["amount"] == Decimal("23.00")
        assert call["metadata"]["entityType"] == "modification"
        assert call["metadata"]["entityId"] == str(subscription.id)
        assert call["metadata"]["modificationIndex"] == "0"
        entry = await SubscriptionLedger(session).get_modification(subscription.id, 0)
        assert entry.checkout_session_id == "cs_test_1"

        with pytest.raises(InvalidTransition):
            await gateway.create_checkout(subscription)


@pytest.mark.asyncio
async def test_apply_checkout_session_routes_and_reports_outcomes(
    session_factory,
    notifier,
    stripe_provider,
    checkout_payload,
):
    async with session_factory() as session:
        gateway = _gateway(session, stripe_provider, notifier)
        membership = await _pending_membership(session, notifier)
        refused = await _pending_membership(session, notifier, owner_id="U2")
        await MembershipLedger(session, notifier=notifier).mark_refused(refused.id)

        processed = await gateway.apply_checkout_session(checkout_payload("membership", membership.id))
        replayed = await gateway.apply_checkout_session(
            checkout_payload("membership", membership.id),
            source=PaymentSourceEnum.RECONCILIATION,
        )
        unpaid = await gateway.apply_checkout_session(
            checkout_payload("membership", membership.id, payment_status="unpaid")
        )
        unknown = await gateway.apply_checkout_session(checkout_payload("invoice", membership.id))
        malformed = await gateway.apply_checkout_session(checkout_payload("membership", "not-a-uuid"))
        missing = await gateway.apply_checkout_session(checkout_payload("subscription", uuid4()))
        no_index = await gateway.apply_checkout_session(checkout_payload("modification", uuid4()))
        failed = await gateway.apply_checkout_session(checkout_payload("membership", refused.id))

        assert processed.outcome == "processed"
        assert processed.detail == "active"
        assert replayed.outcome == "already_processed"
        assert (unpaid.outcome, unpaid.detail) == ("skipped", "not_paid")
        assert (unknown.outcome, unknown.detail) == ("skipped", "unknown_entity_type")
        assert (malformed.outcome, malformed.detail) == ("skipped", "invalid_entity_id")
        assert missing.outcome == "skipped"
        assert (no_index.outcome, no_index.detail) == ("skipped", "invalid_modification_index")
        assert failed.outcome == "error"

        stored = await MembershipLedger(session, notifier=notifier).get(membership.id)
        assert stored.payment_ref == "pi_test"
        assert stored.payment_source == PaymentSourceEnum.GATEWAY


@pytest.mark.asyncio
async def test_apply_checkout_session_confirms_modification(session_factory, notifier, stripe_provider, checkout_payload):
    async with session_factory() as session:
        subscription = await _paid_insurance_with_modification(session, notifier)
        gateway = _gateway(session, stripe_provider, notifier)

        outcome = await gateway.apply_checkout_session(
            checkout_payload("modification", subscription.id, modification_index=0, payment_intent="pi_mod")
        )

        assert outcome.outcome == "processed"
        assert outcome.modification_index == 0
        stored = await SubscriptionLedger(session).get(subscription.id)
        assert stored.options_json["insurance_tier"] == "tier3"


@pytest.mark.asyncio
async def test_handle_webhook_records_event_and_absorbs_redelivery(session_factory, notifier, checkout_payload):
    provider = StripeBillingProvider("sk_test_dummy", WEBHOOK_SECRET)
    async with session_factory() as session:
        gateway = _gateway(session, provider, notifier)
        membership = await _pending_membership(session, notifier)
        payload = _event("evt_paid", checkout_payload("membership", membership.id))

        with pytest.raises(InvalidSignature):
            await gateway.handle_webhook(payload, "t=1,v1=deadbeef")

        first = await gateway.handle_webhook(payload, _signature(payload))
        second = await gateway.handle_webhook(payload, _signature(payload))

        assert first.status == "processed"
        assert first.duplicate is False
        assert second.status == "already_processed"
        assert second.duplicate is True

        events = (await session.execute(select(ProcessorEvent).execution_options(populate_existing=True))).scalars().all()
        assert len(events) == 1
        assert events[0].external_id == "evt_paid"
        assert events[0].delivery_count == 2
        assert events[0].entity_type == "membership"
        assert events[0].dispatch_outcome == "already_processed"


@pytest.mark.asyncio
async def test_handle_webhook_ignores_other_event_types(session_factory, notifier, checkout_payload):
    provider = StripeBillingProvider("sk_test_dummy", WEBHOOK_SECRET)
    async with session_factory() as session:
        gateway = _gateway(session, provider, notifier)
        membership = await _pending_membership(session, notifier)
        refund = _event("evt_refund", {"id": "ch_1", "metadata": {}}, event_type="charge.refunded")
        unpaid = _event("evt_unpaid", checkout_payload("membership", membership.id, payment_status="unpaid"))

        assert (await gateway.handle_webhook(refund, _signature(refund))).status == "ignored"
        assert (await gateway.handle_webhook(unpaid, _signature(unpaid))).status == "ignored"

        stored = await MembershipLedger(session, notifier=notifier).get(membership.id)
        assert stored.status == MembershipStatusEnum.PENDING
