from __future__ import annotations

from decimal import Decimal

import pytest

from apiary_api.domain.errors import (
    DuplicateSubscription,
    EntityNotFound,
    InvalidTransition,
    UpgradeOnlyViolation,
)
from apiary_api.models.membership import Membership, MembershipCategoryEnum, MembershipStatusEnum
from apiary_api.models.payment import Organization, PaymentStatusEnum
from apiary_api.models.subscription import DepositStatusEnum, ServiceKindEnum, SubscriptionStatusEnum
from apiary_api.services.subscriptions import SubscriptionLedger, derive_status

INSURANCE_OPTIONS = {"insurance_tier": "tier2", "legal_assistance": True}
PERSONAL_INFO = {
    "surname": "Martin",
    "given_name": "Claire",
    "email": "claire@example.org",
    "address": {"street": "1 rue des Ruches", "postal_code": "97400", "city": "Saint-Denis"},
}


async def _membership(
    session,
    organization: Organization,
    *,
    owner_id: str = "U1",
    status: MembershipStatusEnum = MembershipStatusEnum.ACTIVE,
    hive_count: int = 20,
) -> Membership:
    membership = Membership(
        owner_id=owner_id,
        organization=organization,
        year=2026,
        category=MembershipCategoryEnum.HOBBYIST,
        hive_count=hive_count,
        amount=Decimal("30.00"),
        payment_status=PaymentStatusEnum.PAID if status == MembershipStatusEnum.ACTIVE else PaymentStatusEnum.PENDING,
        status=status,
    )
    session.add(membership)
    await session.commit()
    return membership


async def _paid_insurance(ledger: SubscriptionLedger, session, owner_id: str = "U1"):
    membership = await _membership(session, Organization.SAR, owner_id=owner_id)
    subscription = await ledger.create(
        owner_id,
        membership.id,
        ServiceKindEnum.PARTNER_INSURANCE,
        INSURANCE_OPTIONS,
        PERSONAL_INFO,
    )
    await ledger.mark_paid(subscription.id, f"pi_{owner_id}")
    return subscription


def test_derive_status_covers_every_path():
    paid = PaymentStatusEnum.PAID
    pending = PaymentStatusEnum.PENDING
    insurance = ServiceKindEnum.PARTNER_INSURANCE
    honey = ServiceKindEnum.HONEY_HOUSE

    assert derive_status(honey, pending, DepositStatusEnum.RECEIVED, None) == SubscriptionStatusEnum.AWAITING_PAYMENT
    assert derive_status(honey, paid, DepositStatusEnum.PENDING, None) == SubscriptionStatusEnum.AWAITING_DEPOSIT
    assert derive_status(honey, paid, DepositStatusEnum.RECEIVED, None) == SubscriptionStatusEnum.ACTIVE
    assert derive_status(insurance, paid, None, None) == SubscriptionStatusEnum.AWAITING_VALIDATION


@pytest.mark.asyncio
async def test_create_enforces_membership_and_uniqueness(session_factory):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session)
        sar = await _membership(session, Organization.SAR)
        amair = await _membership(session, Organization.AMAIR)
        pending = await _membership(session, Organization.SAR, owner_id="U2", status=MembershipStatusEnum.PENDING)

        with pytest.raises(InvalidTransition):
            await ledger.create("U1", amair.id, ServiceKindEnum.PARTNER_INSURANCE, INSURANCE_OPTIONS)
        with pytest.raises(InvalidTransition):
            await ledger.create("U1", sar.id, ServiceKindEnum.HONEY_HOUSE)
        with pytest.raises(InvalidTransition):
            await ledger.create("U2", pending.id, ServiceKindEnum.PARTNER_INSURANCE, INSURANCE_OPTIONS)
        with pytest.raises(EntityNotFound):
            await ledger.create("U9", sar.id, ServiceKindEnum.PARTNER_INSURANCE, INSURANCE_OPTIONS)

        subscription = await ledger.create(
            "U1",
            sar.id,
            ServiceKindEnum.PARTNER_INSURANCE,
            INSURANCE_OPTIONS,
            PERSONAL_INFO,
        )
        assert subscription.amount == Decimal("117.50")
        assert subscription.hive_count == 20
        assert subscription.status == SubscriptionStatusEnum.AWAITING_PAYMENT
        assert subscription.options_json["insurance_tier"] == "tier2"
        assert subscription.options_json["publication"] == "none"
        assert subscription.amount_breakdown_json["total"] == "117.50"
        assert subscription.deposit_status is None

        with pytest.raises(DuplicateSubscription):
            await ledger.create("U1", sar.id, ServiceKindEnum.PARTNER_INSURANCE, {"insurance_tier": "tier1"})


@pytest.mark.asyncio
async def test_deposit_path_activates_once_deposit_is_received(session_factory, certificates, renderer):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session, certificates=certificates)
        membership = await _membership(session, Organization.AMAIR)
        subscription = await ledger.create("U1", membership.id, ServiceKindEnum.HONEY_HOUSE)

        assert subscription.amount == Decimal("25.00")
        assert subscription.deposit_amount == Decimal("300.00")
        assert subscription.deposit_status == DepositStatusEnum.PENDING

        paid = await ledger.mark_paid(subscription.id, "pi_honey")
        assert paid.applied is True
        assert paid.status == "awaiting_deposit"
        assert renderer.records == []

        received = await ledger.set_deposit_status(subscription.id, DepositStatusEnum.RECEIVED, note="cheque 0042")
        assert received.status == SubscriptionStatusEnum.ACTIVE
        assert received.deposit_received_at is not None
        assert received.deposit_note == "cheque 0042"
        assert received.activated_at is not None
        assert received.certificate_locator is not None

        again = await ledger.set_deposit_status(subscription.id, DepositStatusEnum.RECEIVED)
        assert again.status == SubscriptionStatusEnum.ACTIVE
        replay = await ledger.mark_paid(subscription.id, "pi_honey")
        assert replay.applied is False
        assert len(renderer.records) == 1

        returned = await ledger.set_deposit_status(subscription.id, DepositStatusEnum.RETURNED)
        assert returned.deposit_returned_at is not None
        assert returned.status == SubscriptionStatusEnum.ACTIVE
        with pytest.raises(InvalidTransition):
            await ledger.set_deposit_status(subscription.id, DepositStatusEnum.RECEIVED)


@pytest.mark.asyncio
async def test_deposit_received_before_payment_activates_on_payment(session_factory, certificates, renderer):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session, certificates=certificates)
        membership = await _membership(session, Organization.AMAIR)
        subscription = await ledger.create("U1", membership.id, ServiceKindEnum.HONEY_HOUSE)

        early = await ledger.set_deposit_status(subscription.id, DepositStatusEnum.RECEIVED)
        assert early.status == SubscriptionStatusEnum.AWAITING_PAYMENT

        paid = await ledger.mark_paid(subscription.id, "pi_honey")
        assert paid.status == "active"
        assert len(renderer.records) == 1


@pytest.mark.asyncio
async def test_deposit_status_rejected_for_fee_only_services(session_factory):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session)
        subscription = await _paid_insurance(ledger, session)

        with pytest.raises(InvalidTransition):
            await ledger.set_deposit_status(subscription.id, DepositStatusEnum.RECEIVED)


@pytest.mark.asyncio
async def test_partner_validation_activates_insurance_once(session_factory, certificates, renderer):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session, certificates=certificates)
        subscription = await _paid_insurance(ledger, session)

        assert (await ledger.get(subscription.id)).status == SubscriptionStatusEnum.AWAITING_VALIDATION
        assert await ledger.validate_by_partner(subscription.id) is True
        assert await ledger.validate_by_partner(subscription.id) is False

        stored = await ledger.get(subscription.id)
        assert stored.status == SubscriptionStatusEnum.ACTIVE
        assert stored.partner_validated_at is not None
        assert len(renderer.records) == 1
        assert renderer.records[0].holder == "Claire Martin"


@pytest.mark.asyncio
async def test_partner_validation_requires_payment(session_factory):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session)
        membership = await _membership(session, Organization.SAR)
        subscription = await ledger.create("U1", membership.id, ServiceKindEnum.PARTNER_INSURANCE, INSURANCE_OPTIONS)

        with pytest.raises(InvalidTransition):
            await ledger.validate_by_partner(subscription.id)


@pytest.mark.asyncio
async def test_modification_request_prices_upgrade_without_touching_options(session_factory):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session)
        membership = await _membership(session, Organization.SAR)
        unpaid = await ledger.create("U1", membership.id, ServiceKindEnum.PARTNER_INSURANCE, INSURANCE_OPTIONS)

        with pytest.raises(InvalidTransition):
            await ledger.request_modification(unpaid.id, {"insurance_tier": "tier3"})

        await ledger.mark_paid(unpaid.id, "pi_1")
        with pytest.raises(UpgradeOnlyViolation):
            await ledger.request_modification(unpaid.id, {"insurance_tier": "tier1"})

        entry = await ledger.request_modification(unpaid.id, {"insurance_tier": "tier3"})
        assert entry.position == 0
        assert entry.extra_amount == Decimal("23.00")
        assert entry.payment_status == PaymentStatusEnum.PENDING
        assert entry.delta_json["insurance_tier"] == {"from": "tier2", "to": "tier3", "amount": "23.00"}

        with pytest.raises(InvalidTransition):
            await ledger.request_modification(unpaid.id, {"publication": "paper"})

        stored = await ledger.get(unpaid.id)
        assert stored.options_json["insurance_tier"] == "tier2"
        assert len(stored.modifications) == 1


@pytest.mark.asyncio
async def test_confirm_modification_applies_delta_once(session_factory, certificates, renderer):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session, certificates=certificates)
        subscription = await _paid_insurance(ledger, session)
        await ledger.validate_by_partner(subscription.id)
        await ledger.request_modification(subscription.id, {"insurance_tier": "tier3"})

        first = await ledger.confirm_modification(subscription.id, 0, "pi_mod", checkout_session_id="cs_mod")
        second = await ledger.confirm_modification(subscription.id, 0, "pi_mod")

        assert first.applied is True
        assert first.modification_index == 0
        assert second.applied is False
        assert second.detail == "already_paid"

        stored = await ledger.get(subscription.id)
        assert stored.options_json["insurance_tier"] == "tier3"
        assert stored.options_json["legal_assistance"] is True
        assert stored.amount == Decimal("117.50")
        assert Decimal(stored.amount_breakdown_json["initial_payment"]) == Decimal("117.50")
        assert Decimal(stored.amount_breakdown_json["modifications_paid"]) == Decimal("23.00")
        assert stored.amount_breakdown_json["total"] == "140.50"

        entry = await ledger.get_modification(subscription.id, 0)
        assert entry.applied is True
        assert entry.payment_ref == "pi_mod"
        assert entry.checkout_session_id == "cs_mod"
        # activation certificate plus one reissue for the upgrade
        assert len(renderer.records) == 2

        follow_up = await ledger.request_modification(subscription.id, {"publication": "paper"})
        assert follow_up.position == 1
        assert follow_up.options_before_json["insurance_tier"] == "tier3"


@pytest.mark.asyncio
async def test_withdraw_only_removes_unpaid_modifications(session_factory):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session)
        subscription = await _paid_insurance(ledger, session)
        await ledger.request_modification(subscription.id, {"insurance_tier": "tier3"})

        await ledger.withdraw_modification(subscription.id, 0)
        with pytest.raises(EntityNotFound):
            await ledger.get_modification(subscription.id, 0)

        await ledger.request_modification(subscription.id, {"insurance_tier": "tier3"})
        await ledger.confirm_modification(subscription.id, 0, "pi_mod")
        with pytest.raises(InvalidTransition):
            await ledger.withdraw_modification(subscription.id, 0)


@pytest.mark.asyncio
async def test_modifications_only_for_insurance(session_factory):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session)
        membership = await _membership(session, Organization.AMAIR)
        subscription = await ledger.create("U1", membership.id, ServiceKindEnum.HONEY_HOUSE)
        await ledger.mark_paid(subscription.id, "pi_honey")

        with pytest.raises(InvalidTransition):
            await ledger.request_modification(subscription.id, {"insurance_tier": "tier3"})


@pytest.mark.asyncio
async def test_partner_validation_of_modification_reissues_certificate(session_factory, certificates, renderer):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session, certificates=certificates)
        subscription = await _paid_insurance(ledger, session)
        await ledger.validate_by_partner(subscription.id)
        await ledger.request_modification(subscription.id, {"insurance_tier": "tier3"})

        with pytest.raises(InvalidTransition):
            await ledger.validate_modification_by_partner(subscription.id, 0)

        await ledger.confirm_modification(subscription.id, 0, "pi_mod")
        assert await ledger.validate_modification_by_partner(subscription.id, 0) is True
        assert await ledger.validate_modification_by_partner(subscription.id, 0) is False
        assert len(renderer.records) == 3


@pytest.mark.asyncio
async def test_partner_validation_attests_eco_contribution(session_factory, certificates, renderer):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session, certificates=certificates)
        membership = await _membership(session, Organization.SAR)
        subscription = await ledger.create(
            "U1",
            membership.id,
            ServiceKindEnum.PARTNER_INSURANCE,
            {**INSURANCE_OPTIONS, "eco_contribution": True},
            PERSONAL_INFO,
        )
        await ledger.mark_paid(subscription.id, "pi_eco")

        assert await ledger.validate_by_partner(subscription.id) is True
        assert await ledger.validate_by_partner(subscription.id) is False

        stored = await ledger.get(subscription.id)
        assert [record.kind for record in renderer.records] == ["subscription", "eco_contribution"]
        assert renderer.records[1].details["amount"] == "2.40"
        assert stored.eco_contribution_locator == (
            f"memory://certificates/2026/eco_contribution/subscription-{subscription.id}-r0.pdf"
        )
        assert stored.eco_contribution_issued_at is not None
        assert stored.certificate_locator != stored.eco_contribution_locator


@pytest.mark.asyncio
async def test_eco_contribution_added_by_modification_is_attested(session_factory, certificates, renderer):
    async with session_factory() as session:
        ledger = SubscriptionLedger(session, certificates=certificates)
        subscription = await _paid_insurance(ledger, session)
        await ledger.validate_by_partner(subscription.id)
        assert [record.kind for record in renderer.records] == ["subscription"]

        await ledger.request_modification(subscription.id, {"eco_contribution": True})
        await ledger.confirm_modification(subscription.id, 0, "pi_eco_mod")
        assert await ledger.validate_modification_by_partner(subscription.id, 0) is True

        stored = await ledger.get(subscription.id)
        assert [record.kind for record in renderer.records][-1] == "eco_contribution"
        assert stored.eco_contribution_locator.endswith(f"subscription-{subscription.id}-r1.pdf")
