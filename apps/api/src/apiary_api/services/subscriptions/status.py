"""Derived subscription status and its transition table."""

from __future__ import annotations

from datetime import datetime

from apiary_api.models.payment import PaymentStatusEnum
from apiary_api.models.subscription import DepositStatusEnum, ServiceKindEnum, SubscriptionStatusEnum

DEPOSIT_KINDS = frozenset({ServiceKindEnum.HONEY_HOUSE})
PARTNER_VALIDATED_KINDS = frozenset({ServiceKindEnum.PARTNER_INSURANCE})
EXPORTED_KINDS = PARTNER_VALIDATED_KINDS

ALLOWED_TRANSITIONS: dict[SubscriptionStatusEnum, frozenset[SubscriptionStatusEnum]] = {
    SubscriptionStatusEnum.AWAITING_PAYMENT: frozenset(
        {
            SubscriptionStatusEnum.AWAITING_DEPOSIT,
            SubscriptionStatusEnum.AWAITING_VALIDATION,
            SubscriptionStatusEnum.ACTIVE,
        }
    ),
    SubscriptionStatusEnum.AWAITING_DEPOSIT: frozenset({SubscriptionStatusEnum.ACTIVE}),
    SubscriptionStatusEnum.AWAITING_VALIDATION: frozenset({SubscriptionStatusEnum.ACTIVE}),
    SubscriptionStatusEnum.ACTIVE: frozenset(),
}

DEPOSIT_TRANSITIONS: dict[DepositStatusEnum, frozenset[DepositStatusEnum]] = {
    DepositStatusEnum.PENDING: frozenset({DepositStatusEnum.RECEIVED}),
    DepositStatusEnum.RECEIVED: frozenset({DepositStatusEnum.RETURNED}),
    DepositStatusEnum.RETURNED: frozenset(),
}


def derive_status(
    service_kind: ServiceKindEnum,
    payment_status: PaymentStatusEnum,
    deposit_status: DepositStatusEnum | None,
    partner_validated_at: datetime | None,
) -> SubscriptionStatusEnum:
    """Compute the status a subscription should hold from its sub-records."""

    if payment_status != PaymentStatusEnum.PAID:
        return SubscriptionStatusEnum.AWAITING_PAYMENT
    if service_kind in PARTNER_VALIDATED_KINDS and partner_validated_at is None:
        return SubscriptionStatusEnum.AWAITING_VALIDATION
    if service_kind in DEPOSIT_KINDS and deposit_status != DepositStatusEnum.RECEIVED:
        return SubscriptionStatusEnum.AWAITING_DEPOSIT
    return SubscriptionStatusEnum.ACTIVE


def can_transition(current: SubscriptionStatusEnum, target: SubscriptionStatusEnum) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DEPOSIT_KINDS",
    "DEPOSIT_TRANSITIONS",
    "EXPORTED_KINDS",
    "PARTNER_VALIDATED_KINDS",
    "can_transition",
    "derive_status",
]
