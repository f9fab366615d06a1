"""Enumerations shared by the payment sub-records of memberships and subscriptions."""

from __future__ import annotations

from enum import Enum


class Organization(str, Enum):
    """Partner organizations issuing memberships."""

    SAR = "SAR"
    AMAIR = "AMAIR"


class PaymentStatusEnum(str, Enum):
    """Settlement state of a payment sub-record."""

    PENDING = "pending"
    PAID = "paid"


class PaymentSourceEnum(str, Enum):
    """Channel that confirmed a payment."""

    GATEWAY = "gateway"
    RECONCILIATION = "reconciliation"
    MANUAL = "manual"
    COMPANION = "companion"


__all__ = ["Organization", "PaymentSourceEnum", "PaymentStatusEnum"]
