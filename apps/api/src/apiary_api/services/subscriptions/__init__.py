"""Subscription ledger and derived status."""

from .ledger import SubscriptionLedger
from .status import derive_status

__all__ = ["SubscriptionLedger", "derive_status"]
