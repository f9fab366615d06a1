"""Tariff calculator and rate sheets."""

from .calculator import (
    ModificationAssessment,
    SubscriptionQuote,
    compute_membership_amount,
    compute_subscription_amount,
    normalize_options,
    round_amount,
    validate_modification,
)
from .rates import RateSheet, default_rate_sheet, load_rate_sheet, rate_sheet_for

__all__ = [
    "ModificationAssessment",
    "RateSheet",
    "SubscriptionQuote",
    "compute_membership_amount",
    "compute_subscription_amount",
    "default_rate_sheet",
    "load_rate_sheet",
    "normalize_options",
    "rate_sheet_for",
    "round_amount",
    "validate_modification",
]
