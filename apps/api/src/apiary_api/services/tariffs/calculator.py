"""Pure tariff computations for memberships, subscriptions and modifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from apiary_api.domain.errors import BelowMinimumChargeable, TariffError
from apiary_api.models.membership import MembershipCategoryEnum
from apiary_api.models.payment import Organization
from apiary_api.models.subscription import ServiceKindEnum

from .rates import RateSheet

_CENT = Decimal("0.01")

INSURANCE_TIER = "insurance_tier"
PUBLICATION = "publication"
LEGAL_ASSISTANCE = "legal_assistance"
ECO_CONTRIBUTION = "eco_contribution"
ADD_ON_FIELDS = (LEGAL_ASSISTANCE, ECO_CONTRIBUTION)
OPTION_FIELDS = (INSURANCE_TIER, PUBLICATION, *ADD_ON_FIELDS)


def round_amount(value: Decimal) -> Decimal:
    """Round to cents, half-up."""

    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class SubscriptionQuote:
    """Itemized price of a subscription."""

    amount: Decimal
    deposit: Decimal | None
    breakdown: dict[str, Decimal]

    def breakdown_json(self) -> dict[str, str]:
        payload = {key: str(value) for key, value in self.breakdown.items()}
        payload["total"] = str(self.amount)
        if self.deposit is not None:
            payload["deposit"] = str(self.deposit)
        return payload


@dataclass(slots=True)
class ModificationAssessment:
    """Outcome of validating an upgrade request against the live options."""

    errors: list[str] = field(default_factory=list)
    delta: dict[str, dict[str, Any]] = field(default_factory=dict)
    extra_amount: Decimal = Decimal("0.00")
    options_after: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def normalize_options(rates: RateSheet, options: Mapping[str, Any] | None) -> dict[str, Any]:
    """Fill in defaults and reject unknown tiers or publications."""

    source = dict(options or {})
    unknown = sorted(set(source) - set(OPTION_FIELDS))
    if unknown:
        raise TariffError(f"Unknown subscription options: {', '.join(unknown)}")

    tier = str(source.get(INSURANCE_TIER) or "none")
    if tier not in rates.insurance_tiers:
        raise TariffError(f"Unknown insurance tier '{tier}'")
    publication = str(source.get(PUBLICATION) or "none")
    if publication not in rates.publications:
        raise TariffError(f"Unknown publication option '{publication}'")

    normalized: dict[str, Any] = {INSURANCE_TIER: tier, PUBLICATION: publication}
    for add_on in ADD_ON_FIELDS:
        normalized[add_on] = bool(source.get(add_on, False))
    return normalized


def compute_membership_amount(
    rates: RateSheet,
    organization: Organization,
    category: MembershipCategoryEnum,
) -> Decimal:
    try:
        return round_amount(rates.membership_fees[(Organization(organization), MembershipCategoryEnum(category))])
    except (KeyError, ValueError) as exc:
        raise TariffError(f"No membership fee for {organization}/{category} in {rates.year}") from exc


def compute_subscription_amount(
    rates: RateSheet,
    service_kind: ServiceKindEnum,
    options: Mapping[str, Any] | None,
    hive_count: int,
) -> SubscriptionQuote:
    """Price a subscription from its option set and hive count."""

    if hive_count < 0:
        raise TariffError("Hive count cannot be negative")

    if service_kind == ServiceKindEnum.HONEY_HOUSE:
        fee = round_amount(rates.honey_house_usage_fee)
        return SubscriptionQuote(
            amount=fee,
            deposit=round_amount(rates.honey_house_deposit),
            breakdown={"usage_fee": fee},
        )

    if service_kind != ServiceKindEnum.PARTNER_INSURANCE:
        raise TariffError(f"Unsupported service kind '{service_kind}'")

    normalized = normalize_options(rates, options)
    hives = Decimal(hive_count)
    breakdown: dict[str, Decimal] = {
        "syndicate_fee": round_amount(rates.insurance_syndicate_fee),
        "partner_fee": round_amount(rates.insurance_partner_fee),
        INSURANCE_TIER: round_amount(rates.insurance_tiers[normalized[INSURANCE_TIER]] * hives),
    }
    for add_on in ADD_ON_FIELDS:
        if normalized[add_on]:
            breakdown[add_on] = round_amount(rates.per_hive_add_ons[add_on] * hives)
    if normalized[PUBLICATION] != "none":
        breakdown[PUBLICATION] = round_amount(rates.publications[normalized[PUBLICATION]])

    return SubscriptionQuote(
        amount=round_amount(sum(breakdown.values(), Decimal("0"))),
        deposit=None,
        breakdown=breakdown,
    )


def validate_modification(
    rates: RateSheet,
    current_options: Mapping[str, Any] | None,
    requested_changes: Mapping[str, Any],
    *,
    hive_count: int,
) -> ModificationAssessment:
    """Check an upgrade request and price it.

    Rule breaches are returned as ``errors``. A positive amount under the
    gateway floor raises :class:`BelowMinimumChargeable`.
    """

    current = normalize_options(rates, current_options)
    assessment = ModificationAssessment(options_after=dict(current))
    hives = Decimal(hive_count)

    for key in requested_changes:
        if key not in OPTION_FIELDS:
            assessment.errors.append(f"Unknown option '{key}'")

    if INSURANCE_TIER in requested_changes:
        requested_tier = str(requested_changes[INSURANCE_TIER])
        current_tier = current[INSURANCE_TIER]
        if requested_tier not in rates.insurance_tiers:
            assessment.errors.append(f"Unknown insurance tier '{requested_tier}'")
        elif rates.tier_rank(requested_tier) <= rates.tier_rank(current_tier):
            assessment.errors.append(
                f"Insurance tier can only be upgraded (current {current_tier}, requested {requested_tier})"
            )
        else:
            amount = round_amount(
                (rates.insurance_tiers[requested_tier] - rates.insurance_tiers[current_tier]) * hives
            )
            assessment.delta[INSURANCE_TIER] = {"from": current_tier, "to": requested_tier, "amount": amount}
            assessment.options_after[INSURANCE_TIER] = requested_tier

    if PUBLICATION in requested_changes:
        requested_publication = str(requested_changes[PUBLICATION] or "none")
        if current[PUBLICATION] != "none":
            assessment.errors.append(f"Publication already selected ({current[PUBLICATION]})")
        elif requested_publication not in rates.publications:
            assessment.errors.append(f"Unknown publication option '{requested_publication}'")
        elif requested_publication != "none":
            amount = round_amount(rates.publications[requested_publication])
            assessment.delta[PUBLICATION] = {"from": "none", "to": requested_publication, "amount": amount}
            assessment.options_after[PUBLICATION] = requested_publication

    for add_on in ADD_ON_FIELDS:
        if add_on not in requested_changes:
            continue
        wanted = bool(requested_changes[add_on])
        if current[add_on] and wanted:
            assessment.errors.append(f"Add-on '{add_on}' is already enabled")
        elif current[add_on] and not wanted:
            assessment.errors.append(f"Add-on '{add_on}' cannot be removed")
        elif wanted:
            amount = round_amount(rates.per_hive_add_ons[add_on] * hives)
            assessment.delta[add_on] = {"from": False, "to": True, "amount": amount}
            assessment.options_after[add_on] = True

    if assessment.errors:
        assessment.delta.clear()
        assessment.options_after = dict(current)
        return assessment

    if not assessment.delta:
        assessment.errors.append("No billable change requested")
        return assessment

    extra_amount = round_amount(sum((entry["amount"] for entry in assessment.delta.values()), Decimal("0")))
    if extra_amount <= 0:
        assessment.errors.append("Modification must carry a positive amount")
        return assessment
    if extra_amount < rates.minimum_chargeable:
        raise BelowMinimumChargeable(extra_amount, rates.minimum_chargeable)

    assessment.extra_amount = extra_amount
    return assessment


__all__ = [
    "ADD_ON_FIELDS",
    "ECO_CONTRIBUTION",
    "INSURANCE_TIER",
    "LEGAL_ASSISTANCE",
    "ModificationAssessment",
    "OPTION_FIELDS",
    "PUBLICATION",
    "SubscriptionQuote",
    "compute_membership_amount",
    "compute_subscription_amount",
    "normalize_options",
    "round_amount",
    "validate_modification",
]
