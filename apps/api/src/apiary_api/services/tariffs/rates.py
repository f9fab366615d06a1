"""Rate sheet configuration for memberships and add-on services."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import tomllib

from apiary_api.core.settings import settings
from apiary_api.models.membership import MembershipCategoryEnum
from apiary_api.models.payment import Organization
from apiary_api.models.subscription import ServiceKindEnum


def _membership_defaults() -> dict[tuple[Organization, MembershipCategoryEnum], Decimal]:
    return {
        (Organization.SAR, MembershipCategoryEnum.HOBBYIST): Decimal("30.00"),
        (Organization.SAR, MembershipCategoryEnum.PROFESSIONAL): Decimal("50.00"),
        (Organization.AMAIR, MembershipCategoryEnum.HOBBYIST): Decimal("25.00"),
        (Organization.AMAIR, MembershipCategoryEnum.PROFESSIONAL): Decimal("45.00"),
    }


def _insurance_tier_defaults() -> dict[str, Decimal]:
    # Insertion order is the upgrade order.
    return {
        "none": Decimal("0.00"),
        "tier1": Decimal("0.10"),
        "tier2": Decimal("1.65"),
        "tier3": Decimal("2.80"),
    }


def _publication_defaults() -> dict[str, Decimal]:
    return {
        "none": Decimal("0.00"),
        "paper": Decimal("31.00"),
        "digital": Decimal("18.00"),
        "paper_digital": Decimal("35.00"),
    }


def _add_on_defaults() -> dict[str, Decimal]:
    return {
        "legal_assistance": Decimal("0.15"),
        "eco_contribution": Decimal("0.12"),
    }


def _service_organization_defaults() -> dict[ServiceKindEnum, Organization]:
    return {
        ServiceKindEnum.HONEY_HOUSE: Organization.AMAIR,
        ServiceKindEnum.PARTNER_INSURANCE: Organization.SAR,
    }


@dataclass(slots=True, frozen=True)
class RateSheet:
    """Prices for one membership year."""

    year: int
    membership_fees: Mapping[tuple[Organization, MembershipCategoryEnum], Decimal] = field(
        default_factory=_membership_defaults
    )
    honey_house_usage_fee: Decimal = Decimal("25.00")
    honey_house_deposit: Decimal = Decimal("300.00")
    insurance_syndicate_fee: Decimal = Decimal("80.00")
    insurance_partner_fee: Decimal = Decimal("1.50")
    insurance_tiers: Mapping[str, Decimal] = field(default_factory=_insurance_tier_defaults)
    per_hive_add_ons: Mapping[str, Decimal] = field(default_factory=_add_on_defaults)
    publications: Mapping[str, Decimal] = field(default_factory=_publication_defaults)
    service_organizations: Mapping[ServiceKindEnum, Organization] = field(
        default_factory=_service_organization_defaults
    )
    minimum_chargeable: Decimal = Decimal("0.50")

    @property
    def tier_order(self) -> tuple[str, ...]:
        return tuple(self.insurance_tiers)

    def tier_rank(self, tier: str) -> int:
        return self.tier_order.index(tier)


def default_rate_sheet(year: int) -> RateSheet:
    """Return the built-in rate sheet for ``year``."""

    return RateSheet(year=year, minimum_chargeable=settings.minimum_chargeable_amount)


def _decimal_table(raw: Any, label: str) -> dict[str, Decimal]:
    if not isinstance(raw, dict):
        raise ValueError(f"Rate sheet section '{label}' must be a table")
    return {str(key): Decimal(str(value)) for key, value in raw.items()}


def load_rate_sheet(config_path: Path) -> RateSheet:
    """Load a rate sheet from a TOML file.

    Missing sections fall back to the built-in prices. Example::

        year = 2026
        minimum_chargeable = "0.50"

        [membership.SAR]
        hobbyist = "30.00"
        professional = "50.00"

        [insurance]
        syndicate_fee = "80.00"
        partner_fee = "1.50"
        tiers = { none = "0", tier1 = "0.10", tier2 = "1.65", tier3 = "2.80" }
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Rate sheet not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    year = int(data["year"])
    defaults = default_rate_sheet(year)

    membership_fees = dict(defaults.membership_fees)
    for organization, categories in (data.get("membership") or {}).items():
        for category, value in _decimal_table(categories, f"membership.{organization}").items():
            key = (Organization(organization), MembershipCategoryEnum(category))
            membership_fees[key] = value

    honey_house = data.get("honey_house") or {}
    insurance = data.get("insurance") or {}

    insurance_tiers = dict(defaults.insurance_tiers)
    if "tiers" in insurance:
        insurance_tiers = _decimal_table(insurance["tiers"], "insurance.tiers")
        if "none" not in insurance_tiers:
            insurance_tiers = {"none": Decimal("0.00"), **insurance_tiers}

    per_hive_add_ons = dict(defaults.per_hive_add_ons)
    if "add_ons" in insurance:
        per_hive_add_ons.update(_decimal_table(insurance["add_ons"], "insurance.add_ons"))

    publications = dict(defaults.publications)
    if "publications" in insurance:
        publications.update(_decimal_table(insurance["publications"], "insurance.publications"))

    return RateSheet(
        year=year,
        membership_fees=membership_fees,
        honey_house_usage_fee=Decimal(str(honey_house.get("usage_fee", defaults.honey_house_usage_fee))),
        honey_house_deposit=Decimal(str(honey_house.get("deposit", defaults.honey_house_deposit))),
        insurance_syndicate_fee=Decimal(str(insurance.get("syndicate_fee", defaults.insurance_syndicate_fee))),
        insurance_partner_fee=Decimal(str(insurance.get("partner_fee", defaults.insurance_partner_fee))),
        insurance_tiers=insurance_tiers,
        per_hive_add_ons=per_hive_add_ons,
        publications=publications,
        minimum_chargeable=Decimal(str(data.get("minimum_chargeable", defaults.minimum_chargeable))),
    )


def rate_sheet_for(year: int) -> RateSheet:
    """Resolve the sheet for ``year`` from the configured file, else the built-in prices."""

    if settings.rate_sheet_path:
        sheet = _load_configured(settings.rate_sheet_path)
        if sheet.year == year:
            return sheet
    return default_rate_sheet(year)


@lru_cache(maxsize=4)
def _load_configured(path: str) -> RateSheet:
    return load_rate_sheet(Path(path))


__all__ = ["RateSheet", "default_rate_sheet", "load_rate_sheet", "rate_sheet_for"]
