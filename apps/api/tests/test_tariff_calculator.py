from __future__ import annotations

from decimal import Decimal

import pytest

from apiary_api.domain.errors import BelowMinimumChargeable, TariffError
from apiary_api.models.membership import MembershipCategoryEnum
from apiary_api.models.payment import Organization
from apiary_api.models.subscription import ServiceKindEnum
from apiary_api.services.tariffs import (
    RateSheet,
    compute_membership_amount,
    compute_subscription_amount,
    default_rate_sheet,
    load_rate_sheet,
    normalize_options,
    round_amount,
    validate_modification,
)


@pytest.fixture
def rates() -> RateSheet:
    return default_rate_sheet(2026)


def test_insurance_quote_sums_base_fees_tier_and_add_on(rates):
    quote = compute_subscription_amount(
        rates,
        ServiceKindEnum.PARTNER_INSURANCE,
        {"insurance_tier": "tier2", "legal_assistance": True},
        20,
    )

    assert quote.amount == Decimal("117.50")
    assert quote.deposit is None
    assert quote.breakdown == {
        "syndicate_fee": Decimal("80.00"),
        "partner_fee": Decimal("1.50"),
        "insurance_tier": Decimal("33.00"),
        "legal_assistance": Decimal("3.00"),
    }
    payload = quote.breakdown_json()
    assert payload["total"] == "117.50"
    assert "deposit" not in payload


def test_insurance_quote_adds_publication_flat_fee(rates):
    quote = compute_subscription_amount(
        rates,
        ServiceKindEnum.PARTNER_INSURANCE,
        {"insurance_tier": "none", "publication": "digital"},
        4,
    )

    assert quote.breakdown["publication"] == Decimal("18.00")
    assert quote.amount == Decimal("99.50")


def test_honey_house_quote_carries_deposit(rates):
    quote = compute_subscription_amount(rates, ServiceKindEnum.HONEY_HOUSE, None, 0)

    assert quote.amount == Decimal("25.00")
    assert quote.deposit == Decimal("300.00")
    assert quote.breakdown_json()["deposit"] == "300.00"


def test_negative_hive_count_is_rejected(rates):
    with pytest.raises(TariffError):
        compute_subscription_amount(rates, ServiceKindEnum.PARTNER_INSURANCE, {}, -1)


def test_membership_fee_lookup(rates):
    assert compute_membership_amount(rates, Organization.SAR, MembershipCategoryEnum.HOBBYIST) == Decimal("30.00")
    assert compute_membership_amount(rates, Organization.AMAIR, MembershipCategoryEnum.PROFESSIONAL) == Decimal(
        "45.00"
    )

    empty = RateSheet(year=2026, membership_fees={})
    with pytest.raises(TariffError):
        compute_membership_amount(empty, Organization.SAR, MembershipCategoryEnum.HOBBYIST)


def test_normalize_options_fills_defaults_and_rejects_unknown_values(rates):
    assert normalize_options(rates, None) == {
        "insurance_tier": "none",
        "publication": "none",
        "legal_assistance": False,
        "eco_contribution": False,
    }
    with pytest.raises(TariffError):
        normalize_options(rates, {"insurance_tier": "platinum"})
    with pytest.raises(TariffError):
        normalize_options(rates, {"swarm_cover": True})


def test_round_amount_is_half_up():
    assert round_amount(Decimal("0.125")) == Decimal("0.13")
    assert round_amount(Decimal("2.004")) == Decimal("2.00")


def test_tier_upgrade_prices_only_the_tier_delta(rates):
    assessment = validate_modification(
        rates,
        {"insurance_tier": "tier2", "legal_assistance": True},
        {"insurance_tier": "tier3"},
        hive_count=20,
    )

    assert assessment.ok
    assert assessment.extra_amount == Decimal("23.00")
    assert list(assessment.delta) == ["insurance_tier"]
    assert assessment.delta["insurance_tier"]["from"] == "tier2"
    assert assessment.options_after["insurance_tier"] == "tier3"
    assert assessment.options_after["legal_assistance"] is True


def test_tier_one_to_three_is_accepted_and_three_to_one_rejected(rates):
    upgrade = validate_modification(rates, {"insurance_tier": "tier1"}, {"insurance_tier": "tier3"}, hive_count=20)
    downgrade = validate_modification(rates, {"insurance_tier": "tier3"}, {"insurance_tier": "tier1"}, hive_count=20)

    assert upgrade.ok
    assert upgrade.extra_amount == Decimal("54.00")
    assert upgrade.options_after["insurance_tier"] == "tier3"
    assert not downgrade.ok
    assert downgrade.extra_amount == Decimal("0.00")
    assert downgrade.options_after["insurance_tier"] == "tier3"


def test_upgrade_below_minimum_chargeable_is_refused(rates):
    with pytest.raises(BelowMinimumChargeable) as excinfo:
        validate_modification(rates, {"insurance_tier": "none"}, {"insurance_tier": "tier1"}, hive_count=3)

    assert excinfo.value.amount == Decimal("0.30")
    assert excinfo.value.minimum == Decimal("0.50")


def test_upgrade_at_minimum_chargeable_is_accepted(rates):
    assessment = validate_modification(rates, {"insurance_tier": "none"}, {"insurance_tier": "tier1"}, hive_count=5)

    assert assessment.ok
    assert assessment.extra_amount == Decimal("0.50")


@pytest.mark.parametrize(
    ("current", "requested"),
    [
        ({"insurance_tier": "tier3"}, {"insurance_tier": "tier2"}),
        ({"insurance_tier": "tier2"}, {"insurance_tier": "tier2"}),
        ({"publication": "paper"}, {"publication": "digital"}),
        ({"legal_assistance": True}, {"legal_assistance": False}),
        ({"legal_assistance": True}, {"legal_assistance": True}),
        ({}, {"swarm_cover": True}),
        ({}, {"legal_assistance": False}),
    ],
)
def test_modification_must_be_a_billable_upgrade(rates, current, requested):
    assessment = validate_modification(rates, current, requested, hive_count=10)

    assert not assessment.ok
    assert assessment.extra_amount == Decimal("0.00")
    assert assessment.delta == {}


def test_rejected_modification_keeps_current_options(rates):
    assessment = validate_modification(
        rates,
        {"insurance_tier": "tier2"},
        {"insurance_tier": "tier3", "publication": "platinum"},
        hive_count=10,
    )

    assert not assessment.ok
    assert assessment.options_after["insurance_tier"] == "tier2"


def test_load_rate_sheet_overrides_selected_prices(tmp_path):
    config = tmp_path / "rates.toml"
    config.write_text(
        "\n".join(
            [
                "year = 2027",
                'minimum_chargeable = "1.00"',
                "",
                "[membership.SAR]",
                'hobbyist = "32.00"',
                "",
                "[honey_house]",
                'usage_fee = "27.50"',
                "",
                "[insurance]",
                'tiers = { tier1 = "0.20", tier2 = "1.80" }',
            ]
        )
    )

    sheet = load_rate_sheet(config)

    assert sheet.year == 2027
    assert sheet.minimum_chargeable == Decimal("1.00")
    assert sheet.membership_fees[(Organization.SAR, MembershipCategoryEnum.HOBBYIST)] == Decimal("32.00")
    assert sheet.membership_fees[(Organization.SAR, MembershipCategoryEnum.PROFESSIONAL)] == Decimal("50.00")
    assert sheet.honey_house_usage_fee == Decimal("27.50")
    assert sheet.tier_order == ("none", "tier1", "tier2")


def test_load_rate_sheet_requires_existing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_rate_sheet(tmp_path / "missing.toml")
