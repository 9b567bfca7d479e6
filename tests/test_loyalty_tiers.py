from dataclasses import dataclass
from decimal import Decimal

import pytest

from clubdk_api.services.loyalty.config import BonusConfiguration, build_bonus_configuration
from clubdk_api.services.loyalty.tiers import multiplier_for, resolve_tier, tier_progress
from clubdk_api.services.exceptions import LedgerValidationError


@dataclass
class Band:
    name: str
    min_spend: Decimal
    max_spend: Decimal | None
    points_multiplier: float


TIERS = [
    Band("Ouro", Decimal("1500"), None, 2.0),
    Band("Bronze", Decimal("0"), Decimal("500"), 1.0),
    Band("Prata", Decimal("500"), Decimal("1500"), 1.5),
]


@pytest.mark.parametrize(
    ("spend", "expected"),
    [
        (Decimal("0"), "Bronze"),
        (Decimal("499.99"), "Bronze"),
        (Decimal("500"), "Prata"),
        (Decimal("1499.99"), "Prata"),
        (Decimal("1500"), "Ouro"),
        (Decimal("99999"), "Ouro"),
    ],
)
def test_resolve_tier_uses_min_spend_boundaries(spend: Decimal, expected: str) -> None:
    assert resolve_tier(TIERS, spend).name == expected


def test_resolve_tier_without_matching_band_defaults_multiplier() -> None:
    tiers = [Band("Prata", Decimal("500"), None, 1.5)]

    tier = resolve_tier(tiers, Decimal("100"))

    assert tier is None
    assert multiplier_for(tier) == 1.0
    assert multiplier_for(tiers[0]) == 1.5


def test_tier_progress_reports_distance_to_next_band() -> None:
    progress = tier_progress(TIERS, Decimal("250"))

    assert progress.current.name == "Bronze"
    assert progress.next_tier.name == "Prata"
    assert progress.amount_to_next == Decimal("250.00")
    assert progress.progress_percent == 50.0


def test_tier_progress_at_top_band_is_complete() -> None:
    progress = tier_progress(TIERS, Decimal("2000"))

    assert progress.current.name == "Ouro"
    assert progress.next_tier is None
    assert progress.amount_to_next == Decimal("0")
    assert progress.progress_percent == 100.0


def test_recurrence_bonus_by_monthly_ordinal() -> None:
    config = BonusConfiguration(recurrence_2nd=10, recurrence_3rd=20, recurrence_4th=30)

    assert config.recurrence_bonus_for(1) == 0
    assert config.recurrence_bonus_for(2) == 10
    assert config.recurrence_bonus_for(3) == 20
    assert config.recurrence_bonus_for(4) == 30
    assert config.recurrence_bonus_for(9) == 30


def test_ticket_bonus_requires_threshold_and_amount() -> None:
    config = BonusConfiguration(ticket_threshold=Decimal("500"), ticket_bonus=50)

    assert config.qualifies_for_ticket_bonus(Decimal("500"))
    assert not config.qualifies_for_ticket_bonus(Decimal("499.99"))
    assert not BonusConfiguration(ticket_threshold=Decimal("0"), ticket_bonus=50).qualifies_for_ticket_bonus(
        Decimal("1000")
    )
    assert not BonusConfiguration(ticket_threshold=Decimal("500"), ticket_bonus=0).qualifies_for_ticket_bonus(
        Decimal("1000")
    )


def test_build_bonus_configuration_overlays_stored_values() -> None:
    config = build_bonus_configuration(
        {
            "loyalty_birthday_bonus": "200",
            "loyalty_ticket_threshold": "350.50",
            "loyalty_recurrence_3rd": "15",
        }
    )

    assert config.birthday_bonus == 200
    assert config.ticket_threshold == Decimal("350.50")
    assert config.recurrence_3rd == 15
    assert config.referral_bonus == 0


@pytest.mark.parametrize("raw", ["-5", "abc", "2.5"])
def test_build_bonus_configuration_rejects_invalid_points(raw: str) -> None:
    with pytest.raises(LedgerValidationError):
        build_bonus_configuration({"loyalty_referral_bonus": raw})
