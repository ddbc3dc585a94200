from decimal import Decimal

import pytest

from gigcoins.core.errors import ValidationError
from gigcoins.features.pricing.calculator import PRICING_TIERS, pricing_breakdown, tiered_price, tiered_price_cents


@pytest.mark.parametrize(
    "coins,expected",
    [
        (10, Decimal("2.00")),
        (100, Decimal("20.00")),
        (101, Decimal("20.15")),
        (300, Decimal("50.00")),
        (500, Decimal("70.00")),
        (750, Decimal("90.00")),
        (1000, Decimal("110.00")),
    ],
)
def test_tiered_price(coins, expected):
    assert tiered_price(coins) == expected


def test_price_in_cents_is_exact():
    assert tiered_price_cents(1000) == 11000
    assert isinstance(tiered_price_cents(333), int)


def test_breakdown_sums_to_total():
    lines = pricing_breakdown(350)
    assert [(line.range, line.coins_in_tier, line.rate_cents) for line in lines] == [
        ("1-100", 100, 20),
        ("101-300", 200, 15),
        ("301-500", 50, 10),
    ]
    assert sum(line.subtotal_cents for line in lines) == tiered_price_cents(350)
    assert lines[1].to_dict() == {"range": "101-300", "coins_in_tier": 200, "rate": "0.15", "subtotal": "30.00"}


def test_tiers_cover_the_purchasable_range_without_gaps():
    assert PRICING_TIERS[0][0] == 1
    assert PRICING_TIERS[-1][1] == 1000
    for (_, last, _), (first, _, _) in zip(PRICING_TIERS, PRICING_TIERS[1:]):
        assert first == last + 1


@pytest.mark.parametrize("coins", [0, 9, 1001, -10, 10.5, "100", None])
def test_out_of_range_quantities_rejected(coins):
    with pytest.raises(ValidationError):
        tiered_price(coins)
