"""
Tiered marginal pricing for ad-hoc coin purchases.

Each coin is priced by the tier it falls into, like income tax brackets:
the first 100 coins cost 20 cents each, the next 200 cost 15, and so on.
Both the total and the per-tier breakdown are derived from PRICING_TIERS.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Tuple

from gigcoins.core.errors import ValidationError

CENT = Decimal("0.01")

MIN_COINS = 10
MAX_COINS = 1000

# (first coin, last coin, rate in cents per coin)
PRICING_TIERS: Tuple[Tuple[int, int, int], ...] = (
    (1, 100, 20),
    (101, 300, 15),
    (301, 500, 10),
    (501, 1000, 8),
)


def _dollars(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


@dataclass(frozen=True)
class TierLine:
    range: str
    coins_in_tier: int
    rate_cents: int
    subtotal_cents: int

    @property
    def rate(self) -> Decimal:
        return _dollars(self.rate_cents)

    @property
    def subtotal(self) -> Decimal:
        return _dollars(self.subtotal_cents)

    def to_dict(self) -> dict:
        return {
            "range": self.range,
            "coins_in_tier": self.coins_in_tier,
            "rate": str(self.rate),
            "subtotal": str(self.subtotal),
        }


def validate_coin_quantity(coins) -> int:
    if isinstance(coins, bool) or not isinstance(coins, int):
        raise ValidationError("Coin quantity must be an integer")
    if coins < MIN_COINS or coins > MAX_COINS:
        raise ValidationError(f"Coin quantity must be between {MIN_COINS} and {MAX_COINS}")
    return coins


def pricing_breakdown(coins: int) -> List[TierLine]:
    """Coins and subtotal contributed by each tier, skipping untouched tiers."""
    validate_coin_quantity(coins)
    lines = []
    remaining = coins
    for first, last, rate in PRICING_TIERS:
        if remaining <= 0:
            break
        in_tier = min(remaining, last - first + 1)
        lines.append(
            TierLine(
                range=f"{first}-{last}",
                coins_in_tier=in_tier,
                rate_cents=rate,
                subtotal_cents=in_tier * rate,
            )
        )
        remaining -= in_tier
    return lines


def tiered_price_cents(coins: int) -> int:
    """Total price in integer cents."""
    return sum(line.subtotal_cents for line in pricing_breakdown(coins))


def tiered_price(coins: int) -> Decimal:
    """Total price in dollars, exact."""
    return _dollars(tiered_price_cents(coins))
