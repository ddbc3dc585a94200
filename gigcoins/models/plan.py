"""
gigcoins/models/plan.py

Plan model: a subscription tier with a monthly price, allowance and coin cap.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    """
    Plan represents a subscription tier.

    coin_cap of None means the plan has no cap (credits accumulate freely).
    Plans are immutable at runtime; see features/plans/registry.py.
    """
    model_config = ConfigDict(frozen=True)

    key: str
    label: str
    monthly_allowance: int
    monthly_price_cents: int
    coin_cap: Optional[int] = None
    purchasable: bool = True

    @property
    def unlimited_cap(self) -> bool:
        return self.coin_cap is None

    def clamp(self, coins: int) -> int:
        """Largest balance this plan permits for the given amount."""
        if self.coin_cap is None:
            return coins
        return min(coins, self.coin_cap)
