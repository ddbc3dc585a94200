"""
gigcoins/features/plans/registry.py

Canonical plan registry.

Every consumer (pricing, subscriptions, proration, caps, resets) reads plan
data from PLANS; there is no other plan table in the codebase.
"""

from enum import Enum
from typing import Dict, List, Union

from gigcoins.core.errors import PlanNotFoundError, ValidationError
from gigcoins.models.plan import Plan


class PlanKey(str, Enum):
    FREE = "free"
    FREELANCER = "freelancer"
    PROFESSIONAL = "professional"
    EXPERT = "expert"
    ELITE = "elite"


PLANS: Dict[PlanKey, Plan] = {
    PlanKey.FREE: Plan(
        key=PlanKey.FREE.value,
        label="Free",
        monthly_allowance=20,
        monthly_price_cents=0,
        coin_cap=40,
        purchasable=False,
    ),
    PlanKey.FREELANCER: Plan(
        key=PlanKey.FREELANCER.value,
        label="Freelancer",
        monthly_allowance=40,
        monthly_price_cents=499,
        coin_cap=100,
    ),
    PlanKey.PROFESSIONAL: Plan(
        key=PlanKey.PROFESSIONAL.value,
        label="Professional",
        monthly_allowance=100,
        monthly_price_cents=999,
        coin_cap=400,
    ),
    PlanKey.EXPERT: Plan(
        key=PlanKey.EXPERT.value,
        label="Expert",
        monthly_allowance=250,
        monthly_price_cents=1999,
        coin_cap=1000,
    ),
    PlanKey.ELITE: Plan(
        key=PlanKey.ELITE.value,
        label="Elite",
        monthly_allowance=500,
        monthly_price_cents=3699,
        coin_cap=None,
    ),
}

FREE_PLAN = PLANS[PlanKey.FREE]


def get_plan(key: Union[str, PlanKey]) -> Plan:
    """Look up a plan by key. Raises PlanNotFoundError for unknown keys."""
    try:
        return PLANS[PlanKey(key)]
    except ValueError:
        raise PlanNotFoundError(f"Unknown plan: {key}")


def get_purchasable_plan(key: Union[str, PlanKey]) -> Plan:
    """Like get_plan, but rejects plans that cannot be subscribed to (free)."""
    plan = get_plan(key)
    if not plan.purchasable:
        raise ValidationError(f"Plan '{plan.key}' cannot be purchased")
    return plan


def list_plans(include_free: bool = False) -> List[Plan]:
    """Plans ordered by price, cheapest first."""
    plans = [p for p in PLANS.values() if include_free or p.purchasable]
    return sorted(plans, key=lambda p: p.monthly_price_cents)
