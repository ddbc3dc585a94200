"""
Plan changes with day-based proration.

Upgrades charge the price difference for the days left in the current period
and switch the plan once the charge completes. Downgrades cost nothing and are
scheduled for the end of the period (applied by the subscription sweep).
"""
from datetime import datetime, timedelta
from typing import Optional

from gigcoins.core.database import get_db_session, utc_now, as_utc
from gigcoins.core.errors import NoActiveSubscriptionError, NoOpError, ValidationError
from gigcoins.core.logging import log_event
from gigcoins.features.billing import subscriptions as subscription_rows
from gigcoins.features.coins.balance import credit, ensure_fresh_balance
from gigcoins.features.notifications.service import SUBSCRIPTION_UPGRADED, notify_safely
from gigcoins.features.plans.registry import get_plan, get_purchasable_plan
from gigcoins.models.billing import PlanChange, PurchaseKind

_DAY = timedelta(days=1)


def ceil_days(delta: timedelta) -> int:
    """Whole days in delta, rounding any partial day up; never negative."""
    if delta <= timedelta(0):
        return 0
    whole, rest = divmod(delta, _DAY)
    return whole + (1 if rest else 0)


def compute_proration(
    old_price_cents: int,
    new_price_cents: int,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> int:
    """
    Charge for moving to a pricier plan mid-period, in cents.

    round((new - old) * days_remaining / days_total), half-up. Returns 0 for
    downgrades or when the period is already over.
    """
    diff = new_price_cents - old_price_cents
    if diff <= 0:
        return 0
    days_total = max(1, ceil_days(period_end - period_start))
    days_remaining = min(days_total, ceil_days(period_end - now))
    return (2 * diff * days_remaining + days_total) // (2 * days_total)


def change_plan(service, user_id: str, new_plan_key: str, now: Optional[datetime] = None) -> PlanChange:
    """
    Upgrade or downgrade the user's active subscription.

    Raises:
        PlanNotFoundError: unknown plan key
        ValidationError: target is the free plan (cancel instead)
        NoActiveSubscriptionError: nothing to change
        ValidationError: the paid period is over (subscribe again instead)
        NoOpError: target is the current plan
        PaymentGatewayError: the proration charge could not be created
    """
    ts = now or utc_now()
    new_plan = get_purchasable_plan(new_plan_key)

    with get_db_session() as db:
        row = subscription_rows.require_active_row(db, user_id)
    current = get_plan(row.plan_key)

    if new_plan.key == current.key:
        raise NoOpError(f"Already on the {current.key} plan")
    if subscription_rows.period_over(row, ts):
        raise ValidationError("The current billing period has ended; start a new subscription")

    if new_plan.monthly_price_cents < current.monthly_price_cents:
        effective_at = as_utc(row.current_period_end)
        with get_db_session() as db:
            if not subscription_rows.schedule_downgrade(db, row.id, new_plan.key, effective_at, ts):
                raise NoActiveSubscriptionError(f"User {user_id} has no active subscription")
        log_event("info", "subscription.downgrade_scheduled", user_id=user_id, event_type="downgrade",
                  extra={"plan_key": new_plan.key, "effective_at": effective_at.isoformat()})
        return PlanChange(
            type="downgrade",
            current_plan=current.key,
            new_plan=new_plan.key,
            effective_immediately=False,
            effective_at=effective_at,
        )

    prorated = compute_proration(
        current.monthly_price_cents,
        new_plan.monthly_price_cents,
        as_utc(row.current_period_start),
        as_utc(row.current_period_end),
        ts,
    )

    if prorated > 0:
        checkout = service.open_checkout(
            user_id,
            kind=PurchaseKind.SUBSCRIPTION_UPGRADE,
            coins=new_plan.monthly_allowance,
            amount_cents=prorated,
            plan_key=new_plan.key,
            subscription_id=row.id,
            now=ts,
        )
        return PlanChange(
            type="upgrade",
            current_plan=current.key,
            new_plan=new_plan.key,
            effective_immediately=False,
            prorated_cents=prorated,
            checkout=checkout,
        )

    # Rounded down to nothing: switch now and grant the new allowance
    with get_db_session() as db:
        before = ensure_fresh_balance(db, user_id, config=service.config, now=ts)
        if not subscription_rows.switch_plan(db, row.id, new_plan.key, ts):
            raise NoActiveSubscriptionError(f"User {user_id} has no active subscription")
        balance = credit(
            db,
            user_id,
            new_plan.monthly_allowance,
            "subscription_upgrade",
            config=service.config,
            now=ts,
            plan=new_plan,
            reference=row.id,
        )
    log_event("info", "subscription.upgraded", user_id=user_id, event_type="upgrade",
              extra={"plan_key": new_plan.key, "balance": balance.coins})
    notify_safely(service.notifier, user_id, SUBSCRIPTION_UPGRADED,
                  {"plan_key": new_plan.key, "coins": new_plan.monthly_allowance})
    return PlanChange(
        type="upgrade",
        current_plan=current.key,
        new_plan=new_plan.key,
        effective_immediately=True,
        coins_credited=balance.coins - before.coins,
    )
