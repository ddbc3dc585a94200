"""
Subscription sweep.

- Applies scheduled downgrades whose effective time has passed: the lower plan
  starts a fresh billing period and the balance is clamped to its cap.
- Expires subscriptions whose paid period is over (canceled ones, and active
  ones with no scheduled downgrade, since renewal is a new checkout) and clamps
  the balance to whatever plan now applies (free unless resubscribed).

Every transition is a conditional update, so reruns and overlapping runs do
nothing twice.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update, and_

from gigcoins.core.config import EconomyConfig, load_settings
from gigcoins.core.database import get_db_session, subscriptions, utc_now, as_utc
from gigcoins.core.errors import BalanceConflictError, NotFoundError
from gigcoins.core.logging import bind_request_id, configure_logging, log_event
from gigcoins.features.billing import subscriptions as subscription_rows
from gigcoins.features.coins.balance import clamp_to_cap
from gigcoins.features.plans.registry import get_plan
from gigcoins.models.billing import SubscriptionStatus
from gigcoins.workers.job_runs import record_job_run

logger = logging.getLogger("gigcoins.workers.subscription_sweep")


def _clamp(session, user_id: str, plan, cfg: EconomyConfig, ts: datetime) -> None:
    try:
        clamp_to_cap(session, user_id, plan, config=cfg, now=ts)
    except NotFoundError:
        # Subscribed users without a coin balance have nothing to clamp
        logger.warning("no balance to clamp", extra={"user_id": user_id})


def apply_due_downgrades(ts: datetime, cfg: EconomyConfig) -> int:
    with get_db_session() as session:
        due = session.execute(
            select(subscriptions).where(
                and_(
                    subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                    subscriptions.c.pending_plan_key.isnot(None),
                    subscriptions.c.pending_plan_effective_at <= ts,
                )
            )
        ).fetchall()

    applied = 0
    for row in due:
        new_plan = get_plan(row.pending_plan_key)
        period_start = as_utc(row.pending_plan_effective_at)
        with get_db_session() as session:
            result = session.execute(
                update(subscriptions)
                .where(
                    and_(
                        subscriptions.c.id == row.id,
                        subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                        subscriptions.c.pending_plan_key == row.pending_plan_key,
                    )
                )
                .values(
                    plan_key=new_plan.key,
                    pending_plan_key=None,
                    pending_plan_effective_at=None,
                    current_period_start=period_start,
                    current_period_end=period_start + timedelta(days=cfg.billing_period_days),
                    updated_at=ts,
                )
            )
            if result.rowcount != 1:
                continue
            _clamp(session, row.user_id, new_plan, cfg, ts)
        applied += 1
        log_event("info", "subscription.downgraded", user_id=row.user_id, event_type="downgrade",
                  extra={"plan_key": new_plan.key})
    return applied


def expire_lapsed_subscriptions(ts: datetime, cfg: EconomyConfig) -> int:
    # Runs after apply_due_downgrades; a row still holding a downgrade is left for it
    with get_db_session() as session:
        lapsed = session.execute(
            select(subscriptions.c.id, subscriptions.c.user_id, subscriptions.c.status).where(
                and_(
                    subscriptions.c.status.in_(
                        [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELED.value]
                    ),
                    subscriptions.c.pending_plan_key.is_(None),
                    subscriptions.c.current_period_end <= ts,
                )
            )
        ).fetchall()

    expired = 0
    for sub_id, user_id, status in lapsed:
        with get_db_session() as session:
            if not subscription_rows.mark_expired(session, sub_id, SubscriptionStatus(status), ts):
                continue
            # Plan resolved after the update: free, or a newer subscription
            _clamp(session, user_id, None, cfg, ts)
        expired += 1
        log_event("info", "subscription.expired", user_id=user_id, event_type="expire")
    return expired


def run_subscription_sweep(now: Optional[datetime] = None, *, config: Optional[EconomyConfig] = None) -> dict:
    cfg = config or load_settings().economy()
    ts = now or utc_now()
    status = "success"
    stats = {"downgrades_applied": 0, "expired": 0}
    try:
        stats["downgrades_applied"] = apply_due_downgrades(ts, cfg)
        stats["expired"] = expire_lapsed_subscriptions(ts, cfg)
    except BalanceConflictError:
        status = "partial"
        logger.warning("subscription sweep stopped on a busy balance; next run resumes", exc_info=True)
    record_job_run("subscriptions.sweep", ts, status, stats)
    logger.info("[sweep] subscriptions", extra=stats)
    return stats


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    with bind_request_id(f"job:subscriptions:{uuid4().hex[:8]}"):
        print(run_subscription_sweep(config=settings.economy()))
