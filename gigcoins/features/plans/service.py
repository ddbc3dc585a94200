"""
gigcoins/features/plans/service.py

Resolves which plan currently governs a user's coins.

Handles:
- Active subscriptions inside their paid period
- Canceled subscriptions still inside their paid period (grace access)
- Fallback to the free plan once no subscription applies
"""

from datetime import datetime

from sqlalchemy import select, and_, or_
from sqlalchemy.orm import Session

from gigcoins.core.database import subscriptions, as_utc
from gigcoins.features.plans.registry import FREE_PLAN, get_plan
from gigcoins.models.plan import Plan


def find_current_subscription_row(db: Session, user_id: str, now: datetime):
    """
    Return the subscription row that grants access right now, if any.

    A row qualifies only until its current_period_end, active or canceled.
    Each checkout pays for one period, so a lapsed row stops granting its
    plan even before the subscription sweep marks it expired. Active rows
    win over canceled ones.
    """
    rows = db.execute(
        select(subscriptions)
        .where(
            and_(
                subscriptions.c.user_id == user_id,
                or_(
                    subscriptions.c.status == "active",
                    subscriptions.c.status == "canceled",
                ),
                subscriptions.c.current_period_end > now,
            )
        )
        .order_by(subscriptions.c.created_at.desc())
    ).fetchall()

    for status in ("active", "canceled"):
        for row in rows:
            if row.status == status and as_utc(row.current_period_end) > now:
                return row
    return None


def effective_plan(db: Session, user_id: str, now: datetime) -> Plan:
    """Plan that sets the user's allowance and cap at `now`."""
    row = find_current_subscription_row(db, user_id, now)
    if row is None:
        return FREE_PLAN
    return get_plan(row.plan_key)
