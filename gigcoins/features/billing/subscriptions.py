"""
Subscription record access.

Row-level helpers shared by the billing service, the proration engine and the
subscription sweep. Callers own the session; nothing here commits.
"""
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, and_
from sqlalchemy.orm import Session

from gigcoins.core.database import subscriptions, billing_customers, as_utc
from gigcoins.core.errors import NoActiveSubscriptionError
from gigcoins.models.billing import Subscription, SubscriptionStatus


def to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_key=row.plan_key,
        status=SubscriptionStatus(row.status),
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        canceled_at=as_utc(row.canceled_at),
        external_customer_ref=row.external_customer_ref,
        external_charge_ref=row.external_charge_ref,
        pending_plan_key=row.pending_plan_key,
        pending_plan_effective_at=as_utc(row.pending_plan_effective_at),
    )


def find_active_row(db: Session, user_id: str):
    return db.execute(
        select(subscriptions).where(
            and_(
                subscriptions.c.user_id == user_id,
                subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
            )
        )
    ).fetchone()


def require_active_row(db: Session, user_id: str):
    row = find_active_row(db, user_id)
    if row is None:
        raise NoActiveSubscriptionError(f"User {user_id} has no active subscription")
    return row


def get_row(db: Session, subscription_id: str):
    return db.execute(select(subscriptions).where(subscriptions.c.id == subscription_id)).fetchone()


def find_by_charge_ref(db: Session, payment_ref: str):
    return db.execute(
        select(subscriptions).where(subscriptions.c.external_charge_ref == payment_ref)
    ).fetchone()


def customer_ref_for(db: Session, user_id: str) -> Optional[str]:
    row = db.execute(
        select(billing_customers.c.external_customer_ref).where(billing_customers.c.user_id == user_id)
    ).fetchone()
    return row[0] if row else None


def insert_active(
    db: Session,
    *,
    user_id: str,
    plan_key: str,
    payment_ref: str,
    now: datetime,
    period_days: int,
) -> str:
    """Insert a new active subscription starting now. Returns its id."""
    subscription_id = str(uuid4())
    db.execute(
        insert(subscriptions).values(
            id=subscription_id,
            user_id=user_id,
            plan_key=plan_key,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days),
            external_customer_ref=customer_ref_for(db, user_id),
            external_charge_ref=payment_ref,
            created_at=now,
            updated_at=now,
        )
    )
    return subscription_id


def switch_plan(
    db: Session,
    subscription_id: str,
    plan_key: str,
    now: datetime,
    *,
    include_canceled: bool = False,
) -> bool:
    """
    Move a subscription to plan_key and drop any scheduled downgrade.

    include_canceled also switches a canceled row, keeping its grace period
    (an upgrade paid for before the user canceled).
    """
    statuses = [SubscriptionStatus.ACTIVE.value]
    if include_canceled:
        statuses.append(SubscriptionStatus.CANCELED.value)
    result = db.execute(
        update(subscriptions)
        .where(
            and_(
                subscriptions.c.id == subscription_id,
                subscriptions.c.status.in_(statuses),
            )
        )
        .values(
            plan_key=plan_key,
            pending_plan_key=None,
            pending_plan_effective_at=None,
            updated_at=now,
        )
    )
    return result.rowcount == 1


def schedule_downgrade(db: Session, subscription_id: str, plan_key: str, effective_at: datetime, now: datetime) -> bool:
    result = db.execute(
        update(subscriptions)
        .where(
            and_(
                subscriptions.c.id == subscription_id,
                subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        .values(
            pending_plan_key=plan_key,
            pending_plan_effective_at=effective_at,
            updated_at=now,
        )
    )
    return result.rowcount == 1


def mark_canceled(db: Session, subscription_id: str, now: datetime) -> bool:
    """ACTIVE -> CANCELED; the paid period is kept as grace access."""
    result = db.execute(
        update(subscriptions)
        .where(
            and_(
                subscriptions.c.id == subscription_id,
                subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        .values(
            status=SubscriptionStatus.CANCELED.value,
            canceled_at=now,
            pending_plan_key=None,
            pending_plan_effective_at=None,
            updated_at=now,
        )
    )
    return result.rowcount == 1


def mark_expired(db: Session, subscription_id: str, status: SubscriptionStatus, now: datetime) -> bool:
    """ACTIVE or CANCELED -> EXPIRED, conditional on the status that was read."""
    result = db.execute(
        update(subscriptions)
        .where(
            and_(
                subscriptions.c.id == subscription_id,
                subscriptions.c.status == status.value,
            )
        )
        .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
    )
    return result.rowcount == 1


def period_over(row, now: datetime) -> bool:
    """The paid period of this row has ended (renewal is a new checkout)."""
    return as_utc(row.current_period_end) <= now
