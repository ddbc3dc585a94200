"""
Coin balance store.

Handles:
- Balance creation with the welcome grant
- Lazy monthly reset (overwrite to the plan allowance)
- Cap enforcement after credits
- Admin credit / debit / set

Every mutation is a compare-and-set on coin_balances.version (resets are also
guarded by the stored last_reset_at) inside a bounded retry loop, and appends one
coin_ledger row in the same transaction. Functions take the caller's Session and
never commit; the caller's unit of work decides.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gigcoins.core.config import EconomyConfig
from gigcoins.core.database import coin_balances, get_db_session, utc_now, as_utc
from gigcoins.core.errors import BalanceConflictError, NotFoundError, ValidationError
from gigcoins.core.logging import log_event
from gigcoins.features.coins.ledger import append_ledger_entry
from gigcoins.features.plans.service import effective_plan
from gigcoins.models.balance import Balance
from gigcoins.models.plan import Plan

logger = logging.getLogger("gigcoins.coins.balance")


def _to_balance(row) -> Balance:
    return Balance(
        user_id=row.user_id,
        coins=row.coins,
        last_reset_at=as_utc(row.last_reset_at),
        version=row.version,
    )


def _read_row(db: Session, user_id: str):
    row = db.execute(
        select(
            coin_balances.c.user_id,
            coin_balances.c.coins,
            coin_balances.c.last_reset_at,
            coin_balances.c.version,
        ).where(coin_balances.c.user_id == user_id)
    ).fetchone()
    if row is None:
        raise NotFoundError(f"No coin balance for user {user_id}", code="balance_not_found")
    return row


def balance_exists(db: Session, user_id: str) -> bool:
    return db.execute(
        select(coin_balances.c.user_id).where(coin_balances.c.user_id == user_id)
    ).fetchone() is not None


def require_whole_coins(amount, *, allow_zero: bool = False) -> int:
    """Coin amounts are plain integers; bools and floats are rejected."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Coin amount must be an integer")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError("Coin amount must be positive" if not allow_zero else "Coin amount cannot be negative")
    return amount


def open_balance(db: Session, user_id: str, *, config: EconomyConfig, now: Optional[datetime] = None) -> Balance:
    """
    Create the user's balance with the welcome grant (idempotent).

    Meant to run in its own session at signup: on a concurrent insert the
    session is rolled back and the winner's row is returned.
    """
    ts = now or utc_now()
    existing = db.execute(
        select(coin_balances).where(coin_balances.c.user_id == user_id)
    ).fetchone()
    if existing is not None:
        return _to_balance(existing)

    try:
        db.execute(
            insert(coin_balances).values(
                user_id=user_id,
                coins=config.welcome_grant,
                last_reset_at=ts,
                version=0,
                created_at=ts,
                updated_at=ts,
            )
        )
        append_ledger_entry(
            db,
            user_id=user_id,
            delta=config.welcome_grant,
            reason="welcome_grant",
            balance_after=config.welcome_grant,
            now=ts,
        )
        db.flush()
    except IntegrityError:
        db.rollback()
        return _to_balance(_read_row(db, user_id))

    log_event("info", "coins.welcome_grant", user_id=user_id, event_type="welcome_grant",
              extra={"amount": config.welcome_grant})
    return Balance(user_id=user_id, coins=config.welcome_grant, last_reset_at=ts, version=0)


def apply_balance_change(
    db: Session,
    user_id: str,
    compute: Callable[[int], int],
    reason: str,
    *,
    config: EconomyConfig,
    now: datetime,
    reference: Optional[str] = None,
) -> Balance:
    """
    Optimistic update loop.

    compute(current_coins) returns the new balance or raises to abort. The
    update only lands if the row still carries the version that was read.
    """
    for attempt in range(config.max_balance_retries):
        row = _read_row(db, user_id)
        new_coins = compute(row.coins)
        if new_coins < 0:
            raise ValidationError("Balance cannot go negative")
        if new_coins == row.coins:
            return _to_balance(row)

        result = db.execute(
            update(coin_balances)
            .where(
                coin_balances.c.user_id == user_id,
                coin_balances.c.version == row.version,
            )
            .values(
                coins=new_coins,
                version=coin_balances.c.version + 1,
                updated_at=now,
            )
        )
        if result.rowcount == 1:
            append_ledger_entry(
                db,
                user_id=user_id,
                delta=new_coins - row.coins,
                reason=reason,
                balance_after=new_coins,
                now=now,
                reference=reference,
            )
            return Balance(
                user_id=user_id,
                coins=new_coins,
                last_reset_at=as_utc(row.last_reset_at),
                version=row.version + 1,
            )
        logger.debug("balance CAS lost", extra={"user_id": user_id, "attempt": attempt})

    log_event("warning", "coins.cas_exhausted", user_id=user_id, error_code="balance_conflict",
              extra={"reason": reason})
    raise BalanceConflictError(f"Balance for {user_id} is changing too quickly; retry")


def ensure_fresh_balance(db: Session, user_id: str, *, config: EconomyConfig, now: Optional[datetime] = None) -> Balance:
    """
    Apply the monthly reset if it is due.

    Once reset_interval_days have passed since last_reset_at, the balance is
    set (not added) to the effective plan's monthly allowance and
    last_reset_at moves to now. The update is conditional on the last_reset_at
    and version that were read, so concurrent callers produce a single reset.
    """
    ts = now or utc_now()
    interval = timedelta(days=config.reset_interval_days)

    for _ in range(config.max_balance_retries):
        row = _read_row(db, user_id)
        if ts - as_utc(row.last_reset_at) < interval:
            return _to_balance(row)

        plan = effective_plan(db, user_id, ts)
        new_coins = plan.clamp(plan.monthly_allowance)
        result = db.execute(
            update(coin_balances)
            .where(
                coin_balances.c.user_id == user_id,
                coin_balances.c.last_reset_at == row.last_reset_at,
                coin_balances.c.version == row.version,
            )
            .values(
                coins=new_coins,
                last_reset_at=ts,
                version=coin_balances.c.version + 1,
                updated_at=ts,
            )
        )
        if result.rowcount == 1:
            append_ledger_entry(
                db,
                user_id=user_id,
                delta=new_coins - row.coins,
                reason="monthly_reset",
                balance_after=new_coins,
                now=ts,
                reference=plan.key,
            )
            log_event("info", "coins.reset", user_id=user_id, event_type="monthly_reset",
                      extra={"plan_key": plan.key, "balance": new_coins})
            return Balance(user_id=user_id, coins=new_coins, last_reset_at=ts, version=row.version + 1)

    raise BalanceConflictError(f"Balance for {user_id} is changing too quickly; retry")


def get_balance(db: Session, user_id: str, *, config: EconomyConfig, now: Optional[datetime] = None) -> int:
    """Current coin balance (after any due reset)."""
    return ensure_fresh_balance(db, user_id, config=config, now=now).coins


def days_until_reset(balance: Balance, *, config: EconomyConfig, now: Optional[datetime] = None) -> int:
    ts = now or utc_now()
    elapsed = (ts - balance.last_reset_at).days
    return max(0, config.reset_interval_days - elapsed)


def clamp_to_cap(
    db: Session,
    user_id: str,
    plan: Optional[Plan] = None,
    *,
    config: EconomyConfig,
    now: Optional[datetime] = None,
) -> Balance:
    """
    Truncate the balance to the plan's coin cap.

    Never increases a balance; a no-op for plans without a cap.
    """
    ts = now or utc_now()
    plan = plan or effective_plan(db, user_id, ts)
    if plan.unlimited_cap:
        return _to_balance(_read_row(db, user_id))
    return apply_balance_change(
        db,
        user_id,
        lambda coins: min(coins, plan.coin_cap),
        "cap_clamp",
        config=config,
        now=ts,
        reference=plan.key,
    )


def credit(
    db: Session,
    user_id: str,
    amount: int,
    reason: str,
    *,
    config: EconomyConfig,
    now: Optional[datetime] = None,
    plan: Optional[Plan] = None,
    reference: Optional[str] = None,
) -> Balance:
    """
    Add coins, then clamp to the governing plan's cap.

    A due reset is applied first so the credit is not wiped by it afterwards.
    """
    require_whole_coins(amount)
    ts = now or utc_now()
    ensure_fresh_balance(db, user_id, config=config, now=ts)
    plan = plan or effective_plan(db, user_id, ts)
    balance = apply_balance_change(
        db,
        user_id,
        lambda coins: coins + amount,
        reason,
        config=config,
        now=ts,
        reference=reference,
    )
    if not plan.unlimited_cap and balance.coins > plan.coin_cap:
        balance = clamp_to_cap(db, user_id, plan, config=config, now=ts)
    return balance


def credit_admin(db: Session, user_id: str, amount: int, *, config: EconomyConfig, now: Optional[datetime] = None) -> Balance:
    """Administrative grant (subject to the cap like any credit)."""
    balance = credit(db, user_id, amount, "admin_grant", config=config, now=now)
    log_event("info", "coins.admin_grant", user_id=user_id, event_type="admin_grant",
              extra={"amount": amount, "balance": balance.coins})
    return balance


def debit_admin(db: Session, user_id: str, amount: int, *, config: EconomyConfig, now: Optional[datetime] = None) -> Balance:
    """Administrative removal; floors at zero instead of failing."""
    require_whole_coins(amount)
    ts = now or utc_now()
    ensure_fresh_balance(db, user_id, config=config, now=ts)
    return apply_balance_change(db, user_id, lambda coins: max(0, coins - amount), "admin_debit", config=config, now=ts)


def set_balance(db: Session, user_id: str, amount: int, *, config: EconomyConfig, now: Optional[datetime] = None) -> Balance:
    """Administrative overwrite, truncated to the plan cap."""
    require_whole_coins(amount, allow_zero=True)
    ts = now or utc_now()
    ensure_fresh_balance(db, user_id, config=config, now=ts)
    plan = effective_plan(db, user_id, ts)
    balance = apply_balance_change(db, user_id, lambda _coins: plan.clamp(amount), "admin_set", config=config, now=ts)
    log_event("info", "coins.admin_set", user_id=user_id, event_type="admin_set",
              extra={"amount": amount, "balance": balance.coins})
    return balance


def list_balance_user_ids(db: Session) -> List[str]:
    return [row[0] for row in db.execute(select(coin_balances.c.user_id).order_by(coin_balances.c.user_id)).fetchall()]


def apply_caps_to_all_users(*, config: EconomyConfig, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Clamp every balance to its plan cap.

    Each user is an independent unit of work in its own transaction, so
    overlapping runs and partial failures are harmless.
    """
    ts = now or utc_now()
    with get_db_session() as session:
        user_ids = list_balance_user_ids(session)

    clamped = 0
    failed = 0
    for user_id in user_ids:
        try:
            with get_db_session() as session:
                before = _read_row(session, user_id).coins
                after = clamp_to_cap(session, user_id, config=config, now=ts).coins
            if after < before:
                clamped += 1
        except BalanceConflictError:
            failed += 1
            logger.warning("cap sweep skipped busy balance", extra={"user_id": user_id})

    return {"users": len(user_ids), "clamped": clamped, "failed": failed}
