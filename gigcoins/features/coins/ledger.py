"""
Coin ledger.

Append-only record of every balance movement:
- one row per mutation, written in the same transaction as the balance update
- balance == sum(delta) for every user, checked by reconcile_ledger
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, insert, func
from sqlalchemy.orm import Session

from gigcoins.core.database import coin_ledger, coin_balances, as_utc
from gigcoins.models.balance import LedgerEntry


def append_ledger_entry(
    db: Session,
    *,
    user_id: str,
    delta: int,
    reason: str,
    balance_after: int,
    now: datetime,
    reference: Optional[str] = None,
) -> None:
    """Append one movement. The caller owns the transaction."""
    db.execute(
        insert(coin_ledger).values(
            user_id=user_id,
            delta=delta,
            reason=reason,
            balance_after=balance_after,
            reference=reference,
            created_at=now,
        )
    )


def get_user_ledger(db: Session, user_id: str, limit: int = 20) -> List[LedgerEntry]:
    """Most recent ledger entries for a user, newest first."""
    rows = db.execute(
        select(coin_ledger)
        .where(coin_ledger.c.user_id == user_id)
        .order_by(coin_ledger.c.created_at.desc(), coin_ledger.c.id.desc())
        .limit(min(limit, 500))
    ).fetchall()

    return [
        LedgerEntry(
            id=row.id,
            user_id=row.user_id,
            delta=row.delta,
            reason=row.reason,
            balance_after=row.balance_after,
            reference=row.reference,
            created_at=as_utc(row.created_at),
        )
        for row in rows
    ]


def ledger_sum(db: Session, user_id: str) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(coin_ledger.c.delta), 0)).where(coin_ledger.c.user_id == user_id)
    ).scalar()
    return int(total or 0)


def reconcile_ledger(db: Session) -> Dict:
    """
    Compare every stored balance with the fold of its ledger.

    Read-only: mismatches are reported, never corrected.
    """
    balances = db.execute(select(coin_balances.c.user_id, coin_balances.c.coins)).fetchall()
    sums = dict(
        db.execute(
            select(coin_ledger.c.user_id, func.sum(coin_ledger.c.delta)).group_by(coin_ledger.c.user_id)
        ).fetchall()
    )

    mismatches = []
    for user_id, coins in balances:
        folded = int(sums.get(user_id) or 0)
        if folded != coins:
            mismatches.append({
                "user_id": user_id,
                "ledger_sum": folded,
                "current_balance": coins,
                "difference": folded - coins,
            })

    return {
        "users_checked": len(balances),
        "mismatches": mismatches,
        "status": "ok" if not mismatches else "mismatch",
    }
