"""
Spend authorizer and paid-action cost table.

A paid action (posting a job, applying, bidding, endorsing, ...) may only be
committed after its coins were debited. The debit is the freshness check plus
a compare-and-set update, so two concurrent spends can never both succeed
against a balance that only covers one of them.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from gigcoins.core.config import EconomyConfig
from gigcoins.core.database import get_db_session, utc_now
from gigcoins.core.errors import InsufficientCoinsError, ValidationError
from gigcoins.core.logging import log_event
from gigcoins.features.coins.balance import (
    apply_balance_change,
    credit,
    ensure_fresh_balance,
    require_whole_coins,
)


class PaidAction(str, Enum):
    JOB_POST = "job_post"
    JOB_EDIT = "job_edit"
    JOB_EXTEND = "job_extend"
    JOB_APPLICATION = "job_application"
    BID_INCREASE = "bid_increase"
    SERVICE_POST = "service_post"
    SERVICE_EDIT = "service_edit"
    SERVICE_EXTEND = "service_extend"
    SERVICE_INQUIRY = "service_inquiry"
    SERVICE_ACCEPT = "service_accept"
    SKILL_ENDORSEMENT = "skill_endorsement"


# Base cost in coins; bids are added on top where allowed
ACTION_COSTS: Dict[PaidAction, int] = {
    PaidAction.JOB_POST: 3,
    PaidAction.JOB_EDIT: 1,
    PaidAction.JOB_EXTEND: 2,
    PaidAction.JOB_APPLICATION: 1,
    PaidAction.BID_INCREASE: 0,
    PaidAction.SERVICE_POST: 15,
    PaidAction.SERVICE_EDIT: 5,
    PaidAction.SERVICE_EXTEND: 7,
    PaidAction.SERVICE_INQUIRY: 1,
    PaidAction.SERVICE_ACCEPT: 2,
    PaidAction.SKILL_ENDORSEMENT: 5,
}

BIDDABLE_ACTIONS = frozenset({PaidAction.JOB_APPLICATION, PaidAction.BID_INCREASE})


def action_cost(action: PaidAction, bid: int = 0) -> int:
    """
    Coins required for an action.

    Applications cost 1 plus an optional bid; a bid increase costs exactly
    the requested increment.
    """
    action = PaidAction(action)
    if isinstance(bid, bool) or not isinstance(bid, int) or bid < 0:
        raise ValidationError("Bid must be a non-negative integer")
    if bid and action not in BIDDABLE_ACTIONS:
        raise ValidationError(f"Action '{action.value}' does not accept a bid")
    if action is PaidAction.BID_INCREASE and bid == 0:
        raise ValidationError("Bid increase must be at least 1 coin")
    return ACTION_COSTS[action] + bid


def spend(
    db: Session,
    user_id: str,
    amount: int,
    reason: str,
    *,
    config: EconomyConfig,
    now: Optional[datetime] = None,
    reference: Optional[str] = None,
) -> int:
    """
    Debit coins or fail without touching the balance.

    Returns:
        The new balance.

    Raises:
        ValidationError: amount is not a positive integer
        InsufficientCoinsError: balance < amount (carries needed/available)
        BalanceConflictError: too many concurrent writers; nothing was debited
    """
    require_whole_coins(amount)
    ts = now or utc_now()
    ensure_fresh_balance(db, user_id, config=config, now=ts)

    def debit(coins: int) -> int:
        if coins < amount:
            raise InsufficientCoinsError(needed=amount, available=coins)
        return coins - amount

    try:
        balance = apply_balance_change(
            db, user_id, debit, f"spend:{reason}", config=config, now=ts, reference=reference
        )
    except InsufficientCoinsError as exc:
        log_event("info", "coins.insufficient", user_id=user_id, event_type="spend_rejected",
                  error_code=exc.code, extra={"amount": amount, "balance": exc.available, "reason": reason})
        raise

    log_event("info", "coins.spent", user_id=user_id, event_type="spend",
              extra={"amount": amount, "balance": balance.coins, "reason": reason})
    return balance.coins


@dataclass
class PaidActionResult:
    """Result of an action performed after a successful spend."""
    value: Any
    cost: int
    balance: int


def pay_for_action(
    user_id: str,
    action: PaidAction,
    perform: Callable[[], Any],
    *,
    config: EconomyConfig,
    bid: int = 0,
    now: Optional[datetime] = None,
    reference: Optional[str] = None,
) -> PaidActionResult:
    """
    Spend for an action, then perform it.

    The spend commits before perform() runs. If perform() raises, the coins
    are restored with a compensating credit and the original error is
    re-raised. Actions that succeed are never refunded later.
    """
    action = PaidAction(action)
    cost = action_cost(action, bid)
    # The compensation credit is stamped with the debit's time
    ts = now or utc_now()

    with get_db_session() as db:
        balance = spend(db, user_id, cost, action.value, config=config, now=ts, reference=reference)

    try:
        value = perform()
    except Exception:
        with get_db_session() as db:
            restored = credit(
                db,
                user_id,
                cost,
                f"compensation:{action.value}",
                config=config,
                now=ts,
                reference=reference,
            )
        log_event("warning", "coins.compensated", user_id=user_id, event_type="compensation",
                  extra={"amount": cost, "balance": restored.coins, "reason": action.value})
        raise

    return PaidActionResult(value=value, cost=cost, balance=balance)
