"""
Coin API routes.

- POST /api/coins/account: open the balance with the welcome grant (signup hook)
- GET  /api/coins/balance: balance, plan and days until the next reset
- POST /api/coins/spend: debit coins for a paid action
- GET  /api/coins/costs: paid-action cost table
- GET  /api/coins/ledger: recent coin movements
- GET  /api/coins/pricing: tiered price for an ad-hoc purchase
- POST /api/coins/purchase: start a one-time coin purchase
- POST /api/coins/complete-purchase: confirm a payment (idempotent)
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from gigcoins.core.auth import get_current_user_id
from gigcoins.core.database import get_db_session, utc_now
from gigcoins.features.coins.balance import days_until_reset, ensure_fresh_balance
from gigcoins.features.coins.ledger import get_user_ledger
from gigcoins.features.coins.spend import ACTION_COSTS, BIDDABLE_ACTIONS, spend
from gigcoins.features.plans.service import effective_plan
from gigcoins.features.pricing.calculator import pricing_breakdown, tiered_price, tiered_price_cents

router = APIRouter(prefix="/coins", tags=["coins"])


class SpendRequest(BaseModel):
    amount: int
    reason: str = Field(min_length=1, max_length=80)
    reference: Optional[str] = Field(default=None, max_length=200)


class PurchaseRequest(BaseModel):
    coins: int


class CompletePurchaseRequest(BaseModel):
    payment_ref: str = Field(min_length=1)


class BalanceResponse(BaseModel):
    user_id: str
    coins: int
    plan_key: str
    coin_cap: Optional[int]
    last_reset_at: str  # ISO8601
    days_until_reset: int


@router.post("/account")
def open_account(request: Request, user_id: str = Depends(get_current_user_id)):
    balance = request.app.state.billing.open_account(user_id)
    return {"user_id": user_id, "coins": balance.coins, "last_reset_at": balance.last_reset_at.isoformat()}


@router.get("/balance", response_model=BalanceResponse)
def read_balance(request: Request, user_id: str = Depends(get_current_user_id)):
    """
    Current balance after any due monthly reset.

    Errors:
        404: user has no balance yet (balance_not_found)
    """
    economy = request.app.state.economy
    ts = utc_now()
    with get_db_session() as db:
        balance = ensure_fresh_balance(db, user_id, config=economy, now=ts)
        plan = effective_plan(db, user_id, ts)
    return BalanceResponse(
        user_id=user_id,
        coins=balance.coins,
        plan_key=plan.key,
        coin_cap=plan.coin_cap,
        last_reset_at=balance.last_reset_at.isoformat(),
        days_until_reset=days_until_reset(balance, config=economy, now=ts),
    )


@router.post("/spend")
def spend_coins(body: SpendRequest, request: Request, user_id: str = Depends(get_current_user_id)):
    """
    Debit coins.

    Errors:
        400: amount is not a positive integer
        402: insufficient coins (error carries needed / available)
        503: balance busy, retry
    """
    with get_db_session() as db:
        remaining = spend(
            db,
            user_id,
            body.amount,
            body.reason,
            config=request.app.state.economy,
            reference=body.reference,
        )
    return {"spent": body.amount, "coins": remaining}


@router.get("/costs")
def action_costs():
    return {
        "actions": [
            {"action": action.value, "cost": cost, "accepts_bid": action in BIDDABLE_ACTIONS}
            for action, cost in ACTION_COSTS.items()
        ]
    }


@router.get("/ledger")
def read_ledger(
    user_id: str = Depends(get_current_user_id),
    limit: int = Query(20, ge=1, le=200),
):
    with get_db_session() as db:
        entries = get_user_ledger(db, user_id, limit=limit)
    return {"entries": [entry.model_dump(mode="json") for entry in entries]}


@router.get("/pricing")
def read_pricing(coins: int = Query(...)):
    lines = pricing_breakdown(coins)
    return {
        "coins": coins,
        "price": str(tiered_price(coins)),
        "amount_cents": tiered_price_cents(coins),
        "breakdown": [line.to_dict() for line in lines],
    }


@router.post("/purchase")
def start_purchase(body: PurchaseRequest, request: Request, user_id: str = Depends(get_current_user_id)):
    """
    Create a payment for a one-time coin purchase.

    Coins are credited by /complete-purchase (or the gateway webhook), never here.
    """
    checkout = request.app.state.billing.start_coin_purchase(user_id, body.coins)
    return checkout.model_dump(mode="json")


@router.post("/complete-purchase")
def complete_purchase(body: CompletePurchaseRequest, request: Request, user_id: str = Depends(get_current_user_id)):
    completion = request.app.state.billing.complete_payment(body.payment_ref, user_id=user_id)
    return completion.model_dump(mode="json")
