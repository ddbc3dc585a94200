"""
Admin coin routes (X-Admin-Key).

- POST /api/admin/coins/{user_id}/credit: grant coins (capped)
- POST /api/admin/coins/{user_id}/debit: remove coins (floors at zero)
- POST /api/admin/coins/{user_id}/set: overwrite the balance (capped)
- POST /api/admin/coins/apply-caps: clamp every balance to its plan cap
- GET  /api/admin/coins/reconcile: ledger vs balance audit
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from gigcoins.core.auth import require_admin
from gigcoins.core.database import get_db_session
from gigcoins.core.logging import log_event
from gigcoins.features.coins.balance import credit_admin, debit_admin, set_balance
from gigcoins.workers.coin_maintenance import run_cap_sweep, run_ledger_reconciliation

router = APIRouter(prefix="/admin/coins", tags=["admin-coins"])


class AmountRequest(BaseModel):
    amount: int


@router.post("/apply-caps")
def apply_caps(request: Request, actor: str = Depends(require_admin)):
    stats = run_cap_sweep(config=request.app.state.economy)
    log_event("info", "admin.apply_caps", event_type="admin_apply_caps", extra=stats)
    return stats


@router.get("/reconcile")
def reconcile(actor: str = Depends(require_admin)):
    return run_ledger_reconciliation()


@router.post("/{user_id}/credit")
def admin_credit(user_id: str, body: AmountRequest, request: Request, actor: str = Depends(require_admin)):
    with get_db_session() as db:
        balance = credit_admin(db, user_id, body.amount, config=request.app.state.economy)
    return {"user_id": user_id, "coins": balance.coins}


@router.post("/{user_id}/debit")
def admin_debit(user_id: str, body: AmountRequest, request: Request, actor: str = Depends(require_admin)):
    with get_db_session() as db:
        balance = debit_admin(db, user_id, body.amount, config=request.app.state.economy)
    return {"user_id": user_id, "coins": balance.coins}


@router.post("/{user_id}/set")
def admin_set(user_id: str, body: AmountRequest, request: Request, actor: str = Depends(require_admin)):
    with get_db_session() as db:
        balance = set_balance(db, user_id, body.amount, config=request.app.state.economy)
    return {"user_id": user_id, "coins": balance.coins}
