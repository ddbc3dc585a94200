"""
Coin maintenance sweeps.

- monthly reset: applies due resets ahead of the next read
- caps: clamps every balance to its plan cap
- ledger reconciliation: read-only audit of balance == sum(ledger deltas)

None of these are required for correctness (resets are lazy, caps are applied
on every credit); they only tidy stored state. Every unit of work is
idempotent, so overlapping runs are harmless.
"""
import logging
import sys
from datetime import datetime
from typing import Optional
from uuid import uuid4

from gigcoins.core.config import EconomyConfig, load_settings
from gigcoins.core.database import get_db_session, utc_now
from gigcoins.core.errors import BalanceConflictError
from gigcoins.core.logging import bind_request_id, configure_logging
from gigcoins.features.coins.balance import apply_caps_to_all_users, ensure_fresh_balance, list_balance_user_ids
from gigcoins.features.coins.ledger import reconcile_ledger
from gigcoins.workers.job_runs import record_job_run

logger = logging.getLogger("gigcoins.workers.coin_maintenance")


def _economy(config: Optional[EconomyConfig]) -> EconomyConfig:
    return config or load_settings().economy()


def run_monthly_reset_sweep(now: Optional[datetime] = None, *, config: Optional[EconomyConfig] = None) -> dict:
    cfg = _economy(config)
    ts = now or utc_now()
    with get_db_session() as session:
        user_ids = list_balance_user_ids(session)

    reset = 0
    failed = 0
    for user_id in user_ids:
        try:
            with get_db_session() as session:
                balance = ensure_fresh_balance(session, user_id, config=cfg, now=ts)
            if balance.last_reset_at == ts:
                reset += 1
        except BalanceConflictError:
            failed += 1
            logger.warning("reset sweep skipped busy balance", extra={"user_id": user_id})

    stats = {"users": len(user_ids), "reset": reset, "failed": failed}
    record_job_run("coins.monthly_reset", ts, "success" if not failed else "partial", stats)
    logger.info("[sweep] monthly reset", extra=stats)
    return stats


def run_cap_sweep(now: Optional[datetime] = None, *, config: Optional[EconomyConfig] = None) -> dict:
    cfg = _economy(config)
    ts = now or utc_now()
    stats = apply_caps_to_all_users(config=cfg, now=ts)
    record_job_run("coins.apply_caps", ts, "success" if not stats["failed"] else "partial", stats)
    logger.info("[sweep] caps", extra=stats)
    return stats


def run_ledger_reconciliation(now: Optional[datetime] = None) -> dict:
    ts = now or utc_now()
    with get_db_session() as session:
        report = reconcile_ledger(session)

    stats = {"users_checked": report["users_checked"], "mismatches": len(report["mismatches"])}
    record_job_run("coins.reconcile_ledger", ts, report["status"], stats)
    if report["mismatches"]:
        logger.error("[sweep] ledger mismatch", extra={**stats, "error_code": "ledger_mismatch"})
    else:
        logger.info("[sweep] ledger ok", extra=stats)
    return report


JOBS = {
    "reset": run_monthly_reset_sweep,
    "caps": run_cap_sweep,
    "reconcile": run_ledger_reconciliation,
}


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    job = sys.argv[1] if len(sys.argv) > 1 else "reset"
    if job not in JOBS:
        print(f"usage: python -m gigcoins.workers.coin_maintenance [{'|'.join(JOBS)}]")
        sys.exit(2)
    with bind_request_id(f"job:{job}:{uuid4().hex[:8]}"):
        result = JOBS[job]()
    print(result)
