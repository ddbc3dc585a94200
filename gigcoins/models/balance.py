"""
gigcoins/models/balance.py

Balance and ledger entry models.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Balance(BaseModel):
    """
    Balance is the per-user coin counter.

    version increases on every mutation and is the compare-and-set token
    used by all balance updates.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    coins: int
    last_reset_at: datetime
    version: int = 0


class LedgerEntry(BaseModel):
    """One append-only coin movement. delta is negative for spends."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    delta: int
    reason: str
    balance_after: int
    reference: Optional[str] = None
    created_at: datetime
    id: Optional[int] = None
