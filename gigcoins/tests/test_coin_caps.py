"""
Cap enforcement tests.
"""
import pytest
from sqlalchemy import select

from gigcoins.core.database import coin_balances, get_db_session
from gigcoins.core.errors import ValidationError
from gigcoins.features.coins.balance import (
    apply_caps_to_all_users,
    clamp_to_cap,
    credit,
    credit_admin,
    debit_admin,
    open_balance,
    set_balance,
)
from gigcoins.features.plans.registry import get_plan
from gigcoins.tests.fakes import subscribe


def _coins(user_id):
    with get_db_session() as db:
        return db.execute(select(coin_balances.c.coins).where(coin_balances.c.user_id == user_id)).scalar_one()


def _force_coins(user_id, coins):
    """Write a balance directly, bypassing every rule (simulates legacy data)."""
    with get_db_session() as db:
        db.execute(coin_balances.update().where(coin_balances.c.user_id == user_id).values(coins=coins))


def test_credit_is_clamped_to_free_cap(economy, now):
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=now)
        balance = credit(db, "alice", 30, "gift", config=economy, now=now)
    assert balance.coins == 40


def test_clamp_reduces_balance_above_cap(economy, now):
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=now)
    _force_coins("alice", 120)

    with get_db_session() as db:
        balance = clamp_to_cap(db, "alice", get_plan("freelancer"), config=economy, now=now)
    assert balance.coins == 100


def test_clamp_never_increases(economy, now):
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=now)
        balance = clamp_to_cap(db, "alice", get_plan("expert"), config=economy, now=now)
    assert balance.coins == 20


def test_unlimited_plan_is_never_clamped(billing, gateway, economy, now):
    subscribe(billing, gateway, "alice", "elite", now)
    with get_db_session() as db:
        credit_admin(db, "alice", 5000, config=economy, now=now)
    assert _coins("alice") == 20 + 500 + 5000


def test_set_balance_truncates_to_cap(billing, gateway, economy, now):
    subscribe(billing, gateway, "alice", "professional", now)
    with get_db_session() as db:
        balance = set_balance(db, "alice", 1000, config=economy, now=now)
    assert balance.coins == 400


def test_set_balance_allows_zero_but_not_negative(economy, now):
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=now)
        assert set_balance(db, "alice", 0, config=economy, now=now).coins == 0
        with pytest.raises(ValidationError):
            set_balance(db, "alice", -5, config=economy, now=now)


def test_admin_debit_floors_at_zero(economy, now):
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=now)
        balance = debit_admin(db, "alice", 50, config=economy, now=now)
    assert balance.coins == 0


def test_apply_caps_to_all_users(billing, gateway, economy, now):
    subscribe(billing, gateway, "alice", "freelancer", now)
    with get_db_session() as db:
        open_balance(db, "bob", config=economy, now=now)
        open_balance(db, "carol", config=economy, now=now)
    _force_coins("alice", 150)
    _force_coins("bob", 90)

    stats = apply_caps_to_all_users(config=economy, now=now)

    assert stats == {"users": 3, "clamped": 2, "failed": 0}
    assert _coins("alice") == 100
    assert _coins("bob") == 40
    assert _coins("carol") == 20
