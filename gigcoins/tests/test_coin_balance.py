"""
Balance store tests: welcome grant, lazy monthly reset, ledger consistency.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from gigcoins.core.database import coin_balances, get_db_session
from gigcoins.core.errors import NotFoundError
from gigcoins.features.coins.balance import (
    days_until_reset,
    ensure_fresh_balance,
    get_balance,
    open_balance,
    set_balance,
)
from gigcoins.features.coins.ledger import get_user_ledger, ledger_sum, reconcile_ledger
from gigcoins.tests.fakes import subscribe


def _stored_coins(user_id):
    with get_db_session() as db:
        return db.execute(select(coin_balances.c.coins).where(coin_balances.c.user_id == user_id)).scalar_one()


def test_open_balance_grants_welcome_coins(economy, now):
    with get_db_session() as db:
        balance = open_balance(db, "alice", config=economy, now=now)

    assert balance.coins == 20
    assert balance.last_reset_at == now
    with get_db_session() as db:
        entries = get_user_ledger(db, "alice")
    assert [(e.delta, e.reason, e.balance_after) for e in entries] == [(20, "welcome_grant", 20)]


def test_open_balance_is_idempotent(economy, now):
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=now)
    with get_db_session() as db:
        again = open_balance(db, "alice", config=economy, now=now + timedelta(days=3))

    assert again.coins == 20
    assert again.last_reset_at == now
    with get_db_session() as db:
        assert ledger_sum(db, "alice") == 20


def test_open_balance_notifies_once(billing, notifier, now):
    billing.open_account("alice", now=now)
    billing.open_account("alice", now=now)
    assert notifier.events("alice") == ["welcome_grant"]


def test_missing_balance_raises_not_found(economy, now):
    with get_db_session() as db:
        with pytest.raises(NotFoundError) as exc:
            get_balance(db, "ghost", config=economy, now=now)
    assert exc.value.code == "balance_not_found"


def test_reset_overwrites_low_balance_with_allowance(economy, now):
    start = now - timedelta(days=31)
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=start)
        set_balance(db, "alice", 7, config=economy, now=start)

    with get_db_session() as db:
        balance = ensure_fresh_balance(db, "alice", config=economy, now=now)

    assert balance.coins == 20
    assert balance.last_reset_at == now


def test_reset_overwrites_rather_than_adds(economy, now):
    start = now - timedelta(days=30)
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=start)
        set_balance(db, "alice", 38, config=economy, now=start)

    with get_db_session() as db:
        assert get_balance(db, "alice", config=economy, now=now) == 20


def test_no_reset_before_interval(economy, now):
    start = now - timedelta(days=29, hours=23)
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=start)
        set_balance(db, "alice", 3, config=economy, now=start)

    with get_db_session() as db:
        balance = ensure_fresh_balance(db, "alice", config=economy, now=now)

    assert balance.coins == 3
    assert balance.last_reset_at == start
    assert days_until_reset(balance, config=economy, now=now) == 1


def test_repeated_freshness_checks_reset_once(economy, now):
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=now - timedelta(days=45))

    for _ in range(3):
        with get_db_session() as db:
            ensure_fresh_balance(db, "alice", config=economy, now=now)

    with get_db_session() as db:
        resets = [e for e in get_user_ledger(db, "alice") if e.reason == "monthly_reset"]
    assert len(resets) == 1


def test_reset_uses_subscription_allowance(billing, gateway, economy, now):
    subscribe(billing, gateway, "alice", "professional", now)

    later = now + timedelta(days=30)
    with get_db_session() as db:
        assert get_balance(db, "alice", config=economy, now=later) == 100


def test_canceled_subscription_keeps_allowance_until_period_end(billing, gateway, economy, now):
    subscribe(billing, gateway, "alice", "expert", now)
    billing.cancel_subscription("alice", now=now + timedelta(days=5))

    # Period ends at now + 30d; the reset at exactly 30 days falls on the boundary
    with get_db_session() as db:
        assert get_balance(db, "alice", config=economy, now=now + timedelta(days=29)) == 20 + 250

    with get_db_session() as db:
        assert get_balance(db, "alice", config=economy, now=now + timedelta(days=31)) == 20


def test_ledger_matches_balance_after_mixed_activity(billing, gateway, economy, now):
    subscribe(billing, gateway, "alice", "freelancer", now)
    billing.open_account("bob", now=now)
    with get_db_session() as db:
        set_balance(db, "bob", 5, config=economy, now=now)
    with get_db_session() as db:
        get_balance(db, "alice", config=economy, now=now + timedelta(days=40))

    with get_db_session() as db:
        report = reconcile_ledger(db)
        assert ledger_sum(db, "alice") == _stored_coins("alice")

    assert report["status"] == "ok"
    assert report["users_checked"] == 2
