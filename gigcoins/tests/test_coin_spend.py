"""
Spend authorizer tests, including concurrent spends against one balance.
"""
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from gigcoins.core.config import EconomyConfig
from gigcoins.core.database import get_db_session
from gigcoins.core.errors import InsufficientCoinsError, ValidationError
from gigcoins.features.coins.balance import get_balance, open_balance, set_balance
from gigcoins.features.coins.ledger import get_user_ledger, reconcile_ledger
from gigcoins.features.coins.spend import PaidAction, action_cost, pay_for_action, spend


@pytest.fixture
def alice(economy, now):
    with get_db_session() as db:
        open_balance(db, "alice", config=economy, now=now)
    return "alice"


def test_spend_debits_and_records_ledger(alice, economy, now):
    with get_db_session() as db:
        remaining = spend(db, alice, 3, "job_post", config=economy, now=now, reference="job-1")

    assert remaining == 17
    with get_db_session() as db:
        latest = get_user_ledger(db, alice, limit=1)[0]
    assert (latest.delta, latest.reason, latest.balance_after, latest.reference) == (-3, "spend:job_post", 17, "job-1")


def test_insufficient_coins_reports_needed_and_available(alice, economy, now):
    with get_db_session() as db:
        set_balance(db, alice, 2, config=economy, now=now)

    with get_db_session() as db:
        with pytest.raises(InsufficientCoinsError) as exc:
            spend(db, alice, 3, "job_post", config=economy, now=now)

    assert exc.value.needed == 3
    assert exc.value.available == 2
    assert exc.value.details() == {"needed": 3, "available": 2}
    with get_db_session() as db:
        assert get_balance(db, alice, config=economy, now=now) == 2


@pytest.mark.parametrize("amount", [0, -1, 1.5, True, "3"])
def test_spend_rejects_non_positive_or_fractional_amounts(alice, economy, now, amount):
    with get_db_session() as db:
        with pytest.raises(ValidationError):
            spend(db, alice, amount, "job_post", config=economy, now=now)


def test_spend_applies_due_reset_first(alice, economy, now):
    later = now + timedelta(days=31)
    with get_db_session() as db:
        set_balance(db, alice, 1, config=economy, now=now)
    with get_db_session() as db:
        remaining = spend(db, alice, 5, "service_edit", config=economy, now=later)
    assert remaining == 15


def test_action_costs():
    assert action_cost(PaidAction.JOB_POST) == 3
    assert action_cost(PaidAction.JOB_EDIT) == 1
    assert action_cost(PaidAction.JOB_EXTEND) == 2
    assert action_cost(PaidAction.JOB_APPLICATION) == 1
    assert action_cost(PaidAction.JOB_APPLICATION, bid=4) == 5
    assert action_cost(PaidAction.BID_INCREASE, bid=6) == 6
    assert action_cost(PaidAction.SERVICE_POST) == 15
    assert action_cost(PaidAction.SERVICE_EDIT) == 5
    assert action_cost(PaidAction.SERVICE_EXTEND) == 7
    assert action_cost("service_inquiry") == 1
    assert action_cost(PaidAction.SERVICE_ACCEPT) == 2
    assert action_cost(PaidAction.SKILL_ENDORSEMENT) == 5


def test_bid_rules():
    with pytest.raises(ValidationError):
        action_cost(PaidAction.BID_INCREASE)
    with pytest.raises(ValidationError):
        action_cost(PaidAction.JOB_POST, bid=2)
    with pytest.raises(ValidationError):
        action_cost(PaidAction.JOB_APPLICATION, bid=-1)


def test_pay_for_action_returns_result(alice, economy, now):
    result = pay_for_action(alice, PaidAction.SERVICE_POST, lambda: "service-42", config=economy, now=now)
    assert result.value == "service-42"
    assert result.cost == 15
    assert result.balance == 5


def test_pay_for_action_compensates_when_creation_fails(alice, economy, now):
    def broken():
        raise RuntimeError("storage unavailable")

    with pytest.raises(RuntimeError):
        pay_for_action(alice, PaidAction.JOB_POST, broken, config=economy, now=now)

    with get_db_session() as db:
        assert get_balance(db, alice, config=economy, now=now) == 20
        reasons = [e.reason for e in get_user_ledger(db, alice)]
    assert reasons[:2] == ["compensation:job_post", "spend:job_post"]



def test_compensation_uses_the_debit_timestamp(alice, economy, now):
    # Debit one minute before the reset is due; the action fails after the boundary
    debit_at = now + timedelta(days=30) - timedelta(minutes=1)

    def slow_and_broken():
        raise RuntimeError("storage unavailable")

    with get_db_session() as db:
        set_balance(db, alice, 10, config=economy, now=now)
    with patch("gigcoins.features.coins.spend.utc_now", return_value=debit_at), \
            patch("gigcoins.features.coins.balance.utc_now", return_value=now + timedelta(days=30, minutes=1)):
        with pytest.raises(RuntimeError):
            pay_for_action(alice, PaidAction.SERVICE_EDIT, slow_and_broken, config=economy)

    with get_db_session() as db:
        entries = get_user_ledger(db, alice, limit=2)
        assert get_balance(db, alice, config=economy, now=debit_at) == 10
    assert [e.reason for e in entries] == ["compensation:service_edit", "spend:service_edit"]
    assert entries[0].created_at == entries[1].created_at == debit_at


def test_pay_for_action_does_not_run_action_without_coins(alice, economy, now):
    calls = []
    with pytest.raises(InsufficientCoinsError):
        pay_for_action(alice, PaidAction.JOB_APPLICATION, lambda: calls.append(1), config=economy, bid=50, now=now)
    assert calls == []


def _spend_concurrently(user_id, amount, workers, config, now):
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            with get_db_session() as db:
                spend(db, user_id, amount, "job_application", config=config, now=now)
            result = "ok"
        except InsufficientCoinsError:
            result = "insufficient"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def test_two_concurrent_spends_against_one_coin(alice, now):
    config = EconomyConfig(max_balance_retries=10)
    with get_db_session() as db:
        set_balance(db, alice, 1, config=config, now=now)

    outcomes = _spend_concurrently(alice, 1, 2, config, now)

    assert sorted(outcomes) == ["insufficient", "ok"]
    with get_db_session() as db:
        assert get_balance(db, alice, config=config, now=now) == 0


def test_many_concurrent_spends_never_overdraw(alice, now):
    config = EconomyConfig(max_balance_retries=20)

    outcomes = _spend_concurrently(alice, 3, 10, config, now)

    assert outcomes.count("ok") == 6
    assert outcomes.count("insufficient") == 4
    with get_db_session() as db:
        assert get_balance(db, alice, config=config, now=now) == 2
        assert reconcile_ledger(db)["status"] == "ok"
