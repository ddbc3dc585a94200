"""
Plan change tests: proration math, upgrade via checkout, scheduled downgrades.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from gigcoins.core.database import get_db_session, subscriptions
from gigcoins.core.errors import NoActiveSubscriptionError, NoOpError, PlanNotFoundError, ValidationError
from gigcoins.features.billing.proration import ceil_days, compute_proration
from gigcoins.features.coins.balance import get_balance, set_balance
from gigcoins.models.billing import PurchaseKind, SubscriptionStatus
from gigcoins.tests.fakes import subscribe


def test_half_period_upgrade_charges_half_the_difference(now):
    start = now
    end = now + timedelta(days=30)
    assert compute_proration(499, 999, start, end, now + timedelta(days=15)) == 250


def test_partial_days_round_up(now):
    start = now
    end = now + timedelta(days=30)
    # 14 days and 1 hour left counts as 15 days
    assert compute_proration(499, 999, start, end, now + timedelta(days=15, hours=23)) == 250


def test_proration_rounds_half_up(now):
    start = now
    end = now + timedelta(days=4)
    # 1 cent * 2/4 = 0.5 -> 1
    assert compute_proration(100, 101, start, end, now + timedelta(days=2)) == 1


def test_no_charge_for_downgrade_or_expired_period(now):
    end = now + timedelta(days=30)
    assert compute_proration(999, 499, now, end, now) == 0
    assert compute_proration(499, 999, now, end, end + timedelta(seconds=1)) == 0


def test_ceil_days():
    assert ceil_days(timedelta(0)) == 0
    assert ceil_days(timedelta(seconds=-5)) == 0
    assert ceil_days(timedelta(hours=1)) == 1
    assert ceil_days(timedelta(days=2)) == 2
    assert ceil_days(timedelta(days=2, microseconds=1)) == 3


def test_upgrade_returns_prorated_checkout(billing, gateway, now):
    subscribe(billing, gateway, "alice", "freelancer", now)

    change = billing.change_plan("alice", "professional", now=now + timedelta(days=15))

    assert change.type == "upgrade"
    assert change.effective_immediately is False
    assert change.prorated_cents == 250
    assert change.checkout.amount_cents == 250
    assert change.checkout.kind is PurchaseKind.SUBSCRIPTION_UPGRADE
    # Plan is unchanged until the proration charge completes
    assert billing.get_subscription("alice", now=now + timedelta(days=15)).plan_key == "freelancer"


def test_upgrade_completes_on_payment(billing, gateway, notifier, economy, now):
    subscribe(billing, gateway, "alice", "freelancer", now)
    later = now + timedelta(days=15)
    change = billing.change_plan("alice", "professional", now=later)
    gateway.succeed(change.checkout.payment_ref)

    completion = billing.complete_payment(change.checkout.payment_ref, user_id="alice", now=later)

    assert completion.status == "completed"
    assert completion.plan_key == "professional"
    sub = billing.get_subscription("alice", now=later)
    assert sub.plan_key == "professional"
    assert sub.current_period_end == now + timedelta(days=30)
    with get_db_session() as db:
        assert get_balance(db, "alice", config=economy, now=later) == 20 + 40 + 100
    assert notifier.events("alice")[-1] == "subscription_upgraded"


def test_upgrade_with_nothing_to_charge_switches_immediately(billing, gateway, economy, now):
    subscribe(billing, gateway, "alice", "freelancer", now)
    later = now + timedelta(days=15)
    charges_before = len(gateway.charges)

    with patch("gigcoins.features.billing.proration.compute_proration", return_value=0):
        change = billing.change_plan("alice", "expert", now=later)

    assert change.effective_immediately is True
    assert change.prorated_cents == 0
    assert change.checkout is None
    assert change.coins_credited == 250
    assert len(gateway.charges) == charges_before
    assert billing.get_subscription("alice", now=later).plan_key == "expert"
    with get_db_session() as db:
        assert get_balance(db, "alice", config=economy, now=later) == 20 + 40 + 250


def test_change_after_period_end_is_rejected(billing, gateway, now):
    subscribe(billing, gateway, "alice", "freelancer", now)
    charges_before = len(gateway.charges)

    for at in (now + timedelta(days=30), now + timedelta(days=120)):
        with pytest.raises(ValidationError):
            billing.change_plan("alice", "elite", now=at)
        with pytest.raises(ValidationError):
            billing.change_plan("alice", "expert", now=at)

    assert len(gateway.charges) == charges_before
    assert billing.get_subscription("alice", now=now + timedelta(days=29)).plan_key == "freelancer"


def test_upgrade_paid_after_cancel_applies_for_the_grace_period(billing, gateway, notifier, economy, now):
    subscribe(billing, gateway, "alice", "freelancer", now)
    later = now + timedelta(days=15)
    change = billing.change_plan("alice", "expert", now=later)
    assert change.checkout.amount_cents == 750

    billing.cancel_subscription("alice", now=later)
    gateway.succeed(change.checkout.payment_ref)
    completion = billing.complete_payment(change.checkout.payment_ref, user_id="alice", now=later)

    assert completion.status == "completed"
    assert completion.plan_key == "expert"
    assert completion.coins_credited == 250
    assert completion.balance == 20 + 40 + 250
    retry = billing.complete_payment(change.checkout.payment_ref, user_id="alice", now=later)
    assert retry.status == "already_processed"

    sub = billing.get_subscription("alice", now=later)
    assert sub.status is SubscriptionStatus.CANCELED
    assert sub.plan_key == "expert"
    assert sub.current_period_end == now + timedelta(days=30)
    assert billing.get_subscription("alice", now=now + timedelta(days=30)) is None
    assert notifier.events("alice")[-1] == "subscription_upgraded"


def test_upgrade_paid_after_subscription_expired_still_credits(billing, gateway, economy, now):
    subscribe(billing, gateway, "alice", "freelancer", now)
    later = now + timedelta(days=15)
    change = billing.change_plan("alice", "professional", now=later)
    billing.cancel_subscription("alice", now=later)
    with get_db_session() as db:
        db.execute(subscriptions.update().values(status=SubscriptionStatus.EXPIRED.value))
        set_balance(db, "alice", 10, config=economy, now=later)
    gateway.succeed(change.checkout.payment_ref)

    completion = billing.complete_payment(change.checkout.payment_ref, now=later)

    assert completion.status == "completed"
    assert completion.plan_key == "free"
    assert completion.subscription_id is not None
    # 10 + 100 clamped to the free cap
    assert completion.balance == 40
    assert completion.coins_credited == 30


def test_same_plan_is_a_no_op(billing, gateway, now):
    subscribe(billing, gateway, "alice", "expert", now)
    charges_before = len(gateway.charges)

    with pytest.raises(NoOpError) as exc:
        billing.change_plan("alice", "expert", now=now)

    assert exc.value.status_code == 409
    assert len(gateway.charges) == charges_before


def test_change_requires_active_subscription(billing, gateway, now):
    with pytest.raises(NoActiveSubscriptionError):
        billing.change_plan("alice", "expert", now=now)

    subscribe(billing, gateway, "bob", "expert", now)
    billing.cancel_subscription("bob", now=now)
    with pytest.raises(NoActiveSubscriptionError):
        billing.change_plan("bob", "elite", now=now)


def test_change_to_unknown_or_free_plan(billing, gateway, now):
    subscribe(billing, gateway, "alice", "expert", now)
    with pytest.raises(PlanNotFoundError):
        billing.change_plan("alice", "diamond", now=now)
    with pytest.raises(ValidationError):
        billing.change_plan("alice", "free", now=now)


def test_downgrade_is_scheduled_for_period_end(billing, gateway, now):
    subscribe(billing, gateway, "alice", "professional", now)
    charges_before = len(gateway.charges)

    change = billing.change_plan("alice", "freelancer", now=now + timedelta(days=10))

    assert change.type == "downgrade"
    assert change.effective_immediately is False
    assert change.effective_at == now + timedelta(days=30)
    assert len(gateway.charges) == charges_before
    sub = billing.get_subscription("alice", now=now + timedelta(days=10))
    assert sub.plan_key == "professional"
    assert sub.pending_plan_key == "freelancer"


def test_upgrade_clears_scheduled_downgrade(billing, gateway, now):
    subscribe(billing, gateway, "alice", "professional", now)
    billing.change_plan("alice", "freelancer", now=now + timedelta(days=5))

    change = billing.change_plan("alice", "elite", now=now + timedelta(days=6))
    gateway.succeed(change.checkout.payment_ref)
    billing.complete_payment(change.checkout.payment_ref, now=now + timedelta(days=6))

    sub = billing.get_subscription("alice", now=now + timedelta(days=6))
    assert sub.plan_key == "elite"
    assert sub.pending_plan_key is None
