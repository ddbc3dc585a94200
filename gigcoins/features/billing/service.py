"""
Billing service orchestrator.

Coordinates:
- Gateway customers (one per user)
- Checkouts for coin purchases, new subscriptions and prorated upgrades
- Idempotent payment completion (the only place purchased coins are credited)
- Subscription cancel / lookup and plan changes

All gateway-specific code lives behind the PaymentGateway protocol.
"""
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError

from gigcoins.core.config import EconomyConfig
from gigcoins.core.database import (
    get_db_session,
    billing_customers,
    pending_purchases,
    utc_now,
)
from gigcoins.core.errors import (
    AlreadySubscribedError,
    CheckoutInProgressError,
    DuplicatePaymentCompletionError,
    NoActiveSubscriptionError,
    PermissionError,
    ValidationError,
)
from gigcoins.core.logging import log_event
from gigcoins.features.billing import subscriptions as subscription_rows
from gigcoins.features.billing.proration import change_plan
from gigcoins.features.coins.balance import balance_exists, credit, ensure_fresh_balance, open_balance
from gigcoins.features.notifications import service as notifications
from gigcoins.features.notifications.service import Notifier, notify_safely
from gigcoins.features.payments.gateway import PaymentGateway
from gigcoins.features.plans.registry import get_plan, get_purchasable_plan
from gigcoins.features.plans.service import effective_plan, find_current_subscription_row
from gigcoins.features.pricing.calculator import tiered_price_cents, validate_coin_quantity
from gigcoins.models.balance import Balance
from gigcoins.models.billing import (
    Checkout,
    PaymentCompletion,
    PendingPurchase,
    PlanChange,
    PurchaseKind,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
)


class BillingService:
    """Subscription state machine and payment completion, bound to one gateway."""

    def __init__(self, gateway: PaymentGateway, config: EconomyConfig, notifier: Optional[Notifier] = None):
        self.gateway = gateway
        self.config = config
        self.notifier = notifier

    def open_account(self, user_id: str, now: Optional[datetime] = None) -> Balance:
        """Create the user's coin balance with the welcome grant (idempotent)."""
        ts = now or utc_now()
        with get_db_session() as db:
            existed = balance_exists(db, user_id)
            balance = open_balance(db, user_id, config=self.config, now=ts)
        if not existed:
            notify_safely(self.notifier, user_id, notifications.WELCOME_GRANT, {"coins": balance.coins})
        return balance

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Ensure a gateway customer exists for the user.

        Returns:
            The gateway customer reference

        Raises:
            PaymentGatewayError: If customer creation fails
        """
        with get_db_session() as session:
            existing = subscription_rows.customer_ref_for(session, user_id)
        if existing:
            return existing

        customer_ref = self.gateway.create_customer(user_id, email, name)
        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_customers).values(
                        user_id=user_id,
                        external_customer_ref=customer_ref,
                        created_at=utc_now(),
                    )
                )
        except IntegrityError:
            # Concurrent request stored a customer first; keep theirs
            with get_db_session() as session:
                return subscription_rows.customer_ref_for(session, user_id)
        return customer_ref

    def open_checkout(
        self,
        user_id: str,
        *,
        kind: PurchaseKind,
        coins: int,
        amount_cents: int,
        plan_key: Optional[str] = None,
        subscription_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Checkout:
        """Create a gateway charge and the PendingPurchase that tracks it."""
        ts = now or utc_now()
        customer_ref = self.ensure_customer(user_id)
        metadata = {"user_id": user_id, "coins": str(coins), "kind": kind.value}
        if plan_key:
            metadata["plan_key"] = plan_key
        if subscription_id:
            metadata["subscription_id"] = subscription_id

        charge = self.gateway.create_charge(amount_cents, metadata, customer_ref=customer_ref)

        with get_db_session() as session:
            session.execute(
                insert(pending_purchases).values(
                    id=str(uuid4()),
                    user_id=user_id,
                    external_payment_ref=charge.ref,
                    coins_requested=coins,
                    amount_cents=amount_cents,
                    kind=kind.value,
                    plan_key=plan_key,
                    subscription_id=subscription_id,
                    status=PurchaseStatus.PENDING.value,
                    created_at=ts,
                )
            )

        log_event("info", "checkout.created", user_id=user_id, event_type=kind.value,
                  extra={"payment_ref": charge.ref, "amount": amount_cents, "plan_key": plan_key})
        return Checkout(
            payment_ref=charge.ref,
            client_handle=charge.handle,
            kind=kind,
            coins=coins,
            amount_cents=amount_cents,
            plan_key=plan_key,
        )

    def start_coin_purchase(self, user_id: str, coins: int, now: Optional[datetime] = None) -> Checkout:
        """Checkout for a one-time purchase of 10-1000 coins at tiered prices."""
        validate_coin_quantity(coins)
        return self.open_checkout(
            user_id,
            kind=PurchaseKind.ONE_TIME,
            coins=coins,
            amount_cents=tiered_price_cents(coins),
            now=now,
        )

    def create_subscription(self, user_id: str, plan_key: str, now: Optional[datetime] = None) -> Checkout:
        """
        Checkout for a new subscription.

        No subscription exists until the payment completes. While an earlier
        subscription checkout is still awaiting payment (within
        checkout_hold_minutes) a second one is refused.

        Raises:
            PlanNotFoundError: unknown plan key
            ValidationError: the free plan
            AlreadySubscribedError: a subscription is active for the current period
            CheckoutInProgressError: another subscription checkout is awaiting payment
        """
        plan = get_purchasable_plan(plan_key)
        ts = now or utc_now()
        with get_db_session() as session:
            active = subscription_rows.find_active_row(session, user_id)
            held = self._held_subscription_checkout(session, user_id, ts)
        if active is not None and not subscription_rows.period_over(active, ts):
            raise AlreadySubscribedError(active.plan_key)
        if held is not None:
            raise CheckoutInProgressError(held.external_payment_ref)

        return self.open_checkout(
            user_id,
            kind=PurchaseKind.SUBSCRIPTION,
            coins=plan.monthly_allowance,
            amount_cents=plan.monthly_price_cents,
            plan_key=plan.key,
            now=ts,
        )

    def _held_subscription_checkout(self, db, user_id: str, now: datetime):
        hold_start = now - timedelta(minutes=self.config.checkout_hold_minutes)
        return db.execute(
            select(pending_purchases)
            .where(
                and_(
                    pending_purchases.c.user_id == user_id,
                    pending_purchases.c.kind == PurchaseKind.SUBSCRIPTION.value,
                    pending_purchases.c.status == PurchaseStatus.PENDING.value,
                    pending_purchases.c.created_at > hold_start,
                )
            )
            .order_by(pending_purchases.c.created_at.desc())
        ).first()

    def change_plan(self, user_id: str, new_plan_key: str, now: Optional[datetime] = None) -> PlanChange:
        return change_plan(self, user_id, new_plan_key, now=now)

    def cancel_subscription(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """
        ACTIVE -> CANCELED. The plan keeps applying until current_period_end.

        Raises:
            NoActiveSubscriptionError: nothing to cancel
        """
        ts = now or utc_now()
        with get_db_session() as session:
            row = subscription_rows.require_active_row(session, user_id)
            if not subscription_rows.mark_canceled(session, row.id, ts):
                raise NoActiveSubscriptionError(f"User {user_id} has no active subscription")
            canceled = subscription_rows.get_row(session, row.id)

        log_event("info", "subscription.canceled", user_id=user_id, event_type="cancel",
                  extra={"plan_key": row.plan_key})
        return subscription_rows.to_subscription(canceled)

    def get_subscription(self, user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        """Subscription currently granting access (active or canceled in grace), if any."""
        ts = now or utc_now()
        with get_db_session() as session:
            row = find_current_subscription_row(session, user_id, ts)
        return subscription_rows.to_subscription(row) if row is not None else None

    def complete_payment(
        self,
        payment_ref: str,
        *,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentCompletion:
        """
        Credit a confirmed payment exactly once.

        Safe to call any number of times for the same payment_ref (client
        confirmation, webhook redelivery): only the call that claims the
        pending purchase credits coins; every other call reports
        already_processed. A claimed payment is always credited, even when
        the subscription it was meant for has changed in the meantime.

        Raises:
            PermissionError: the payment belongs to another user
            PaymentGatewayError: the charge could not be retrieved
        """
        ts = now or utc_now()
        charge = self.gateway.retrieve_charge(payment_ref)
        owner = charge.metadata.get("user_id")
        if user_id is not None and owner != user_id:
            raise PermissionError("Payment does not belong to this user")
        if not charge.succeeded:
            return PaymentCompletion(status="pending", payment_ref=payment_ref)
        if not owner:
            raise ValidationError("Charge is missing its user reference")

        # The balance must exist before the claim transaction credits it
        self.open_account(owner, now=ts)

        try:
            with get_db_session() as db:
                purchase = self._claim_purchase(db, payment_ref, charge, ts)
                if user_id is not None and purchase.user_id != user_id:
                    raise PermissionError("Payment does not belong to this user")
                completion = self._apply_purchase(db, purchase, ts)
        except DuplicatePaymentCompletionError:
            log_event("info", "payment.already_processed", user_id=owner, event_type="payment_duplicate",
                      extra={"payment_ref": payment_ref})
            return PaymentCompletion(status="already_processed", payment_ref=payment_ref)

        log_event("info", "payment.completed", user_id=purchase.user_id, event_type=completion.kind.value,
                  extra={"payment_ref": payment_ref, "amount": completion.coins_credited, "balance": completion.balance})
        self._announce(purchase, completion)
        return completion

    def _claim_purchase(self, db, payment_ref: str, charge, now: datetime) -> PendingPurchase:
        """
        Flip the PendingPurchase to completed, or raise DuplicatePaymentCompletionError.

        A charge with no recorded checkout is rebuilt from the charge metadata;
        the unique payment reference keeps that insert from happening twice.
        """
        row = db.execute(
            select(pending_purchases).where(pending_purchases.c.external_payment_ref == payment_ref)
        ).fetchone()

        if row is None:
            meta = charge.metadata
            try:
                purchase = PendingPurchase(
                    id=str(uuid4()),
                    user_id=meta["user_id"],
                    external_payment_ref=payment_ref,
                    coins_requested=int(meta.get("coins", "0")),
                    amount_cents=charge.amount_cents,
                    kind=PurchaseKind(meta.get("kind", PurchaseKind.ONE_TIME.value)),
                    plan_key=meta.get("plan_key"),
                    subscription_id=meta.get("subscription_id"),
                    status=PurchaseStatus.COMPLETED,
                )
            except (KeyError, ValueError):
                raise ValidationError("Charge metadata does not describe a purchase")
            try:
                db.execute(
                    insert(pending_purchases).values(
                        id=purchase.id,
                        user_id=purchase.user_id,
                        external_payment_ref=payment_ref,
                        coins_requested=purchase.coins_requested,
                        amount_cents=purchase.amount_cents,
                        kind=purchase.kind.value,
                        plan_key=purchase.plan_key,
                        subscription_id=purchase.subscription_id,
                        status=PurchaseStatus.COMPLETED.value,
                        created_at=now,
                        completed_at=now,
                    )
                )
                db.flush()
            except IntegrityError:
                raise DuplicatePaymentCompletionError(f"Payment {payment_ref} already recorded")
            return purchase

        if row.amount_cents != charge.amount_cents:
            raise ValidationError("Charged amount does not match the purchase")

        result = db.execute(
            update(pending_purchases)
            .where(
                and_(
                    pending_purchases.c.external_payment_ref == payment_ref,
                    pending_purchases.c.status == PurchaseStatus.PENDING.value,
                )
            )
            .values(status=PurchaseStatus.COMPLETED.value, completed_at=now)
        )
        if result.rowcount != 1:
            raise DuplicatePaymentCompletionError(f"Payment {payment_ref} already completed")

        return PendingPurchase(
            id=row.id,
            user_id=row.user_id,
            external_payment_ref=row.external_payment_ref,
            coins_requested=row.coins_requested,
            amount_cents=row.amount_cents,
            kind=PurchaseKind(row.kind),
            plan_key=row.plan_key,
            subscription_id=row.subscription_id,
            status=PurchaseStatus.COMPLETED,
        )

    def _apply_purchase(self, db, purchase: PendingPurchase, now: datetime) -> PaymentCompletion:
        """
        Settle a claimed purchase: move the subscription, then credit.

        Nothing in here may refuse a claimed payment; when the subscription
        can no longer take the plan that was paid for, the coins are still
        credited under whatever plan governs the user.
        """
        user_id = purchase.user_id
        kind = purchase.kind
        payment_ref = purchase.external_payment_ref
        subscription_id = None
        # A reset that is due happens under the plan that governed before this payment
        before = ensure_fresh_balance(db, user_id, config=self.config, now=now)

        if kind is PurchaseKind.ONE_TIME:
            coins = purchase.coins_requested
        else:
            plan = get_plan(purchase.plan_key)
            coins = plan.monthly_allowance
            if kind is PurchaseKind.SUBSCRIPTION:
                subscription_id = self._settle_subscription(db, user_id, plan, payment_ref, now)
            else:
                subscription_id = self._settle_upgrade(db, purchase, plan, now)

        balance = credit(
            db,
            user_id,
            coins,
            "purchase" if kind is PurchaseKind.ONE_TIME else kind.value,
            config=self.config,
            now=now,
            reference=payment_ref,
        )
        return PaymentCompletion(
            status="completed",
            payment_ref=payment_ref,
            kind=kind,
            coins_credited=balance.coins - before.coins,
            balance=balance.coins,
            subscription_id=subscription_id,
            plan_key=effective_plan(db, user_id, now).key if kind is not PurchaseKind.ONE_TIME else None,
        )

    def _settle_subscription(self, db, user_id: str, plan, payment_ref: str, now: datetime) -> str:
        active = subscription_rows.find_active_row(db, user_id)
        if active is not None and subscription_rows.period_over(active, now):
            subscription_rows.mark_expired(db, active.id, SubscriptionStatus.ACTIVE, now)
            active = None

        if active is None:
            return subscription_rows.insert_active(
                db,
                user_id=user_id,
                plan_key=plan.key,
                payment_ref=payment_ref,
                now=now,
                period_days=self.config.billing_period_days,
            )

        # Paid for a second subscription before the first one completed:
        # keep one subscription, on the pricier of the two plans
        current = get_plan(active.plan_key)
        if plan.monthly_price_cents > current.monthly_price_cents:
            subscription_rows.switch_plan(db, active.id, plan.key, now)
        log_event("warning", "subscription.duplicate_checkout", user_id=user_id,
                  error_code="already_subscribed", extra={"payment_ref": payment_ref, "plan_key": plan.key})
        return active.id

    def _settle_upgrade(self, db, purchase: PendingPurchase, plan, now: datetime) -> Optional[str]:
        if purchase.subscription_id:
            row = subscription_rows.get_row(db, purchase.subscription_id)
        else:
            row = subscription_rows.find_active_row(db, purchase.user_id)

        # A cancellation after the checkout keeps its grace period on the new plan
        if row is not None and subscription_rows.switch_plan(db, row.id, plan.key, now, include_canceled=True):
            return row.id

        log_event("warning", "subscription.upgrade_not_applied", user_id=purchase.user_id,
                  error_code="no_active_subscription",
                  extra={"payment_ref": purchase.external_payment_ref, "plan_key": plan.key})
        return row.id if row is not None else None

    def _announce(self, purchase: PendingPurchase, completion: PaymentCompletion) -> None:
        event = {
            PurchaseKind.ONE_TIME: notifications.COINS_PURCHASED,
            PurchaseKind.SUBSCRIPTION: notifications.SUBSCRIPTION_STARTED,
            PurchaseKind.SUBSCRIPTION_UPGRADE: notifications.SUBSCRIPTION_UPGRADED,
        }[completion.kind]
        notify_safely(
            self.notifier,
            purchase.user_id,
            event,
            {
                "coins": completion.coins_credited,
                "amount_cents": purchase.amount_cents,
                "plan_key": completion.plan_key,
            },
        )
