"""
Billing models: subscriptions, pending purchases and the results returned by
checkout, payment completion and plan changes.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"  # persisted form of "no subscription"


class PurchaseKind(str, Enum):
    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class Subscription(BaseModel):
    """User subscription state."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_key: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    canceled_at: Optional[datetime] = None
    external_customer_ref: Optional[str] = None
    external_charge_ref: str
    pending_plan_key: Optional[str] = None
    pending_plan_effective_at: Optional[datetime] = None


class PendingPurchase(BaseModel):
    """A checkout awaiting gateway confirmation."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    external_payment_ref: str
    coins_requested: int
    amount_cents: int
    kind: PurchaseKind
    plan_key: Optional[str] = None
    subscription_id: Optional[str] = None
    status: PurchaseStatus = PurchaseStatus.PENDING


class Checkout(BaseModel):
    """What the client needs to confirm a payment with the gateway."""
    model_config = ConfigDict(frozen=True)

    payment_ref: str
    client_handle: str
    kind: PurchaseKind
    coins: int
    amount_cents: int
    plan_key: Optional[str] = None


class PaymentCompletion(BaseModel):
    """
    Outcome of complete_payment.

    status is one of:
    - completed: coins credited (and subscription changed) by this call
    - already_processed: an earlier call completed this payment
    - pending: the gateway has not confirmed the charge yet
    """
    model_config = ConfigDict(frozen=True)

    status: str
    payment_ref: str
    kind: Optional[PurchaseKind] = None
    coins_credited: int = 0
    balance: Optional[int] = None
    subscription_id: Optional[str] = None
    plan_key: Optional[str] = None


class PlanChange(BaseModel):
    """Outcome of change_plan."""
    model_config = ConfigDict(frozen=True)

    type: str  # upgrade | downgrade
    current_plan: str
    new_plan: str
    effective_immediately: bool
    prorated_cents: int = 0
    effective_at: Optional[datetime] = None
    checkout: Optional[Checkout] = None
    coins_credited: int = 0
