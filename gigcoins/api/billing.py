"""
Billing API routes.

- GET  /api/billing/plans: plan registry
- GET  /api/billing/subscription: current subscription (active or in grace)
- POST /api/billing/subscription: start a subscription checkout
- POST /api/billing/subscription/change: upgrade (prorated) or schedule a downgrade
- POST /api/billing/subscription/cancel: cancel at period end
- POST /api/billing/webhook: gateway webhook, completes succeeded payments
"""
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from gigcoins.core.auth import get_current_user_id
from gigcoins.features.plans.registry import list_plans

router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger("gigcoins.api.billing")


class SubscribeRequest(BaseModel):
    plan_key: str = Field(min_length=1)


class ChangePlanRequest(BaseModel):
    new_plan_key: str = Field(min_length=1)


@router.get("/plans")
def read_plans():
    return {
        "plans": [
            {
                "key": plan.key,
                "label": plan.label,
                "monthly_allowance": plan.monthly_allowance,
                "monthly_price_cents": plan.monthly_price_cents,
                "coin_cap": plan.coin_cap,
                "unlimited_cap": plan.unlimited_cap,
            }
            for plan in list_plans()
        ]
    }


@router.get("/subscription")
def read_subscription(request: Request, user_id: str = Depends(get_current_user_id)):
    subscription = request.app.state.billing.get_subscription(user_id)
    return {"subscription": subscription.model_dump(mode="json") if subscription else None}


@router.post("/subscription")
def subscribe(body: SubscribeRequest, request: Request, user_id: str = Depends(get_current_user_id)):
    """
    Start a subscription checkout.

    Errors:
        400: free plan
        404: unknown plan (plan_not_found)
        409: already subscribed, or a checkout is awaiting payment (checkout_in_progress)
        502: gateway failure
    """
    checkout = request.app.state.billing.create_subscription(user_id, body.plan_key)
    return checkout.model_dump(mode="json")


@router.post("/subscription/change")
def change_subscription(body: ChangePlanRequest, request: Request, user_id: str = Depends(get_current_user_id)):
    """
    Change plan.

    Upgrades return a checkout for the prorated amount (or switch at once when
    nothing is left to charge); downgrades take effect at period end.

    Errors:
        404: unknown plan / no active subscription
        409: already on that plan (no_op)
    """
    change = request.app.state.billing.change_plan(user_id, body.new_plan_key)
    return change.model_dump(mode="json")


@router.post("/subscription/cancel")
def cancel_subscription(request: Request, user_id: str = Depends(get_current_user_id)):
    subscription = request.app.state.billing.cancel_subscription(user_id)
    return {"subscription": subscription.model_dump(mode="json")}


@router.post("/webhook")
async def gateway_webhook(request: Request):
    """
    Verify a gateway webhook and complete the payment it reports.

    Redeliveries are harmless: completion is idempotent per payment reference.
    """
    body = await request.body()
    billing = request.app.state.billing
    payment_ref = billing.gateway.parse_webhook(dict(request.headers), body)
    if payment_ref is None:
        return {"received": True, "status": "ignored"}

    completion = billing.complete_payment(payment_ref)
    logger.info("webhook processed", extra={"payment_ref": payment_ref, "event_type": completion.status})
    return {"received": True, "status": completion.status}
