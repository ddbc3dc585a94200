"""
Stripe payment gateway.

Implements PaymentGateway with PaymentIntents. Webhooks are verified with the
endpoint secret and only payment_intent.succeeded completes a payment.
"""
import logging
from typing import Any, Dict, Optional

import stripe

from gigcoins.core.errors import PaymentGatewayError
from gigcoins.features.payments.gateway import ChargeHandle, ChargeStatus

logger = logging.getLogger("gigcoins.payments.stripe")

COMPLETING_EVENTS = ("payment_intent.succeeded",)


class StripeGateway:
    """Stripe implementation of the PaymentGateway protocol."""

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None, currency: str = "usd"):
        if not secret_key:
            raise PaymentGatewayError("STRIPE_SECRET_KEY not configured")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        stripe.api_key = secret_key

    def create_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        customer_data: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            customer_data["email"] = email
        if name:
            customer_data["name"] = name
        try:
            customer = stripe.Customer.create(**customer_data)
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Stripe customer creation failed: {e}")
        return customer.id

    def create_charge(
        self,
        amount_cents: int,
        metadata: Dict[str, str],
        customer_ref: Optional[str] = None,
    ) -> ChargeHandle:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "metadata": {k: str(v) for k, v in metadata.items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_ref:
            params["customer"] = customer_ref
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Stripe charge creation failed: {e}")
        return ChargeHandle(handle=intent.client_secret, ref=intent.id)

    def retrieve_charge(self, ref: str) -> ChargeStatus:
        try:
            intent = stripe.PaymentIntent.retrieve(ref)
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Stripe charge lookup failed: {e}")
        return ChargeStatus(
            status=intent.status,
            amount_cents=intent.amount,
            metadata=dict(intent.metadata or {}),
        )

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[str]:
        if not self.webhook_secret:
            raise PaymentGatewayError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise PaymentGatewayError("Missing stripe-signature header", status_code=400)

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise PaymentGatewayError(f"Invalid payload: {e}", status_code=400)
        except stripe.SignatureVerificationError as e:
            raise PaymentGatewayError(f"Invalid signature: {e}", status_code=400)

        if event["type"] not in COMPLETING_EVENTS:
            logger.info("stripe webhook ignored", extra={"event_type": event["type"]})
            return None
        return event["data"]["object"]["id"]
