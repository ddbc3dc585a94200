"""
Payment gateway protocol.

Defines the contract the billing service relies on, so the gateway can be
swapped (Stripe in production, an in-memory fake in tests) without touching
business logic. Metadata is an opaque string bag passed through to the charge
and returned unchanged by retrieve_charge.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from gigcoins.core.errors import PaymentGatewayError

SUCCEEDED = "succeeded"


@dataclass
class ChargeHandle:
    """A created charge: `handle` goes to the client, `ref` is the dedupe key."""
    handle: str
    ref: str


@dataclass
class ChargeStatus:
    status: str
    amount_cents: int
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Every method raises PaymentGatewayError on upstream failure; callers
    surface it and never retry.
    """

    def create_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Create a gateway customer and return its reference."""
        ...

    def create_charge(
        self,
        amount_cents: int,
        metadata: Dict[str, str],
        customer_ref: Optional[str] = None,
    ) -> ChargeHandle:
        """Create a charge for amount_cents tagged with metadata."""
        ...

    def retrieve_charge(self, ref: str) -> ChargeStatus:
        """Fetch the current status of a charge."""
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[str]:
        """
        Verify a webhook delivery.

        Returns:
            The payment reference of a succeeded charge, or None for events
            that do not complete a payment.
        """
        ...


__all__ = ["ChargeHandle", "ChargeStatus", "PaymentGateway", "PaymentGatewayError", "SUCCEEDED"]
