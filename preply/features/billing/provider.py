"""
Payment gateway protocol.

Defines the interface the order and confirmation services need from the
payment provider, so tests and other providers can stand in for Razorpay.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass(frozen=True)
class GatewayOrder:
    """Order as created by the provider."""
    order_id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None
    notes: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must handle:
    - Order creation (bounded by a timeout)
    - Checkout signature verification
    """

    key_id: str

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """
        Create a provider order.

        Args:
            amount: Amount in minor units (e.g. paise)
            currency: ISO currency code
            receipt: Merchant receipt identifier
            notes: Opaque metadata echoed back by the provider

        Returns:
            The created order

        Raises:
            GatewayError: If the call fails or times out (message is client-safe)
        """
        ...

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check a checkout signature against the server-held secret."""
        ...
