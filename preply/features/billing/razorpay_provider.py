"""
Razorpay gateway implementation.

Implements PaymentGateway over Razorpay's REST API with httpx.
Every call is bounded by a timeout; timeouts and transport failures surface
as GatewayError with a client-safe message.
"""
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

from preply.core.errors import GatewayError
from preply.core.logging import log_event
from preply.features.billing.provider import GatewayOrder

logger = logging.getLogger("preply")

DEFAULT_API_BASE = "https://api.razorpay.com/v1"
DEFAULT_TIMEOUT_SECONDS = 10.0
GENERIC_GATEWAY_MESSAGE = "Payment provider is unavailable. Please try again."


def compute_payment_signature(secret: str, order_id: str, payment_id: str) -> str:
    """HMAC-SHA256 over "<order_id>|<payment_id>", lowercase hex."""
    body = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_payment_signature(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    """Constant-time comparison of the expected and supplied signatures."""
    if not secret or not signature:
        return False
    expected = compute_payment_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def safe_gateway_message(payload: Any) -> str:
    """
    Extract a message that is safe to show the client.

    Razorpay error bodies look like {"error": {"code": ..., "description": ...}};
    anything else collapses to a generic message.
    """
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            description = error.get("description")
            if isinstance(description, str) and description.strip():
                return description.strip()[:200]
    return GENERIC_GATEWAY_MESSAGE


class RazorpayGateway:
    """Razorpay implementation of the PaymentGateway protocol."""

    def __init__(
        self,
        key_id: Optional[str],
        key_secret: Optional[str],
        api_base: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        if not key_id or not key_secret:
            raise ValueError("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET are required")

        self.key_id = key_id
        self._key_secret = key_secret
        self._client = client or httpx.Client(
            base_url=api_base.rstrip("/"),
            auth=(key_id, key_secret),
            timeout=httpx.Timeout(timeout),
        )

    @classmethod
    def from_settings(cls, settings_obj, client: Optional[httpx.Client] = None) -> "RazorpayGateway":
        return cls(
            key_id=settings_obj.RAZORPAY_KEY_ID,
            key_secret=settings_obj.RAZORPAY_KEY_SECRET,
            api_base=settings_obj.RAZORPAY_API_BASE,
            timeout=settings_obj.GATEWAY_TIMEOUT_SECONDS,
            client=client,
        )

    def close(self) -> None:
        self._client.close()

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """Create a Razorpay order (POST /orders)."""
        body = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        data = self._request("POST", "/orders", json=body)

        order_id = data.get("id")
        if not isinstance(order_id, str) or not order_id:
            log_event("error", "razorpay.order.malformed", event_type="gateway", extra={"payload": data})
            raise GatewayError(GENERIC_GATEWAY_MESSAGE)

        return GatewayOrder(
            order_id=order_id,
            amount=int(data.get("amount", amount)),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", receipt),
            status=data.get("status"),
            notes=data.get("notes") or {},
        )

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return verify_payment_signature(self._key_secret, order_id, payment_id, signature)

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            log_event("error", "razorpay.timeout", event_type="gateway", extra={"path": path, "error": str(e)})
            raise GatewayError(GENERIC_GATEWAY_MESSAGE) from e
        except httpx.HTTPError as e:
            log_event("error", "razorpay.transport_error", event_type="gateway", extra={"path": path, "error": str(e)})
            raise GatewayError(GENERIC_GATEWAY_MESSAGE) from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            log_event(
                "error",
                "razorpay.error_response",
                event_type="gateway",
                extra={"path": path, "status": response.status_code, "payload": payload},
            )
            raise GatewayError(safe_gateway_message(payload))

        if not isinstance(payload, dict):
            log_event("error", "razorpay.unexpected_response", event_type="gateway", extra={"path": path})
            raise GatewayError(GENERIC_GATEWAY_MESSAGE)

        return payload
