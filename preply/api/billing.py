"""
Payments API routes.

Surface:
- POST /api/payments/order: Begin purchase (create gateway order)
- POST /api/payments/verify: Confirm purchase (verify checkout signature)
- GET  /api/payments/plans: Plan catalog for the pricing page
- GET  /api/payments/subscription: Caller's subscription status
- GET  /api/payments/history: Caller's payment records

The payment entry points check configuration before they look at the body,
so a misconfigured deployment answers 503 regardless of input.
"""
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from preply.core.auth import require_user_id
from preply.core.config import ensure_payments_configured
from preply.core.errors import ConfigurationError
from preply.features.billing.confirmation import ConfirmPaymentInput
from preply.features.billing.errors import InvalidRequest
from preply.features.plans.catalog import FREE_FEATURES
from preply.models.billing import effective_status, is_active


router = APIRouter(prefix="/payments", tags=["payments"])


class CreateOrderRequest(BaseModel):
    """Begin-purchase body. Amount is never accepted from the client."""
    model_config = ConfigDict(extra="ignore")

    billingCycle: str
    userId: Optional[str] = None


class CreateOrderResponse(BaseModel):
    orderId: str
    amount: int
    currency: str
    keyId: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    """Checkout result as posted by the Razorpay widget handler."""
    model_config = ConfigDict(extra="ignore")

    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class VerifyPaymentResponse(BaseModel):
    success: bool
    message: str
    expiresAt: str  # ISO8601


class PlanView(BaseModel):
    billingCycle: str
    amount: int
    currency: str
    durationMonths: int
    features: List[str]


class PlansResponse(BaseModel):
    free: List[str]
    pro: List[PlanView]


class SubscriptionResponse(BaseModel):
    plan: str
    billingCycle: Optional[str] = None
    status: str
    expiresAt: Optional[str] = None
    isActive: bool


class PaymentView(BaseModel):
    orderId: str
    billingCycle: str
    amount: int
    currency: str
    status: str
    createdAt: str


def iso_utc(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise InvalidRequest("Invalid JSON body")


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise ConfigurationError("Payment service not configured. Please contact support.")
    return service


@router.post("/order", response_model=CreateOrderResponse)
async def create_order(request: Request):
    """
    Create a Razorpay order for the requested billing cycle.

    Errors:
        503: Payment service not configured
        400: Invalid body or billing cycle
        401: Missing userId
        409: Already subscribed (only monthly -> yearly is allowed)
        500: Gateway or unexpected error
    """
    ensure_payments_configured(request.app.state.settings)
    payload = await _read_json(request)
    try:
        body = CreateOrderRequest.model_validate(payload)
    except PydanticValidationError:
        raise InvalidRequest("Invalid request data")

    service = _service(request, "order_service")
    result = await run_in_threadpool(service.initiate_order, body.userId, body.billingCycle)
    return {
        "orderId": result.order_id,
        "amount": result.amount,
        "currency": result.currency,
        "keyId": result.key_id,
    }


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(request: Request):
    """
    Verify a completed checkout and activate or extend the subscription.

    Errors:
        503: Payment service not configured
        400: Invalid body or signature mismatch
        404: Order not found
        500: Plan configuration fault, subscription update failure, unexpected error
    """
    ensure_payments_configured(request.app.state.settings)
    payload = await _read_json(request)
    try:
        body = VerifyPaymentRequest.model_validate(payload)
    except PydanticValidationError:
        raise InvalidRequest("Invalid request data")

    service = _service(request, "confirmation_service")
    result = await run_in_threadpool(
        service.confirm_payment,
        ConfirmPaymentInput(
            order_id=body.razorpay_order_id,
            payment_id=body.razorpay_payment_id,
            signature=body.razorpay_signature,
        ),
    )
    message = (
        "Payment already verified"
        if result.already_processed
        else "Payment verified and subscription activated"
    )
    return {"success": True, "message": message, "expiresAt": iso_utc(result.expires_at)}


@router.get("/plans", response_model=PlansResponse)
async def list_plans(request: Request):
    catalog = request.app.state.catalog
    return {
        "free": list(FREE_FEATURES),
        "pro": [
            {
                "billingCycle": plan.cycle_id.value,
                "amount": plan.amount_minor_units,
                "currency": plan.currency_code,
                "durationMonths": plan.duration_months,
                "features": list(plan.display_features),
            }
            for plan in catalog.plans()
        ],
    }


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(request: Request, user_id: str = Depends(require_user_id)):
    """Caller's subscription, with status re-derived from the expiry."""
    store = _service(request, "store")
    sub = await run_in_threadpool(store.get_subscription, user_id)
    now = request.app.state.clock()
    if sub is None:
        return {"plan": "free", "billingCycle": None, "status": "none", "expiresAt": None, "isActive": False}
    active = is_active(sub, now)
    return {
        "plan": sub.plan if active else "free",
        "billingCycle": sub.billing_cycle.value,
        "status": effective_status(sub, now).value,
        "expiresAt": iso_utc(sub.expires_at),
        "isActive": active,
    }


@router.get("/history", response_model=List[PaymentView])
async def get_history(request: Request, user_id: str = Depends(require_user_id)):
    store = _service(request, "store")
    records = await run_in_threadpool(store.list_payments, user_id)
    return [
        {
            "orderId": r.gateway_order_id,
            "billingCycle": r.plan_cycle.value,
            "amount": r.amount_minor_units,
            "currency": r.currency_code,
            "status": r.status.value,
            "createdAt": iso_utc(r.created_at),
        }
        for r in records
    ]
