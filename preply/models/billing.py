"""
Billing domain models.

Plans are configuration-derived and immutable. Payment records are an
append-style audit trail keyed by the gateway order id. A user has at most
one subscription row; the Free tier has none.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

PRO_PLAN = "pro"


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value) -> Optional["BillingCycle"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class PaymentStatus(str, Enum):
    CREATED = "created"
    CAPTURED = "captured"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    NONE = "none"


class Plan(BaseModel):
    """A purchasable Pro plan for one billing cycle."""
    model_config = ConfigDict(frozen=True)

    cycle_id: BillingCycle
    amount_minor_units: int = Field(gt=0)
    currency_code: str
    duration_months: int = Field(ge=1)
    display_features: Tuple[str, ...] = ()


class PaymentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan: str = PRO_PLAN
    plan_cycle: BillingCycle
    amount_minor_units: int
    currency_code: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    subscription_applied_at: Optional[datetime] = None
    status: PaymentStatus = PaymentStatus.CREATED
    created_at: datetime
    updated_at: Optional[datetime] = None


class Subscription(BaseModel):
    """
    Subscription row (one per user).

    `status` is stored, but activity must always be decided through
    is_active(), which also checks `expires_at` against the clock.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: str = PRO_PLAN
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    started_at: datetime
    expires_at: datetime
    updated_at: datetime
    version: int = 0


def is_active(sub: Optional[Subscription], now: datetime) -> bool:
    return (
        sub is not None
        and sub.status == SubscriptionStatus.ACTIVE
        and ensure_utc(sub.expires_at) > ensure_utc(now)
    )


def effective_status(sub: Optional[Subscription], now: datetime) -> SubscriptionStatus:
    """Status as readers should see it: a lapsed ACTIVE row reads as EXPIRED."""
    if sub is None:
        return SubscriptionStatus.NONE
    if is_active(sub, now):
        return SubscriptionStatus.ACTIVE
    if sub.status == SubscriptionStatus.NONE:
        return SubscriptionStatus.NONE
    return SubscriptionStatus.EXPIRED
