"""
Order initiation.

Validates that a user may buy the requested cycle, creates the gateway
order for the catalog amount, and records a `created` payment row.

Upgrade rule: with an active subscription the only purchasable change is
MONTHLY -> YEARLY. Everything else is AlreadySubscribed, decided before any
gateway call is made.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from preply.core.errors import PersistenceError
from preply.core.logging import log_event
from preply.features.billing.errors import AlreadySubscribed, InvalidPlan, Unauthenticated
from preply.features.billing.provider import PaymentGateway
from preply.features.billing.store import SubscriptionStore
from preply.features.plans.catalog import PlanCatalog
from preply.models.billing import (
    PRO_PLAN,
    BillingCycle,
    PaymentRecord,
    PaymentStatus,
    Subscription,
    is_active,
    utc_now,
)

logger = logging.getLogger("preply")


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    amount: int
    currency: str
    key_id: Optional[str]


def upgrade_allowed(current: Optional[Subscription], requested: BillingCycle, now: datetime) -> bool:
    """True when a purchase of `requested` is permitted given the current row."""
    if not is_active(current, now):
        return True
    return current.billing_cycle == BillingCycle.MONTHLY and requested == BillingCycle.YEARLY


def build_receipt(prefix: str, user_id: str, now: datetime) -> str:
    """Best-effort unique receipt: prefix, user id head, epoch millis (<= 40 chars)."""
    millis = int(now.timestamp() * 1000)
    return f"{prefix}_{user_id[:8]}_{millis}"[:40]


class OrderInitiationService:
    """Begin-purchase operation."""

    def __init__(
        self,
        catalog: PlanCatalog,
        store: SubscriptionStore,
        gateway: PaymentGateway,
        public_key_id: Optional[str] = None,
        receipt_prefix: str = "preply",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.catalog = catalog
        self.store = store
        self.gateway = gateway
        self.public_key_id = public_key_id
        self.receipt_prefix = receipt_prefix
        self.clock = clock

    def initiate_order(self, user_id: Optional[str], requested_cycle: Union[BillingCycle, str, None]) -> OrderResult:
        """
        Create a gateway order for the requested cycle.

        Raises:
            Unauthenticated: no user id
            InvalidPlan: unknown billing cycle
            AlreadySubscribed: active subscription and not the monthly->yearly upgrade
            GatewayError: provider call failed (no payment row is written)
        """
        if not user_id or not str(user_id).strip():
            raise Unauthenticated("Please login to continue")
        user_id = str(user_id).strip()

        plan = self.catalog.get_plan(requested_cycle)
        if plan is None:
            raise InvalidPlan("Invalid billing cycle. Must be 'monthly' or 'yearly'.")

        now = self.clock()
        current = self.store.get_subscription(user_id)
        if not upgrade_allowed(current, plan.cycle_id, now):
            log_event(
                "info",
                "order.rejected_already_subscribed",
                user_id=user_id,
                event_type="order",
                extra={"current_cycle": current.billing_cycle.value, "requested_cycle": plan.cycle_id.value},
            )
            raise AlreadySubscribed("You already have an active Pro subscription.")

        order = self.gateway.create_order(
            amount=plan.amount_minor_units,
            currency=plan.currency_code,
            receipt=build_receipt(self.receipt_prefix, user_id, now),
            notes={
                "userId": user_id,
                "billingCycle": plan.cycle_id.value,
                "plan": PRO_PLAN,
            },
        )
        log_event("info", "order.created", user_id=user_id, order_id=order.order_id, event_type="order")

        record = PaymentRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            plan=PRO_PLAN,
            plan_cycle=plan.cycle_id,
            amount_minor_units=plan.amount_minor_units,
            currency_code=plan.currency_code,
            gateway_order_id=order.order_id,
            status=PaymentStatus.CREATED,
            created_at=now,
        )
        try:
            self.store.insert_payment(record)
        except PersistenceError:
            # The gateway order exists; do not block the user. Confirmation
            # reports OrderNotFound for this order.
            logger.error(
                "order.payment_record_failed",
                exc_info=True,
                extra={"user_id": user_id, "order_id": order.order_id},
            )

        return OrderResult(
            order_id=order.order_id,
            amount=plan.amount_minor_units,
            currency=plan.currency_code,
            key_id=self.public_key_id,
        )
