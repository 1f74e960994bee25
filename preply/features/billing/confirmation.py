"""
Payment confirmation.

Trust boundary for the whole flow: the client supplies only the order id,
payment id and checkout signature. Plan, amount and user all come from the
stored payment record.

Steps:
1. Validate the three fields
2. Verify the HMAC signature
3. Resolve the payment record and its plan
4. Claim the capture (at most once per order)
5. Extend or start the subscription with compare-and-swap retries; the
   write claims the order, so each order extends at most once
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from preply.core.errors import PersistenceError
from preply.core.logging import log_event
from preply.features.billing.errors import (
    InvalidRequest,
    InvalidSignature,
    OrderNotFound,
    PlanConfigMissing,
    SubscriptionUpdateFailed,
)
from preply.features.billing.expiry import compute_new_expiry
from preply.features.billing.provider import PaymentGateway
from preply.features.billing.store import SubscriptionStore
from preply.features.plans.catalog import PlanCatalog
from preply.models.billing import (
    PRO_PLAN,
    PaymentRecord,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    utc_now,
)

logger = logging.getLogger("preply")

MAX_WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class ConfirmPaymentInput:
    """Everything the client may submit. There is deliberately no plan or amount."""
    order_id: str
    payment_id: str
    signature: str


@dataclass(frozen=True)
class ConfirmationResult:
    expires_at: datetime
    already_processed: bool = False


def _require_text(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{field} is required")
    return value.strip()


class PaymentConfirmationService:
    """Confirm-purchase operation."""

    def __init__(
        self,
        catalog: PlanCatalog,
        store: SubscriptionStore,
        gateway: PaymentGateway,
        clock: Callable[[], datetime] = utc_now,
        max_write_attempts: int = MAX_WRITE_ATTEMPTS,
    ):
        self.catalog = catalog
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.max_write_attempts = max_write_attempts

    def confirm_payment(self, data: ConfirmPaymentInput) -> ConfirmationResult:
        """
        Verify a checkout result and activate or extend the subscription.

        Raises:
            InvalidRequest: a field is missing or empty
            InvalidSignature: signature does not match order_id|payment_id
            OrderNotFound: no payment record for the order
            PlanConfigMissing: the stored cycle has no plan (never defaulted)
            SubscriptionUpdateFailed: the subscription write failed; the
                payment record is already captured at that point
        """
        order_id = _require_text(data.order_id, "Order ID")
        payment_id = _require_text(data.payment_id, "Payment ID")
        signature = _require_text(data.signature, "Signature")

        now = self.clock()

        if not self.gateway.verify_payment_signature(order_id, payment_id, signature):
            log_event("warning", "payment.invalid_signature", order_id=order_id, event_type="confirm")
            self._record_failure(order_id, "signature_mismatch", now)
            raise InvalidSignature("Invalid payment signature")

        record = self.store.get_payment(order_id)
        if record is None:
            log_event("warning", "payment.order_not_found", order_id=order_id, event_type="confirm")
            raise OrderNotFound("Payment record not found")

        plan = self.catalog.get_plan(record.plan_cycle)
        if plan is None:
            logger.critical(
                "payment.plan_config_missing",
                extra={"order_id": order_id, "billing_cycle": record.plan_cycle.value},
            )
            raise PlanConfigMissing("Invalid plan configuration detected. Please contact support.")

        if record.status == PaymentStatus.CAPTURED:
            return self._already_captured(record, plan.duration_months, payment_id, now)

        if not self.store.claim_capture(order_id, payment_id, signature, now):
            # A concurrent confirmation captured it between our read and write
            return self._already_captured(record, plan.duration_months, payment_id, now)

        result = self._apply_subscription(record, plan.duration_months, now)
        if not result.already_processed:
            log_event(
                "info",
                "payment.captured",
                user_id=record.user_id,
                order_id=order_id,
                event_type="confirm",
                extra={"billing_cycle": record.plan_cycle.value, "expires_at": result.expires_at.isoformat()},
            )
        return result

    def _record_failure(self, order_id: str, reason: str, now: datetime) -> None:
        try:
            self.store.mark_failed(order_id, reason, now)
        except PersistenceError:
            logger.error("payment.mark_failed_error", exc_info=True, extra={"order_id": order_id})

    def _already_captured(
        self, record: PaymentRecord, duration_months: int, payment_id: str, now: datetime
    ) -> ConfirmationResult:
        """Re-submission of a captured order: no second extension."""
        latest = self.store.get_payment(record.gateway_order_id) or record
        if latest.gateway_payment_id and latest.gateway_payment_id != payment_id:
            log_event(
                "warning",
                "payment.capture_payment_id_mismatch",
                user_id=record.user_id,
                order_id=record.gateway_order_id,
                event_type="confirm",
            )
        if latest.subscription_applied_at is None:
            # Captured, but the subscription write has not landed. Applying
            # goes through the same per-order claim, so a writer still in
            # flight and this one cannot both extend.
            logger.warning(
                "payment.captured_without_subscription",
                extra={"user_id": record.user_id, "order_id": record.gateway_order_id},
            )
            return self._apply_subscription(record, duration_months, now)
        return self._applied_result(record)

    def _applied_result(self, record: PaymentRecord) -> ConfirmationResult:
        current = self.store.get_subscription(record.user_id)
        log_event("info", "payment.already_captured", user_id=record.user_id, order_id=record.gateway_order_id, event_type="confirm")
        if current is None:
            raise SubscriptionUpdateFailed("Failed to update subscription")
        return ConfirmationResult(expires_at=current.expires_at, already_processed=True)

    def _apply_subscription(self, record: PaymentRecord, duration_months: int, now: datetime) -> ConfirmationResult:
        for attempt in range(1, self.max_write_attempts + 1):
            try:
                current = self.store.get_subscription(record.user_id)
                expires_at = compute_new_expiry(current, now, duration_months)
                written = self.store.upsert_subscription(
                    Subscription(
                        user_id=record.user_id,
                        plan=PRO_PLAN,
                        billing_cycle=record.plan_cycle,
                        status=SubscriptionStatus.ACTIVE,
                        started_at=now,
                        expires_at=expires_at,
                        updated_at=now,
                    ),
                    expected_version=current.version if current else None,
                    order_id=record.gateway_order_id,
                )
                if written:
                    return ConfirmationResult(expires_at=expires_at)

                latest = self.store.get_payment(record.gateway_order_id)
            except PersistenceError as e:
                logger.error(
                    "subscription.update_failed",
                    exc_info=True,
                    extra={"user_id": record.user_id, "order_id": record.gateway_order_id},
                )
                raise SubscriptionUpdateFailed("Failed to update subscription") from e

            if latest is not None and latest.subscription_applied_at is not None:
                # Another confirmation of this order applied it first
                return self._applied_result(record)

            log_event(
                "warning",
                "subscription.write_conflict",
                user_id=record.user_id,
                order_id=record.gateway_order_id,
                event_type="confirm",
                extra={"attempt": attempt},
            )

        logger.error(
            "subscription.update_conflict_exhausted",
            extra={"user_id": record.user_id, "order_id": record.gateway_order_id},
        )
        raise SubscriptionUpdateFailed("Failed to update subscription")
