"""Tests for payment confirmation (signature gate, expiry, idempotency)."""
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from preply.core.errors import PersistenceError
from preply.features.billing.confirmation import ConfirmPaymentInput, PaymentConfirmationService
from preply.features.billing.errors import (
    InvalidRequest,
    InvalidSignature,
    OrderNotFound,
    PlanConfigMissing,
    SubscriptionUpdateFailed,
)
from preply.features.plans.catalog import PlanCatalog
from preply.models.billing import (
    BillingCycle,
    PaymentStatus,
    Plan,
    Subscription,
    SubscriptionStatus,
    is_active,
)

UTC = timezone.utc


def _confirm(service, order_id, payment_id, signature):
    return service.confirm_payment(ConfirmPaymentInput(order_id=order_id, payment_id=payment_id, signature=signature))


def test_confirm_input_has_no_plan_or_amount():
    fields = set(ConfirmPaymentInput.__dataclass_fields__)
    assert fields == {"order_id", "payment_id", "signature"}


@pytest.mark.parametrize(
    "order_id, payment_id, signature",
    [("", "pay_1", "sig"), ("order_1", "", "sig"), ("order_1", "pay_1", ""), (None, "pay_1", "sig"), ("order_1", "  ", "sig")],
)
def test_missing_fields_are_invalid_request(confirmation_service, order_id, payment_id, signature):
    with pytest.raises(InvalidRequest) as exc:
        _confirm(confirmation_service, order_id, payment_id, signature)
    assert exc.value.status_code == 400


def test_new_monthly_subscription_expires_one_month_out(order_service, confirmation_service, store, clock, sign):
    order = order_service.initiate_order("user_alice", "monthly")

    result = _confirm(confirmation_service, order.order_id, "pay_1", sign(order.order_id, "pay_1"))

    assert result.expires_at == datetime(2026, 2, 15, 10, 30, tzinfo=UTC)
    assert result.already_processed is False
    sub = store.get_subscription("user_alice")
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.billing_cycle == BillingCycle.MONTHLY
    assert sub.started_at == clock()
    assert sub.updated_at == clock()
    assert sub.expires_at == result.expires_at

    record = store.get_payment(order.order_id)
    assert record.status == PaymentStatus.CAPTURED
    assert record.gateway_payment_id == "pay_1"
    assert record.gateway_signature == sign(order.order_id, "pay_1")


def test_upgrade_extends_from_existing_expiry(order_service, confirmation_service, store, clock, sign):
    first = order_service.initiate_order("user_alice", "monthly")
    _confirm(confirmation_service, first.order_id, "pay_1", sign(first.order_id, "pay_1"))
    prior_expiry = store.get_subscription("user_alice").expires_at

    clock.advance(days=10)
    upgrade = order_service.initiate_order("user_alice", "yearly")
    result = _confirm(confirmation_service, upgrade.order_id, "pay_2", sign(upgrade.order_id, "pay_2"))

    assert result.expires_at == datetime(2027, 2, 15, 10, 30, tzinfo=UTC)
    assert result.expires_at == prior_expiry.replace(year=prior_expiry.year + 1)
    sub = store.get_subscription("user_alice")
    assert sub.billing_cycle == BillingCycle.YEARLY
    assert sub.started_at == clock()


def test_lapsed_subscription_resets_from_now(order_service, confirmation_service, store, clock, sign):
    first = order_service.initiate_order("user_alice", "monthly")
    _confirm(confirmation_service, first.order_id, "pay_1", sign(first.order_id, "pay_1"))

    clock.advance(days=90)
    renewal = order_service.initiate_order("user_alice", "monthly")
    result = _confirm(confirmation_service, renewal.order_id, "pay_2", sign(renewal.order_id, "pay_2"))

    assert result.expires_at == datetime(2026, 5, 15, 10, 30, tzinfo=UTC)


def test_bad_signature_rejected_and_marks_order_failed(order_service, confirmation_service, store, sign):
    order = order_service.initiate_order("user_alice", "monthly")
    good = sign(order.order_id, "pay_1")
    tampered = good[:-1] + ("0" if good[-1] != "0" else "1")

    with pytest.raises(InvalidSignature):
        _confirm(confirmation_service, order.order_id, "pay_1", tampered)

    assert store.get_payment(order.order_id).status == PaymentStatus.FAILED
    assert store.get_subscription("user_alice") is None

    # The genuine checkout result still goes through afterwards
    result = _confirm(confirmation_service, order.order_id, "pay_1", good)
    assert store.get_payment(order.order_id).status == PaymentStatus.CAPTURED
    assert result.expires_at > datetime(2026, 2, 1, tzinfo=UTC)


def test_signature_from_another_secret_rejected(order_service, confirmation_service, sign):
    order = order_service.initiate_order("user_alice", "monthly")
    with pytest.raises(InvalidSignature):
        _confirm(confirmation_service, order.order_id, "pay_1", sign(order.order_id, "pay_1", secret="attacker"))


def test_unknown_order_is_not_found_even_with_valid_signature(confirmation_service, sign):
    with pytest.raises(OrderNotFound) as exc:
        _confirm(confirmation_service, "order_ghost", "pay_1", sign("order_ghost", "pay_1"))
    assert exc.value.status_code == 404


def test_resubmission_does_not_extend_twice(order_service, confirmation_service, store, clock, sign):
    order = order_service.initiate_order("user_alice", "monthly")
    sig = sign(order.order_id, "pay_1")
    first = _confirm(confirmation_service, order.order_id, "pay_1", sig)

    clock.advance(minutes=5)
    second = _confirm(confirmation_service, order.order_id, "pay_1", sig)

    assert second.already_processed is True
    assert second.expires_at == first.expires_at
    assert store.get_subscription("user_alice").expires_at == first.expires_at


def test_missing_plan_config_is_integrity_fault(order_service, store, gateway, clock, sign, caplog):
    order = order_service.initiate_order("user_alice", "yearly")
    monthly_only = PlanCatalog([
        Plan(cycle_id=BillingCycle.MONTHLY, amount_minor_units=79900, currency_code="INR", duration_months=1),
    ])
    service = PaymentConfirmationService(catalog=monthly_only, store=store, gateway=gateway, clock=clock)

    with pytest.raises(PlanConfigMissing) as exc:
        _confirm(service, order.order_id, "pay_1", sign(order.order_id, "pay_1"))

    assert exc.value.status_code == 500
    assert store.get_subscription("user_alice") is None
    assert store.get_payment(order.order_id).status == PaymentStatus.CREATED
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


def test_subscription_write_failure_leaves_payment_captured(order_service, confirmation_service, store, sign):
    order = order_service.initiate_order("user_alice", "monthly")

    with patch.object(store, "upsert_subscription", side_effect=PersistenceError("db down")):
        with pytest.raises(SubscriptionUpdateFailed) as exc:
            _confirm(confirmation_service, order.order_id, "pay_1", sign(order.order_id, "pay_1"))

    assert exc.value.status_code == 500
    assert store.get_payment(order.order_id).status == PaymentStatus.CAPTURED
    assert store.get_subscription("user_alice") is None


def test_retry_after_failed_write_activates_once(order_service, confirmation_service, store, sign):
    order = order_service.initiate_order("user_alice", "monthly")
    sig = sign(order.order_id, "pay_1")
    with patch.object(store, "upsert_subscription", side_effect=PersistenceError("db down")):
        with pytest.raises(SubscriptionUpdateFailed):
            _confirm(confirmation_service, order.order_id, "pay_1", sig)

    result = _confirm(confirmation_service, order.order_id, "pay_1", sig)

    assert result.expires_at == datetime(2026, 2, 15, 10, 30, tzinfo=UTC)
    assert is_active(store.get_subscription("user_alice"), datetime(2026, 1, 16, tzinfo=UTC))


def test_lost_race_recomputes_from_winner(order_service, confirmation_service, store, clock, sign):
    order = order_service.initiate_order("user_alice", "monthly")
    real_upsert = store.upsert_subscription
    winner_expiry = datetime(2026, 6, 1, tzinfo=UTC)
    state = {"raced": False}

    def racing_upsert(sub, expected_version, order_id=None):
        if not state["raced"]:
            state["raced"] = True
            # Another confirmation lands between our read and our write
            real_upsert(
                Subscription(
                    user_id="user_alice",
                    billing_cycle=BillingCycle.MONTHLY,
                    status=SubscriptionStatus.ACTIVE,
                    started_at=clock(),
                    expires_at=winner_expiry,
                    updated_at=clock(),
                ),
                expected_version=None,
            )
        return real_upsert(sub, expected_version, order_id=order_id)

    with patch.object(store, "upsert_subscription", side_effect=racing_upsert):
        result = _confirm(confirmation_service, order.order_id, "pay_1", sign(order.order_id, "pay_1"))

    assert result.expires_at == datetime(2026, 7, 1, tzinfo=UTC)
    assert store.get_subscription("user_alice").version == 1


def test_conflicts_exhausted_fail(order_service, confirmation_service, store, sign):
    order = order_service.initiate_order("user_alice", "monthly")
    with patch.object(store, "upsert_subscription", return_value=False) as upsert:
        with pytest.raises(SubscriptionUpdateFailed):
            _confirm(confirmation_service, order.order_id, "pay_1", sign(order.order_id, "pay_1"))
    assert upsert.call_count == confirmation_service.max_write_attempts


def test_plan_amount_comes_from_record_not_client(order_service, confirmation_service, store, sign):
    order = order_service.initiate_order("user_alice", "yearly")
    result = _confirm(confirmation_service, order.order_id, "pay_1", sign(order.order_id, "pay_1"))
    assert result.expires_at == datetime(2027, 1, 15, 10, 30, tzinfo=UTC)
    assert store.get_subscription("user_alice").billing_cycle == BillingCycle.YEARLY


def test_overlapping_resubmission_extends_once(order_service, confirmation_service, store, sign):
    order = order_service.initiate_order("user_alice", "monthly")
    sig = sign(order.order_id, "pay_1")
    real_upsert = store.upsert_subscription
    state = {"resubmitted": False}
    nested = []

    def resubmit_then_write(sub, expected_version, order_id=None):
        if not state["resubmitted"]:
            state["resubmitted"] = True
            # The same checkout result arrives again while the first write is in flight
            nested.append(_confirm(confirmation_service, order.order_id, "pay_1", sig))
        return real_upsert(sub, expected_version, order_id=order_id)

    with patch.object(store, "upsert_subscription", side_effect=resubmit_then_write):
        result = _confirm(confirmation_service, order.order_id, "pay_1", sig)

    one_month = datetime(2026, 2, 15, 10, 30, tzinfo=UTC)
    assert nested[0].expires_at == one_month
    assert result.expires_at == one_month
    assert result.already_processed is True
    sub = store.get_subscription("user_alice")
    assert sub.expires_at == one_month
    assert sub.version == 0
    assert store.get_payment(order.order_id).subscription_applied_at is not None


def test_applied_order_is_not_reapplied_after_later_purchase(order_service, confirmation_service, store, clock, sign):
    first = order_service.initiate_order("user_alice", "monthly")
    first_sig = sign(first.order_id, "pay_1")
    _confirm(confirmation_service, first.order_id, "pay_1", first_sig)

    clock.advance(days=1)
    upgrade = order_service.initiate_order("user_alice", "yearly")
    upgraded = _confirm(confirmation_service, upgrade.order_id, "pay_2", sign(upgrade.order_id, "pay_2"))

    again = _confirm(confirmation_service, first.order_id, "pay_1", first_sig)

    assert again.already_processed is True
    assert again.expires_at == upgraded.expires_at
    assert store.get_subscription("user_alice").expires_at == datetime(2027, 2, 15, 10, 30, tzinfo=UTC)


def test_month_end_purchase_rolls_over(order_service, confirmation_service, clock, sign):
    clock.now = datetime(2026, 1, 31, 10, 30, tzinfo=UTC)
    order = order_service.initiate_order("user_alice", "monthly")

    result = _confirm(confirmation_service, order.order_id, "pay_1", sign(order.order_id, "pay_1"))

    assert result.expires_at == datetime(2026, 3, 3, 10, 30, tzinfo=UTC)
