# preply/conftest.py
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from preply.core.config import Settings
from preply.core.database import create_all_tables, create_store_engine
from preply.core.errors import GatewayError
from preply.features.billing.confirmation import PaymentConfirmationService
from preply.features.billing.orders import OrderInitiationService
from preply.features.billing.provider import GatewayOrder
from preply.features.billing.razorpay_provider import compute_payment_signature, verify_payment_signature
from preply.features.billing.store import SubscriptionStore
from preply.features.plans.catalog import build_catalog

TEST_KEY_ID = "rzp_test_key123"
TEST_KEY_SECRET = "test_secret_abc"
START = datetime(2026, 1, 15, 10, 30, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock; call it to read, advance() to move forward."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeGateway:
    """In-memory gateway: sequential order ids, real signature check."""

    key_id = TEST_KEY_ID

    def __init__(self, secret: str = TEST_KEY_SECRET):
        self.secret = secret
        self.calls: List[Dict] = []
        self.fail_with: Optional[Exception] = None

    def create_order(self, amount, currency, receipt, notes=None) -> GatewayOrder:
        self.calls.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        if self.fail_with is not None:
            raise self.fail_with
        return GatewayOrder(
            order_id=f"order_{len(self.calls):04d}",
            amount=amount,
            currency=currency,
            receipt=receipt,
            status="created",
            notes=notes or {},
        )

    def verify_payment_signature(self, order_id, payment_id, signature) -> bool:
        return verify_payment_signature(self.secret, order_id, payment_id, signature)


@pytest.fixture
def settings_obj():
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite://",
        RAZORPAY_KEY_ID=TEST_KEY_ID,
        RAZORPAY_KEY_SECRET=TEST_KEY_SECRET,
        NEXT_PUBLIC_RAZORPAY_KEY_ID=TEST_KEY_ID,
    )


@pytest.fixture
def store():
    """Fresh in-memory store per test."""
    engine = create_store_engine("sqlite://")
    create_all_tables(engine)
    store = SubscriptionStore(engine)
    yield store
    store.close()


@pytest.fixture
def catalog(settings_obj):
    return build_catalog(settings_obj)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sign():
    def _sign(order_id: str, payment_id: str, secret: str = TEST_KEY_SECRET) -> str:
        return compute_payment_signature(secret, order_id, payment_id)
    return _sign


@pytest.fixture
def order_service(catalog, store, gateway, clock):
    return OrderInitiationService(
        catalog=catalog,
        store=store,
        gateway=gateway,
        public_key_id=TEST_KEY_ID,
        clock=clock,
    )


@pytest.fixture
def confirmation_service(catalog, store, gateway, clock):
    return PaymentConfirmationService(catalog=catalog, store=store, gateway=gateway, clock=clock)


@pytest.fixture
def app(settings_obj, store, gateway, clock):
    from preply.main import create_app
    return create_app(settings_obj=settings_obj, store=store, gateway=gateway, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def gateway_down(gateway):
    gateway.fail_with = GatewayError("Payment provider is unavailable. Please try again.")
    return gateway
