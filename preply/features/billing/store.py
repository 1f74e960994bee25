"""
Subscription store.

Durable source of truth for payment records and the one-per-user
subscription row. Constructed once at startup around an engine and injected
into the order and confirmation services.

Write rules:
- payments: unique on razorpay_order_id; rows are never deleted.
- capture is claimed with a conditional update, so at most one confirmation
  per order can move it to `captured`.
- subscriptions: written with compare-and-swap on `version`; the first row
  for a user is an insert that loses cleanly to a concurrent insert.
- a captured order extends the subscription once: subscription_applied_at
  is set in the same transaction as the subscription write.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, insert, update, and_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from preply.core.database import payments, subscriptions
from preply.core.errors import PersistenceError
from preply.models.billing import (
    BillingCycle,
    PaymentRecord,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    ensure_utc,
)


def _row_to_payment(row) -> PaymentRecord:
    return PaymentRecord(
        id=row.id,
        user_id=row.user_id,
        plan=row.plan,
        plan_cycle=BillingCycle(row.billing_cycle),
        amount_minor_units=row.amount,
        currency_code=row.currency,
        gateway_order_id=row.razorpay_order_id,
        gateway_payment_id=row.razorpay_payment_id,
        gateway_signature=row.razorpay_signature,
        subscription_applied_at=ensure_utc(row.subscription_applied_at),
        status=PaymentStatus(row.status),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        user_id=row.user_id,
        plan=row.plan,
        billing_cycle=BillingCycle(row.billing_cycle),
        status=SubscriptionStatus(row.status),
        started_at=ensure_utc(row.started_at),
        expires_at=ensure_utc(row.expires_at),
        updated_at=ensure_utc(row.updated_at),
        version=row.version,
    )


class SubscriptionStore:
    """Payments + subscriptions persistence over SQLAlchemy Core."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @contextmanager
    def session(self):
        """
        Transactional scope.

        Usage:
            with store.session() as session:
                session.execute(...)
        """
        session = self._SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        self.engine.dispose()

    # Payments

    def insert_payment(self, record: PaymentRecord) -> None:
        """Persist a new payment record. Raises PersistenceError on failure."""
        try:
            with self.session() as session:
                session.execute(
                    insert(payments).values(
                        id=record.id,
                        user_id=record.user_id,
                        plan=record.plan,
                        billing_cycle=record.plan_cycle.value,
                        amount=record.amount_minor_units,
                        currency=record.currency_code,
                        razorpay_order_id=record.gateway_order_id,
                        razorpay_payment_id=record.gateway_payment_id,
                        razorpay_signature=record.gateway_signature,
                        status=record.status.value,
                        created_at=ensure_utc(record.created_at),
                    )
                )
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to save payment record") from e

    def get_payment(self, order_id: str) -> Optional[PaymentRecord]:
        try:
            with self.session() as session:
                row = session.execute(
                    select(payments).where(payments.c.razorpay_order_id == order_id)
                ).fetchone()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to load payment record") from e
        return _row_to_payment(row) if row else None

    def list_payments(self, user_id: str, limit: int = 50) -> List[PaymentRecord]:
        try:
            with self.session() as session:
                rows = session.execute(
                    select(payments)
                    .where(payments.c.user_id == user_id)
                    .order_by(payments.c.created_at.desc())
                    .limit(limit)
                ).fetchall()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to load payment history") from e
        return [_row_to_payment(row) for row in rows]

    def claim_capture(self, order_id: str, payment_id: str, signature: str, now: datetime) -> bool:
        """
        Mark the order captured unless it already is.

        Returns True only for the call that performed the transition.
        """
        try:
            with self.session() as session:
                result = session.execute(
                    update(payments)
                    .where(
                        and_(
                            payments.c.razorpay_order_id == order_id,
                            payments.c.status != PaymentStatus.CAPTURED.value,
                        )
                    )
                    .values(
                        razorpay_payment_id=payment_id,
                        razorpay_signature=signature,
                        status=PaymentStatus.CAPTURED.value,
                        failure_reason=None,
                        updated_at=ensure_utc(now),
                    )
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to update payment record") from e

    def mark_failed(self, order_id: str, reason: str, now: datetime) -> bool:
        """Move a still-created order to failed. Captured orders are untouched."""
        try:
            with self.session() as session:
                result = session.execute(
                    update(payments)
                    .where(
                        and_(
                            payments.c.razorpay_order_id == order_id,
                            payments.c.status == PaymentStatus.CREATED.value,
                        )
                    )
                    .values(
                        status=PaymentStatus.FAILED.value,
                        failure_reason=reason[:1000],
                        updated_at=ensure_utc(now),
                    )
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to update payment record") from e

    # Subscriptions

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        try:
            with self.session() as session:
                row = session.execute(
                    select(subscriptions).where(subscriptions.c.user_id == user_id)
                ).fetchone()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to load subscription") from e
        return _row_to_subscription(row) if row else None

    def upsert_subscription(
        self,
        sub: Subscription,
        expected_version: Optional[int],
        order_id: Optional[str] = None,
    ) -> bool:
        """
        Write the user's subscription row with compare-and-swap.

        expected_version=None means "no row was seen": insert, and report False
        if another writer created the row first. Otherwise update only if the
        stored version still equals expected_version, bumping it.

        With order_id, the order's subscription_applied_at is claimed in the
        same transaction. If the order was already applied nothing is written
        and False is returned, so each order extends the subscription once.

        Returns False when the write lost a race; raises PersistenceError on
        any other store failure.
        """
        values = dict(
            plan=sub.plan,
            billing_cycle=sub.billing_cycle.value,
            status=sub.status.value,
            started_at=ensure_utc(sub.started_at),
            expires_at=ensure_utc(sub.expires_at),
            updated_at=ensure_utc(sub.updated_at),
        )
        try:
            with self.session() as session:
                if order_id is not None:
                    claimed = session.execute(
                        update(payments)
                        .where(
                            and_(
                                payments.c.razorpay_order_id == order_id,
                                payments.c.subscription_applied_at.is_(None),
                            )
                        )
                        .values(subscription_applied_at=ensure_utc(sub.updated_at))
                    )
                    if claimed.rowcount != 1:
                        session.rollback()
                        return False

                if expected_version is None:
                    try:
                        session.execute(
                            insert(subscriptions).values(user_id=sub.user_id, version=0, **values)
                        )
                    except IntegrityError:
                        # Race condition: another confirmation created the row
                        session.rollback()
                        return False
                    return True

                result = session.execute(
                    update(subscriptions)
                    .where(
                        and_(
                            subscriptions.c.user_id == sub.user_id,
                            subscriptions.c.version == expected_version,
                        )
                    )
                    .values(version=expected_version + 1, **values)
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
                return True
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to update subscription") from e
