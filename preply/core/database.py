"""
Database configuration and table definitions.

This module provides:
- SQLAlchemy Core table definitions for payments and subscriptions
- Engine construction with sane pooling defaults
- Idempotent schema creation

There is no module-level engine: the application builds one at startup and
hands it to the SubscriptionStore.
"""
from typing import Optional

from sqlalchemy import (
    create_engine,
    inspect,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Index,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def create_store_engine(database_url: Optional[str]) -> Engine:
    """
    Build the SQLAlchemy engine for the subscription store.

    In-memory SQLite (tests) shares one connection across threads so every
    session sees the same database.
    """
    if not database_url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """Return True when a trivial query succeeds."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def missing_tables(engine: Engine) -> list:
    inspector = inspect(engine)
    return [name for name in metadata.tables if not inspector.has_table(name)]


# Payment attempts (audit trail, never deleted)
payments = Table(
    'payments',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(255), nullable=False),
    Column('plan', String(50), nullable=False, server_default='pro'),
    Column('billing_cycle', String(20), nullable=False),
    Column('amount', Integer, nullable=False),  # minor units
    Column('currency', String(3), nullable=False),
    Column('razorpay_order_id', String(255), nullable=False, unique=True),
    Column('razorpay_payment_id', String(255), nullable=True),
    Column('razorpay_signature', String(255), nullable=True),
    Column('status', String(20), nullable=False, server_default='created'),  # created, captured, failed
    Column('failure_reason', Text, nullable=True),
    Column('subscription_applied_at', DateTime(timezone=True), nullable=True),  # set once, with the subscription write
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=True),
    Index('idx_payments_user_id', 'user_id'),
    Index('idx_payments_status', 'status'),
)

# One subscription row per user; version backs compare-and-swap writes
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(255), primary_key=True),
    Column('plan', String(50), nullable=False, server_default='pro'),
    Column('billing_cycle', String(20), nullable=False),
    Column('status', String(20), nullable=False),  # active, expired, none
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('version', Integer, nullable=False, server_default='0'),
    Index('idx_subscriptions_expires_at', 'expires_at'),
)
