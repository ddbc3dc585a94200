"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL) and SQLite support for tests
- Table definitions for balances, the coin ledger, subscriptions and purchases
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Text, Index,
    UniqueConstraint, CheckConstraint, text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os


logger = logging.getLogger("gigcoins.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to aware UTC (SQLite returns naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from the environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL")


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if make_url(url).get_backend_name() == "sqlite":
        engine_kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if make_url(url).database in (None, "", ":memory:"):
            engine_kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, echo=False, **engine_kwargs)
    else:
        # Create engine with connection pooling
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Commits on clean exit, rolls back on any exception.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Coin balances: one row per user, mutated only through compare-and-set updates
coin_balances = Table(
    'coin_balances',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('coins', Integer, nullable=False),
    Column('last_reset_at', DateTime(timezone=True), nullable=False),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('coins >= 0', name='ck_coin_balances_non_negative'),
    Index('idx_coin_balances_last_reset_at', 'last_reset_at'),
)

# Append-only coin ledger: balance == sum(delta) per user
coin_ledger = Table(
    'coin_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('delta', Integer, nullable=False),
    Column('reason', String(100), nullable=False),
    Column('balance_after', Integer, nullable=False),
    Column('reference', String(200), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_coin_ledger_user_created', 'user_id', 'created_at', 'id'),
)

# Billing customers (one gateway customer per user)
billing_customers = Table(
    'billing_customers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, unique=True, index=True),
    Column('external_customer_ref', String(100), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Subscriptions: at most one active row per user
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_key', String(50), nullable=False),
    Column('status', String(20), nullable=False, index=True),  # active, canceled, expired
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('external_customer_ref', String(100), nullable=True),
    Column('external_charge_ref', String(100), nullable=False, unique=True),
    Column('pending_plan_key', String(50), nullable=True),
    Column('pending_plan_effective_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index(
        'uq_subscriptions_one_active_per_user',
        'user_id',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
    Index('idx_subscriptions_status_period_end', 'status', 'current_period_end'),
)

# Pending purchases: completed at most once, keyed by the gateway payment reference
pending_purchases = Table(
    'pending_purchases',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('external_payment_ref', String(100), nullable=False),
    Column('coins_requested', Integer, nullable=False),
    Column('amount_cents', Integer, nullable=False),
    Column('kind', String(30), nullable=False),  # one_time, subscription, subscription_upgrade
    Column('plan_key', String(50), nullable=True),
    Column('subscription_id', String(36), nullable=True),  # upgrades: the subscription being changed
    Column('status', String(20), nullable=False, server_default='pending', index=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('external_payment_ref', name='uq_pending_purchases_payment_ref'),
)

# Maintenance job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
)
