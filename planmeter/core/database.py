"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for the plan catalog and subscription ledgers
"""
from typing import Optional
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Numeric, Index, ForeignKey, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from planmeter.core.config import settings
from planmeter.core.errors import InvalidAmountError


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Quantities (usage values, credits) keep four decimal places
QUANTITY_SCALE = 4
QUANTITY = Numeric(18, QUANTITY_SCALE)


def positive_quantity(value, label: str = "Amount") -> Decimal:
    """
    Parse a positive quantity that the QUANTITY columns store exactly.

    Raises:
        InvalidAmountError: not a number, not positive, or finer than the column scale
    """
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidAmountError(f"{label} must be a number, got {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError(f"{label} must be positive, got {value}")
    if amount.normalize().as_tuple().exponent < -QUANTITY_SCALE:
        raise InvalidAmountError(f"{label} allows at most {QUANTITY_SCALE} decimal places, got {value}")
    return amount


# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


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

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=settings.DB_ECHO,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=settings.DB_ECHO,
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


def dispose_engine() -> None:
    """Close pooled connections and forget the engine."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits when the block exits normally and rolls back on any exception,
    so a block either applies all of its writes or none of them.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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


@contextmanager
def session_scope(session: Optional[Session] = None):
    """
    Join the caller's transaction if one is given, otherwise open a new one.

    Services accept an optional session so that several ledger writes can be
    composed into a single atomic unit by the caller.
    """
    if session is not None:
        yield session
        return
    with get_db_session() as own_session:
        yield own_session


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
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Plans
plans = Table(
    'plans',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('slug', String(100), nullable=False, unique=True),
    Column('name', JSON, nullable=False),  # locale -> text
    Column('description', JSON, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('sort_order', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    Index('idx_plans_active_sort', 'is_active', 'sort_order'),
)

# Plan versions: immutable once referenced, except for publish toggles
plan_versions = Table(
    'plan_versions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('plan_id', Integer, ForeignKey('plans.id'), nullable=False),
    Column('version_number', Integer, nullable=False),
    Column('version_label', String(100), nullable=True),
    Column('price', Numeric(12, 2), nullable=False, server_default='0'),
    Column('currency', String(3), nullable=False),
    Column('reset_period', Integer, nullable=True),
    Column('reset_period_type', String(20), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('published_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('plan_id', 'version_number', name='uq_plan_versions_plan_number'),
    # Composite index for current-version resolution
    Index('idx_plan_versions_plan_active_published', 'plan_id', 'is_active', 'published_at'),
)

# Features
features = Table(
    'features',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('slug', String(100), nullable=False, unique=True),
    Column('name', JSON, nullable=False),
    Column('description', JSON, nullable=True),
    Column('type', String(20), nullable=False),  # 'consumable', 'non_consumable'
    Column('sort_order', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
)

# Plan features: allowance of a feature within a plan version
plan_features = Table(
    'plan_features',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('plan_version_id', Integer, ForeignKey('plan_versions.id'), nullable=False),
    Column('feature_id', Integer, ForeignKey('features.id'), nullable=False),
    Column('value', String(50), nullable=True),  # number, 'unlimited', or NULL
    Column('display_value', JSON, nullable=True),
    Column('reset_period', Integer, nullable=True),
    Column('reset_period_type', String(20), nullable=True),
    Column('is_hidden', Boolean, nullable=False, server_default='0'),
    Column('sort_order', Integer, nullable=False, server_default='0'),
    UniqueConstraint('plan_version_id', 'feature_id', name='uq_plan_features_version_feature'),
    Index('idx_plan_features_version', 'plan_version_id'),
)

# Subscriptions (status is derived from timestamps, never stored)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('plan_version_id', Integer, ForeignKey('plan_versions.id'), nullable=False),
    Column('subscriber_type', String(100), nullable=False),
    Column('subscriber_id', String(100), nullable=False),
    Column('start_at', DateTime(timezone=True), nullable=True),
    Column('end_at', DateTime(timezone=True), nullable=True),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('renewed_from_id', Integer, ForeignKey('subscriptions.id'), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    # At most one forward renewal per subscription
    UniqueConstraint('renewed_from_id', name='uq_subscriptions_renewed_from'),
    Index('idx_subscriptions_subscriber', 'subscriber_type', 'subscriber_id'),
    Index('idx_subscriptions_window', 'start_at', 'end_at'),
)

# Usage events: append-only
subscription_feature_usages = Table(
    'subscription_feature_usages',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', Integer, ForeignKey('subscriptions.id'), nullable=False),
    Column('feature_id', Integer, ForeignKey('features.id'), nullable=False),
    Column('value', QUANTITY, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Composite index for window queries: (subscription_id, feature_id, created_at)
    Index('idx_feature_usages_sub_feature_created', 'subscription_id', 'feature_id', 'created_at'),
)

# Extra credits: decremented in place, deleted at zero
subscription_feature_credits = Table(
    'subscription_feature_credits',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', Integer, ForeignKey('subscriptions.id'), nullable=False),
    Column('feature_id', Integer, ForeignKey('features.id'), nullable=False),
    Column('credits', QUANTITY, nullable=False),
    Column('reason', Text, nullable=True),
    Column('granted_by_type', String(100), nullable=True),
    Column('granted_by_id', String(100), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Consumption order: oldest first within (subscription_id, feature_id)
    Index('idx_feature_credits_sub_feature_created', 'subscription_id', 'feature_id', 'created_at'),
    # Purge job scans by expiry
    Index('idx_feature_credits_expires_at', 'expires_at'),
)

# One lock row per (subscription, feature), selected FOR UPDATE around check-then-act
subscription_feature_locks = Table(
    'subscription_feature_locks',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', Integer, ForeignKey('subscriptions.id'), nullable=False),
    Column('feature_id', Integer, ForeignKey('features.id'), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('subscription_id', 'feature_id', name='uq_feature_locks_sub_feature'),
)

# Lifecycle transitions
subscription_events = Table(
    'subscription_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', Integer, ForeignKey('subscriptions.id'), nullable=False),
    Column('event_type', String(50), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscription_events_sub_created', 'subscription_id', 'created_at'),
)
