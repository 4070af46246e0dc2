"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory via StaticPool)
- Table definitions for plans, purchases, referral rewards, promo codes,
  documents and notifications
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Float, Index, ForeignKey, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from legalinsight.core.config import settings


logger = logging.getLogger("legalinsight.database")

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

    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

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

    One session is one transaction: everything executed inside the block
    commits together or rolls back together.

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


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


# Users (mirrors the hosted auth provider's user ids)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True, unique=True),
    Column('display_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Plan Store: at most one row per user, overwritten in place
user_plans = Table(
    'user_plans',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, unique=True),
    Column('plan_id', String(50), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    # Weak reference to purchases.id (no FK: purchases are written first in the same transaction)
    Column('purchase_id', String(36), nullable=True),
    Column('paused_referral_reward', JSON, nullable=True),
    Column('user_email', String(320), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_user_plans_plan_expires', 'plan_id', 'expires_at'),
)

# Purchase Ledger
purchases = Table(
    'purchases',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('order_id', String(200), nullable=False),
    Column('product_id', String(200), nullable=False),
    Column('plan_id', String(50), nullable=False),
    Column('amount', Float, nullable=False, default=0.0),
    Column('currency', String(10), nullable=False, default='USD'),
    Column('status', String(20), nullable=False),  # completed, refunded
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('order_id', name='uq_purchases_order_id'),
    Index('idx_purchases_user_status', 'user_id', 'status'),
)

# Referrals (who referred whom)
referrals = Table(
    'referrals',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('referrer_user_id', String(100), nullable=False, index=True),
    Column('referred_user_id', String(100), nullable=False),
    Column('referral_email', String(320), nullable=False),
    Column('first_paid_purchase_at', DateTime(timezone=True), nullable=True),
    Column('reward_granted', Boolean, nullable=False, default=False),
    Column('reward_month_year', String(7), nullable=True),
    Column('reward_plan_id', String(50), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('referred_user_id', name='uq_referrals_referred_user'),
    Index('idx_referrals_referrer_paid', 'referrer_user_id', 'first_paid_purchase_at'),
)

# Referral Reward Ledger: one row per user per month-year
referral_rewards = Table(
    'referral_rewards',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('month_year', String(7), nullable=False),  # YYYY-MM
    Column('plan_id', String(50), nullable=False),
    Column('referral_count', Integer, nullable=False, default=0),
    Column('starts_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'month_year', name='uq_referral_rewards_user_month'),
    Index('idx_referral_rewards_user_window', 'user_id', 'starts_at', 'expires_at'),
)

# Promo codes
promo_codes = Table(
    'promo_codes',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('code', String(100), nullable=False),  # stored upper-case
    Column('status', String(20), nullable=False, default='active'),
    Column('max_usage', Integer, nullable=False, default=1),
    Column('current_usage', Integer, nullable=False, default=0),
    Column('expiry_date', DateTime(timezone=True), nullable=False),
    Column('validity_duration_days', Integer, nullable=False, default=30),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('code', name='uq_promo_codes_code'),
)

promo_code_redemptions = Table(
    'promo_code_redemptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('promo_code_id', String(36), ForeignKey('promo_codes.id'), nullable=False),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False, default='premium'),
    Column('starts_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('validity_duration_days', Integer, nullable=False),
    Column('redeemed_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('promo_code_id', 'user_id', name='uq_promo_redemptions_code_user'),
)

# Documents (countable unit for the Usage Counter)
documents = Table(
    'documents',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('title', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('deleted', Boolean, nullable=False, default=False),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    # Composite index for the windowed count query
    Index('idx_documents_user_created', 'user_id', 'created_at'),
)

# User-visible plan notifications
plan_notifications = Table(
    'plan_notifications',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('kind', String(50), nullable=False),
    Column('title', String(200), nullable=False),
    Column('message', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('read_at', DateTime(timezone=True), nullable=True),
    Index('idx_plan_notifications_user_created', 'user_id', 'created_at'),
)

# Webhook idempotency
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_key', String(250), nullable=False),
    Column('event_type', String(50), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the canonical payload
    Column('processed', Boolean, nullable=False, default=False, index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('event_key', name='uq_billing_events_event_key'),
)

# Scheduled job runs
plan_job_runs = Table(
    'plan_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
)

