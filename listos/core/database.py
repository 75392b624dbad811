"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (static pool for in-memory SQLite)
- Table definitions for users, subscriptions, usage events and webhook bookkeeping
"""
from typing import Optional
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean,
    JSON, Text, Index, UniqueConstraint, false,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from listos.core.config import settings


metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

_engine: Optional[Engine] = None
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


def build_engine(url: str) -> Engine:
    """Create an engine suited to the backing store named by ``url``."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "future": True}
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    Initialize the module-level SQLAlchemy engine.

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

    _engine = build_engine(url)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def get_engine() -> Engine:
    """Get the current SQLAlchemy engine."""
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def create_all_tables(engine: Optional[Engine] = None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


# ===== Table definitions =====

users = Table(
    'users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('display_name', String(200), nullable=True),
    Column('role', String(20), nullable=False, server_default='standard'),  # standard | administrator
    Column('worksheet_count', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('last_seen_at', DateTime(timezone=True), nullable=True),
)

subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('external_subscription_id', String(100), nullable=False),
    Column('external_customer_id', String(100), nullable=True),
    Column('status', String(20), nullable=False),  # active, past_due, canceled, expired
    Column('plan_id', String(50), nullable=False, server_default='pro'),
    Column('price_id', String(100), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('last_event_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('external_subscription_id', name='uq_subscriptions_external_id'),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
    Index('idx_subscriptions_period_end', 'current_period_end'),
)

usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(64), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('document_type', String(20), nullable=False),  # worksheet | exam
    Column('subject', String(100), nullable=False, server_default='General'),
    Column('grade', String(50), nullable=False, server_default='N/A'),
    Column('language', String(10), nullable=False, server_default='es'),
    Column('event_metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('event_id', name='uq_usage_events_event_id'),
    Index('idx_usage_events_user_id', 'user_id'),
    Index('idx_usage_events_created_at', 'created_at'),
)

# Webhook idempotency
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('external_subscription_id', String(100), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=True),
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('outcome', String(20), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('provider_event_id', name='uq_billing_events_provider_id'),
    Index('idx_billing_events_processed', 'processed'),
)
