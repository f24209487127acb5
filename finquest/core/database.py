"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Table definitions for challenges, transactions, goals and the points ledger
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, false, text
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from finquest.core.config import settings


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
        # SQLite is used for local runs and tests; it does not take pool sizing.
        _engine = create_engine(url, connect_args={"check_same_thread": False}, echo=False)
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
    """Drop the cached engine (tests switch databases between cases)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)  # committed on exit, rolled back on error
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


def check_connection() -> bool:
    """Return True when the database answers a trivial query."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize driver datetimes to tz-aware UTC (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ===== TABLE DEFINITIONS =====

challenges = Table(
    'challenges',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('type', String(32), nullable=False),
    Column('status', String(16), nullable=False, server_default='active'),
    Column('difficulty', String(16), nullable=False),
    Column('frequency', String(16), nullable=False),
    Column('title', Text, nullable=False),
    Column('description', Text, nullable=False),
    Column('rules', JSON, nullable=False),
    Column('progress', JSON, nullable=False),
    Column('reward_points', Integer, nullable=False),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=False),
    Column('provenance', String(16), nullable=False, server_default='manual'),
    Column('generation_context', Text, nullable=True),
    Column('reward_issued', Boolean, nullable=False, server_default=false()),
    Column('version', Integer, nullable=False, server_default=text('1')),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Active-challenge lookups per user are the hot path for every evaluation
    Index('idx_challenges_user_status', 'user_id', 'status'),
)

transactions = Table(
    'transactions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Integer, nullable=False),
    Column('type', String(16), nullable=False),
    Column('category', String(100), nullable=False),
    Column('description', Text, nullable=False, server_default=''),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_transactions_user_occurred', 'user_id', 'occurred_at'),
)

savings_goals = Table(
    'savings_goals',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('name', Text, nullable=False),
    Column('target_amount', Integer, nullable=False),
    Column('current_amount', Integer, nullable=False, server_default=text('0')),
    Column('deadline', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

goal_contributions = Table(
    'goal_contributions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('goal_id', String(64), nullable=False, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Integer, nullable=False),
    Column('note', Text, nullable=True),
    Column('contributed_at', DateTime(timezone=True), nullable=False),
)

points_ledger = Table(
    'points_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Integer, nullable=False),
    Column('reason', Text, nullable=False),
    # One award per key; challenge awards use the challenge id
    Column('idempotency_key', String(255), unique=True, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_points_ledger_user_created', 'user_id', 'created_at'),
)
