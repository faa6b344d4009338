"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine construction and transaction scopes
- Connection pooling with bounded timeouts
- Dialect-aware "insert unless present" helper
- Table definitions for tasks, evidence, streaks and badges
"""
from typing import Callable, Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    Date,
    Time,
    DateTime,
    Float,
    JSON,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    insert,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func

from streakline.core.config import settings

# SQLAlchemy metadata for table definitions
metadata = MetaData()

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def create_db_engine(database_url: Optional[str] = None, settings_obj=None) -> Engine:
    """
    Build a SQLAlchemy engine with pooling and timeouts suited to the dialect.

    Args:
        database_url: Optional override for DATABASE_URL
        settings_obj: Optional settings override (pool sizes, statement timeout)
    """
    cfg = settings_obj or settings
    # For testing, TEST_DATABASE_URL wins if available
    url = database_url or cfg.TEST_DATABASE_URL or cfg.DATABASE_URL

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            return create_engine(url, connect_args=connect_args, poolclass=StaticPool, echo=False)
        return create_engine(url, connect_args=connect_args, echo=False)

    connect_args = {}
    if url.startswith("postgresql"):
        # Server-side bound so a slow query cannot stall a request indefinitely
        connect_args["options"] = f"-c statement_timeout={int(cfg.DB_STATEMENT_TIMEOUT_MS)}"

    return create_engine(
        url,
        pool_size=cfg.DB_POOL_SIZE,
        max_overflow=cfg.DB_MAX_OVERFLOW,
        pool_timeout=cfg.DB_POOL_TIMEOUT,
        pool_recycle=cfg.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query logging
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def transaction(session_factory: Callable[[], Session]):
    """
    Run a unit of work in one database transaction.

    Commits on success, rolls back on any exception and re-raises.

    Usage:
        with transaction(factory) as session:
            session.execute(...)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def insert_unless_exists(session: Session, table: Table, values: dict, conflict_columns: list[str]) -> bool:
    """
    Insert a row, treating a unique-key collision as "already there".

    Returns True if this call inserted the row, False if a row with the same
    conflict columns already existed. PostgreSQL and SQLite use
    ON CONFLICT DO NOTHING; other dialects fall back to a savepoint and a
    swallowed IntegrityError.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        dialect_insert = None

    if dialect_insert is not None:
        stmt = dialect_insert(table).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
        result = session.execute(stmt)
        return (result.rowcount or 0) == 1

    try:
        with session.begin_nested():
            session.execute(insert(table).values(**values))
        return True
    except IntegrityError:
        return False


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


# Users (identity is issued by the external auth provider)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('timezone', String(64), nullable=False, server_default='UTC'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_status', 'status'),
)

# Per-user engagement preferences
user_settings = Table(
    'user_settings',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('compliance_threshold', Float, nullable=False, server_default='0.8'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('compliance_threshold > 0 AND compliance_threshold <= 1', name='ck_user_settings_threshold_range'),
)

# Scheduled daily tasks (created by plan generation)
daily_tasks = Table(
    'daily_tasks',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('task_type', String(32), nullable=False),
    Column('title', Text, nullable=False),
    Column('description', Text, nullable=True),
    Column('due_date', Date, nullable=False),
    Column('due_time', Time, nullable=True),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('priority', Integer, nullable=False, server_default='0'),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Composite index for the per-day task list and compliance counts
    Index('idx_daily_tasks_user_due', 'user_id', 'due_date'),
    Index('idx_daily_tasks_user_due_type', 'user_id', 'due_date', 'task_type'),
)

# Evidence records (append-only)
task_evidence = Table(
    'task_evidence',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('task_id', Integer, ForeignKey('daily_tasks.id'), nullable=False),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('evidence_type', String(32), nullable=False),
    Column('notes', Text, nullable=True),
    Column('metrics', JSON, nullable=True),
    Column('photo_url', Text, nullable=True),
    Column('photo_storage_key', Text, nullable=True),
    Column('recorded_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_task_evidence_task', 'task_id'),
    Index('idx_task_evidence_user_recorded', 'user_id', 'recorded_at'),
)

# Streak ledger: one row per (user, category)
streaks = Table(
    'streaks',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('streak_type', String(32), nullable=False),
    Column('current_streak', Integer, nullable=False, server_default='0'),
    Column('longest_streak', Integer, nullable=False, server_default='0'),
    Column('total_completions', Integer, nullable=False, server_default='0'),
    Column('last_completed_date', Date, nullable=True),
    Column('streak_start_date', Date, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'streak_type', name='uq_streaks_user_type'),
    CheckConstraint('longest_streak >= current_streak', name='ck_streaks_longest_ge_current'),
)

# Badge awards: at most one row per (user, badge)
user_badges = Table(
    'user_badges',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('badge_type', String(50), nullable=False),
    Column('awarded_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'badge_type', name='uq_user_badges_user_type'),
    Index('idx_user_badges_badge_type', 'badge_type'),
)

# Batch job executions
job_runs = Table(
    'job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('target_day', Date, nullable=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('considered', Integer, nullable=False, server_default='0'),
    Column('succeeded', Integer, nullable=False, server_default='0'),
    Column('errored', Integer, nullable=False, server_default='0'),
    Index('idx_job_runs_name_started', 'job_name', 'started_at'),
)
