"""Database engine and session configuration.

WHAT:
    Provides the sync SQLAlchemy engine and session factory used by the
    ingestion pipeline, plus a context manager for worker code.

WHY:
    - The pipeline is synchronous (ARQ runs it in a thread via asyncio.to_thread)
    - Every ledger step commits on its own, so a plain session per job is enough

USAGE:
    from ytreporting.database import get_sync_session

    with get_sync_session() as db:
        jobs = db.query(ReportingJob).all()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - ytreporting/services/ingestion_scheduler.py (main consumer)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from ytreporting.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    # Heroku/Supabase-style URLs
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# SYNC ENGINE
# =============================================================================

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=5,            # Sweeps are sequential; a small pool is plenty
        max_overflow=5,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in ytreporting.models to keep a single registry
from .models import Base  # noqa: E402


# =============================================================================
# CONTEXT MANAGERS
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sync sessions in workers and scripts.

    Yields:
        SQLAlchemy Session instance

    Example:
        with get_sync_session() as db:
            entries = db.query(ReportFileLedger).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


__all__ = ["Base", "engine", "SessionLocal", "get_sync_session", "DATABASE_URL"]
