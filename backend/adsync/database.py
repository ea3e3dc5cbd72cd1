"""Database engine and session configuration.

WHAT:
    Provides the sync SQLAlchemy engine, the session factory, `init_db`
    (called at worker startup) and the per-job session context manager.

WHY:
    - Services take a `Session` argument, the worker opens one per job.
    - Async services keep the sync engine and run their database work
      through asyncio.to_thread, one thread per session at a time.

USAGE:
    from adsync.database import get_sync_session

    with get_sync_session() as db:
        jobs = db.query(SyncJob).all()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - adsync/workers/arq_worker.py (opens a session per job)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from adsync.config import get_settings


def _get_database_url() -> str:
    """Get DATABASE_URL from settings.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = get_settings().DATABASE_URL
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )
    return database_url


DATABASE_URL = _get_database_url()

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        # In-memory databases live on a single connection
        poolclass=StaticPool if ":memory:" in DATABASE_URL else None,
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in adsync.models to ensure a single registry
from adsync.models import Base  # noqa: E402


def init_db() -> None:
    """Create missing tables on the configured engine."""
    Base.metadata.create_all(bind=engine)



@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sync sessions.

    Yields:
        SQLAlchemy Session instance, closed on exit
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
