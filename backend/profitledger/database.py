"""Database engine and session factories.

WHAT:
    Builds SQLAlchemy engines and session factories from an explicit URL and
    exposes FastAPI/worker helpers on top of a cached default factory.

WHY:
    - The pipeline receives its session as an argument; nothing in the
      services reaches for a process-wide connection.
    - Tests build their own in-memory SQLite factory with the same helper.

USAGE:
    # Workers / scripts
    from profitledger.database import get_sync_session

    with get_sync_session() as db:
        ...

    # FastAPI
    @router.post("/sync/run")
    async def run(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - profitledger/deps.py (DATABASE_URL)
"""

from contextlib import contextmanager
from functools import lru_cache
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# Base is defined in profitledger.models to ensure a single registry
from .models import Base  # noqa: F401


# =============================================================================
# ENGINE / FACTORY CONSTRUCTION
# =============================================================================

def build_engine(database_url: str) -> Engine:
    """Create an engine with settings appropriate for the backend.

    NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


def create_session_factory(database_url: str) -> sessionmaker:
    """Return a session factory bound to a fresh engine for `database_url`."""
    return sessionmaker(bind=build_engine(database_url), autoflush=False, autocommit=False)


@lru_cache()
def get_session_factory() -> sessionmaker:
    """Default factory built from settings, created on first use."""
    from .deps import get_settings

    return create_session_factory(get_settings().DATABASE_URL)


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions in workers and scripts."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
