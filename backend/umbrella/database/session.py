"""
Engine and session factory for the users table.

One engine per process, built lazily from DATABASE_URL. Routes get a fresh
session per request through get_db_session; identity store operations
commit on their own.

Usage:
    from umbrella.database.session import get_db_session

    @router.get("/me")
    def get_me(db: Session = Depends(get_db_session)):
        ...
"""

import os
import logging
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from umbrella.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> str:
    """
    DATABASE_URL, normalized for SQLAlchemy.

    Handles the postgres:// URL format by converting to postgresql://.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ConfigurationError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    PostgreSQL gets a sized pool with pre-ping; SQLite (local development and
    tests) gets a longer lock timeout so concurrent writers wait instead of
    failing.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connection health
        pool_recycle=1800,   # Recycle connections after 30 minutes
    )


def get_engine() -> Engine:
    """Get or create the database engine singleton."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(get_database_url())
        logger.info("Database engine created")
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_engine(),
        )
    return _SessionLocal


def configure_engine(engine: Engine) -> None:
    """Bind the module singletons to an existing engine (scripts and tests)."""
    global _engine, _SessionLocal
    _engine = engine
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    One session per request, closed when the response is done.
    Raises ConfigurationError (500) if the database is not configured.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
