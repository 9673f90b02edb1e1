from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from fastapi import HTTPException
from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from athlete_sync.config.settings import settings


def _is_postgresql(database_url: str) -> bool:
    return "postgresql" in database_url.lower() or "postgres" in database_url.lower()


def _validate_postgresql_driver() -> None:
    """Validate PostgreSQL driver is installed when using PostgreSQL.

    Must actually import psycopg2 (not just check spec) because SQLAlchemy
    will try to import it when creating the engine.
    """
    try:
        import psycopg2  # noqa: F401

        logger.info("PostgreSQL driver (psycopg2) is available")
    except ImportError as e:
        logger.error("PostgreSQL driver (psycopg2) is not installed. Install it with: pip install psycopg2-binary")
        raise ImportError("PostgreSQL driver required. Install with: pip install psycopg2-binary") from e


# Lazy initialization to avoid import-time database connections
_engine = None
_SessionLocal = None


def _get_engine():
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        database_url = settings.database_url
        logger.info("Initializing database engine")

        connect_args: dict = {}
        if _is_postgresql(database_url):
            _validate_postgresql_driver()
            connect_args = {
                "connect_timeout": 10,
                "application_name": "athlete-sync",
            }
        elif "sqlite" in database_url.lower():
            logger.warning("Using SQLite database (local development only)")
            connect_args = {"check_same_thread": False}

        _engine = create_engine(
            database_url,
            connect_args=connect_args,
            echo=False,
            pool_pre_ping=True,  # Verify connections before using (important for cloud DBs)
            pool_recycle=3600,
        )
        logger.info("Database engine initialized")
    return _engine


def get_engine():
    """Get or create the database engine (public API)."""
    return _get_engine()


def _get_session_local():
    """Get or create the session factory (lazy initialization)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_get_engine(), expire_on_commit=False)
        logger.info("Database session factory initialized")
    return _SessionLocal


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get database session context manager.

    Commits on clean exit, rolls back on any exception:
    - HTTPException: Re-raised without logging (expected API responses)
    - Other exceptions: Logged as database errors and re-raised
    """
    session = _get_session_local()()
    try:
        yield session
        # Always commit: Core insert/update statements leave no ORM dirty state behind
        session.commit()
    except HTTPException:
        session.rollback()
        raise
    except Exception as e:
        logger.error(f"Database session error, rolling back: {type(e).__name__}: {e}")
        session.rollback()
        raise
    finally:
        session.close()
