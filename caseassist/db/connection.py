"""Database connection management for CaseAssist.

Provides synchronous database access using SQLAlchemy. Supports SQLite
for development with PostgreSQL for multi-instance deployments, where the
conditional updates used for optimistic concurrency become the only
serialization point between service instances.

Usage:
    # Sync (for FastAPI Depends)
    from caseassist.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())
    # ... use db session

    # Outside a request
    with get_db_context() as db:
        ...
"""

import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from caseassist.db.models import Base


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. CASEASSIST_DB_PATH (converted to sqlite URL)
    3. sqlite:///./caseassist.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("CASEASSIST_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    return "sqlite:///./caseassist.db"


def create_db_engine(url: str, echo: bool | None = None) -> Engine:
    """Create an engine with the SQLite pragmas the engine relies on.

    Args:
        url: SQLAlchemy database URL.
        echo: Echo SQL statements (defaults to SQL_ECHO env var).

    Returns:
        Configured Engine.
    """
    if echo is None:
        echo = os.environ.get("SQL_ECHO", "").lower() == "true"
    is_sqlite = url.startswith("sqlite")
    new_engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=echo,
    )
    if is_sqlite:
        event.listen(new_engine, "connect", _set_sqlite_pragma)
    return new_engine


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (message cascade delete).
    - journal_mode=WAL: Concurrent readers with a single writer.
    - busy_timeout: Writers wait for the lock instead of failing at once.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA busy_timeout=5000;")
    cursor.close()


# Engine creation
DATABASE_URL = get_database_url()
engine = create_db_engine(DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for synchronous operations.

    Intended for use with FastAPI's Depends() for request-scoped sessions.

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            count = ConversationEngine(db, ...).expire_stale_conversations()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all database tables.

    Safe to call multiple times - will not recreate existing tables.

    Args:
        bind: Engine to initialize (defaults to the module engine).
    """
    Base.metadata.create_all(bind=bind or engine)


def close_db() -> None:
    """Close the engine and dispose of the connection pool."""
    engine.dispose()
