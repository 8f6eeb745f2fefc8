"""
Engine and session helpers for the entity record database.

SQLite is the default; any SQLAlchemy URL (e.g. PostgreSQL) works.
"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import get_settings
from database.models import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _build_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in database_url:
        # One shared connection so every thread sees the same database
        options["poolclass"] = StaticPool

    engine = create_engine(database_url, **options)
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def get_engine(database_url: Optional[str] = None) -> Engine:
    """
    Get or create the process-wide engine.

    Args:
        database_url: Connection URL, used only when the engine is first
            created. Defaults to the configured database_url.
    """
    global _engine

    if _engine is None:
        url = database_url or get_settings().database_url
        _engine = _build_engine(url)
        logger.info(f"Database engine created: {url.split('@')[-1]}")

    return _engine


def get_session(engine: Optional[Engine] = None) -> Session:
    """New session bound to the engine. The caller closes it."""
    global _SessionFactory

    if _SessionFactory is None:
        _SessionFactory = sessionmaker(bind=engine or get_engine(), expire_on_commit=False)

    return _SessionFactory()


@contextmanager
def session_scope(engine: Optional[Engine] = None) -> Generator[Session, None, None]:
    """Session that commits on success and rolls back on any exception."""
    session = get_session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(database_url: Optional[str] = None) -> Engine:
    """Create all tables and return the engine."""
    engine = get_engine(database_url)
    Base.metadata.create_all(engine)
    logger.info("Database tables created")
    return engine


def drop_db(database_url: Optional[str] = None) -> None:
    """Drop all tables."""
    Base.metadata.drop_all(get_engine(database_url))
    logger.warning("All database tables dropped")


def reset_engine() -> None:
    """Dispose the engine and forget the session factory (used by tests)."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None
