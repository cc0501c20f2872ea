"""
Database - Engine and Sessions.

============================================================
PURPOSE
============================================================
Engine, session factory, declarative base and transaction
boundaries for the managed wealth tables.

Requirements:
- SQLAlchemy 2.x ORM (PostgreSQL in production, SQLite in tests)
- One transaction per service call, committed or rolled back as a whole
- Storage failures roll back and propagate unchanged
- Services receive a sessionmaker so tests inject their own engine

============================================================
"""

import os
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from sqlalchemy import DateTime, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.types import TypeDecorator

from dotenv import load_dotenv

from core.exceptions import PersistenceError

load_dotenv()

logger = logging.getLogger(__name__)


# =============================================================
# DECLARATIVE BASE
# =============================================================

class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Values are normalized to UTC on write and always come back
    timezone-aware, including from backends (SQLite) that drop
    the offset.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all managed wealth ORM models."""

    type_annotation_map = {
        datetime: UTCDateTime(),
    }


# =============================================================
# ENGINE AND SESSIONS
# =============================================================

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> str:
    """DATABASE_URL_SYNC, then DATABASE_URL, then a local SQLite file."""
    url = os.getenv("DATABASE_URL_SYNC") or os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # Services are synchronous; reuse an async URL with the default driver.
        url = "postgresql" + url[len("postgresql+asyncpg"):]
    if not url:
        url = "sqlite:///managed_wealth.db"
        logger.warning(f"No DATABASE_URL configured, falling back to {url}")
    return url


def create_database_engine(
    database_url: Optional[str] = None,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Build an engine for ``database_url`` (or the environment).

    SQLite connections are shared across threads and enforce foreign
    keys; the pool arguments only apply to server databases.
    """
    database_url = database_url or get_database_url()
    logger.info(f"Database engine -> {database_url.split('@')[-1]}")

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo,
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
        echo=echo,
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_database_engine()
    return _engine


def create_session_factory(engine: Engine) -> sessionmaker:
    # Rows stay readable after commit; services return ORM objects to callers.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


@contextmanager
def transaction_scope(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    One unit of work: commit on success, roll back on any exception.

    The exception is re-raised as is, so a ReserveCoverageError raised
    mid-transaction still reaches the API with its coverage payload.

        with transaction_scope(factory) as session:
            ledger.append(session, ...)
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Rolling back after database error: {e}")
        session.rollback()
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# STARTUP
# =============================================================

def verify_database_connection(engine: Optional[Engine] = None) -> bool:
    """Run ``SELECT 1``; raises PersistenceError when the database is unreachable."""
    engine = engine or get_engine()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
    except OperationalError as e:
        logger.error(f"Database unreachable: {e}")
        raise PersistenceError(f"Cannot connect to database: {e}", cause=e) from e
    logger.info("Database reachable")
    return True


def initialize_database(engine: Optional[Engine] = None) -> None:
    """Check connectivity and create any missing managed wealth tables."""
    engine = engine or get_engine()
    verify_database_connection(engine)

    # Registers the ORM classes on Base.metadata.
    from managed_wealth import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        logger.critical(f"Schema creation failed: {e}")
        raise PersistenceError(f"Table creation failed: {e}", cause=e) from e

    logger.info(f"Schema ready ({len(Base.metadata.tables)} tables)")


__all__ = [
    "Base",
    "UTCDateTime",
    "get_database_url",
    "create_database_engine",
    "get_engine",
    "create_session_factory",
    "get_session_factory",
    "transaction_scope",
    "verify_database_connection",
    "initialize_database",
]
