"""
Storage - Database Engine.

============================================================
TRANSACTIONAL LEDGER PERSISTENCE
============================================================

Every ledger, order and trade mutation goes through
Database.transaction(): one SQLAlchemy session, one commit.

Requirements:
- SQLAlchemy 2.0 ORM (PostgreSQL in production, SQLite locally)
- Explicit transaction boundaries, rollback on ANY exception
- Hard failures on persistence errors (PersistenceError)

On SQLite every write transaction is opened with BEGIN IMMEDIATE
so concurrent writers queue on the busy timeout instead of failing
on lock upgrade. Read sessions carry the read_only execution
option and open a plain deferred transaction.

============================================================
"""

import os
import logging
from typing import Optional, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError

from dotenv import load_dotenv

from core.exceptions import (
    ErrorClassification,
    Severity,
    TradingException,
)
from storage.models.base import Base

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///settlement.db"


# =============================================================
# EXCEPTIONS
# =============================================================

class PersistenceError(TradingException):
    """
    A database transaction could not complete atomically.

    Always fatal. The session has been rolled back by the time
    this is raised.
    """

    code = "INT_PERSISTENCE"
    default_severity = Severity.CRITICAL
    default_recoverable = False
    default_classification = ErrorClassification.NON_RECOVERABLE


# =============================================================
# DATABASE ENGINE
# =============================================================

def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # The engine is synchronous
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


def create_database_engine(
    url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Create SQLAlchemy engine.

    Args:
        url: Database URL
        pool_size: Number of connections to keep in pool
        max_overflow: Max connections beyond pool_size
        pool_timeout: Seconds to wait for available connection
        pool_recycle: Recycle connections after N seconds
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": pool_timeout},
        )

        @event.listens_for(engine, "connect")
        def on_sqlite_connect(dbapi_conn, connection_record):
            # Hand transaction control to the "begin" hook below
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def on_sqlite_begin(conn):
            if conn.get_execution_options().get("read_only"):
                conn.exec_driver_sql("BEGIN")
            else:
                conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    engine = create_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
        echo=echo,
    )

    @event.listens_for(engine, "checkout")
    def on_checkout(dbapi_conn, connection_record, connection_proxy):
        logger.debug("Database connection checked out from pool")

    return engine


# =============================================================
# DATABASE
# =============================================================

class Database:
    """
    Engine plus session factory.

    Usage:
        db = Database("sqlite:///ledger.db")
        db.create_all()
        with db.transaction() as session:
            session.add(row)
            # Commits automatically at end
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = url or get_database_url()
        self.engine = create_database_engine(self.url, echo=echo)
        self._session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )
        self._read_session_factory = sessionmaker(
            bind=self.engine.execution_options(read_only=True),
            autoflush=False,
            expire_on_commit=False,
        )

    @property
    def supports_row_locks(self) -> bool:
        """Whether SELECT ... FOR UPDATE is meaningful on this backend."""
        return self.engine.dialect.name != "sqlite"

    def session(self) -> Session:
        """
        New session.

        IMPORTANT: Caller is responsible for committing/closing.
        Prefer transaction() instead.
        """
        return self._session_factory()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Explicit transaction boundary.

        Commits only if no exception occurs. Rolls back on ANY
        exception. Domain exceptions propagate unchanged, driver
        errors are wrapped in PersistenceError.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except TradingException:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed, rolling back: {e}")
            session.rollback()
            raise PersistenceError(f"Transaction failed: {e}", cause=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def read_session(self) -> Generator[Session, None, None]:
        """Session for queries. Never commits, never takes the SQLite write lock."""
        session = self._read_session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Query failed: {e}", cause=e) from e
        finally:
            session.close()

    # ---------------------------------------------------------
    # INITIALIZATION
    # ---------------------------------------------------------

    def verify_connection(self) -> bool:
        """
        Verify database connection is working.

        Raises:
            PersistenceError if connection fails
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            logger.info("Database connection verified successfully")
            return True
        except OperationalError as e:
            logger.error(f"Database connection failed: {e}")
            raise PersistenceError(f"Cannot connect to database: {e}", cause=e) from e

    def create_all(self) -> None:
        """Create all ledger tables that do not exist yet."""
        # Registers the models on Base.metadata
        from storage.models import ledger  # noqa: F401

        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise PersistenceError(f"Table creation failed: {e}", cause=e) from e

    def drop_all(self) -> None:
        from storage.models import ledger  # noqa: F401

        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


__all__ = [
    "Database",
    "PersistenceError",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
]
