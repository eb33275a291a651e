"""
Database connection management for the attendance analytics engine.

Provides connection pooling, session management, and initialization utilities.
Supports PostgreSQL for deployments and SQLite for local runs and tests.
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

load_dotenv()

logger = logging.getLogger(__name__)

# Default connection parameters
DEFAULT_HOST = "localhost"
DEFAULT_PORT = "5432"
DEFAULT_DB = "attendance_analytics"
DEFAULT_USER = os.getenv("USER", "postgres")
DEFAULT_PASSWORD = ""

# Global engine instance (created lazily)
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> str:
    """
    Get the database connection URL.

    Priority:
    1. DATABASE_URL environment variable
    2. Build from individual components (POSTGRES_HOST, POSTGRES_PORT, etc.)
    3. Default local development URL

    Returns:
        Database connection URL string
    """
    if os.getenv("DATABASE_URL"):
        return os.getenv("DATABASE_URL")

    host = os.getenv("POSTGRES_HOST", DEFAULT_HOST)
    port = os.getenv("POSTGRES_PORT", DEFAULT_PORT)
    database = os.getenv("POSTGRES_DB", DEFAULT_DB)
    user = os.getenv("POSTGRES_USER", DEFAULT_USER)
    password = os.getenv("POSTGRES_PASSWORD", DEFAULT_PASSWORD)

    if password:
        return f"postgresql://{user}:{password}@{host}:{port}/{database}"
    else:
        return f"postgresql://{user}@{host}:{port}/{database}"


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy issue BEGIN itself on pysqlite connections.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT (Session.begin_nested()). This is the recipe from the
    SQLAlchemy SQLite dialect docs.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_database_engine(url: str, echo: bool = False) -> Engine:
    """
    Create a new engine for a URL without touching the global engine.

    Pool sizing only applies to server databases; SQLite uses its own pool.
    """
    if url.startswith("sqlite"):
        engine = create_engine(url, echo=echo)
        _enable_sqlite_savepoints(engine)
        return engine

    return create_engine(
        url,
        echo=echo,
        pool_size=5,  # Maximum number of connections in pool
        max_overflow=10,  # Additional connections beyond pool_size
        pool_timeout=30,  # Seconds to wait for available connection
        pool_recycle=1800,  # Recycle connections after 30 minutes
    )


def get_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Get or create the SQLAlchemy engine.

    Args:
        database_url: Optional override for database URL
        echo: If True, log all SQL statements (useful for debugging)

    Returns:
        SQLAlchemy Engine instance
    """
    global _engine

    if _engine is None or database_url is not None:
        _engine = create_database_engine(database_url or get_database_url(), echo=echo)

    return _engine


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """
    Get the session factory.

    Args:
        engine: Optional engine instance (uses global if not provided)

    Returns:
        SQLAlchemy sessionmaker instance
    """
    global _SessionLocal

    if _SessionLocal is None or engine is not None:
        eng = engine or get_engine()
        _SessionLocal = sessionmaker(
            bind=eng,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    return _SessionLocal


def get_session() -> Session:
    """
    Create a new database session.

    Note: Caller is responsible for closing the session.
    For automatic cleanup, use the session_scope() context manager.
    """
    SessionLocal = get_session_factory()
    return SessionLocal()


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Usage:
        with session_scope() as session:
            store = AttendanceStore(session)
            store.upsert(...)
            # Commits automatically on success
            # Rolls back on exception

    Args:
        factory: Optional session factory (uses the global factory if not provided)

    Yields:
        SQLAlchemy Session instance
    """
    session = factory() if factory is not None else get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Initialize the database schema.

    Creates all tables defined in models.py if they don't exist.

    Args:
        engine: Optional engine instance (uses global if not provided)
    """
    from .models import Base

    eng = engine or get_engine()
    Base.metadata.create_all(bind=eng)


def test_connection(engine: Optional[Engine] = None) -> bool:
    """
    Test the database connection.

    Returns:
        True if connection successful, False otherwise
    """
    eng = engine or get_engine()
    try:
        with eng.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {e}")
        return False
