"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the activity progression service.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event, text, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError, DBAPIError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

# Message fragments that mark a retryable conflict across PostgreSQL and SQLite
RETRYABLE_ERROR_MARKERS = (
    "could not serialize access",
    "deadlock detected",
    "lock timeout",
    "lock_timeout",
    "canceling statement due to lock timeout",
    "database is locked",
    "server closed the connection unexpectedly",
    "connection reset",
)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Sessions are handed across worker threads by the scheduler and tests
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": 7,
        "max_overflow": 15,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "pool_timeout": 30,
        "connect_args": {
            "connect_timeout": 10,
            "application_name": "peerstage",
            "options": f"-c lock_timeout={Config.LOCK_TIMEOUT_SECONDS * 1000}",
        },
    }


def build_engine(url: str) -> Engine:
    """Create an engine with pool settings appropriate for the backend"""
    new_engine = create_engine(url, echo=Config.DATABASE_ECHO, **_engine_kwargs(url))
    if url.startswith("sqlite"):
        @event.listens_for(new_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return new_engine


engine = build_engine(Config.DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False  # Results returned after commit still read their rows
)


def configure_engine(url: str) -> Engine:
    """
    Rebind the session factory to a different database.

    Used by tests and one-off tools; every module that imported SessionLocal
    keeps working because the factory object itself is reconfigured.
    """
    global engine
    old_engine = engine
    engine = build_engine(url)
    SessionLocal.configure(bind=engine)
    old_engine.dispose()
    logger.info(f"🔧 DATABASE_REBOUND: Session factory now bound to {url.split('@')[-1]}")
    return engine


def create_tables() -> bool:
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=engine, checkfirst=True)

        existing_tables = inspect(engine).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        return True
    except OperationalError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


@contextmanager
def managed_session():
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def is_retryable_error(error: Exception) -> bool:
    """True when the error is a lock/serialization conflict worth retrying"""
    if not isinstance(error, DBAPIError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_ERROR_MARKERS)


def test_connection() -> bool:
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except OperationalError as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
