"""
Database utilities and connection management.

WHAT: SQLAlchemy engine, session factory and transaction helpers
WHY: Inventory rows and trade records live in a relational store
HOW: SQLAlchemy sync engine v2, WAL mode on SQLite, context-managed sessions
"""

from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from pathlib import Path

from .config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Base for models
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    WHAT: Engine factory shared by the app and the test suite
    WHY: Tests need isolated in-memory databases
    HOW: SQLite gets WAL + FK pragmas; in-memory SQLite shares one connection

    Args:
        database_url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        Engine
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, future=True)

    in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
    if not in_memory:
        # Ensure data directory exists
        data_dir = Path(database_url.replace("sqlite:///", "")).parent
        data_dir.mkdir(parents=True, exist_ok=True)

    engine_kwargs = {
        "connect_args": {"check_same_thread": False},  # Settlement runs in worker threads
        "echo": echo,
        "future": True,
    }
    if in_memory:
        engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **engine_kwargs)

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        """Enable WAL mode and FK constraints."""
        cursor = dbapi_conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory with the settings every store in the app expects."""
    return sessionmaker(
        bind=bind,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
SessionLocal = build_session_factory(engine)


@contextmanager
def session_scope(factory: sessionmaker):
    """
    Transactional scope around a series of operations.

    Commits on success, rolls back on any exception and re-raises it.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_db():
    """
    Context manager for a session on the application database.

    Usage:
        with get_db() as db:
            # use db session
            pass

    Yields:
        Session: SQLAlchemy session
    """
    with session_scope(SessionLocal) as session:
        yield session


def ping_database(bind: Engine | None = None) -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with status and info
    """
    bind = bind or engine
    try:
        with bind.connect() as conn:
            result = conn.execute(text("SELECT 1"))
            result.fetchone()

        return {
            "available": True,
            "url": bind.url.render_as_string(hide_password=True),
            "error": None
        }
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return {
            "available": False,
            "url": bind.url.render_as_string(hide_password=True),
            "error": str(e)
        }


def init_db(bind: Engine | None = None):
    """Create all tables."""
    # Import models so they register with Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database initialized")


def close_db():
    """Close database connections."""
    engine.dispose()
    logger.info("Database connections closed")
