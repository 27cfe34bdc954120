"""
Database Configuration Module
=============================

Provides the SQLAlchemy engine and session management used by the
SQL-backed audit store, alert sink and session store.

The default database is a local SQLite file; point SCHOOLSEC_DATABASE_URL
at a hardened server database for anything beyond a demonstration.
"""

from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from config import get_settings

# Base class for declarative models
Base = declarative_base()


def make_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create an engine for the given URL (defaults to the configured one).

    SQLite connections are shared across threads; an in-memory SQLite URL
    gets a single static connection so every session sees the same data.
    """
    url = database_url or get_settings().database_url
    kwargs = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = make_engine()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


@contextmanager
def get_session(factory: Optional[sessionmaker] = None):
    """
    Context manager for database sessions.

    Ensures proper session lifecycle management with automatic
    commit on success and rollback on failure.

    Usage:
        with get_session() as session:
            record = session.query(AuditRecordRow).first()
    """
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind: Optional[Engine] = None):
    """
    Initialize the database schema.

    Creates all tables defined in the models if they don't exist.
    Safe to call multiple times.
    """
    from . import entities  # noqa: F401 - Ensure models are loaded
    Base.metadata.create_all(bind=bind or engine)


def reset_db(bind: Optional[Engine] = None):
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This destroys all data. Use only for development/testing.
    """
    from . import entities  # noqa: F401
    Base.metadata.drop_all(bind=bind or engine)
    Base.metadata.create_all(bind=bind or engine)
