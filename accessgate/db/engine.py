"""
Database engine and session factory.

PostgreSQL in production; SQLite (file or in-memory) for local use and
tests.  Creates tables on init if they do not exist.
"""

import logging
from typing import TYPE_CHECKING

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""

    pass


def get_engine(database_url: str, pool_size: int = 10) -> "Engine":
    """Create a SQLAlchemy engine for the given database URL.

    Args:
        database_url: Connection URL (e.g. from ACCESSGATE_DATABASE_URL).
        pool_size: Connection pool size (ignored for SQLite).

    Returns:
        SQLAlchemy Engine instance.
    """
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, or each session sees an empty database.
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=pool_size,
        echo=False,
    )


def get_session_factory(engine: "Engine") -> sessionmaker[Session]:
    """Create a session factory bound to the engine.

    Args:
        engine: SQLAlchemy engine.

    Returns:
        Session factory (call to get a new Session).
    """
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(engine: "Engine") -> None:
    """Create all tables if they do not exist.

    Idempotent: safe to call on every startup.

    Args:
        engine: SQLAlchemy engine.
    """
    from accessgate.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured", extra={})
