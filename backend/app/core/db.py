"""Database utilities for SQLAlchemy and Alembic."""
from __future__ import annotations

from typing import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from .config import settings


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """Turn on FK enforcement so cascades and orphan inserts behave like PostgreSQL."""

    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # pragma: no cover - sqlite setup
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _create_engine() -> Engine:
    """Create the SQLAlchemy engine using application settings."""

    engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
    enable_sqlite_foreign_keys(engine)
    return engine


ENGINE: Engine = _create_engine()
SessionLocal = sessionmaker[
    Session
](bind=ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)


def get_session() -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""

    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
