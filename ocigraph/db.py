"""Build history database.

SQLAlchemy engine and session helpers for the run history. The database
is SQLite under the workspace unless ``db_url`` points elsewhere.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from ocigraph.config import get_settings


class Base(DeclarativeBase):
    """Declarative base of the history tables."""

    pass


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the history database.

    Args:
        db_url: Database URL; the settings' effective URL if omitted.

    Returns:
        SQLAlchemy Engine. For file-backed SQLite the parent directory is
        created first.
    """
    if db_url is None:
        db_url = get_settings().effective_db_url

    connect_args: dict[str, Any] = {}
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        # Parallel runs record from worker threads
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(url, connect_args=connect_args)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to ``engine`` (or a default engine)."""
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error."""
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine) -> None:
    """Create the history tables if they do not exist."""
    from ocigraph.builds import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def init_history_db(db_url: str) -> sessionmaker[Session]:
    """Open the history database, creating its tables, and return a factory."""
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_history_db",
]
