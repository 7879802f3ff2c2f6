from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from healthcast.config import get_settings

settings = get_settings()

DEFAULT_DATABASE_URL = "sqlite:///healthcast.db"
_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _select_database_url() -> str:
    env_name = (settings.ENV or "dev").lower()

    if env_name == "test" or os.getenv("PYTEST_CURRENT_TEST"):
        test_url = settings.TEST_DATABASE_URL or os.getenv("TEST_DATABASE_URL")
        if test_url:
            return test_url

    return settings.DATABASE_URL or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL


def _enable_sqlite_foreign_keys(dbapi_conn, _record) -> None:
    # forecast_points relies on ON DELETE CASCADE, which SQLite ignores unless asked
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, future=True)

    connect_args = {"check_same_thread": False}
    if url in _MEMORY_URLS or url.endswith(":memory:?cache=shared"):
        # one shared connection, otherwise every checkout sees an empty database
        engine = create_engine(url, connect_args=connect_args, poolclass=StaticPool, future=True)
    else:
        engine = create_engine(url, connect_args=connect_args, future=True)
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


DATABASE_URL = _select_database_url()
ENGINE: Engine = _build_engine(DATABASE_URL)
SessionLocal: sessionmaker[Session] = sessionmaker(
    bind=ENGINE,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    future=True,
)


def get_engine() -> Engine:
    return ENGINE


def get_sessionmaker() -> sessionmaker[Session]:
    return SessionLocal


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """Commit on clean exit, roll back on any exception, always close."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine | None = None) -> None:
    """Create every healthcast table that does not exist yet."""
    from healthcast.db.base import Base  # pylint: disable=import-outside-toplevel
    import healthcast.models  # noqa: F401  pylint: disable=import-outside-toplevel

    Base.metadata.create_all(bind=engine or ENGINE)
