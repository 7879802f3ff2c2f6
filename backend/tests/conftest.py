import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend/ is importable as the top-level "healthcast" package even when pytest runs from repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

# Ensure the package runs in test/sqlite mode *before* importing any healthcast modules
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FORECAST_PACING_SECONDS", "0")

# Import the DB session module first so we can patch it before anything else binds to it
import healthcast.db.session as hc_db_session  # noqa: E402

# --- Use a single in-memory SQLite DB for the whole test session ---
ENGINE = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    future=True,
)
event.listen(ENGINE, "connect", hc_db_session._enable_sqlite_foreign_keys)
SessionTesting = sessionmaker(
    bind=ENGINE, autocommit=False, autoflush=False, expire_on_commit=False, future=True
)

setattr(hc_db_session, "ENGINE", ENGINE)
hc_db_session.SessionLocal = SessionTesting
hc_db_session.get_engine = lambda: ENGINE  # type: ignore
hc_db_session.get_sessionmaker = lambda: SessionTesting  # type: ignore

import healthcast.db as hc_db_pkg  # noqa: E402

hc_db_pkg.SessionLocal = SessionTesting
hc_db_pkg.get_engine = hc_db_session.get_engine
hc_db_pkg.get_sessionmaker = hc_db_session.get_sessionmaker

import healthcast.models  # noqa: E402,F401
from healthcast.config import Settings  # noqa: E402
from healthcast.db.base import Base  # noqa: E402


class FrozenClock:
    """Clock whose notion of "now" only moves when a test says so."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=ENGINE)
    Base.metadata.create_all(bind=ENGINE)
    yield
    Base.metadata.drop_all(bind=ENGINE)


@pytest.fixture(scope="function")
def session_factory():
    yield SessionTesting


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def settings():
    return Settings(ENV="test", FORECAST_PACING_SECONDS=0.0)


@pytest.fixture(scope="function")
def clock():
    return FrozenClock(datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc))
