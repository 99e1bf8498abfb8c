import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pushcast.db.base import Base
from pushcast.db import models  # noqa: F401
from tests.factories import FakeTransport, FixedClock, utc


@pytest.fixture()
def engine():
    """In-memory SQLite shared by every session and thread of one test."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def clock() -> FixedClock:
    # A Monday.
    return FixedClock(utc(2026, 3, 2, 12, 0))


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")

    from pushcast.core.settings import get_settings

    get_settings.cache_clear()

    from pushcast.main import app

    with TestClient(app) as test_client:
        yield test_client

    get_settings.cache_clear()
    os.environ.pop("DATABASE_URL", None)
