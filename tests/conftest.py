"""
Pytest configuration and shared fixtures.

Test settings are put into the environment before any line_crm import so the
module-level engine and settings pick them up.
"""

import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.mkdtemp(prefix='line_crm_'), 'test.db')}",
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LINE_CHANNEL_SECRET", "test-channel-secret")
os.environ.setdefault("LINE_CHANNEL_ACCESS_TOKEN", "test-access-token")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from line_crm.config import get_settings
get_settings.cache_clear()

from line_crm import main
from line_crm.storage import Base, SessionLocal, SqlAlchemyPersistence, engine, init_db

from fakes import FakeMessaging


@pytest.fixture(scope="function")
def db_tables():
    """Fresh schema for each test."""
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def persistence(db_tables) -> SqlAlchemyPersistence:
    return SqlAlchemyPersistence(SessionLocal)


@pytest.fixture
def fake_messaging() -> FakeMessaging:
    return FakeMessaging()


@pytest.fixture(scope="function")
def client(db_tables, fake_messaging, monkeypatch):
    """Test client whose pipeline talks to the test database and a fake LINE API."""
    monkeypatch.setattr(
        main,
        "build_pipeline",
        lambda app_settings, messaging: main.IngestionPipeline(
            persistence=SqlAlchemyPersistence(SessionLocal),
            messaging=fake_messaging,
        ),
    )
    with TestClient(main.app) as test_client:
        yield test_client
