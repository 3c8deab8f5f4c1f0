"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any messenger import, so the
cached settings and the module-level engine pick them up.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"messenger-test-{os.getpid()}.db")
os.environ["DATABASE_URL"] = "sqlite:///" + TEST_DB_PATH
os.environ["SEED_PHONE_NUMBERS"] = "[]"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from messenger.config import get_settings  # noqa: E402
get_settings.cache_clear()

import messenger.models  # noqa: E402,F401
from messenger.main import app  # noqa: E402
from messenger.storage import Base, build_engine, create_session_factory, engine, init_db  # noqa: E402

TEST_CODE = "12345"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(scope="session", autouse=True)
def database_file():
    """Remove the on-disk test database once the session ends."""
    yield TEST_DB_PATH
    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    """Session factory over a private in-memory SQLite database."""
    memory_engine = build_engine("sqlite://")
    init_db(memory_engine)
    yield create_session_factory(memory_engine)
    Base.metadata.drop_all(bind=memory_engine)
    memory_engine.dispose()


@pytest.fixture
def fixed_code(monkeypatch):
    """Make every issued verification code predictable."""
    monkeypatch.setattr("messenger.verification.generate_code", lambda: TEST_CODE)
    return TEST_CODE


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def login(client, fixed_code):
    """Run check-phone + verify-code and return the session token."""
    def _login(phone_number: str) -> str:
        response = client.post("/api/auth/check-phone", json={"phoneNumber": phone_number})
        assert response.status_code == 200
        response = client.post(
            "/api/auth/verify-code",
            json={"phoneNumber": phone_number, "code": fixed_code},
        )
        assert response.status_code == 200
        return response.json()["sessionId"]

    return _login
