import os

import pytest
from fastapi.testclient import TestClient

from authcore.core.config import Settings
from authcore.core.kv import InMemoryKeyValueStore
from authcore.main import create_app

# Use in-memory SQLite for tests by default, can be overridden via TEST_DATABASE_URL
TEST_DB_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")


class FakeClock:
    """Monotonic clock the tests can move forward by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = dict(
        environment="development",
        debug=True,
        database_url=TEST_DB_URL,
        redis_url="memory://",
        jwt_secret_key="test-secret-key-0123456789abcdef0123456789",
        bcrypt_rounds=4,
        cookie_secure=False,
        backend_cors_origins="",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(scope="function")
def clock():
    return FakeClock()


@pytest.fixture(scope="function")
def kv(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture(scope="function")
def settings():
    return make_settings()


@pytest.fixture(scope="function")
def app(settings, kv):
    return create_app(settings=settings, kv=kv)


@pytest.fixture(scope="function")
def client(app):
    return TestClient(app)


@pytest.fixture(scope="function")
def db_session(app):
    db = app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def make_client(kv):
    """Build a client against an app with overridden settings (limits, TTLs, environment)."""

    def _make(**overrides) -> TestClient:
        return TestClient(create_app(settings=make_settings(**overrides), kv=kv))

    return _make
