"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import fnmatch
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

import src.models  # noqa: F401
from src.database import Base
from src.utils import redis_client


class FakeRedis:
    """Minimal in-memory stand-in for the redis.asyncio calls the app makes."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def eval(self, script, numkeys, key, value):
        # compare-and-delete lock release
        if self.store.get(key) == value:
            del self.store[key]
            return 1
        return 0

    async def keys(self, pattern="*"):
        return [k for k in self.store if fnmatch.fnmatch(k, pattern)]

    async def ping(self):
        return True


@pytest.fixture(autouse=True)
def fake_redis():
    """Every test gets a fresh in-memory Redis."""
    fake = FakeRedis()
    previous = redis_client._redis_client
    redis_client._redis_client = fake
    yield fake
    redis_client._redis_client = previous


@pytest.fixture
async def session_factory():
    """Session factory over one shared in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_settings():
    """Build a real Settings object with test defaults plus overrides."""
    from src.config import Settings

    def _make(**overrides):
        values = {
            "database_url": "sqlite+aiosqlite:///:memory:",
            "ghl_api_base": "https://ghl.test",
            "ghl_oauth_client_id": "client-id",
            "ghl_oauth_client_secret": "client-secret",
            "app_base_url": "http://localhost:8000",
        }
        values.update(overrides)
        return Settings(**values)

    return _make
