"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test so the worker pool can open its
own sessions against the same data. Redis is always mocked.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

import devpulse.models  # noqa: F401  (registers every table on Base.metadata)
from devpulse.config import Settings, get_settings
from devpulse.database import Base, get_db
from devpulse.main import create_app

from payloads import WEBHOOK_SECRET, ADMIN_TOKEN


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.lpush = AsyncMock(return_value=1)
    redis_mock.brpop = AsyncMock(return_value=None)
    redis_mock.ping = AsyncMock(return_value=True)
    with patch("devpulse.utils.redis_client.get_redis", new_callable=AsyncMock, return_value=redis_mock):
        yield redis_mock


@pytest.fixture
def settings():
    return Settings(
        github_webhook_secret=WEBHOOK_SECRET,
        admin_api_token=ADMIN_TOKEN,
        alert_webhook_url="",
        sentry_dsn="",
        workers_enabled=False,
    )


@pytest.fixture
async def session_factory(tmp_path):
    """SQLite database file shared by every session of one test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'devpulse.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class FakeClock:
    """Controllable clock for the worker pool."""

    def __init__(self, start: datetime | None = None):
        # Slightly ahead of wall time so freshly enqueued tasks are due
        self.now = start or datetime.now(timezone.utc) + timedelta(seconds=1)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(session_factory, settings):
    """FastAPI app wired to the per-test database and settings."""
    application = create_app()

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = _get_db
    application.dependency_overrides[get_settings] = lambda: settings
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
