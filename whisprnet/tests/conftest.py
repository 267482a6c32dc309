from __future__ import annotations

from typing import AsyncIterator, Iterator

import pytest
from httpx import ASGITransport, AsyncClient

from whisprnet.apps.api.main import create_app
from whisprnet.core.config import get_settings
from whisprnet.persistence.db import Database
from whisprnet.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def test_settings(monkeypatch) -> Iterator[None]:
    # Fast hashing, in-process pipeline and a fixed signing key for every test.
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("PIPELINE_EXECUTION_MODE", "local")
    monkeypatch.setenv("PIPELINE_LOCAL_WORKERS", "1")
    monkeypatch.setenv("JWT_SECRET", "test-only-whisprnet-signing-key-0123456789")
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("GITHUB_API_BASE_URL", "https://github.test")
    monkeypatch.setenv("SLACK_API_BASE_URL", "https://slack.test/api")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def database(tmp_path) -> AsyncIterator[Database]:
    # One SQLite file per test keeps tenants and ledgers fully isolated.
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'whisprnet.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def app(database):
    # ASGITransport skips lifespan, so the local pipeline is started here.
    application = create_app(database=database)
    await application.state.event_queue.start()
    yield application
    await application.state.event_queue.stop()


@pytest.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
