"""Test fixtures — create/drop tables for each test, wire a mock subscriber into the app's engine."""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_vasa_webhooks.db"

from app.database import Base, async_session, engine  # noqa: E402
from app.main import app  # noqa: E402
from app.services.webhook_engine import WebhookEngine  # noqa: E402
from tests.fakes import Receiver  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest_asyncio.fixture
async def sql_engine(receiver) -> AsyncGenerator[WebhookEngine, None]:
    """Engine over the test database, not started; outbound HTTP goes to ``receiver``."""
    http = receiver.client()
    webhook_engine = WebhookEngine.from_session_factory(async_session, client=http)
    yield webhook_engine
    await webhook_engine.stop()
    await http.aclose()


@pytest_asyncio.fixture
async def client(sql_engine) -> AsyncGenerator[AsyncClient, None]:
    # ASGITransport does not run the lifespan, so the engine is attached here
    app.state.engine = sql_engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
