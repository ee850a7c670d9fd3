"""
Shared test fixtures.

Conversations live in a file-backed SQLite database; the response cache and
the generation adapter are in-memory fakes (see factories.py). For full
PostgreSQL + pgvector + Redis tests, run the app against real services.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from chatrelay.app import create_app
from chatrelay.common.cancellation import CancellationRegistry
from chatrelay.config import Settings, get_settings
from chatrelay.core.cache.manager import ResponseCache
from chatrelay.models import Base, Conversation, Message
from chatrelay.services.conversations import ConversationService
from chatrelay.services.pipeline import ConversationPipeline

from tests.factories import FakeAdapter, make_response_cache

# Only the conversation tables: the semantic cache table needs pgvector
CONVERSATION_TABLES = [Conversation.__table__, Message.__table__]


# Test Settings Override

def get_test_settings() -> Settings:
    return Settings(
        env="test",
        database={"url": "sqlite+aiosqlite:///:memory:"},  # type: ignore[arg-type]
        redis={"url": "redis://localhost:6379/1"},  # type: ignore[arg-type]
        auth={"admin_api_key": "test_admin_key"},  # type: ignore[arg-type]
        logging={"level": "DEBUG", "format": "console"},  # type: ignore[arg-type]
    )


# Database Fixtures

@pytest.fixture
async def test_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chatrelay.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=CONVERSATION_TABLES)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def conversation_service(
    session_factory: async_sessionmaker[AsyncSession],
) -> ConversationService:
    return ConversationService(session_factory)


# App + Client Fixtures

@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter(["Hello", " there!"], total_tokens=7)


@pytest.fixture
def response_cache() -> ResponseCache:
    return make_response_cache()


@pytest.fixture
async def app(
    session_factory: async_sessionmaker[AsyncSession],
    conversation_service: ConversationService,
    response_cache: ResponseCache,
    fake_adapter: FakeAdapter,
) -> FastAPI:
    application = create_app()

    redis_client = AsyncMock()
    redis_client.ping.return_value = True

    application.state.db_session_factory = session_factory
    application.state.redis = redis_client
    application.state.response_cache = response_cache
    application.state.conversation_service = conversation_service
    application.state.pipeline = ConversationPipeline(
        conversation_service,
        response_cache,
        fake_adapter,
        chunk_delay_seconds=0,
    )
    application.state.cancellations = CancellationRegistry()

    application.dependency_overrides[get_settings] = get_test_settings
    return application


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def admin_headers() -> dict[str, str]:
    """Headers with admin authentication."""
    return {"Authorization": "Bearer test_admin_key"}
