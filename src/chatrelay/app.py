"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay import __version__
from chatrelay.api.admin.router import admin_router
from chatrelay.api.middleware.logging import RequestLoggingMiddleware
from chatrelay.api.middleware.request_id import RequestIDMiddleware
from chatrelay.api.v1.router import v1_router
from chatrelay.common.cancellation import CancellationRegistry
from chatrelay.common.errors import ConfigurationError, register_error_handlers
from chatrelay.common.logging import configure_logging
from chatrelay.config import EmbeddingBackend, Settings, get_settings
from chatrelay.core.cache.embedding import Embedder, LocalEmbedder
from chatrelay.core.cache.exact import (
    EXACT_CACHE_NAMESPACE,
    RESOURCE_CACHE_NAMESPACE,
    KeyValueCache,
)
from chatrelay.core.cache.manager import ResponseCache
from chatrelay.core.cache.semantic import VectorIndex
from chatrelay.core.tools.mcp import load_mcp_tools
from chatrelay.db.session import create_engine, create_session_factory
from chatrelay.models import Base, Conversation, Message
from chatrelay.providers.base import GenerationAdapter
from chatrelay.providers.registry import build_adapter, close_http_client
from chatrelay.services.conversation_cache import ConversationCache
from chatrelay.services.conversations import ConversationService
from chatrelay.services.pipeline import ConversationPipeline

logger = structlog.stdlib.get_logger()


def build_embedder(settings: Settings, adapter: GenerationAdapter) -> Embedder:
    if settings.cache.embedding_backend is EmbeddingBackend.LOCAL:
        embedder = LocalEmbedder(settings.cache.local_embedding_model)
        if embedder.dimension not in (None, settings.cache.embedding_dimension):
            raise ConfigurationError(
                f"Local model {embedder.model_name} produces {embedder.dimension}-dim vectors, "
                f"but cache.embedding_dimension is {settings.cache.embedding_dimension}"
            )
        return embedder
    return adapter


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.format)

    log = structlog.stdlib.get_logger()
    await log.ainfo(
        "chatrelay.startup",
        version=__version__,
        env=settings.env,
        database=settings.database.url.split("@")[-1],
        cache_enabled=settings.cache.enabled,
        embedding_backend=settings.cache.embedding_backend.value,
    )

    engine = create_engine(settings.database)
    session_factory = create_session_factory(engine)
    async with engine.begin() as conn:
        await conn.run_sync(
            Base.metadata.create_all,
            tables=[Conversation.__table__, Message.__table__],
            checkfirst=True,
        )

    redis_client = aioredis.from_url(settings.redis.url, decode_responses=True)
    prefix = settings.redis.key_prefix

    adapter = build_adapter(settings)
    response_cache = ResponseCache.from_settings(
        settings.cache,
        KeyValueCache(redis_client, EXACT_CACHE_NAMESPACE, prefix),
        KeyValueCache(redis_client, RESOURCE_CACHE_NAMESPACE, prefix),
        VectorIndex(
            engine,
            session_factory,
            settings.cache.embedding_dimension,
            iterative_scan=settings.cache.iterative_scan,
        ),
        build_embedder(settings, adapter),
    )
    # Misconfiguration is fatal here, before any traffic is accepted
    await response_cache.initialize()
    if settings.cache.enabled:
        expired = await response_cache.cleanup_expired()
        await log.ainfo("chatrelay.cache.expired_removed", count=expired)

    tool_stack = AsyncExitStack()
    tools = await load_mcp_tools(settings.tools, tool_stack)

    conversation_service = ConversationService(
        session_factory,
        ConversationCache(redis_client, prefix, settings.conversation.fast_path_ttl_seconds),
    )

    app.state.settings = settings
    app.state.db_session_factory = session_factory
    app.state.redis = redis_client
    app.state.response_cache = response_cache
    app.state.conversation_service = conversation_service
    app.state.pipeline = ConversationPipeline.from_settings(
        settings, conversation_service, response_cache, adapter, tools
    )
    app.state.cancellations = CancellationRegistry()

    yield

    await tool_stack.aclose()
    await close_http_client()
    await redis_client.aclose()
    await engine.dispose()
    await log.ainfo("chatrelay.shutdown")


def create_app() -> FastAPI:
    """Application factory, called by Uvicorn."""
    settings = get_settings()

    app = FastAPI(
        title="ChatRelay",
        description="Chat assistant backend with exact and semantic response caching.",
        version=__version__,
        docs_url="/docs" if settings.env == "development" else None,
        redoc_url="/redoc" if settings.env == "development" else None,
        lifespan=lifespan,
    )

    # Middleware (order matters; outermost first)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.env == "development" else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(v1_router)
    app.include_router(admin_router)

    return app
