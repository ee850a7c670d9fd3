"""Cache management endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter

from chatrelay.api.deps import AdminKey, Cache
from chatrelay.core.cache.semantic import INDEX_NAME
from chatrelay.schemas.cache import (
    CacheClearResponse,
    CacheStatsResponse,
    InvalidateTopicsRequest,
    InvalidateTopicsResponse,
    RecreateIndexResponse,
)

logger = structlog.stdlib.get_logger()

router = APIRouter()


@router.get("/stats", response_model=CacheStatsResponse, summary="Cache statistics")
async def cache_stats(admin_key: AdminKey, cache: Cache) -> CacheStatsResponse:
    stats = await cache.stats()
    return CacheStatsResponse(**stats)


@router.post("/clear", response_model=CacheClearResponse, summary="Clear all cache entries")
async def clear_cache(admin_key: AdminKey, cache: Cache) -> CacheClearResponse:
    result = await cache.clear_all()
    return CacheClearResponse(**result)


@router.post(
    "/recreate-index",
    response_model=RecreateIndexResponse,
    summary="Drop and rebuild the vector index",
    description="Also clears every cache entry. Concurrent calls are serialized.",
)
async def recreate_index(admin_key: AdminKey, cache: Cache) -> RecreateIndexResponse:
    result = await cache.recreate_index()
    return RecreateIndexResponse(index=INDEX_NAME, **result)


@router.post(
    "/invalidate",
    response_model=InvalidateTopicsResponse,
    summary="Invalidate semantic entries by topic",
)
async def invalidate_topics(
    body: InvalidateTopicsRequest, admin_key: AdminKey, cache: Cache
) -> InvalidateTopicsResponse:
    invalidated = await cache.invalidate_topics(body.topics)
    await logger.ainfo("cache.topics.invalidated", topics=body.topics, count=invalidated)
    return InvalidateTopicsResponse(invalidated=invalidated)
