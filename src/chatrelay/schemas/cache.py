"""Cache management schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CacheStatsResponse(BaseModel):
    exact_entries: int
    resource_entries: int
    semantic_entries: int
    semantic_active_entries: int


class CacheClearResponse(BaseModel):
    exact_cleared: int
    resource_cleared: int
    semantic_cleared: int


class RecreateIndexResponse(CacheClearResponse):
    index: str


class InvalidateTopicsRequest(BaseModel):
    topics: list[str] = Field(..., min_length=1, description="Canonical topic tags, e.g. 'redis'")


class InvalidateTopicsResponse(BaseModel):
    invalidated: int
