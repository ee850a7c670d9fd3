"""
Response cache facade.

Three cache classes behind one interface:
  1. Exact    (Redis)    : SHA-256 of the conversation prefix, short conversations only
  2. Semantic (pgvector) : nearest neighbour among same-length conversations
  3. Resource (Redis)    : first turn of a conversation anchored to an article

Caching is an optimization: every infrastructure failure is logged and read
as a miss or a dropped write, never raised to the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence

import structlog

from chatrelay.common.errors import ConfigurationError
from chatrelay.config import CacheSettings
from chatrelay.core.cache.embedding import Embedder
from chatrelay.core.cache.exact import KeyValueCache
from chatrelay.core.cache.keys import CachePolicy
from chatrelay.core.cache.semantic import VectorIndex
from chatrelay.core.cache.strategies import (
    CacheHit,
    CacheQuery,
    CacheStrategy,
    ExactStrategy,
    ResourceStrategy,
    SemanticStrategy,
)
from chatrelay.schemas.conversation import ConversationTurn

logger = structlog.stdlib.get_logger()


class ResponseCache:
    """
    Unified cache: exact -> semantic, plus the resource-keyed variant.

    Usage:
        cache = ResponseCache(exact_store, resource_store, index, embedder, policy)
        hit = await cache.lookup(prior_turns, message)
        if hit:
            return hit.response
        await cache.store(prior_turns, message, response)
    """

    def __init__(
        self,
        exact_store: KeyValueCache,
        resource_store: KeyValueCache,
        index: VectorIndex,
        embedder: Embedder,
        policy: CachePolicy | None = None,
        similarity_threshold: float = 0.85,
        *,
        enabled: bool = True,
        settle_seconds: float = 1.0,
    ) -> None:
        self._policy = policy or CachePolicy()
        self._exact_store = exact_store
        self._resource_store = resource_store
        self._index = index
        self._embedder = embedder
        self._enabled = enabled
        self._settle_seconds = settle_seconds
        self._maintenance_lock = asyncio.Lock()

        self.exact = ExactStrategy(exact_store, self._policy)
        self.semantic = SemanticStrategy(index, embedder, self._policy, similarity_threshold)
        self.resource = ResourceStrategy(resource_store, self._policy)

    @classmethod
    def from_settings(
        cls,
        settings: CacheSettings,
        exact_store: KeyValueCache,
        resource_store: KeyValueCache,
        index: VectorIndex,
        embedder: Embedder,
    ) -> ResponseCache:
        return cls(
            exact_store,
            resource_store,
            index,
            embedder,
            CachePolicy.from_settings(settings),
            settings.similarity_threshold,
            enabled=settings.enabled,
            settle_seconds=settings.index_settle_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def policy(self) -> CachePolicy:
        return self._policy

    # Strategy plumbing

    async def _lookup_with(self, strategy: CacheStrategy, query: CacheQuery) -> CacheHit | None:
        if not self._enabled or not strategy.eligible(query):
            return None
        try:
            return await strategy.lookup(query)
        except Exception as e:
            await logger.awarning(f"cache.{strategy.source}.lookup_failed", error=str(e))
            return None

    async def _store_with(self, strategy: CacheStrategy, query: CacheQuery, response: str) -> None:
        if not self._enabled or not strategy.eligible(query):
            return
        try:
            await strategy.store(query, response)
        except Exception as e:
            # Cache write failure should never break the request
            await logger.awarning(f"cache.{strategy.source}.store_failed", error=str(e))

    # Conversation-keyed caches

    async def lookup_exact(
        self, prior_turns: Sequence[ConversationTurn], new_message: str
    ) -> str | None:
        hit = await self._lookup_with(self.exact, CacheQuery(prior_turns, new_message))
        return hit.response if hit else None

    async def lookup_semantic(
        self, prior_turns: Sequence[ConversationTurn], new_message: str
    ) -> str | None:
        hit = await self._lookup_with(self.semantic, CacheQuery(prior_turns, new_message))
        return hit.response if hit else None

    async def lookup(
        self, prior_turns: Sequence[ConversationTurn], new_message: str
    ) -> CacheHit | None:
        """Exact first (cheap), then semantic. Nothing is touched above the semantic ceiling."""
        query = CacheQuery(prior_turns, new_message)
        if not self._policy.semantic_eligible(query.turn_count):
            return None

        for strategy in (self.exact, self.semantic):
            hit = await self._lookup_with(strategy, query)
            if hit is not None:
                await logger.ainfo("cache.hit", source=hit.source, turn_count=query.turn_count)
                return hit

        await logger.adebug("cache.miss", turn_count=query.turn_count)
        return None

    async def store(
        self, prior_turns: Sequence[ConversationTurn], new_message: str, response: str
    ) -> None:
        """
        Store a fully generated response.

        Short conversations get both an exact and a semantic entry; longer ones
        up to the semantic ceiling get only a semantic entry.
        """
        query = CacheQuery(prior_turns, new_message)
        if not self._policy.semantic_eligible(query.turn_count):
            return
        await self._store_with(self.exact, query, response)
        await self._store_with(self.semantic, query, response)

    # Resource-keyed cache

    async def lookup_by_resource(self, resource_id: str) -> str | None:
        hit = await self._lookup_with(self.resource, CacheQuery(resource_id=resource_id))
        return hit.response if hit else None

    async def store_by_resource(self, resource_id: str, response: str) -> None:
        await self._store_with(self.resource, CacheQuery(resource_id=resource_id), response)

    # Lifecycle and administration

    async def initialize(self) -> None:
        """
        Create the vector index schema and verify the embedding dimension.

        Raises ConfigurationError so the process fails before accepting traffic.
        """
        if not self._enabled:
            await logger.ainfo("cache.disabled")
            return

        await self._index.ensure_schema()

        probe = await self._embedder.generate_embedding("dimension probe")
        if len(probe) != self._index.dimension:
            raise ConfigurationError(
                f"Embedding backend returns {len(probe)} dimensions, "
                f"vector index expects {self._index.dimension}",
            )

    async def clear_all(self) -> dict[str, int]:
        """Delete every exact, resource and semantic entry."""
        exact_cleared = await self._exact_store.clear()
        resource_cleared = await self._resource_store.clear()
        semantic_cleared = await self._index.clear()
        await logger.ainfo(
            "cache.cleared",
            exact=exact_cleared,
            resource=resource_cleared,
            semantic=semantic_cleared,
        )
        return {
            "exact_cleared": exact_cleared,
            "resource_cleared": resource_cleared,
            "semantic_cleared": semantic_cleared,
        }

    async def recreate_index(self) -> dict[str, int]:
        """
        Drop and rebuild the vector index, then clear all cache entries.

        Exclusive maintenance action: concurrent calls are serialized, and it
        must not be invoked from the chat request path.
        """
        async with self._maintenance_lock:
            await logger.awarning("cache.index.recreate.start")
            await self._index.drop()
            await asyncio.sleep(self._settle_seconds)
            await self._index.ensure_schema()
            result = await self.clear_all()
            await logger.awarning("cache.index.recreate.done", **result)
            return result

    async def invalidate_topics(self, topics: Iterable[str]) -> int:
        return await self._index.invalidate_topics(topics)

    async def cleanup_expired(self) -> int:
        return await self._index.cleanup_expired()

    async def stats(self) -> dict[str, int]:
        total, active = await self._index.count()
        return {
            "exact_entries": await self._exact_store.count(),
            "resource_entries": await self._resource_store.count(),
            "semantic_entries": total,
            "semantic_active_entries": active,
        }
