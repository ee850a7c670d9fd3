"""
Cache strategies behind the response cache facade.

Each strategy owns one cache class (exact, semantic, resource): when it
applies, how it reads, and how it writes. Strategies let infrastructure
errors propagate; the facade turns them into misses and dropped writes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from chatrelay.core.cache.embedding import Embedder
from chatrelay.core.cache.exact import KeyValueCache
from chatrelay.core.cache.keys import CachePolicy, build_context_string, derive_exact_key, sha256_hex
from chatrelay.core.cache.semantic import VectorIndex
from chatrelay.core.cache.topics import extract_topics
from chatrelay.schemas.conversation import ConversationTurn

logger = structlog.stdlib.get_logger()


@dataclass(frozen=True)
class CacheQuery:
    """Read-only view of the conversation state being looked up or stored."""

    prior_turns: Sequence[ConversationTurn] = field(default_factory=tuple)
    new_message: str = ""
    resource_id: str | None = None

    @property
    def turn_count(self) -> int:
        return len(self.prior_turns)


@dataclass(frozen=True)
class CacheHit:
    response: str
    source: str  # "exact" | "semantic" | "resource"
    similarity: float = 1.0


def similarity_from_distance(distance: float) -> float:
    """Cosine distance -> cosine similarity."""
    return 1.0 - distance


def meets_threshold(similarity: float, threshold: float) -> bool:
    """A candidate exactly at the threshold counts as a hit."""
    return similarity >= threshold


class CacheStrategy(ABC):
    source: str

    @abstractmethod
    def eligible(self, query: CacheQuery) -> bool: ...

    @abstractmethod
    async def lookup(self, query: CacheQuery) -> CacheHit | None: ...

    @abstractmethod
    async def store(self, query: CacheQuery, response: str) -> None: ...


class ExactStrategy(CacheStrategy):
    """Hash of the full conversation prefix; hits only on identical repeats."""

    source = "exact"

    def __init__(self, store: KeyValueCache, policy: CachePolicy) -> None:
        self._store = store
        self._policy = policy

    def eligible(self, query: CacheQuery) -> bool:
        return self._policy.exact_eligible(query.turn_count)

    async def lookup(self, query: CacheQuery) -> CacheHit | None:
        key = derive_exact_key(query.prior_turns, query.new_message)
        response = await self._store.get(key)
        if response is None:
            return None
        return CacheHit(response=response, source=self.source)

    async def store(self, query: CacheQuery, response: str) -> None:
        key = derive_exact_key(query.prior_turns, query.new_message)
        await self._store.set(key, response, self._policy.expiration(query.turn_count))


class SemanticStrategy(CacheStrategy):
    """Nearest-neighbour match over context embeddings of same-length conversations."""

    source = "semantic"

    def __init__(
        self,
        index: VectorIndex,
        embedder: Embedder,
        policy: CachePolicy,
        similarity_threshold: float,
    ) -> None:
        self._index = index
        self._embedder = embedder
        self._policy = policy
        self.similarity_threshold = similarity_threshold

    def eligible(self, query: CacheQuery) -> bool:
        return self._policy.semantic_eligible(query.turn_count)

    async def _embed(self, context: str) -> list[float] | None:
        vector = await self._embedder.generate_embedding(context)
        if len(vector) != self._index.dimension:
            await logger.aerror(
                "cache.semantic.dimension_mismatch",
                expected=self._index.dimension,
                actual=len(vector),
            )
            return None
        return vector

    async def lookup(self, query: CacheQuery) -> CacheHit | None:
        context = build_context_string(query.prior_turns, query.new_message)
        vector = await self._embed(context)
        if vector is None:
            return None

        match = await self._index.search(vector, query.turn_count)
        if match is None:
            await logger.adebug("cache.semantic.miss", turn_count=query.turn_count, reason="empty")
            return None

        similarity = similarity_from_distance(match.distance)
        if not meets_threshold(similarity, self.similarity_threshold):
            await logger.adebug(
                "cache.semantic.miss",
                turn_count=query.turn_count,
                similarity=round(similarity, 4),
                threshold=self.similarity_threshold,
            )
            return None

        await logger.ainfo(
            "cache.semantic.hit",
            turn_count=query.turn_count,
            similarity=round(similarity, 4),
            entry_id=str(match.entry_id),
        )
        return CacheHit(response=match.response_text, source=self.source, similarity=similarity)

    async def store(self, query: CacheQuery, response: str) -> None:
        context = build_context_string(query.prior_turns, query.new_message)
        vector = await self._embed(context)
        if vector is None:
            return
        await self._index.add(
            response_text=response,
            embedding=vector,
            turn_count=query.turn_count,
            topics=extract_topics(context),
            context_hash=sha256_hex(context),
            ttl=self._policy.expiration(query.turn_count),
        )


class ResourceStrategy(CacheStrategy):
    """First answer about an external resource, keyed by the resource identifier."""

    source = "resource"

    def __init__(self, store: KeyValueCache, policy: CachePolicy) -> None:
        self._store = store
        self._policy = policy

    def eligible(self, query: CacheQuery) -> bool:
        return query.resource_id is not None

    async def lookup(self, query: CacheQuery) -> CacheHit | None:
        response = await self._store.get(query.resource_id)  # type: ignore[arg-type]
        if response is None:
            return None
        return CacheHit(response=response, source=self.source)

    async def store(self, query: CacheQuery, response: str) -> None:
        await self._store.set(
            query.resource_id,  # type: ignore[arg-type]
            response,
            self._policy.resource_expiration(),
        )
