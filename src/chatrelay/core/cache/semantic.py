"""
Vector index for the semantic cache, using pgvector.

Entries are partitioned by `turn_count`: a search only considers entries
stored for conversations of exactly the caller's length, then returns the
single nearest neighbour by cosine distance. The filter runs inside the HNSW
scan through pgvector iterative scans (0.8+), so a partition crowded out by
other turn counts still yields its true nearest entry. Deciding whether that
neighbour is close enough is the caller's job.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import delete, func, select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chatrelay.common.errors import ConfigurationError
from chatrelay.models.semantic_entry import EMBEDDING_DIMENSION, SemanticCacheEntry

logger = structlog.stdlib.get_logger()

INDEX_NAME = SemanticCacheEntry.__tablename__


@dataclass(frozen=True)
class VectorMatch:
    """Nearest neighbour returned by a search."""

    entry_id: uuid.UUID
    response_text: str
    distance: float


class VectorIndex:
    """pgvector-backed nearest-neighbour index with a turn-count filter."""

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        dimension: int = EMBEDDING_DIMENSION,
        *,
        iterative_scan: bool = True,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self.dimension = dimension
        self.iterative_scan = iterative_scan

    # Schema lifecycle

    async def ensure_schema(self) -> None:
        """
        Create the extension, table and indexes if missing.

        Raises ConfigurationError when the configured dimension disagrees with
        the mapped column or with an existing table.
        """
        if self.dimension != EMBEDDING_DIMENSION:
            raise ConfigurationError(
                f"Vector index dimension {self.dimension} does not match "
                f"the mapped column dimension {EMBEDDING_DIMENSION}",
            )

        async with self._engine.begin() as conn:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(
                SemanticCacheEntry.metadata.create_all,
                tables=[SemanticCacheEntry.__table__],
                checkfirst=True,
            )
            result = await conn.execute(
                text(
                    "SELECT atttypmod FROM pg_attribute "
                    "WHERE attrelid = to_regclass(:table) AND attname = 'embedding'"
                ),
                {"table": INDEX_NAME},
            )
            existing_dimension = result.scalar_one_or_none()

        if existing_dimension is not None and existing_dimension != self.dimension:
            raise ConfigurationError(
                f"Existing vector index '{INDEX_NAME}' has dimension {existing_dimension}, "
                f"configured dimension is {self.dimension}. Recreate the index.",
            )

        await logger.ainfo("cache.index.ready", index=INDEX_NAME, dimension=self.dimension)

    async def drop(self) -> None:
        """Drop the table together with its vector index."""
        async with self._engine.begin() as conn:
            await conn.run_sync(
                SemanticCacheEntry.metadata.drop_all,
                tables=[SemanticCacheEntry.__table__],
                checkfirst=True,
            )
        await logger.ainfo("cache.index.dropped", index=INDEX_NAME)

    # Entries

    async def add(
        self,
        *,
        response_text: str,
        embedding: list[float],
        turn_count: int,
        topics: Iterable[str],
        context_hash: str,
        ttl: timedelta,
    ) -> uuid.UUID:
        """Insert one entry. Entries are write-once; there is no update path."""
        now = datetime.now(timezone.utc)
        entry = SemanticCacheEntry(
            id=uuid.uuid4(),
            embedding=embedding,
            turn_count=turn_count,
            response_text=response_text,
            topics=sorted(topics),
            context_hash=context_hash,
            cached_at=int(time.time()),
            expires_at=now + ttl,
        )
        async with self._session_factory() as session:
            session.add(entry)
            await session.commit()

        await logger.adebug(
            "cache.semantic.stored",
            entry_id=str(entry.id),
            turn_count=turn_count,
            topics=entry.topics,
            ttl_days=ttl.days,
        )
        return entry.id

    async def search(self, embedding: list[float], turn_count: int) -> VectorMatch | None:
        """Top-1 nearest live entry among those with the same turn count."""
        distance = SemanticCacheEntry.embedding.cosine_distance(embedding).label("distance")
        stmt = (
            select(SemanticCacheEntry.id, SemanticCacheEntry.response_text, distance)
            .where(
                SemanticCacheEntry.turn_count == turn_count,
                SemanticCacheEntry.expires_at > datetime.now(timezone.utc),
            )
            .order_by(text("distance ASC"))
            .limit(1)
        )
        async with self._session_factory() as session, session.begin():
            if self.iterative_scan:
                # Filtered rows otherwise leave the HNSW candidate list short
                await session.execute(text("SET LOCAL hnsw.iterative_scan = strict_order"))
            result = await session.execute(stmt)
            row = result.first()

        if row is None:
            return None
        return VectorMatch(entry_id=row[0], response_text=row[1], distance=float(row[2]))

    async def clear(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(SemanticCacheEntry))
            await session.commit()
        return result.rowcount  # type: ignore[return-value]

    async def cleanup_expired(self) -> int:
        """Remove expired entries."""
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SemanticCacheEntry).where(SemanticCacheEntry.expires_at <= now)
            )
            await session.commit()
        return result.rowcount  # type: ignore[return-value]

    async def invalidate_topics(self, topics: Iterable[str]) -> int:
        """Delete entries tagged with any of `topics`."""
        tags = sorted(set(topics))
        if not tags:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SemanticCacheEntry).where(SemanticCacheEntry.topics.overlap(tags))
            )
            await session.commit()
        count: int = result.rowcount  # type: ignore[assignment]
        await logger.ainfo("cache.semantic.invalidated", topics=tags, count=count)
        return count

    async def count(self) -> tuple[int, int]:
        """Return (total, active) entry counts."""
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            total = (await session.execute(select(func.count(SemanticCacheEntry.id)))).scalar_one()
            active = (
                await session.execute(
                    select(func.count(SemanticCacheEntry.id)).where(
                        SemanticCacheEntry.expires_at > now
                    )
                )
            ).scalar_one()
        return total, active
