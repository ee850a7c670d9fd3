"""Semantic cache entry: response text keyed by a context embedding."""

from __future__ import annotations

from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, mapped_column

from chatrelay.config import get_settings
from chatrelay.models.base import Base, UUIDPrimaryKeyMixin

EMBEDDING_DIMENSION = get_settings().cache.embedding_dimension


class SemanticCacheEntry(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "semantic_cache_entries"

    # Lookup
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIMENSION), nullable=False)
    turn_count: Mapped[int] = mapped_column(Integer, nullable=False)  # equality filter only

    # Cached data
    response_text: Mapped[str] = mapped_column(Text, nullable=False)
    topics: Mapped[list[str]] = mapped_column(ARRAY(String(64)), default=list, nullable=False)
    context_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Lifecycle
    cached_at: Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch seconds
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index(
            "ix_semantic_cache_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
        Index("ix_semantic_cache_turn_count", "turn_count"),
        Index("ix_semantic_cache_topics", "topics", postgresql_using="gin"),
        Index("ix_semantic_cache_expires_at", "expires_at"),
    )
