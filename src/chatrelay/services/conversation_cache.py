"""
Fast-path conversation cache in Redis.

Key: {prefix}conversation:{id}
Value: JSON snapshot of the conversation metadata and its ordered turns.

The durable store stays authoritative; this cache only saves the round
trip to PostgreSQL on every turn. A Redis failure reads as a miss.
"""

from __future__ import annotations

import uuid

import orjson
import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field

from chatrelay.schemas.conversation import ConversationInfo, ConversationTurn

logger = structlog.stdlib.get_logger()


class ConversationSnapshot(BaseModel):
    info: ConversationInfo
    turns: list[ConversationTurn] = Field(default_factory=list)


class ConversationCache:
    def __init__(
        self, redis_client: aioredis.Redis, key_prefix: str = "", ttl_seconds: int = 3600
    ) -> None:
        self._redis = redis_client
        self._prefix = f"{key_prefix}conversation:"
        self._ttl = ttl_seconds

    def _key(self, conversation_id: uuid.UUID) -> str:
        return f"{self._prefix}{conversation_id}"

    async def get(self, conversation_id: uuid.UUID) -> ConversationSnapshot | None:
        try:
            data = await self._redis.get(self._key(conversation_id))
        except aioredis.RedisError as e:
            await logger.awarning("conversation.cache.redis_unavailable", error=str(e))
            return None
        if data is None:
            return None
        return ConversationSnapshot.model_validate(orjson.loads(data))

    async def set(self, snapshot: ConversationSnapshot) -> None:
        payload = orjson.dumps(snapshot.model_dump(mode="json"))
        try:
            await self._redis.set(self._key(snapshot.info.id), payload, ex=self._ttl)
        except aioredis.RedisError as e:
            await logger.awarning("conversation.cache.redis_unavailable", error=str(e))

    async def append_turn(self, conversation_id: uuid.UUID, turn: ConversationTurn) -> None:
        """Append to a cached snapshot. A missing snapshot is left missing."""
        snapshot = await self.get(conversation_id)
        if snapshot is None:
            return
        snapshot.turns.append(turn)
        snapshot.info.message_count = len(snapshot.turns)
        snapshot.info.last_message_at = turn.created_at
        await self.set(snapshot)

    async def mark_context_full(self, conversation_id: uuid.UUID) -> None:
        snapshot = await self.get(conversation_id)
        if snapshot is None:
            return
        snapshot.info.is_context_full = True
        await self.set(snapshot)

