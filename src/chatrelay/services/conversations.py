"""
Conversation store.

ConversationRepository does the SQL against one session; ConversationService
owns transactions and the Redis fast path, and is what the pipeline and the
API talk to.
"""

from __future__ import annotations

import uuid
from typing import Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.common.errors import NotFoundError
from chatrelay.models.base import utcnow
from chatrelay.models.conversation import Conversation, Message
from chatrelay.schemas.conversation import (
    ConversationInfo,
    ConversationTurn,
    CreateConversationRequest,
    Role,
)
from chatrelay.services.conversation_cache import ConversationCache, ConversationSnapshot

logger = structlog.stdlib.get_logger()


class ConversationStore(Protocol):
    async def get_conversation(self, conversation_id: uuid.UUID) -> ConversationInfo: ...

    async def get_turns(self, conversation_id: uuid.UUID) -> list[ConversationTurn]: ...

    async def add_turn(
        self, conversation_id: uuid.UUID, role: Role, content: str
    ) -> ConversationTurn: ...

    async def mark_context_full(self, conversation_id: uuid.UUID) -> None: ...


class ConversationRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, req: CreateConversationRequest) -> Conversation:
        conversation = Conversation(
            title=req.title,
            resource_id=req.resource_id,
            resource_content=req.resource_content,
        )
        self.db.add(conversation)
        await self.db.flush()
        return conversation

    async def get(self, conversation_id: uuid.UUID) -> Conversation | None:
        result = await self.db.execute(
            select(Conversation).where(Conversation.id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def list_messages(self, conversation_id: uuid.UUID) -> list[Message]:
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc())
        )
        return list(result.scalars().all())

    async def add_message(self, conversation: Conversation, role: Role, content: str) -> Message:
        message = Message(conversation_id=conversation.id, role=role, content=content)
        self.db.add(message)
        conversation.message_count = conversation.message_count + 1
        conversation.last_message_at = message.created_at = utcnow()
        await self.db.flush()
        return message

    async def set_context_full(self, conversation_id: uuid.UUID) -> None:
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(is_context_full=True)
        )


class ConversationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: ConversationCache | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache

    async def create_conversation(self, req: CreateConversationRequest) -> ConversationInfo:
        async with self._session_factory() as session, session.begin():
            conversation = await ConversationRepository(session).create(req)
            info = ConversationInfo.model_validate(conversation)

        if self._cache is not None:
            await self._cache.set(ConversationSnapshot(info=info))
        await logger.ainfo(
            "conversation.created",
            conversation_id=str(info.id),
            resource_anchored=info.is_resource_anchored,
        )
        return info

    async def _load_snapshot(self, conversation_id: uuid.UUID) -> ConversationSnapshot:
        if self._cache is not None:
            snapshot = await self._cache.get(conversation_id)
            if snapshot is not None:
                return snapshot

        async with self._session_factory() as session:
            repo = ConversationRepository(session)
            conversation = await repo.get(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation not found: {conversation_id}")
            snapshot = ConversationSnapshot(
                info=ConversationInfo.model_validate(conversation),
                turns=[
                    ConversationTurn.model_validate(m)
                    for m in await repo.list_messages(conversation_id)
                ],
            )

        if self._cache is not None:
            await self._cache.set(snapshot)
        return snapshot

    async def get_conversation(self, conversation_id: uuid.UUID) -> ConversationInfo:
        return (await self._load_snapshot(conversation_id)).info

    async def get_turns(self, conversation_id: uuid.UUID) -> list[ConversationTurn]:
        return (await self._load_snapshot(conversation_id)).turns

    async def add_turn(
        self, conversation_id: uuid.UUID, role: Role, content: str
    ) -> ConversationTurn:
        async with self._session_factory() as session, session.begin():
            repo = ConversationRepository(session)
            conversation = await repo.get(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation not found: {conversation_id}")
            message = await repo.add_message(conversation, role, content)
            turn = ConversationTurn.model_validate(message)

        if self._cache is not None:
            await self._cache.append_turn(conversation_id, turn)
        return turn

    async def mark_context_full(self, conversation_id: uuid.UUID) -> None:
        async with self._session_factory() as session, session.begin():
            await ConversationRepository(session).set_context_full(conversation_id)

        if self._cache is not None:
            await self._cache.mark_context_full(conversation_id)
        await logger.ainfo("conversation.context_full", conversation_id=str(conversation_id))
