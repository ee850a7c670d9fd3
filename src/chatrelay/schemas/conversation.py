"""Conversation schemas: domain turns plus API request/response models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"

    @property
    def label(self) -> str:
        """Capitalized role name used when serializing a conversation."""
        return "User" if self is Role.USER else "Assistant"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationTurn(BaseModel):
    """One immutable message in a conversation."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    role: Role
    content: str
    created_at: datetime = Field(default_factory=_utcnow)


class ConversationInfo(BaseModel):
    """Metadata the pipeline needs about a conversation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str = "New chat"
    resource_id: str | None = None
    resource_content: str | None = None
    is_context_full: bool = False
    message_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    last_message_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_resource_anchored(self) -> bool:
        return self.resource_id is not None


# API models

class CreateConversationRequest(BaseModel):
    title: str = Field("New chat", max_length=255)
    resource_id: str | None = Field(None, max_length=2048, description="URL of an anchoring article")
    resource_content: str | None = None


class ConversationResponse(BaseModel):
    id: uuid.UUID
    title: str
    resource_id: str | None
    is_context_full: bool
    message_count: int
    created_at: datetime
    last_message_at: datetime


class SendMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=32_000)


class MessageResponse(BaseModel):
    id: uuid.UUID
    role: Role
    content: str
    created_at: datetime


class CancelResponse(BaseModel):
    cancelled: bool
