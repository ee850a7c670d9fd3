"""
FastAPI dependency injection.

Central place for all shared dependencies used across routes. Long-lived
services are built once in the app lifespan and read from app.state here.
"""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.common.cancellation import CancellationRegistry
from chatrelay.common.errors import AuthenticationError
from chatrelay.config import Settings, get_settings
from chatrelay.core.cache.manager import ResponseCache
from chatrelay.db.session import get_db_session
from chatrelay.services.conversations import ConversationService
from chatrelay.services.pipeline import ConversationPipeline

# Type aliases for cleaner signatures
DBSession = Annotated[AsyncSession, Depends(get_db_session)]
AppSettings = Annotated[Settings, Depends(get_settings)]


def get_response_cache(request: Request) -> ResponseCache:
    return request.app.state.response_cache


def get_conversation_service(request: Request) -> ConversationService:
    return request.app.state.conversation_service


def get_pipeline(request: Request) -> ConversationPipeline:
    return request.app.state.pipeline


def get_cancellations(request: Request) -> CancellationRegistry:
    return request.app.state.cancellations


async def require_admin(
    settings: AppSettings,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """
    Authenticate an admin request.

    Accepts:
        - Authorization: Bearer <admin key>
    """
    expected = settings.auth.admin_api_key
    if not expected:
        raise AuthenticationError("Admin API is disabled: no admin key configured")
    if not authorization:
        raise AuthenticationError("Missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Invalid Authorization header format. Expected: Bearer <key>")

    if not secrets.compare_digest(parts[1].strip(), expected):
        raise AuthenticationError("Invalid admin key")


# Annotated types for route signatures
Cache = Annotated[ResponseCache, Depends(get_response_cache)]
Conversations = Annotated[ConversationService, Depends(get_conversation_service)]
Pipeline = Annotated[ConversationPipeline, Depends(get_pipeline)]
Cancellations = Annotated[CancellationRegistry, Depends(get_cancellations)]
AdminKey = Annotated[None, Depends(require_admin)]
