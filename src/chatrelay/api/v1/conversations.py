"""
Conversation endpoints.

POST /v1/conversations/{id}/messages streams the assistant turn as SSE:
  data: {"type":"chunk","content":"..."}          (zero or more)
  data: {"type":"message_complete","message":{...}}
  data: [DONE]

The turn runs in its own task so a client disconnect cancels the turn
cooperatively instead of abandoning it mid-write.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from chatrelay.api.deps import Cancellations, Conversations, Pipeline
from chatrelay.common.cancellation import CancellationRegistry, CancellationToken
from chatrelay.common.errors import ValidationError
from chatrelay.common.streaming import SSE_DONE, format_sse
from chatrelay.schemas.conversation import (
    CancelResponse,
    ConversationResponse,
    CreateConversationRequest,
    MessageResponse,
    SendMessageRequest,
)
from chatrelay.services.channel import QueueOutputChannel
from chatrelay.services.pipeline import ConversationPipeline

logger = structlog.stdlib.get_logger()

router = APIRouter(prefix="/conversations")

# Strong references to in-flight turns
_inflight: set[asyncio.Task[None]] = set()


@router.post(
    "",
    response_model=ConversationResponse,
    status_code=201,
    summary="Create conversation",
)
async def create_conversation(
    body: CreateConversationRequest, service: Conversations
) -> ConversationResponse:
    info = await service.create_conversation(body)
    return ConversationResponse.model_validate(info.model_dump())


@router.get(
    "/{conversation_id}",
    response_model=ConversationResponse,
    summary="Get conversation metadata",
)
async def get_conversation(
    conversation_id: uuid.UUID, service: Conversations
) -> ConversationResponse:
    info = await service.get_conversation(conversation_id)
    return ConversationResponse.model_validate(info.model_dump())


@router.get(
    "/{conversation_id}/messages",
    response_model=list[MessageResponse],
    summary="List conversation messages",
)
async def list_messages(
    conversation_id: uuid.UUID, service: Conversations
) -> list[MessageResponse]:
    turns = await service.get_turns(conversation_id)
    return [MessageResponse.model_validate(t.model_dump()) for t in turns]


async def _run_turn(
    pipeline: ConversationPipeline,
    conversation_id: uuid.UUID,
    content: str,
    channel: QueueOutputChannel,
    token: CancellationToken,
    cancellations: CancellationRegistry,
) -> None:
    try:
        await pipeline.process_message(conversation_id, content, channel, token)
    except Exception:
        await logger.aexception("chat.turn.failed", conversation_id=str(conversation_id))
    finally:
        channel.close()
        cancellations.close(str(conversation_id), token)


@router.post(
    "/{conversation_id}/messages",
    summary="Send a message",
    description="Streams the assistant reply as Server-Sent Events.",
)
async def send_message(
    conversation_id: uuid.UUID,
    body: SendMessageRequest,
    request: Request,
    service: Conversations,
    pipeline: Pipeline,
    cancellations: Cancellations,
) -> StreamingResponse:
    if not body.content.strip():
        raise ValidationError("Message content must not be blank")
    # 404 before the stream starts
    await service.get_conversation(conversation_id)

    request_id = getattr(request.state, "request_id", "unknown")
    token = cancellations.open(str(conversation_id))
    channel = QueueOutputChannel()

    task = asyncio.create_task(
        _run_turn(pipeline, conversation_id, body.content, channel, token, cancellations)
    )
    _inflight.add(task)
    task.add_done_callback(_inflight.discard)

    await logger.ainfo(
        "chat.message.received",
        conversation_id=str(conversation_id),
        message_chars=len(body.content),
    )

    async def event_stream() -> AsyncIterator[str]:
        drained = False
        try:
            async for event in channel.events():
                yield format_sse(event)
            drained = True
            yield SSE_DONE
        finally:
            if not drained:
                token.cancel("client_disconnected")
                logger.info("chat.client.disconnected", conversation_id=str(conversation_id))

    return StreamingResponse(
        content=event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "x-chatrelay-request-id": request_id,
        },
    )


@router.post(
    "/{conversation_id}/cancel",
    response_model=CancelResponse,
    summary="Stop the in-flight reply",
)
async def cancel_message(
    conversation_id: uuid.UUID, cancellations: Cancellations
) -> CancelResponse:
    cancelled = cancellations.cancel(str(conversation_id))
    await logger.ainfo(
        "chat.cancel.requested", conversation_id=str(conversation_id), found=cancelled
    )
    return CancelResponse(cancelled=cancelled)
