"""Output channels: where the pipeline relays chunks and the finished turn."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Protocol

from chatrelay.schemas.conversation import ConversationTurn


class OutputChannel(Protocol):
    async def send_chunk(self, text: str) -> None: ...

    async def complete(self, turn: ConversationTurn) -> None: ...


def chunk_event(text: str) -> dict[str, Any]:
    return {"type": "chunk", "content": text}


def complete_event(turn: ConversationTurn) -> dict[str, Any]:
    return {
        "type": "message_complete",
        "message": {
            "id": str(turn.id),
            "role": turn.role.value,
            "content": turn.content,
            "created_at": turn.created_at.isoformat(),
        },
    }


class QueueOutputChannel:
    """
    Channel backed by an asyncio.Queue.

    The pipeline produces into it from its own task; the HTTP layer drains it
    with `events()` and renders each event as SSE. `close()` ends the stream
    without a message_complete event (used when the turn itself failed).
    """

    _END = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    async def send_chunk(self, text: str) -> None:
        if not self._closed:
            await self._queue.put(chunk_event(text))

    async def complete(self, turn: ConversationTurn) -> None:
        if not self._closed:
            await self._queue.put(complete_event(turn))
        self.close()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._END)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is self._END:
                return
            yield item
