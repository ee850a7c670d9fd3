"""Cooperative cancellation for in-flight turns."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """
    A one-way flag polled at well-defined checkpoints.

    The pipeline checks it before the cache lookup and at every chunk
    boundary; nothing is interrupted between checkpoints.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "user_stop") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()


class CancellationRegistry:
    """Tracks the token of the in-flight turn for each conversation."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def open(self, conversation_id: str) -> CancellationToken:
        token = CancellationToken()
        self._tokens[conversation_id] = token
        return token

    def cancel(self, conversation_id: str) -> bool:
        token = self._tokens.get(conversation_id)
        if token is None:
            return False
        token.cancel()
        return True

    def close(self, conversation_id: str, token: CancellationToken) -> None:
        # A newer turn may have replaced the token; only remove our own.
        if self._tokens.get(conversation_id) is token:
            del self._tokens[conversation_id]
