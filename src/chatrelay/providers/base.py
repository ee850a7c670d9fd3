"""Abstract base class for generation adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from chatrelay.common.errors import GenerationError
from chatrelay.schemas.conversation import ConversationTurn
from chatrelay.schemas.tools import NoTool, ToolCall

logger = structlog.stdlib.get_logger()


@dataclass(frozen=True)
class GenerationChunk:
    """
    One streamed update.

    `text` is new content (may be empty); `total_tokens` is the cumulative
    usage when the provider reports it, usually only on the final chunk.
    """

    text: str = ""
    total_tokens: int | None = None


@dataclass(frozen=True)
class ToolSpec:
    """A tool the model may ask to call, described by a JSON schema."""

    name: str
    description: str
    parameters: dict[str, Any]


class GenerationAdapter(ABC):
    """
    Boundary to the language model.

    Subclasses must implement:
      - generate_embedding() : fixed-length vector for a text
      - stream_completion()  : async iterator of GenerationChunk
      - decide_tool()        : non-streaming tool decision
    Errors surface as GenerationError; the pipeline decides what the user sees.
    """

    provider_name: str

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self.client = http_client

    @abstractmethod
    async def generate_embedding(self, text: str) -> list[float]:
        ...

    @abstractmethod
    def stream_completion(
        self,
        prior_turns: Sequence[ConversationTurn],
        new_message: str,
        *,
        system_context: str | None = None,
    ) -> AsyncIterator[GenerationChunk]:
        """Yield chunks; stopping iteration early stops token consumption."""
        ...

    @abstractmethod
    async def decide_tool(
        self,
        prior_turns: Sequence[ConversationTurn],
        new_message: str,
        tools: Sequence[ToolSpec],
    ) -> tuple[NoTool | ToolCall, int]:
        """Return the validated decision and the tokens the decision cost."""
        ...

    async def _handle_error_response(self, response: httpx.Response, operation: str) -> None:
        """Shared error handling for non-2xx responses."""
        error_body = response.text
        await logger.aerror(
            f"provider.{self.provider_name}.error",
            operation=operation,
            status_code=response.status_code,
            body=error_body[:500],
        )

        if response.status_code == 401:
            raise GenerationError(
                f"{self.provider_name} authentication failed",
                details={"provider": self.provider_name, "status_code": 401},
            )
        if response.status_code == 429:
            raise GenerationError(
                f"{self.provider_name} rate limit exceeded",
                details={"provider": self.provider_name, "status_code": 429, "retry": True},
            )

        raise GenerationError(
            f"{self.provider_name} returned {response.status_code}: {error_body[:200]}",
            details={"provider": self.provider_name, "status_code": response.status_code},
        )
