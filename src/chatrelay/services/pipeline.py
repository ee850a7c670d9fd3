"""
Conversation pipeline: one user message in, one assistant turn out.

  IDLE -> CACHE_CHECK -> SERVE_FROM_CACHE -> PERSISTED
                      -> GENERATE         -> PERSISTED

The pipeline owns ordering (user turn before assistant turn), cancellation
checkpoints, the cache write policy and the context-full flag. Cache
mechanics live behind ResponseCache; model calls behind GenerationAdapter.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from chatrelay.common.cancellation import CancellationToken
from chatrelay.common.streaming import StreamAccumulator, split_into_word_chunks
from chatrelay.config import Settings
from chatrelay.core.cache.manager import ResponseCache
from chatrelay.core.tools.registry import ToolRegistry, should_use_tools
from chatrelay.providers.base import GenerationAdapter
from chatrelay.schemas.conversation import ConversationInfo, ConversationTurn, Role
from chatrelay.schemas.tools import ToolCall
from chatrelay.services.channel import OutputChannel
from chatrelay.services.conversations import ConversationStore

logger = structlog.stdlib.get_logger()


class PipelineState(StrEnum):
    IDLE = "idle"
    CACHE_CHECK = "cache_check"
    SERVE_FROM_CACHE = "serve_from_cache"
    GENERATE = "generate"
    PERSISTED = "persisted"


_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.CACHE_CHECK, PipelineState.GENERATE}),
    PipelineState.CACHE_CHECK: frozenset(
        {PipelineState.SERVE_FROM_CACHE, PipelineState.GENERATE}
    ),
    PipelineState.SERVE_FROM_CACHE: frozenset({PipelineState.PERSISTED}),
    PipelineState.GENERATE: frozenset({PipelineState.PERSISTED}),
    PipelineState.PERSISTED: frozenset(),
}


@dataclass
class TurnResult:
    assistant_turn: ConversationTurn
    source: str  # exact | semantic | resource | generated | fallback
    cancelled: bool
    total_tokens: int
    context_full: bool


@dataclass
class _Turn:
    """Per-turn state. The pipeline itself is shared across requests."""

    conversation: ConversationInfo
    prior_turns: list[ConversationTurn]
    message: str
    token: CancellationToken
    state: PipelineState = PipelineState.IDLE
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])

    @property
    def is_resource_first_turn(self) -> bool:
        return self.conversation.is_resource_anchored and not self.prior_turns

    def advance(self, to: PipelineState) -> None:
        if to not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state} -> {to}")
        self.state = to
        self.history.append(to)


class ConversationPipeline:
    def __init__(
        self,
        store: ConversationStore,
        cache: ResponseCache,
        adapter: GenerationAdapter,
        *,
        tools: ToolRegistry | None = None,
        chunk_size: int = 3,
        chunk_delay_seconds: float = 0.05,
        context_full_threshold: int = 50_000,
        fallback_message: str = "Sorry, I'm having trouble responding right now. Please try again.",
    ) -> None:
        self.store = store
        self.cache = cache
        self.adapter = adapter
        self.tools = tools or ToolRegistry()
        self.chunk_size = chunk_size
        self.chunk_delay_seconds = chunk_delay_seconds
        self.context_full_threshold = context_full_threshold
        self.fallback_message = fallback_message

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: ConversationStore,
        cache: ResponseCache,
        adapter: GenerationAdapter,
        tools: ToolRegistry | None = None,
    ) -> ConversationPipeline:
        return cls(
            store,
            cache,
            adapter,
            tools=tools,
            chunk_size=settings.streaming.chunk_size,
            chunk_delay_seconds=settings.streaming.delay_ms / 1000,
            context_full_threshold=settings.conversation.context_full_token_threshold,
            fallback_message=settings.generation.fallback_message,
        )

    async def process_message(
        self,
        conversation_id: uuid.UUID,
        message: str,
        channel: OutputChannel,
        token: CancellationToken | None = None,
    ) -> TurnResult:
        start = time.perf_counter()
        conversation = await self.store.get_conversation(conversation_id)
        prior_turns = list(await self.store.get_turns(conversation_id))
        turn = _Turn(conversation, prior_turns, message, token or CancellationToken())

        result: TurnResult | None = None
        if turn.token.cancelled:
            await logger.ainfo(
                "pipeline.cache_check.skipped",
                conversation_id=str(conversation_id),
                reason="cancelled",
            )
        else:
            turn.advance(PipelineState.CACHE_CHECK)
            result = await self._try_cache(turn, channel)

        if result is None:
            turn.advance(PipelineState.GENERATE)
            result = await self._generate(turn, channel)

        if result.total_tokens >= self.context_full_threshold:
            await self.store.mark_context_full(conversation_id)
            result.context_full = True

        await channel.complete(result.assistant_turn)
        await logger.ainfo(
            "pipeline.turn.done",
            conversation_id=str(conversation_id),
            source=result.source,
            cancelled=result.cancelled,
            total_tokens=result.total_tokens,
            context_full=result.context_full,
            states=[s.value for s in turn.history],
            latency_ms=int((time.perf_counter() - start) * 1000),
        )
        return result

    # CACHE_CHECK / SERVE_FROM_CACHE

    async def _try_cache(self, turn: _Turn, channel: OutputChannel) -> TurnResult | None:
        if turn.is_resource_first_turn:
            cached = await self.cache.lookup_by_resource(turn.conversation.resource_id)  # type: ignore[arg-type]
            source = "resource"
        else:
            hit = await self.cache.lookup(turn.prior_turns, turn.message)
            cached = hit.response if hit else None
            source = hit.source if hit else ""

        if cached is None:
            return None

        turn.advance(PipelineState.SERVE_FROM_CACHE)
        relayed = await self._replay(cached, channel, turn.token)

        await self.store.add_turn(turn.conversation.id, Role.USER, turn.message)
        cancelled = turn.token.cancelled
        assistant = await self.store.add_turn(
            turn.conversation.id, Role.ASSISTANT, relayed if cancelled else cached
        )
        turn.advance(PipelineState.PERSISTED)
        return TurnResult(
            assistant_turn=assistant,
            source=source,
            cancelled=cancelled,
            total_tokens=0,
            context_full=False,
        )

    async def _replay(
        self, text: str, channel: OutputChannel, token: CancellationToken
    ) -> str:
        """Relay cached text in word chunks. Returns what was actually relayed."""
        sent: list[str] = []
        for chunk in split_into_word_chunks(text, self.chunk_size):
            if token.cancelled:
                break
            await channel.send_chunk(chunk)
            sent.append(chunk)
            if self.chunk_delay_seconds > 0:
                await asyncio.sleep(self.chunk_delay_seconds)
        return "".join(sent)

    # GENERATE

    async def _decide_and_run_tool(self, turn: _Turn) -> tuple[str | None, int]:
        if not len(self.tools) or not should_use_tools(turn.message):
            return None, 0
        try:
            decision, tokens = await self.adapter.decide_tool(
                turn.prior_turns, turn.message, self.tools.specs
            )
        except Exception as e:
            await logger.awarning("pipeline.tool_decision.failed", error=str(e))
            return None, 0

        if not isinstance(decision, ToolCall):
            return None, tokens
        return await self.tools.run(decision), tokens

    def _system_context(self, turn: _Turn, tool_output: str | None) -> str | None:
        parts: list[str] = []
        if turn.conversation.resource_content:
            parts.append(f"Article content:\n{turn.conversation.resource_content}")
        if tool_output:
            parts.append(f"Tool results:\n{tool_output}")
        return "\n\n".join(parts) or None

    async def _stream(
        self,
        turn: _Turn,
        channel: OutputChannel,
        system_context: str | None,
        acc: StreamAccumulator,
    ) -> None:
        stream = self.adapter.stream_completion(
            turn.prior_turns, turn.message, system_context=system_context
        )
        async with aclosing(stream) as chunks:
            async for chunk in chunks:
                if turn.token.cancelled:
                    break
                acc.record_usage(chunk.total_tokens)
                if chunk.text:
                    acc.record_chunk(chunk.text)
                    await channel.send_chunk(chunk.text)

    async def _generate(self, turn: _Turn, channel: OutputChannel) -> TurnResult:
        conversation_id = turn.conversation.id
        await self.store.add_turn(conversation_id, Role.USER, turn.message)

        # A cancelled turn never reaches the adapter
        tool_output, tool_tokens = None, 0
        if not turn.token.cancelled:
            tool_output, tool_tokens = await self._decide_and_run_tool(turn)
        system_context = self._system_context(turn, tool_output)

        acc = StreamAccumulator()
        failed = False
        try:
            if not turn.token.cancelled:
                await self._stream(turn, channel, system_context, acc)
        except Exception as e:
            failed = True
            await logger.aexception(
                "pipeline.generation.failed",
                conversation_id=str(conversation_id),
                error=str(e),
            )

        cancelled = turn.token.cancelled
        if failed:
            text = self.fallback_message
            generation_tokens = 0
            await channel.send_chunk(text)
        else:
            text = acc.assembled_content
            generation_tokens = acc.total_tokens

        assistant = await self.store.add_turn(conversation_id, Role.ASSISTANT, text)
        turn.advance(PipelineState.PERSISTED)

        if not cancelled and not failed and text and text != self.fallback_message:
            await self._store_in_cache(turn, text)

        return TurnResult(
            assistant_turn=assistant,
            source="fallback" if failed else "generated",
            cancelled=cancelled,
            total_tokens=tool_tokens + generation_tokens,
            context_full=False,
        )

    async def _store_in_cache(self, turn: _Turn, text: str) -> None:
        if turn.is_resource_first_turn:
            await self.cache.store_by_resource(turn.conversation.resource_id, text)  # type: ignore[arg-type]
        else:
            await self.cache.store(turn.prior_turns, turn.message, text)

