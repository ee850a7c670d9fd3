"""Tests for the conversation pipeline state machine."""

from __future__ import annotations

import uuid

import pytest

from chatrelay.common.cancellation import CancellationToken
from chatrelay.common.errors import NotFoundError
from chatrelay.core.tools.registry import ToolRegistry
from chatrelay.providers.base import ToolSpec
from chatrelay.schemas.conversation import Role
from chatrelay.schemas.tools import ToolCall
from chatrelay.services.pipeline import ConversationPipeline

from tests.factories import (
    FailingAdapter,
    FakeAdapter,
    FakeVectorIndex,
    InMemoryConversationStore,
    InMemoryKeyValueCache,
    RecordingChannel,
    make_conversation,
    make_response_cache,
    make_turns,
)

FALLBACK = "Sorry, I'm having trouble responding right now. Please try again."


class _Harness:
    def __init__(self, adapter: FakeAdapter, tools: ToolRegistry | None = None) -> None:
        self.exact = InMemoryKeyValueCache()
        self.resource = InMemoryKeyValueCache()
        self.index = FakeVectorIndex()
        self.cache = make_response_cache(self.exact, self.resource, self.index)
        self.store = InMemoryConversationStore()
        self.adapter = adapter
        self.pipeline = ConversationPipeline(
            self.store,
            self.cache,
            adapter,
            tools=tools,
            chunk_delay_seconds=0,
        )

    def new_conversation(self, *turn_contents: str, **kwargs):
        conversation = make_conversation(**kwargs)
        self.store.add(conversation, *make_turns(*turn_contents))
        return conversation

    def exact_ops(self, op: str) -> int:
        return sum(1 for name, _ in self.exact.calls if name == op)


@pytest.mark.unit
class TestEndToEnd:
    async def test_miss_then_exact_hit_in_fresh_conversation(self) -> None:
        h = _Harness(FakeAdapter(["4"], total_tokens=12))
        first = h.new_conversation()
        channel = RecordingChannel()

        result = await h.pipeline.process_message(first.id, "What is 2+2?", channel)

        assert result.source == "generated"
        assert result.total_tokens == 12
        assert result.cancelled is False
        assert result.context_full is False
        assert channel.chunks == ["4"]
        assert channel.completed == result.assistant_turn
        assert h.store.writes == [(Role.USER, "What is 2+2?"), (Role.ASSISTANT, "4")]
        assert h.exact_ops("set") == 1
        assert h.index.calls.count("add") == 1

        second = h.new_conversation()
        channel2 = RecordingChannel()
        result2 = await h.pipeline.process_message(second.id, "What is 2+2?", channel2)

        assert result2.source == "exact"
        assert result2.assistant_turn.content == "4"
        assert channel2.chunks == ["4"]
        assert len(h.adapter.stream_calls) == 1
        assert h.store.turns[second.id][0].role is Role.USER

    async def test_generation_sees_prior_turns_without_new_user_turn(self) -> None:
        h = _Harness(FakeAdapter(["Yes."], total_tokens=5))
        conversation = h.new_conversation(*[f"t{i}" for i in range(10)])

        await h.pipeline.process_message(conversation.id, "Still there?", RecordingChannel())

        call = h.adapter.stream_calls[0]
        assert [t.content for t in call["prior_turns"]] == [f"t{i}" for i in range(10)]
        assert call["new_message"] == "Still there?"
        # Above the semantic ceiling: no cache traffic at all
        assert h.exact.calls == []
        assert h.index.calls == []

    async def test_unknown_conversation(self) -> None:
        h = _Harness(FakeAdapter(["x"]))
        with pytest.raises(NotFoundError):
            await h.pipeline.process_message(uuid.uuid4(), "Hi", RecordingChannel())


@pytest.mark.unit
class TestCancellation:
    async def test_cancel_mid_stream_persists_partial_and_skips_cache(self) -> None:
        h = _Harness(FakeAdapter(["The", " capi", "tal of", " France"], total_tokens=20))
        conversation = h.new_conversation()
        token = CancellationToken()

        def stop_after_partial(_: str, chunks: list[str]) -> None:
            if "".join(chunks) == "The capi":
                token.cancel()

        channel = RecordingChannel(stop_after_partial)
        result = await h.pipeline.process_message(
            conversation.id, "What is the capital of France?", channel, token
        )

        assert result.cancelled is True
        assert result.assistant_turn.content == "The capi"
        assert h.store.writes[-1] == (Role.ASSISTANT, "The capi")
        assert h.exact_ops("set") == 0
        assert h.index.entries == []
        assert channel.completed is not None

    async def test_cancel_before_start_skips_cache_check(self) -> None:
        h = _Harness(FakeAdapter(["unused"]))
        conversation = h.new_conversation()
        token = CancellationToken()
        token.cancel()

        result = await h.pipeline.process_message(
            conversation.id, "Hi", RecordingChannel(), token
        )

        assert result.cancelled is True
        assert h.exact.calls == []
        assert h.index.calls == []
        assert h.store.writes == [(Role.USER, "Hi"), (Role.ASSISTANT, "")]
        assert h.adapter.stream_calls == []
        assert h.adapter.tool_calls == []

    async def test_cancel_before_start_never_calls_adapter_even_with_tools(self) -> None:
        tools = ToolRegistry()
        executed: list[dict] = []

        async def search(arguments: dict) -> str:
            executed.append(arguments)
            return "unused"

        tools.register(ToolSpec("search_docs", "Search docs", {"type": "object"}), search)
        adapter = FakeAdapter(
            ["unused"],
            decision=ToolCall(tool_name="search_docs", arguments={"query": "docs"}),
        )
        h = _Harness(adapter, tools)
        conversation = h.new_conversation()
        token = CancellationToken()
        token.cancel()
        channel = RecordingChannel()

        result = await h.pipeline.process_message(conversation.id, "latest docs?", channel, token)

        assert result.cancelled is True
        assert result.total_tokens == 0
        assert adapter.tool_calls == []
        assert adapter.stream_calls == []
        assert executed == []
        assert channel.chunks == []
        assert h.store.writes == [(Role.USER, "latest docs?"), (Role.ASSISTANT, "")]

    async def test_cancel_during_tool_call_skips_completion(self) -> None:
        tools = ToolRegistry()
        token = CancellationToken()

        async def search(arguments: dict) -> str:
            token.cancel()
            return "Docs result."

        tools.register(ToolSpec("search_docs", "Search docs", {"type": "object"}), search)
        adapter = FakeAdapter(
            ["unused"],
            decision=ToolCall(tool_name="search_docs", arguments={"query": "docs"}),
            decision_tokens=30,
        )
        h = _Harness(adapter, tools)
        conversation = h.new_conversation()

        result = await h.pipeline.process_message(
            conversation.id, "latest docs?", RecordingChannel(), token
        )

        assert result.cancelled is True
        assert result.total_tokens == 30
        assert len(adapter.tool_calls) == 1
        assert adapter.stream_calls == []
        assert h.store.writes[-1] == (Role.ASSISTANT, "")
        assert h.exact_ops("set") == 0

    async def test_cancel_during_replay_stops_relaying(self) -> None:
        h = _Harness(FakeAdapter(["unused"]))
        await h.cache.store([], "Tell me a story", "Once upon a time there was a cache.")
        conversation = h.new_conversation()
        token = CancellationToken()

        channel = RecordingChannel(lambda _, chunks: token.cancel())
        result = await h.pipeline.process_message(
            conversation.id, "Tell me a story", channel, token
        )

        assert result.source == "exact"
        assert result.cancelled is True
        assert channel.chunks == ["Once upon a "]
        assert h.store.writes == [(Role.USER, "Tell me a story"), (Role.ASSISTANT, "Once upon a ")]
        assert h.adapter.stream_calls == []


@pytest.mark.unit
class TestCachedReplay:
    async def test_semantic_hit_is_replayed_in_word_chunks(self) -> None:
        h = _Harness(FakeAdapter(["unused"]))
        turns = ("Hi", "Hello!", "What is Redis?", "A data store.")
        await h.cache.store(make_turns(*turns), "Is it fast?", "Yes it is very fast indeed.")
        conversation = h.new_conversation(*turns)
        channel = RecordingChannel()

        result = await h.pipeline.process_message(conversation.id, "Is it fast?", channel)

        assert result.source == "semantic"
        assert result.total_tokens == 0
        assert channel.chunks == ["Yes it is ", "very fast indeed."]
        assert h.adapter.stream_calls == []
        assert h.store.writes == [
            (Role.USER, "Is it fast?"),
            (Role.ASSISTANT, "Yes it is very fast indeed."),
        ]

    async def test_multiline_answer_is_replayed_verbatim(self) -> None:
        answer = "Steps:\n1. Install\n2. Run\n\n```\ncode\n```"
        h = _Harness(FakeAdapter(["unused"]))
        await h.cache.store([], "How do I start?", answer)
        conversation = h.new_conversation()
        channel = RecordingChannel()

        result = await h.pipeline.process_message(conversation.id, "How do I start?", channel)

        assert result.source == "exact"
        assert len(channel.chunks) > 1
        assert "".join(channel.chunks) == answer
        assert result.assistant_turn.content == answer

    async def test_cancel_during_multiline_replay_keeps_line_breaks(self) -> None:
        answer = "Steps:\n1. Install it\n2. Run it"
        h = _Harness(FakeAdapter(["unused"]))
        await h.cache.store([], "How do I start?", answer)
        conversation = h.new_conversation()
        token = CancellationToken()

        channel = RecordingChannel(lambda _, chunks: token.cancel())
        result = await h.pipeline.process_message(
            conversation.id, "How do I start?", channel, token
        )

        assert result.cancelled is True
        assert result.assistant_turn.content == "Steps:\n1. Install "
        assert answer.startswith(result.assistant_turn.content)


@pytest.mark.unit
class TestFallback:
    async def test_adapter_failure_uses_fallback_and_is_not_cached(self) -> None:
        h = _Harness(FailingAdapter(partial=["Par"]))
        conversation = h.new_conversation()
        channel = RecordingChannel()

        result = await h.pipeline.process_message(conversation.id, "Capital?", channel)

        assert result.source == "fallback"
        assert result.total_tokens == 0
        assert result.assistant_turn.content == FALLBACK
        assert channel.chunks[-1] == FALLBACK
        assert h.store.writes == [(Role.USER, "Capital?"), (Role.ASSISTANT, FALLBACK)]
        assert h.exact_ops("set") == 0
        assert h.index.entries == []


@pytest.mark.unit
class TestContextFull:
    async def test_marks_context_full_at_threshold(self) -> None:
        h = _Harness(FakeAdapter(["ok"], total_tokens=50_000))
        conversation = h.new_conversation()

        result = await h.pipeline.process_message(conversation.id, "Hi", RecordingChannel())

        assert result.context_full is True
        assert h.store.context_full_marked == [conversation.id]

    async def test_below_threshold_is_untouched(self) -> None:
        h = _Harness(FakeAdapter(["ok"], total_tokens=49_999))
        conversation = h.new_conversation()

        result = await h.pipeline.process_message(conversation.id, "Hi", RecordingChannel())

        assert result.context_full is False
        assert h.store.context_full_marked == []

    async def test_tool_decision_tokens_count_towards_threshold(self) -> None:
        tools = ToolRegistry()

        async def search(arguments: dict) -> str:
            return "MCP 2.0 was released."

        tools.register(ToolSpec("search_docs", "Search docs", {"type": "object"}), search)
        adapter = FakeAdapter(
            ["ok"],
            total_tokens=49_950,
            decision=ToolCall(tool_name="search_docs", arguments={"query": "mcp"}),
            decision_tokens=100,
        )
        h = _Harness(adapter, tools)
        conversation = h.new_conversation()

        result = await h.pipeline.process_message(
            conversation.id, "What is the latest mcp release?", RecordingChannel()
        )

        assert result.total_tokens == 50_050
        assert result.context_full is True
        assert "MCP 2.0 was released." in adapter.stream_calls[0]["system_context"]


@pytest.mark.unit
class TestTools:
    async def test_no_trigger_keyword_skips_tool_decision(self) -> None:
        tools = ToolRegistry()

        async def search(arguments: dict) -> str:
            return "unused"

        tools.register(ToolSpec("search_docs", "Search docs", {"type": "object"}), search)
        adapter = FakeAdapter(["4"], total_tokens=3)
        h = _Harness(adapter, tools)
        conversation = h.new_conversation()

        await h.pipeline.process_message(conversation.id, "What is 2+2?", RecordingChannel())

        assert adapter.tool_calls == []
        assert adapter.stream_calls[0]["system_context"] is None

    async def test_empty_registry_skips_tool_decision(self) -> None:
        adapter = FakeAdapter(["ok"], total_tokens=3)
        h = _Harness(adapter)
        conversation = h.new_conversation()

        await h.pipeline.process_message(conversation.id, "latest github docs", RecordingChannel())

        assert adapter.tool_calls == []


@pytest.mark.unit
class TestResourceAnchored:
    URL = "https://example.com/news/dotnet-10-released"

    async def test_first_turn_uses_resource_cache(self) -> None:
        h = _Harness(FakeAdapter(["Summary."], total_tokens=40))
        first = h.new_conversation(resource_id=self.URL, resource_content="Article body")

        result = await h.pipeline.process_message(first.id, "Summarize this", RecordingChannel())

        assert result.source == "generated"
        assert "Article body" in h.adapter.stream_calls[0]["system_context"]
        assert h.resource.data == {self.URL: "Summary."}
        assert h.exact.calls == []
        assert h.index.calls == []

        second = h.new_conversation(resource_id=self.URL, resource_content="Article body")
        result2 = await h.pipeline.process_message(
            second.id, "Give me the gist", RecordingChannel()
        )

        assert result2.source == "resource"
        assert result2.assistant_turn.content == "Summary."
        assert len(h.adapter.stream_calls) == 1

    async def test_later_turns_use_conversation_cache(self) -> None:
        h = _Harness(FakeAdapter(["Sure."], total_tokens=10))
        conversation = h.new_conversation(
            "Summarize this", "Summary.", resource_id=self.URL, resource_content="Article body"
        )

        await h.pipeline.process_message(conversation.id, "More detail?", RecordingChannel())

        assert h.resource.calls == []
        assert h.exact_ops("set") == 1
        assert "Article body" in h.adapter.stream_calls[0]["system_context"]
