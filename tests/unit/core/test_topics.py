"""Tests for topic tagging."""

from __future__ import annotations

import pytest

from chatrelay.core.cache.topics import extract_topics


@pytest.mark.unit
class TestExtractTopics:
    def test_known_terms(self) -> None:
        topics = extract_topics("How do I use Redis with Semantic Kernel in C#?")
        assert topics == {"redis", "semantic-kernel", "csharp"}

    def test_case_insensitive(self) -> None:
        assert extract_topics("BLAZOR or SignalR?") == {"blazor", "signalr"}

    def test_aspnet_also_tags_dotnet(self) -> None:
        assert extract_topics("ASP.NET minimal API") == {"aspnet", "dotnet", "minimal-api"}

    def test_no_match(self) -> None:
        assert extract_topics("What is 2+2?") == set()

    def test_empty_text(self) -> None:
        assert extract_topics("") == set()

    def test_non_text_input_never_raises(self) -> None:
        assert extract_topics(None) == set()  # type: ignore[arg-type]

    def test_custom_dictionary(self) -> None:
        assert extract_topics("kafka streams", {"kafka": "kafka"}) == {"kafka"}
