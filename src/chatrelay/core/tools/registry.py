"""
Tool registry.

Maps tool names to async handlers. The pipeline asks the model for a tool
decision only when a message looks like it needs fresh information and at
least one tool is registered.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from chatrelay.providers.base import ToolSpec
from chatrelay.schemas.tools import ToolCall

logger = structlog.stdlib.get_logger()

ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]

TRIGGER_KEYWORDS: frozenset[str] = frozenset(
    {
        # AI development topics
        "mcp", "model context protocol",
        "openai", "chatgpt", "gpt", "claude", "anthropic",
        "llm", "large language model", "language model",
        "embeddings", "vector", "semantic",
        "rag", "retrieval augmented generation", "chatbot",
        "prompt", "prompting", "system prompt",
        "tool calling", "tools", "ai sdk", "openai sdk",
        "anthropic sdk", "ai", "sdk",
        # Freshness
        "latest", "newest", "recent", "current", "new",
        "updated", "latest release", "new version",
        "what's new", "recent changes", "new features", "most accurate",
        # Code hosting
        "github", "repo", "repository",
        "docs", "documentation",
    }
)

_WORD_SPLIT = re.compile(r"[ ,.!?;:\n\r\t]+")


def should_use_tools(message: str, keywords: frozenset[str] = TRIGGER_KEYWORDS) -> bool:
    """True when any trigger keyword or phrase appears in the message as whole words."""
    words = [w for w in _WORD_SPLIT.split(message.lower()) if w]
    if not keywords.isdisjoint(words):
        return True
    # Phrases match against the word sequence, never inside a longer word
    padded = f" {' '.join(words)} "
    return any(f" {k} " in padded for k in keywords if " " in k)


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolSpec, ToolHandler]] = {}

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        if spec.name in self._tools:
            logger.warning("tools.registry.replaced", tool=spec.name)
        self._tools[spec.name] = (spec, handler)

    @property
    def specs(self) -> list[ToolSpec]:
        return [spec for spec, _ in self._tools.values()]

    async def run(self, call: ToolCall) -> str | None:
        """
        Execute a tool call and return its text output.

        Unknown tools and handler failures return None; a broken tool
        degrades to a plain completion.
        """
        entry = self._tools.get(call.tool_name)
        if entry is None:
            await logger.awarning("tools.unknown", tool=call.tool_name)
            return None

        _, handler = entry
        try:
            output = await handler(call.arguments)
        except Exception as e:
            await logger.awarning("tools.failed", tool=call.tool_name, error=str(e))
            return None

        await logger.ainfo("tools.executed", tool=call.tool_name, output_chars=len(output))
        return output
