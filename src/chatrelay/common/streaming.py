"""
Streaming utilities.

  1. Accumulate text and token usage across generated chunks
  2. Split a finished text into word chunks for simulated streaming
  3. Format output-channel events as Server-Sent Events
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamAccumulator:
    """Accumulates content and usage across streamed chunks."""

    total_tokens: int = 0
    first_token_at: float | None = None
    chunks_received: int = 0
    full_content: list[str] = field(default_factory=list)

    def record_chunk(self, content: str | None = None) -> None:
        self.chunks_received += 1
        if self.first_token_at is None and content:
            self.first_token_at = time.perf_counter()
        if content:
            self.full_content.append(content)

    def record_usage(self, total_tokens: int | None) -> None:
        # Providers report cumulative usage, so the latest value wins.
        if total_tokens is not None:
            self.total_tokens = total_tokens

    @property
    def assembled_content(self) -> str:
        return "".join(self.full_content)


_WORD_WITH_TRAILING_SPACE = re.compile(r"\S+\s*")


def split_into_word_chunks(text: str, chunk_size: int) -> list[str]:
    """
    Split text into chunks of `chunk_size` words.

    Each word keeps the whitespace that follows it, line breaks included,
    so joining the chunks reproduces the text exactly.
    """
    words = _WORD_WITH_TRAILING_SPACE.findall(text)
    if not words:
        return [text] if text else []
    # Leading whitespace rides on the first chunk
    words[0] = text[: len(text) - len(text.lstrip())] + words[0]
    return ["".join(words[i : i + chunk_size]) for i in range(0, len(words), chunk_size)]


def format_sse(data: dict[str, Any] | str) -> str:
    """Format a single SSE event line."""
    if isinstance(data, dict):
        payload = json.dumps(data, separators=(",", ":"), default=str)
    else:
        payload = data
    return f"data: {payload}\n\n"


SSE_DONE = "data: [DONE]\n\n"
