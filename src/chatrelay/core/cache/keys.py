"""
Cache keying and expiration policy.

Pure functions: the same conversation state always yields the same key and
the same lifetime. Turn order is part of the key.
"""

from __future__ import annotations

import hashlib
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

from chatrelay.config import CacheSettings
from chatrelay.schemas.conversation import ConversationTurn, Role


def build_context_string(prior_turns: Sequence[ConversationTurn], new_message: str) -> str:
    """Serialize prior turns plus the new user message, one line per turn."""
    lines = [f"{turn.role.label}: {turn.content}\n" for turn in prior_turns]
    lines.append(f"{Role.USER.label}: {new_message}\n")
    return "".join(lines)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def derive_exact_key(prior_turns: Sequence[ConversationTurn], new_message: str) -> str:
    """SHA-256 of the serialized conversation prefix and new message."""
    return sha256_hex(build_context_string(prior_turns, new_message))


def compute_expiration(
    turn_count: int,
    base_days: int = 21,
    decay_factor: float = 0.7,
) -> timedelta:
    """
    Lifetime of a conversation-keyed entry.

    Short exchanges recur more often than long ones, so lifetime decays
    geometrically with the number of prior turns and floors at one day:
    21, 14, 10, 7, 5, 3, 2, 1 days for turn counts 1..8.
    """
    lifetime_days = max(1, math.floor(base_days * decay_factor ** (turn_count - 1)))
    return timedelta(days=lifetime_days)


@dataclass(frozen=True)
class CachePolicy:
    """Eligibility gates and lifetimes derived from CacheSettings."""

    exact_max_turns: int = 2
    semantic_max_turns: int = 8
    base_lifetime_days: int = 21
    lifetime_decay_factor: float = 0.7
    resource_lifetime_days: int = 2

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> CachePolicy:
        return cls(
            exact_max_turns=settings.exact_max_turns,
            semantic_max_turns=settings.semantic_max_turns,
            base_lifetime_days=settings.base_lifetime_days,
            lifetime_decay_factor=settings.lifetime_decay_factor,
            resource_lifetime_days=settings.resource_lifetime_days,
        )

    def exact_eligible(self, turn_count: int) -> bool:
        return turn_count <= self.exact_max_turns

    def semantic_eligible(self, turn_count: int) -> bool:
        return turn_count <= self.semantic_max_turns

    def expiration(self, turn_count: int) -> timedelta:
        return compute_expiration(turn_count, self.base_lifetime_days, self.lifetime_decay_factor)

    def resource_expiration(self) -> timedelta:
        return timedelta(days=self.resource_lifetime_days)
