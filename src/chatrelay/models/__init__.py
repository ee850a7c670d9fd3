"""SQLAlchemy models: import all models here so metadata sees every table."""

from chatrelay.models.base import Base
from chatrelay.models.conversation import Conversation, Message
from chatrelay.models.semantic_entry import SemanticCacheEntry

__all__ = [
    "Base",
    "Conversation",
    "Message",
    "SemanticCacheEntry",
]
