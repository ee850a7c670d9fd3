"""
Embedding backends for the semantic cache.

The response cache accepts anything with an async `generate_embedding`.
The generation adapter satisfies it through the provider's embeddings
endpoint; `LocalEmbedder` satisfies it in-process with fastembed
(ONNX Runtime, no GPU needed).
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

if TYPE_CHECKING:
    from fastembed import TextEmbedding

logger = structlog.stdlib.get_logger()

# Output dimensions of the local models we know about
LOCAL_MODEL_DIMENSIONS: dict[str, int] = {
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
}


@runtime_checkable
class Embedder(Protocol):
    async def generate_embedding(self, text: str) -> list[float]: ...


class LocalEmbedder:
    """fastembed-backed embedder. The model is loaded lazily, once."""

    def __init__(self, model_name: str = "BAAI/bge-small-en-v1.5") -> None:
        self.model_name = model_name
        self._model: TextEmbedding | None = None

    @property
    def dimension(self) -> int | None:
        return LOCAL_MODEL_DIMENSIONS.get(self.model_name)

    def _get_model(self) -> TextEmbedding:
        if self._model is None:
            from fastembed import TextEmbedding

            logger.info("embedding.loading", model=self.model_name)
            self._model = TextEmbedding(model_name=self.model_name)
            logger.info("embedding.loaded", model=self.model_name)
        return self._model

    def embed_sync(self, text: str) -> list[float]:
        model = self._get_model()
        embeddings = list(model.embed([text]))
        return embeddings[0].tolist()

    async def generate_embedding(self, text: str) -> list[float]:
        # Model inference is CPU-bound; keep it off the event loop
        return await asyncio.to_thread(self.embed_sync, text)
