"""Generation adapter registry: maps provider names to adapter classes."""

from __future__ import annotations

import httpx

from chatrelay.config import Settings
from chatrelay.providers.base import GenerationAdapter
from chatrelay.providers.openai import OpenAIAdapter

# Registry: provider name -> adapter class
_ADAPTERS: dict[str, type[OpenAIAdapter]] = {
    "openai": OpenAIAdapter,
}

_http_client: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    """Get or create the shared async HTTP client."""
    global _http_client  # noqa: PLW0603
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(120.0, connect=10.0),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            http2=True,
            follow_redirects=True,
        )
    return _http_client


async def close_http_client() -> None:
    """Close the shared HTTP client (called on app shutdown)."""
    global _http_client  # noqa: PLW0603
    if _http_client and not _http_client.is_closed:
        await _http_client.aclose()
        _http_client = None


def build_adapter(settings: Settings, provider: str = "openai") -> GenerationAdapter:
    """Build the configured generation adapter on the shared HTTP client."""
    adapter_cls = _ADAPTERS.get(provider)
    if adapter_cls is None:
        supported = ", ".join(sorted(_ADAPTERS.keys()))
        raise ValueError(f"Unsupported provider: '{provider}'. Supported: {supported}")
    return adapter_cls(
        get_http_client(),
        settings.generation,
        embedding_model=settings.cache.embedding_model,
    )

