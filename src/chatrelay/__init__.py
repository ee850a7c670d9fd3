"""ChatRelay: chat assistant backend with exact and semantic response caching."""

__version__ = "0.1.0"
