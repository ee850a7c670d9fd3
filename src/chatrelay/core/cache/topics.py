"""
Topic tagging for semantic cache entries.

Tags are stored alongside each entry so entries can later be invalidated in
bulk when a product changes. They are never consulted on the read path.
"""

from __future__ import annotations

# Known term (lowercase, as it appears in text) -> canonical tag
KNOWN_TERMS: dict[str, str] = {
    "asp.net": "aspnet",
    "signalr": "signalr",
    "blazor": "blazor",
    "mcp": "mcp",
    "semantic kernel": "semantic-kernel",
    "redis": "redis",
    "openai": "openai",
    "azure": "azure",
    "entity framework": "ef",
    "minimal api": "minimal-api",
    ".net": "dotnet",
    "c#": "csharp",
    "visual studio": "visualstudio",
    "nuget": "nuget",
    "maui": "maui",
}


def extract_topics(text: str, terms: dict[str, str] | None = None) -> set[str]:
    """Return the canonical tags of every known term found in `text`."""
    if not isinstance(text, str) or not text:
        return set()
    lowered = text.lower()
    return {tag for term, tag in (terms or KNOWN_TERMS).items() if term in lowered}
