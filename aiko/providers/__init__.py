"""
aiko.providers - Provider catalog and streaming clients.

The set of clients is closed: each ``ProviderKind`` maps to exactly one
``StreamingClient`` subclass.
"""

from __future__ import annotations

import httpx

from aiko.core.models import ProviderKind, ProviderProfile
from aiko.providers.base import StreamingClient
from aiko.providers.catalog import ProviderCatalog
from aiko.providers.gemini import GeminiClient
from aiko.providers.openai_compat import OpenAICompatibleClient

CLIENTS: dict[ProviderKind, type[StreamingClient]] = {
    ProviderKind.OPENAI_COMPATIBLE: OpenAICompatibleClient,
    ProviderKind.NATIVE_MULTI_TURN: GeminiClient,
}


def create_client(
    profile: ProviderProfile,
    model: str,
    *,
    max_tokens: int = 3500,
    transport: httpx.AsyncBaseTransport | None = None,
) -> StreamingClient:
    """Instantiate the client variant for *profile*'s wire family."""
    cls = CLIENTS[profile.kind]
    return cls(profile, model, max_tokens=max_tokens, transport=transport)


__all__ = [
    "CLIENTS",
    "GeminiClient",
    "OpenAICompatibleClient",
    "ProviderCatalog",
    "StreamingClient",
    "create_client",
]
