"""
aiko.providers.base - Abstract base class for streaming provider clients.

A client turns (system prompt, bounded history, current prompt, images) into
a lazy stream of text deltas. It never touches session or message state;
the caller applies every delta it yields.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, ClassVar, Sequence

import httpx

from aiko.core.cancellation import CancellationToken
from aiko.core.errors import (
    ConfigError,
    ContextLengthExceededError,
    NetworkError,
    ProviderError,
)
from aiko.core.images import EncodedImage
from aiko.core.models import Message, ProviderKind, ProviderProfile

logger = logging.getLogger("aiko.providers")

# ---------------------------------------------------------------------------
# HTTP constants
# ---------------------------------------------------------------------------
# One fixed budget for every provider call. A timeout surfaces as NetworkError
# and is never retried here; re-sending is the caller's decision.
_CONNECT_TIMEOUT = 120.0
_READ_TIMEOUT = 120.0
_WRITE_TIMEOUT = 30.0
_POOL_TIMEOUT = 10.0

DEFAULT_TIMEOUT = httpx.Timeout(
    connect=_CONNECT_TIMEOUT,
    read=_READ_TIMEOUT,
    write=_WRITE_TIMEOUT,
    pool=_POOL_TIMEOUT,
)

# Substrings providers use to report an over-long request
_CONTEXT_LENGTH_MARKERS = (
    "maximum context length",
    "context_length_exceeded",
    "context length",
    "too many tokens",
)


def is_context_length_error(body: str) -> bool:
    lowered = body.lower()
    return any(marker in lowered for marker in _CONTEXT_LENGTH_MARKERS)


async def raise_for_provider_status(resp: httpx.Response, provider: str) -> None:
    """Read a non-2xx body fully and raise the matching ProviderError."""
    if resp.is_success:
        return
    await resp.aread()
    body = resp.text
    logger.error("%s HTTP %d: %s", provider, resp.status_code, body[:1000])
    if is_context_length_error(body):
        raise ContextLengthExceededError(resp.status_code, body, provider)
    raise ProviderError(resp.status_code, body, provider)


@asynccontextmanager
async def translate_transport_errors(provider: str) -> AsyncIterator[None]:
    """Map httpx transport failures onto NetworkError."""
    try:
        yield
    except httpx.TimeoutException as exc:
        raise NetworkError(f"{provider} request timed out") from exc
    except httpx.TransportError as exc:
        raise NetworkError(f"{provider} connection failed: {exc}") from exc


class StreamingClient(ABC):
    """
    Interface contract for all provider clients.

    Subclasses implement ``generate()`` and ``describe_image()``; each
    subclass serves exactly one ``ProviderKind``.
    """

    kind: ClassVar[ProviderKind]

    def __init__(
        self,
        profile: ProviderProfile,
        model: str,
        *,
        max_tokens: int = 3500,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.profile = profile
        self.model = model
        self.max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            base_url=profile.base_url,
            headers=self._headers(),
            timeout=DEFAULT_TIMEOUT,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @abstractmethod
    def generate(
        self,
        system_prompt: str,
        history: Sequence[Message],
        prompt: str,
        images: Sequence[EncodedImage] = (),
        *,
        token: CancellationToken,
    ) -> AsyncIterator[str]:
        """Stream text deltas for one turn, in the order the provider sends them."""
        ...

    @abstractmethod
    async def describe_image(
        self,
        image: EncodedImage,
        instruction: str,
        *,
        token: CancellationToken | None = None,
    ) -> str:
        """Single-turn, non-streaming vision call."""
        ...

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _require_credentials(self) -> None:
        if not self.profile.has_credentials:
            raise ConfigError(f"{self.profile.name} API key is not configured")
