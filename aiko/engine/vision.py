"""
aiko.engine.vision - One-shot image to text.

Used for providers that cannot take images inline and for every sampled
video frame. The first configured vision provider wins: Gemini
(gemini-2.5-flash), then OpenAI (gpt-4o-mini). Failures come back as a
bracketed placeholder string so a caller can keep going.
"""

from __future__ import annotations

import logging
from typing import Sequence

from aiko.core.cancellation import CancellationToken
from aiko.core.errors import GenerationCancelled
from aiko.core.images import EncodedImage
from aiko.engine.prompts import VISION_INSTRUCTION
from aiko.providers.base import StreamingClient

logger = logging.getLogger("aiko.vision")

# (provider, model) in order of preference
VISION_MODELS: tuple[tuple[str, str], ...] = (
    ("GEMINI", "gemini-2.5-flash"),
    ("OPENAI", "gpt-4o-mini"),
)

NO_KEY_PLACEHOLDER = "[An API key is required for image description]"
EMPTY_PLACEHOLDER = "[No description returned]"


class VisionPreprocessor:
    """Describes an image with the first client that has credentials."""

    def __init__(self, clients: Sequence[StreamingClient]) -> None:
        self._clients = tuple(clients)

    @property
    def available(self) -> bool:
        return any(c.profile.has_credentials for c in self._clients)

    async def describe(
        self,
        image: EncodedImage,
        token: CancellationToken | None = None,
    ) -> str:
        """
        Return a plain-text description of *image*.

        Any failure becomes ``[Image could not be analyzed: ...]``.
        Only a cancelled *token* propagates, as ``GenerationCancelled``.
        """
        client = next((c for c in self._clients if c.profile.has_credentials), None)
        if client is None:
            return NO_KEY_PLACEHOLDER

        if token is not None:
            token.raise_if_cancelled()
        request = client.describe_image(image, VISION_INSTRUCTION, token=token)
        try:
            text = await (token.race(request) if token is not None else request)
        except GenerationCancelled:
            raise
        except Exception as exc:
            logger.warning("Vision call via %s failed: %s", client.profile.name, exc, exc_info=True)
            return f"[Image could not be analyzed: {exc}]"
        return text.strip() or EMPTY_PLACEHOLDER
