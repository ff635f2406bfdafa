"""
aiko.providers.openai_compat - Client for the OpenAI Chat Completions family.

Serves every provider that speaks ``POST /v1/chat/completions`` with
Server-Sent Events: OpenAI itself, DeepSeek and Qwen (DashScope
compatible mode).
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Sequence

from aiko.core.cancellation import CancellationToken
from aiko.core.errors import ProtocolError, ProviderError
from aiko.core.images import EncodedImage
from aiko.core.models import Message, ProviderKind
from aiko.providers.base import (
    StreamingClient,
    raise_for_provider_status,
    translate_transport_errors,
)

logger = logging.getLogger("aiko.providers.openai")

COMPLETIONS_PATH = "/v1/chat/completions"
SSE_DONE = "[DONE]"

# Very large prompts (pasted files) are cut down before sending
LARGE_PROMPT_CHARS = 6000
LARGE_PROMPT_KEEP = 5000


def compact_large_prompt(prompt: str) -> str:
    """Replace a huge prompt with a short framing plus its head."""
    if len(prompt) <= LARGE_PROMPT_CHARS:
        return prompt
    return (
        "You were asked to analyze a large file. "
        f"File size: {len(prompt)} characters. "
        "Please analyze the important parts and list problems and suggested improvements. "
        f"First {LARGE_PROMPT_KEEP} characters: {prompt[:LARGE_PROMPT_KEEP]}..."
    )


async def iter_sse_deltas(
    lines: AsyncIterable[str],
    token: CancellationToken | None = None,
    provider: str = "",
) -> AsyncIterator[str]:
    """
    Yield ``choices[0].delta.content`` from newline-delimited SSE lines.

    ``data: [DONE]`` ends the stream. A malformed line (bad JSON or an
    unexpected shape) is skipped. A stream with no usable data line at all,
    such as an HTML error page served with status 200, raises ProtocolError.
    """
    parsed = 0
    malformed = 0
    done = False
    iterator = aiter(lines)
    while True:
        if token is not None:
            token.raise_if_cancelled()
        try:
            line = await anext(iterator)
        except StopAsyncIteration:
            break
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == SSE_DONE:
            done = True
            break
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            chunk = None
        if not isinstance(chunk, dict):
            malformed += 1
            logger.debug("Skipping malformed SSE line: %.200s", line)
            continue

        if "error" in chunk:
            err = chunk["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise ProviderError(200, message, provider)

        try:
            content = _delta_content(chunk)
        except TypeError:
            malformed += 1
            logger.debug("Skipping SSE chunk with unexpected shape: %.200s", line)
            continue
        parsed += 1
        if content:
            yield content

    if not parsed and (malformed or not done):
        raise ProtocolError(
            f"{provider or 'provider'} stream could not be parsed "
            f"(no usable data lines, {malformed} malformed)"
        )


def _delta_content(chunk: dict[str, Any]) -> str | None:
    """``choices[0].delta.content``; TypeError if the chunk has the wrong shape."""
    choices = chunk.get("choices")
    if choices is None or choices == []:
        return None
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise TypeError("choices")
    delta = choices[0].get("delta")
    if delta is None:
        return None
    if not isinstance(delta, dict):
        raise TypeError("delta")
    content = delta.get("content")
    if content is not None and not isinstance(content, str):
        raise TypeError("content")
    return content


class OpenAICompatibleClient(StreamingClient):
    """Streams chat completions over SSE from an OpenAI-compatible endpoint."""

    kind = ProviderKind.OPENAI_COMPATIBLE

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def generate(
        self,
        system_prompt: str,
        history: Sequence[Message],
        prompt: str,
        images: Sequence[EncodedImage] = (),
        *,
        token: CancellationToken,
    ) -> AsyncIterator[str]:
        self._require_credentials()
        body = self.build_body(system_prompt, history, prompt, images)
        logger.debug(
            "%s request: model=%s messages=%d images=%d",
            self.profile.name,
            body["model"],
            len(body["messages"]),
            len(images),
        )

        token.raise_if_cancelled()
        async with translate_transport_errors(self.profile.name):
            async with self._client.stream("POST", COMPLETIONS_PATH, json=body) as resp:
                await raise_for_provider_status(resp, self.profile.name)
                async for delta in iter_sse_deltas(resp.aiter_lines(), token, self.profile.name):
                    yield delta

    async def describe_image(
        self,
        image: EncodedImage,
        instruction: str,
        *,
        token: CancellationToken | None = None,
    ) -> str:
        self._require_credentials()
        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": instruction},
                        {"type": "image_url", "image_url": {"url": image.data_url()}},
                    ],
                }
            ],
            "stream": False,
        }
        if token is not None:
            token.raise_if_cancelled()
        async with translate_transport_errors(self.profile.name):
            resp = await self._client.post(COMPLETIONS_PATH, json=body)
            await raise_for_provider_status(resp, self.profile.name)
        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProtocolError(f"{self.profile.name} vision response could not be parsed") from exc
        if content is not None and not isinstance(content, str):
            raise ProtocolError(
                f"{self.profile.name} vision response content is {type(content).__name__}, not text"
            )
        return content or ""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.profile.api_key}",
        }

    def build_body(
        self,
        system_prompt: str,
        history: Sequence[Message],
        prompt: str,
        images: Sequence[EncodedImage] = (),
    ) -> dict[str, Any]:
        """Build the JSON request body for one streamed turn."""
        messages: list[dict[str, Any]] = []
        if system_prompt.strip():
            messages.append({"role": "system", "content": system_prompt})
        for msg in history:
            messages.append({"role": msg.role.value, "content": msg.text})

        content: list[dict[str, Any]] = [{"type": "text", "text": compact_large_prompt(prompt)}]
        if images and self.profile.supports_vision:
            for image in images:
                content.append({"type": "image_url", "image_url": {"url": image.data_url()}})
        messages.append({"role": "user", "content": content})

        return {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "max_tokens": self.max_tokens,
        }
