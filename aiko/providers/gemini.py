"""
aiko.providers.gemini - Native multi-turn client for Google Gemini.

Unlike the OpenAI family, Gemini keeps a chat object: ``start_chat`` seeds it
with the bounded history (``user``/``model`` roles) and
``send_message_stream`` streams one turn through ``streamGenerateContent``.
When the stream completes the chat records both turns.
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

logger = logging.getLogger("aiko.providers.gemini")

# Finish reasons that mean the model refused to answer
_BLOCKED_REASONS = ("SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT")


def to_gemini_contents(history: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert messages to Gemini ``contents``, merging consecutive same-role turns.

    Gemini requires strict user/model alternation.
    """
    contents: list[dict[str, Any]] = []
    for msg in history:
        if not msg.text:
            continue
        role = "user" if msg.is_user else "model"
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].append({"text": msg.text})
        else:
            contents.append({"role": role, "parts": [{"text": msg.text}]})
    return contents


def build_user_parts(
    system_prompt: str,
    prompt: str,
    images: Sequence[EncodedImage] = (),
) -> list[dict[str, Any]]:
    """Parts for the current turn: inline images first, then the text."""
    parts: list[dict[str, Any]] = [
        {"inlineData": {"mimeType": image.mime_type, "data": image.b64()}}
        for image in images
    ]
    if system_prompt.strip():
        text = f"{system_prompt}\n\nUser question: {prompt}"
    else:
        text = prompt
    parts.append({"text": text})
    return parts


async def iter_gemini_text(
    lines: AsyncIterable[str],
    token: CancellationToken | None = None,
) -> AsyncIterator[str]:
    """Yield the visible text of each ``streamGenerateContent`` SSE chunk.

    Lines with bad JSON or an unexpected shape are skipped. A stream with no
    usable data line at all raises ProtocolError.
    """
    parsed = 0
    malformed = 0
    done = False
    has_content = False
    finish_reason = ""
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
        if data == "[DONE]":
            done = True
            break
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            chunk = None
        if not isinstance(chunk, dict):
            malformed += 1
            logger.debug("Skipping malformed Gemini line: %.200s", line)
            continue

        if "error" in chunk:
            err = chunk["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            logger.error("Gemini API error in stream: %s", message[:300])
            raise ProviderError(int(err.get("code", 200)) if isinstance(err, dict) else 200, message, "GEMINI")

        try:
            reason, parts = _candidate_parts(chunk)
        except TypeError:
            malformed += 1
            logger.debug("Skipping Gemini chunk with unexpected shape: %.200s", line)
            continue
        parsed += 1
        finish_reason = reason or finish_reason
        for part in parts:
            # Thought parts are internal reasoning, not user output
            if part.get("thought"):
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                has_content = True
                yield text

    if not parsed and (malformed or not done):
        raise ProtocolError(
            f"GEMINI stream could not be parsed (no usable data lines, {malformed} malformed)"
        )
    if not has_content and finish_reason in _BLOCKED_REASONS:
        raise ProviderError(200, f"response blocked ({finish_reason})", "GEMINI")


def _candidate_parts(chunk: dict[str, Any]) -> tuple[str, list[dict[str, Any]]]:
    """Finish reason and parts of the first candidate; TypeError on a wrong shape."""
    candidates = chunk.get("candidates")
    if candidates is None or candidates == []:
        return "", []
    if not isinstance(candidates, list) or not isinstance(candidates[0], dict):
        raise TypeError("candidates")
    candidate = candidates[0]
    reason = candidate.get("finishReason") or ""
    if not isinstance(reason, str):
        raise TypeError("finishReason")
    content = candidate.get("content")
    if content is None:
        return reason, []
    if not isinstance(content, dict):
        raise TypeError("content")
    parts = content.get("parts")
    if parts is None:
        return reason, []
    if not isinstance(parts, list) or not all(isinstance(part, dict) for part in parts):
        raise TypeError("parts")
    return reason, parts


class GeminiChat:
    """A running Gemini conversation. ``history`` is in wire format."""

    def __init__(self, client: "GeminiClient", history: list[dict[str, Any]]) -> None:
        self._client = client
        self.history = history

    async def send_message_stream(
        self,
        parts: list[dict[str, Any]],
        *,
        token: CancellationToken,
    ) -> AsyncIterator[str]:
        user_turn = {"role": "user", "parts": parts}
        body = {
            "contents": [*self.history, user_turn],
            "generationConfig": {"maxOutputTokens": self._client.max_tokens},
        }
        collected: list[str] = []
        async for text in self._client.stream_contents(body, token=token):
            collected.append(text)
            yield text
        self.history.append(user_turn)
        self.history.append({"role": "model", "parts": [{"text": "".join(collected)}]})


class GeminiClient(StreamingClient):
    """Streams from ``/v1beta/models/{model}:streamGenerateContent?alt=sse``."""

    kind = ProviderKind.NATIVE_MULTI_TURN

    def start_chat(self, history: Sequence[Message]) -> GeminiChat:
        return GeminiChat(self, to_gemini_contents(history))

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
        chat = self.start_chat(history)
        parts = build_user_parts(system_prompt, prompt, images)
        logger.debug(
            "GEMINI request: model=%s turns=%d images=%d",
            self.model,
            len(chat.history),
            len(images),
        )
        async for text in chat.send_message_stream(parts, token=token):
            yield text

    async def stream_contents(
        self,
        body: dict[str, Any],
        *,
        token: CancellationToken,
    ) -> AsyncIterator[str]:
        url = f"/v1beta/models/{self.model}:streamGenerateContent"
        token.raise_if_cancelled()
        async with translate_transport_errors(self.profile.name):
            async with self._client.stream("POST", url, params={"alt": "sse"}, json=body) as resp:
                await raise_for_provider_status(resp, self.profile.name)
                async for text in iter_gemini_text(resp.aiter_lines(), token):
                    yield text

    async def describe_image(
        self,
        image: EncodedImage,
        instruction: str,
        *,
        token: CancellationToken | None = None,
    ) -> str:
        self._require_credentials()
        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"inlineData": {"mimeType": image.mime_type, "data": image.b64()}},
                        {"text": instruction},
                    ],
                }
            ],
        }
        if token is not None:
            token.raise_if_cancelled()
        url = f"/v1beta/models/{self.model}:generateContent"
        async with translate_transport_errors(self.profile.name):
            resp = await self._client.post(url, json=body)
            await raise_for_provider_status(resp, self.profile.name)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolError("GEMINI vision response could not be parsed") from exc

        if not isinstance(data, dict):
            raise ProtocolError("GEMINI vision response is not a JSON object")
        try:
            _, parts = _candidate_parts(data)
        except TypeError as exc:
            raise ProtocolError(f"GEMINI vision response has an unexpected {exc} field") from exc
        return "\n".join(
            p["text"] for p in parts if isinstance(p.get("text"), str) and not p.get("thought")
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.profile.api_key,
        }
