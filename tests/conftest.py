"""Shared fixtures: in-memory store, catalog, fake view and mock HTTP helpers."""

from __future__ import annotations

import json
from typing import AsyncIterator, Callable, Iterable

import httpx
import pytest
from PIL import Image

from aiko.core.database import SQLiteMessageStore
from aiko.core.images import EncodedImage, encode_image
from aiko.core.models import API_KEY_ENV, AppConfig, Message
from aiko.engine.context import EngineContext
from aiko.providers.catalog import ProviderCatalog


@pytest.fixture(autouse=True)
def _no_env_keys(monkeypatch):
    for name in API_KEY_ENV.values():
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store():
    s = SQLiteMessageStore.in_memory()
    yield s
    s.close()


@pytest.fixture
def catalog():
    return ProviderCatalog.load()


# ---- SSE helpers -----------------------------------------------------------

def openai_chunk(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": content}}]})


def gemini_chunk(text: str, finish_reason: str = "") -> str:
    candidate = {"content": {"role": "model", "parts": [{"text": text}]}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return "data: " + json.dumps({"candidates": [candidate]})


def sse_response(lines: Iterable[str], status_code: int = 200) -> httpx.Response:
    body = "".join(f"{line}\n\n" for line in lines)
    return httpx.Response(status_code, text=body, headers={"content-type": "text/event-stream"})


def openai_sse(*deltas: str) -> httpx.Response:
    return sse_response([*(openai_chunk(d) for d in deltas), "data: [DONE]"])


async def alines(lines: Iterable[str]) -> AsyncIterator[str]:
    for line in lines:
        yield line


def request_json(request: httpx.Request) -> dict:
    return json.loads(request.content)


def last_user_text(request: httpx.Request) -> str:
    """Text of the current turn in an OpenAI-compatible request."""
    content = request_json(request)["messages"][-1]["content"]
    return next(p["text"] for p in content if p["type"] == "text")


def make_image(color: str = "red", size: tuple[int, int] = (64, 48)) -> EncodedImage:
    return encode_image(Image.new("RGB", size, color))


# ---- Engine helpers --------------------------------------------------------

class RecordingView:
    """ChatView that records every call."""

    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.loading: list[tuple[str, bool]] = []
        self.steps: list[str] = []
        self.finalized: list[Message] = []
        self.end_loading_calls = 0
        self.on_step: Callable[[str], None] | None = None
        self.on_chunk: Callable[[str], None] | None = None

    def append_chunk(self, text: str) -> None:
        self.chunks.append(text)
        if self.on_chunk is not None:
            self.on_chunk(text)

    def set_loading_state(self, message: str, cancellable: bool) -> None:
        self.loading.append((message, cancellable))

    def show_thinking_step(self, step: str) -> None:
        self.steps.append(step)
        if self.on_step is not None:
            self.on_step(step)

    def notify_finalized(self, message: Message) -> None:
        self.finalized.append(message)

    def end_loading(self) -> None:
        self.end_loading_calls += 1


@pytest.fixture
def view():
    return RecordingView()


@pytest.fixture
def make_ctx(store, catalog):
    """Build an EngineContext whose HTTP goes to *handler*."""

    def _make(
        handler,
        provider: str = "OPENAI",
        model: str = "gpt-4o-mini",
        keys: dict[str, str] | None = None,
    ) -> EngineContext:
        config = AppConfig(
            provider=provider,
            model=model,
            api_keys=keys if keys is not None else {provider: "test-key"},
        )
        return EngineContext(
            config=config,
            catalog=catalog,
            store=store,
            transport=httpx.MockTransport(handler),
        )

    return _make
