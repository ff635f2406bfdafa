"""Job controller: streaming, single-flight, cancellation and failure paths."""

import asyncio
import json

import httpx
import pytest

from aiko.core.errors import ContextLengthExceededError
from aiko.core.models import JobState, Role
from aiko.engine import JobController
from aiko.engine.accumulator import CANCEL_MARKER, ERROR_PREFIX
from aiko.engine.thinking import PromptEscalator

from conftest import RecordingView, last_user_text, make_image, openai_chunk, openai_sse, request_json

GEMINI_HOST = "generativelanguage.googleapis.com"


def make_controller(ctx, view):
    return JobController(ctx, view, escalator=PromptEscalator(delay_scale=0))


def stored(store, session_id):
    return [(m.role, m.text) for m in store.get_messages_for_session(session_id)]


def gated_response(first: str, started: asyncio.Event) -> httpx.Response:
    """SSE response that sends one delta and then never finishes."""

    async def body():
        yield f"{openai_chunk(first)}\n\n".encode()
        started.set()
        await asyncio.Event().wait()

    return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})


@pytest.mark.asyncio
async def test_deltas_arrive_in_order_and_persist_once(make_ctx, view, store):
    ctx = make_ctx(lambda request: openai_sse("Hel", "lo", " world"))
    controller = make_controller(ctx, view)
    session = controller.new_session()

    job = await controller.wait(await controller.submit(session.id, "Say hello"))
    await controller.aclose()

    assert job.state is JobState.COMPLETED
    assert view.chunks == ["Hel", "lo", " world"]
    assert job.message.text == "Hello world"
    assert stored(store, session.id) == [(Role.USER, "Say hello"), (Role.ASSISTANT, "Hello world")]
    assert view.finalized == [job.message]
    assert view.end_loading_calls == 1
    assert controller.running_job(session.id) is None


@pytest.mark.asyncio
async def test_history_excludes_current_turn(make_ctx, view):
    seen = []

    def handler(request):
        seen.append(request_json(request))
        return openai_sse("answer")

    controller = make_controller(make_ctx(handler), view)
    session = controller.new_session()
    await controller.wait(await controller.submit(session.id, "first q"))
    await controller.wait(await controller.submit(session.id, "second q"))
    await controller.aclose()

    messages = seen[1]["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[1]["content"] == "first q"
    assert messages[2]["content"] == "answer"
    assert json.dumps(messages).count("second q") == 1


@pytest.mark.asyncio
async def test_new_submit_cancels_running_job(make_ctx, view, store):
    started = asyncio.Event()

    def handler(request):
        if last_user_text(request) == "one":
            return gated_response("first", started)
        return openai_sse("second")

    controller = make_controller(make_ctx(handler), view)
    session = controller.new_session()

    job1 = await controller.submit(session.id, "one")
    await asyncio.wait_for(started.wait(), timeout=5)
    job2 = await controller.submit(session.id, "two")

    assert job1.state is JobState.CANCELLED
    assert controller.running_job(session.id) is job2
    assert dict(controller.running_jobs) == {session.id: job2}
    await controller.wait(job2)
    await controller.aclose()

    assert job1.message.text.endswith(CANCEL_MARKER)
    assert job1.message.text.count(CANCEL_MARKER) == 1
    assert job2.state is JobState.COMPLETED
    assert job2.message.text == "second"
    assert [role for role, _ in stored(store, session.id)] == [
        Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT,
    ]
    assert view.end_loading_calls == 2


@pytest.mark.asyncio
async def test_cancel_mid_stream_appends_marker_once(make_ctx, view, store):
    started = asyncio.Event()
    controller = make_controller(make_ctx(lambda request: gated_response("partial", started)), view)
    session = controller.new_session()

    job = await controller.submit(session.id, "long answer please")
    await asyncio.wait_for(started.wait(), timeout=5)
    assert controller.cancel(job.id)
    await controller.wait(job)
    await controller.aclose()

    assert job.state is JobState.CANCELLED
    assert job.message.text == f"partial\n{CANCEL_MARKER}"
    assert stored(store, session.id)[-1] == (Role.ASSISTANT, f"partial\n{CANCEL_MARKER}")
    assert not controller.cancel(job.id)


@pytest.mark.asyncio
async def test_task_cancellation_still_finalizes(make_ctx, view, store):
    started = asyncio.Event()
    controller = make_controller(make_ctx(lambda request: gated_response("x", started)), view)
    session = controller.new_session()

    job = await controller.submit(session.id, "hi")
    await asyncio.wait_for(started.wait(), timeout=5)
    job.task.cancel()
    await controller.wait(job)
    await controller.aclose()

    assert job.state is JobState.CANCELLED
    assert job.message.text.count(CANCEL_MARKER) == 1
    assert len(store.get_messages_for_session(session.id)) == 2
    assert view.end_loading_calls == 1


@pytest.mark.asyncio
async def test_thinking_steps_precede_network_call(make_ctx, view):
    steps_at_request = []
    seen = []

    def handler(request):
        steps_at_request.append(len(view.steps))
        seen.append(request_json(request))
        return openai_sse("done")

    controller = make_controller(make_ctx(handler), view)
    session = controller.new_session()
    job = await controller.wait(await controller.submit(session.id, "Design a cache", thinking_level=3))
    await controller.aclose()

    assert job.state is JobState.COMPLETED
    assert steps_at_request[0] >= 5
    assert job.thinking_steps == tuple(view.steps)
    messages = seen[0]["messages"]
    assert "PROBLEM ANALYSIS" in messages[0]["content"]
    assert "🧠 DEEP THINKING MODE" in messages[-1]["content"][0]["text"]
    assert view.loading[0] == ("Thinking deeply...", True)


@pytest.mark.asyncio
async def test_cancel_during_thinking_makes_no_request(make_ctx, view, store):
    calls = []

    def handler(request):
        calls.append(request)
        return openai_sse("never")

    controller = make_controller(make_ctx(handler), view)
    session = controller.new_session()
    view.on_step = lambda step: controller.cancel_session(session.id) if len(view.steps) == 2 else None

    job = await controller.wait(await controller.submit(session.id, "Explain", thinking_level=3))
    await controller.aclose()

    assert job.state is JobState.CANCELLED
    assert calls == []
    assert len(view.steps) == 2
    assert job.message.text == CANCEL_MARKER
    assert stored(store, session.id)[-1] == (Role.ASSISTANT, CANCEL_MARKER)


@pytest.mark.asyncio
async def test_context_length_failure_note(make_ctx, view):
    body = '{"error": {"code": "context_length_exceeded"}}'
    controller = make_controller(make_ctx(lambda request: httpx.Response(400, text=body)), view)
    session = controller.new_session()

    job = await controller.wait(await controller.submit(session.id, "huge"))
    await controller.aclose()

    assert job.state is JobState.FAILED
    assert isinstance(job.error, ContextLengthExceededError)
    assert job.message.text == ERROR_PREFIX + ContextLengthExceededError.MESSAGE


@pytest.mark.asyncio
async def test_network_failure_keeps_partial_text(make_ctx, view):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    controller = make_controller(make_ctx(handler), view)
    session = controller.new_session()
    job = await controller.wait(await controller.submit(session.id, "hi"))
    await controller.aclose()

    assert job.state is JobState.FAILED
    assert "Network error:" in job.message.text
    assert view.end_loading_calls == 1


@pytest.mark.asyncio
async def test_missing_key_fails_with_config_note(make_ctx, view):
    calls = []

    def handler(request):
        calls.append(request)
        return openai_sse("x")

    controller = make_controller(make_ctx(handler, keys={}), view)
    session = controller.new_session()
    job = await controller.wait(await controller.submit(session.id, "hi"))
    await controller.aclose()

    assert job.state is JobState.FAILED
    assert "API key is not configured" in job.message.text
    assert calls == []


@pytest.mark.asyncio
async def test_empty_prompt_fails_without_user_message(make_ctx, view, store):
    controller = make_controller(make_ctx(lambda request: openai_sse("x")), view)
    session = controller.new_session()
    job = await controller.wait(await controller.submit(session.id, "   "))
    await controller.aclose()

    assert job.state is JobState.FAILED
    assert job.message.text.endswith("Nothing to send")
    assert stored(store, session.id) == [(Role.ASSISTANT, job.message.text)]


@pytest.mark.asyncio
async def test_invalid_level_rejected_before_start(make_ctx, view):
    controller = make_controller(make_ctx(lambda request: openai_sse("x")), view)
    session = controller.new_session()
    with pytest.raises(ValueError):
        await controller.submit(session.id, "hi", thinking_level=9)
    assert controller.running_job(session.id) is None
    await controller.aclose()


@pytest.mark.asyncio
async def test_images_inline_for_vision_provider(make_ctx, view, store):
    seen = []

    def handler(request):
        seen.append(request_json(request))
        return openai_sse("red")

    controller = make_controller(make_ctx(handler), view)
    session = controller.new_session()
    job = await controller.wait(await controller.submit(session.id, "", images=(make_image(),)))
    await controller.aclose()

    assert job.state is JobState.COMPLETED
    parts = seen[0]["messages"][-1]["content"]
    assert [p["type"] for p in parts] == ["text", "image_url"]
    assert "User request: Analyze this image" in parts[0]["text"]
    assert stored(store, session.id)[0] == (Role.USER, "Analyze this image")


@pytest.mark.asyncio
async def test_images_described_for_provider_without_vision(make_ctx, view):
    seen = []

    def handler(request):
        if request.url.host == GEMINI_HOST:
            return httpx.Response(
                200, json={"candidates": [{"content": {"parts": [{"text": "A red square"}]}}]}
            )
        seen.append(request)
        return openai_sse("It is red.")

    ctx = make_ctx(handler, provider="DEEPSEEK", model="deepseek-chat", keys={"DEEPSEEK": "d", "GEMINI": "g"})
    controller = make_controller(ctx, view)
    session = controller.new_session()
    job = await controller.wait(
        await controller.submit(session.id, "what color?", images=(make_image(), make_image("blue")))
    )
    await controller.aclose()

    assert job.state is JobState.COMPLETED
    text = last_user_text(seen[0])
    assert "Image 1: A red square" in text
    assert "Image 2: A red square" in text
    assert "User request: what color?" in text
    assert all(p["type"] == "text" for p in request_json(seen[0])["messages"][-1]["content"])
    assert ("Converting images to text...", True) in view.loading


@pytest.mark.asyncio
async def test_open_unknown_session_raises(make_ctx, view):
    controller = make_controller(make_ctx(lambda request: openai_sse("x")), view)
    with pytest.raises(KeyError):
        controller.open_session(999)
    await controller.aclose()


@pytest.mark.asyncio
async def test_session_snapshot_is_detached(make_ctx, view):
    controller = make_controller(make_ctx(lambda request: openai_sse("ok")), view)
    session = controller.new_session("Scratch")
    await controller.wait(await controller.submit(session.id, "hi"))
    await controller.aclose()

    snapshot = controller.session(session.id)
    snapshot.messages.clear()
    assert [m.text for m in controller.session(session.id).messages] == ["hi", "ok"]
    assert controller.open_session(session.id).name == "Scratch"


@pytest.mark.asyncio
async def test_concurrent_submits_leave_one_winner(make_ctx, view, store):
    requesting = []

    def handler(request):
        current = controller.running_job(session.id)
        # every job that reached the network before this one has already ended
        assert all(job.state.is_terminal for job in requesting if job is not current)
        requesting.append(current)
        if last_user_text(request) == "three":
            return openai_sse("winner")
        return gated_response("loser", asyncio.Event())

    controller = make_controller(make_ctx(handler), view)
    session = controller.new_session()

    jobs = await asyncio.gather(
        controller.submit(session.id, "one"),
        controller.submit(session.id, "two"),
        controller.submit(session.id, "three"),
    )
    assert sum(not job.state.is_terminal for job in jobs) <= 1
    assert controller.running_job(session.id) in (jobs[2], None)
    for job in jobs:
        await controller.wait(job)
    await controller.aclose()

    first, second, third = jobs
    assert first.state is JobState.CANCELLED
    assert second.state is JobState.CANCELLED
    assert first.message.text.count(CANCEL_MARKER) == 1
    assert second.message.text.count(CANCEL_MARKER) == 1
    assert third.state is JobState.COMPLETED
    assert third.message.text == "winner"
    assert controller.running_job(session.id) is None
    assert [text for role, text in stored(store, session.id) if role is Role.USER] == ["one", "two", "three"]
    assert view.end_loading_calls == 3


@pytest.mark.asyncio
async def test_html_reply_with_200_fails_job(make_ctx, view, store):
    controller = make_controller(make_ctx(lambda request: httpx.Response(200, text="<html>gateway</html>")), view)
    session = controller.new_session()

    job = await controller.wait(await controller.submit(session.id, "hi"))
    await controller.aclose()

    assert job.state is JobState.FAILED
    assert job.message.text.startswith(ERROR_PREFIX)
    assert "could not be parsed" in job.message.text
    assert stored(store, session.id)[-1] == (Role.ASSISTANT, job.message.text)


@pytest.mark.asyncio
async def test_view_failure_at_start_still_finalizes(make_ctx, store):
    class BrokenLoadingView(RecordingView):
        def set_loading_state(self, message, cancellable):
            raise RuntimeError("terminal went away")

    broken = BrokenLoadingView()
    controller = make_controller(make_ctx(lambda request: openai_sse("never")), broken)
    session = controller.new_session()

    job = await controller.wait(await controller.submit(session.id, "hi"))
    await controller.aclose()

    assert job.state is JobState.FAILED
    assert isinstance(job.error, RuntimeError)
    assert broken.end_loading_calls == 1
    assert broken.finalized == [job.message]
    assert stored(store, session.id)[-1] == (Role.ASSISTANT, job.message.text)
    assert controller.running_job(session.id) is None


@pytest.mark.asyncio
async def test_reply_written_once_without_updates(make_ctx, view, store, monkeypatch):
    def no_updates(message_id, text):
        raise AssertionError("the engine writes each reply once")

    monkeypatch.setattr(store, "update_message", no_updates)
    controller = make_controller(make_ctx(lambda request: openai_sse("a", "b")), view)
    session = controller.new_session()

    job = await controller.wait(await controller.submit(session.id, "hi"))
    await controller.aclose()

    assert job.state is JobState.COMPLETED
    assert stored(store, session.id) == [(Role.USER, "hi"), (Role.ASSISTANT, "ab")]
