"""History optimizer: window, truncation thresholds and the context bound."""

import pytest

from aiko.core.models import Message, Role
from aiko.engine.history import TRUNCATION_MARKER, HistoryOptimizer, clip

CODE = "```python\n" + "def f(x):\n    return x\n" * 400 + "```"
PROSE = "word " * 1000


def msgs(*texts, session_id=1):
    roles = [Role.USER, Role.ASSISTANT]
    return [Message(session_id=session_id, role=roles[i % 2], text=t) for i, t in enumerate(texts)]


@pytest.fixture
def optimizer(catalog):
    return HistoryOptimizer(catalog)


def test_keeps_only_last_n_messages(optimizer):
    history = msgs(*(f"m{i}" for i in range(20)))
    kept = optimizer.optimize(history, "OPENAI", "gpt-3.5-turbo")
    assert [m.text for m in kept] == [f"m{i}" for i in range(14, 20)]

    kept = optimizer.optimize(history, "GEMINI", "gemini-2.5-flash")
    assert len(kept) == 15


def test_prose_truncated_at_2000(optimizer):
    (msg,) = optimizer.optimize(msgs(PROSE), "GEMINI", "gemini-2.5-flash")
    assert msg.text == PROSE[:2000] + TRUNCATION_MARKER


@pytest.mark.parametrize(
    "provider, model, limit",
    [
        ("GEMINI", "gemini-2.5-flash", 8000),
        ("OPENAI", "gpt-4o", 3000),
        ("DEEPSEEK", "deepseek-chat", 5000),
        ("QWEN", "qwen-max", 5000),
    ],
)
def test_code_thresholds_per_provider(catalog, provider, model, limit):
    optimizer = HistoryOptimizer(catalog)
    long_code = CODE * 3
    msg = optimizer.optimize_message(msgs(long_code)[0], provider)
    assert msg.text == long_code[:limit] + TRUNCATION_MARKER


def test_optimize_does_not_mutate_input(optimizer):
    history = msgs(PROSE)
    optimizer.optimize(history, "DEEPSEEK", "deepseek-chat")
    assert history[0].text == PROSE


def test_short_messages_untouched(optimizer):
    history = msgs("hi", "hello")
    assert optimizer.optimize(history, "OPENAI", "gpt-4o") == history


@pytest.mark.parametrize("provider, model", [("OPENAI", "gpt-4o-mini"), ("OPENAI", "gpt-3.5-turbo"), ("QWEN", "qwen-plus")])
def test_fit_never_exceeds_max_context(catalog, provider, model):
    optimizer = HistoryOptimizer(catalog)
    history = msgs(*([PROSE, CODE] * 10))
    system = "s" * 1500
    prompt = "p" * 3000
    ctx = optimizer.fit(system, history, prompt, provider, model)
    assert ctx.serialized_length <= ctx.limits.max_context


def test_fit_drops_oldest_history_first(optimizer):
    history = msgs("old " * 400, "mid " * 400, "new " * 400)
    ctx = optimizer.fit("", history, "q" * 1500, "OPENAI", "gpt-4o")
    assert ctx.serialized_length <= 4096
    assert ctx.history[-1].text.startswith("new")
    assert all(not m.text.startswith("old") for m in ctx.history)
    assert ctx.prompt == "q" * 1500


def test_fit_trims_system_before_prompt(optimizer):
    ctx = optimizer.fit("s" * 4000, [], "p" * 1000, "OPENAI", "gpt-4o")
    assert ctx.prompt == "p" * 1000
    assert len(ctx.system_prompt) == 4096 - 1000
    assert ctx.system_prompt.endswith(TRUNCATION_MARKER)


def test_fit_trims_prompt_last(optimizer):
    ctx = optimizer.fit("sys", [], "p" * 5000, "OPENAI", "gpt-4o")
    assert ctx.system_prompt == ""
    assert len(ctx.prompt) == 4096
    assert ctx.serialized_length == 4096


def test_clip_edge_cases():
    assert clip("abc", 10) == "abc"
    assert clip("abcdef", 3) == "abc"
    assert clip("abcdef", 0) == ""
