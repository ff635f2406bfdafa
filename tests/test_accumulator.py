"""Response accumulator: ordering, terminal suffixes and the single write."""

import pytest

from aiko.core.errors import AccumulatorStateError, NetworkError
from aiko.core.models import JobState, Message, Role
from aiko.engine.accumulator import CANCEL_MARKER, ERROR_PREFIX, ResponseAccumulator


@pytest.fixture
def session_id(store):
    return store.create_session("acc")


def make_acc(store, session_id, view=None):
    return ResponseAccumulator(Message(session_id=session_id, role=Role.ASSISTANT), store, view)


def test_appends_in_order_and_skips_empty(store, session_id, view):
    acc = make_acc(store, session_id, view)
    for delta in ("Hel", "", "lo", " world"):
        acc.append(delta)
    assert acc.text == "Hello world"
    assert view.chunks == ["Hel", "lo", " world"]


def test_completed_writes_once(store, session_id, view):
    acc = make_acc(store, session_id, view)
    acc.append("done")
    message = acc.finalize(JobState.COMPLETED)

    rows = store.get_messages_for_session(session_id)
    assert [(r.role, r.text) for r in rows] == [(Role.ASSISTANT, "done")]
    assert message.id == rows[0].id
    assert view.finalized == [message]


def test_cancel_marker_after_partial_text(store, session_id):
    acc = make_acc(store, session_id)
    acc.append("partial")
    assert acc.finalize(JobState.CANCELLED).text == f"partial\n{CANCEL_MARKER}"


def test_cancel_marker_alone(store, session_id):
    acc = make_acc(store, session_id)
    assert acc.finalize(JobState.CANCELLED).text == CANCEL_MARKER


def test_failure_note(store, session_id):
    acc = make_acc(store, session_id)
    acc.append("so far")
    message = acc.finalize(JobState.FAILED, NetworkError("OPENAI request timed out"))
    assert message.text == "so far" + ERROR_PREFIX + "Network error: OPENAI request timed out"


def test_finalize_twice_raises_and_does_not_write_again(store, session_id):
    acc = make_acc(store, session_id)
    acc.finalize(JobState.CANCELLED)
    with pytest.raises(AccumulatorStateError):
        acc.finalize(JobState.CANCELLED)
    with pytest.raises(AccumulatorStateError):
        acc.append("late")
    rows = store.get_messages_for_session(session_id)
    assert len(rows) == 1
    assert rows[0].text.count(CANCEL_MARKER) == 1


def test_running_is_not_an_outcome(store, session_id):
    acc = make_acc(store, session_id)
    with pytest.raises(ValueError):
        acc.finalize(JobState.RUNNING)
    assert not acc.finalized
    assert store.get_messages_for_session(session_id) == []
