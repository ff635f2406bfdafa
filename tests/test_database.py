"""SQLite message store."""

from aiko.core.database import MessageStore, SQLiteMessageStore
from aiko.core.models import Role


def test_implements_protocol(store):
    assert isinstance(store, MessageStore)


def test_messages_keep_insertion_order(store):
    sid = store.create_session("Chat")
    first = store.insert_message(sid, Role.USER, "hi")
    second = store.insert_message(sid, "assistant", "hello")
    assert second > first

    messages = store.get_messages_for_session(sid)
    assert [(m.role, m.text) for m in messages] == [(Role.USER, "hi"), (Role.ASSISTANT, "hello")]
    assert all(m.session_id == sid for m in messages)


def test_update_message(store):
    sid = store.create_session("Chat")
    mid = store.insert_message(sid, Role.ASSISTANT, "draft")
    store.update_message(mid, "final")
    assert store.get_messages_for_session(sid)[0].text == "final"


def test_sessions_newest_first(store):
    a = store.create_session("a")
    b = store.create_session("b")
    store.insert_message(b, Role.USER, "x")

    assert [s.id for s in store.list_sessions()] == [b, a]
    latest = store.latest_session()
    assert latest.id == b
    assert [m.text for m in latest.messages] == ["x"]
    assert store.get_session(a).messages == []
    assert store.get_session(12345) is None


def test_empty_store(store):
    assert store.list_sessions() == []
    assert store.latest_session() is None


def test_file_store_persists(tmp_path):
    path = tmp_path / "nested" / "aiko.db"
    store = SQLiteMessageStore(path)
    sid = store.create_session("kept")
    store.insert_message(sid, Role.USER, "remember me")
    store.close()

    reopened = SQLiteMessageStore(path)
    try:
        assert reopened.latest_session().name == "kept"
        assert reopened.get_messages_for_session(sid)[0].text == "remember me"
    finally:
        reopened.close()
