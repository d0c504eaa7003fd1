"""Tests for the materialized message store."""

import pytest

from threadline.models import FeedEvent, Scope
from threadline.store import MessageStore
from tests.conftest import make_message, make_record


class Recorder:
    def __init__(self):
        self.added = []
        self.changed = []
        self.removed = []

    def on_added(self, message, index):
        self.added.append((message.id, index))

    def on_changed(self, old, new):
        self.changed.append((old, new))

    def on_removed(self, message):
        self.removed.append(message.id)


def _store(window_size=None):
    rec = Recorder()
    store = MessageStore(
        on_added=rec.on_added,
        on_changed=rec.on_changed,
        window_size=window_size,
        on_removed=rec.on_removed,
    )
    return store, rec


def _ids(store, scope):
    return [m.id for m in store.list_scope(scope)]


def test_out_of_order_delivery_is_sorted(scope):
    store, rec = _store()
    assert store.upsert(make_message("B", scope, ts=2_000))
    assert store.upsert(make_message("A", scope, ts=1_000))
    assert _ids(store, scope) == ["A", "B"]
    assert rec.added == [("B", 0), ("A", 0)]


def test_equal_timestamps_order_by_id(scope):
    store, _ = _store()
    store.upsert(make_message("k2", scope, ts=5))
    store.upsert(make_message("k1", scope, ts=5))
    store.upsert(make_message("k3", scope, ts=5))
    assert _ids(store, scope) == ["k1", "k2", "k3"]


def test_redelivery_is_a_no_op(scope):
    store, rec = _store()
    message = make_message("A", scope)
    assert store.upsert(message) is True
    assert store.upsert(message) is False
    assert store.upsert(make_message("A", scope)) is False
    assert len(store) == 1
    assert rec.added == [("A", 0)]
    assert rec.changed == []


def test_new_content_replaces_in_place(scope):
    store, rec = _store()
    store.upsert(make_message("A", scope, ts=1))
    store.upsert(make_message("B", scope, ts=2))
    store.upsert(make_message("A", scope, ts=1, text="edited"))
    assert _ids(store, scope) == ["A", "B"]
    assert store.get("A").text == "edited"
    old, new = rec.changed[0]
    assert (old.text, new.text) == ("Hello, world!", "edited")


def test_timestamp_change_repositions(scope):
    store, _ = _store()
    store.upsert(make_message("A", scope, ts=1))
    store.upsert(make_message("B", scope, ts=2))
    store.upsert(make_message("A", scope, ts=3))
    assert _ids(store, scope) == ["B", "A"]
    assert store.index_of("A") == 1


def test_scopes_are_kept_apart(scope, other_scope):
    store, _ = _store()
    store.upsert(make_message("A", scope))
    store.upsert(make_message("X", other_scope))
    assert _ids(store, scope) == ["A"]
    assert _ids(store, other_scope) == ["X"]
    assert list(store.list_scope(Scope(channel_id="nowhere"))) == []


def test_same_id_in_another_scope_is_ignored(scope, other_scope):
    store, rec = _store()
    store.upsert(make_message("A", scope))
    assert store.upsert(make_message("A", other_scope, text="other")) is False
    assert store.get("A").scope == scope
    assert rec.changed == []


def test_list_scope_is_a_restartable_snapshot(scope):
    store, _ = _store()
    store.upsert(make_message("A", scope, ts=1))
    snapshot = store.list_scope(scope)
    store.upsert(make_message("B", scope, ts=2))
    assert [m.id for m in snapshot] == ["A"]
    assert [m.id for m in snapshot] == ["A"]
    assert _ids(store, scope) == ["A", "B"]


def test_apply_event_parses_records(scope):
    store, _ = _store()
    event = FeedEvent(event_type="added", key="m1", value=make_record(text="hi", ts=10, parent_id="m0"))
    message = store.apply_event(event, scope)
    assert message is not None
    assert (message.id, message.text, message.parent_id, message.created_at) == ("m1", "hi", "m0", 10)
    assert message.author_name == "Alice"


def test_malformed_records_are_dropped(scope):
    store, rec = _store()
    missing_ts = {"uid": "alice", "text": "no timestamp"}
    assert store.apply_event(FeedEvent(event_type="added", key="m1", value=missing_ts), scope) is None
    assert store.apply_event(FeedEvent(event_type="added", key="m2", value="just a string"), scope) is None
    bad_edit = make_record(ts=100, edited_at=50)
    assert store.apply_event(FeedEvent(event_type="added", key="m3", value=bad_edit), scope) is None
    self_reply = make_record(parent_id="m4")
    assert store.apply_event(FeedEvent(event_type="added", key="m4", value=self_reply), scope) is None
    assert len(store) == 0
    assert rec.added == []


def test_failing_callback_does_not_break_the_store(scope):
    def boom(message, index):
        raise RuntimeError("ui crashed")

    store = MessageStore(on_added=boom)
    assert store.upsert(make_message("A", scope))
    assert "A" in store


def test_clear(scope):
    store, _ = _store()
    store.upsert(make_message("A", scope))
    store.clear()
    assert len(store) == 0
    assert store.index_of("A") is None


def test_window_drops_oldest_messages(scope):
    store, rec = _store(window_size=3)
    for i in range(5):
        store.upsert(make_message(f"m{i}", scope, ts=i))

    assert _ids(store, scope) == ["m2", "m3", "m4"]
    assert rec.removed == ["m0", "m1"]
    assert "m0" not in store
    assert store.index_of("m4") == 2


def test_full_window_ignores_older_records(scope):
    store, rec = _store(window_size=2)
    store.upsert(make_message("m5", scope, ts=5))
    store.upsert(make_message("m6", scope, ts=6))

    assert store.upsert(make_message("m1", scope, ts=1)) is False
    assert _ids(store, scope) == ["m5", "m6"]
    assert ("m1", 0) not in rec.added
    assert rec.removed == []


def test_late_record_inside_window_pushes_out_oldest(scope):
    store, rec = _store(window_size=2)
    store.upsert(make_message("m1", scope, ts=1))
    store.upsert(make_message("m3", scope, ts=3))

    assert store.upsert(make_message("m2", scope, ts=2)) is True
    assert _ids(store, scope) == ["m2", "m3"]
    assert rec.removed == ["m1"]


def test_window_is_per_scope(scope, other_scope):
    store, rec = _store(window_size=1)
    store.upsert(make_message("a", scope, ts=1))
    store.upsert(make_message("b", other_scope, ts=2))

    assert _ids(store, scope) == ["a"]
    assert _ids(store, other_scope) == ["b"]
    assert rec.removed == []


def test_window_size_must_be_positive():
    with pytest.raises(ValueError):
        MessageStore(window_size=0)
