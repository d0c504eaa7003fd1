"""Tests for the in-memory data tree and window queries."""

import pytest

from threadline.tree import Tree, WindowQuery, flatten, unflatten


def _child(ts, text="x"):
    return {"ts": ts, "text": text, "uid": "u"}


class TestTree:
    def test_set_and_get(self):
        tree = Tree()
        tree.set("rooms/r1/name", "Lobby")
        assert tree.get("rooms/r1") == {"name": "Lobby"}
        assert tree.get("rooms/r2") is None

    def test_get_returns_a_copy(self):
        tree = Tree({"a": {"b": 1}})
        node = tree.get("a")
        node["b"] = 2
        assert tree.get("a/b") == 1

    def test_null_deletes_and_prunes_empty_parents(self):
        tree = Tree()
        tree.set("a/b/c", 1)
        tree.set("a/b/c", None)
        assert tree.get("a") is None
        assert tree.get() == {}

    def test_set_replaces_whole_node(self):
        tree = Tree({"m": {"text": "old", "ts": 1}})
        tree.set("m", {"text": "new"})
        assert tree.get("m") == {"text": "new"}

    def test_set_drops_nested_nulls(self):
        tree = Tree()
        tree.set("m", {"text": "hi", "parentId": None})
        assert tree.get("m") == {"text": "hi"}

    def test_update_is_multi_path(self):
        tree = Tree({"m": {"text": "old", "ts": 1}})
        written = tree.update("m", {"text": "new", "reactions/👍/alice": True})
        assert written == ["m/text", "m/reactions/👍/alice"]
        assert tree.get("m") == {"text": "new", "ts": 1, "reactions": {"👍": {"alice": True}}}

    def test_update_null_field_removes_only_that_child(self):
        tree = Tree({"m": {"ts": 1, "reactions": {"👍": {"alice": True}}}})
        tree.update("m/reactions/👍", {"alice": None})
        assert tree.get("m") == {"ts": 1}

    def test_scalar_parent_is_replaced_by_object(self):
        tree = Tree({"a": 1})
        tree.set("a/b", 2)
        assert tree.get("a") == {"b": 2}

    def test_flatten_unflatten(self):
        data = {"rooms": {"r1": {"name": "Lobby", "createdAt": 5}}}
        leaves = sorted(flatten(data))
        assert leaves == [("rooms/r1/createdAt", 5), ("rooms/r1/name", "Lobby")]
        assert unflatten(leaves).get() == data


class TestWindowQuery:
    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            WindowQuery("msgs", limit=0)

    def test_initial_window_is_trailing_limit_in_ts_order(self):
        tree = Tree({"msgs": {"c": _child(3), "a": _child(1), "b": _child(2)}})
        query = WindowQuery("msgs", limit=2)
        events = query.initial(tree)
        assert [(t, k) for t, k, _ in events] == [("added", "b"), ("added", "c")]

    def test_equal_ts_breaks_ties_by_key(self):
        tree = Tree({"msgs": {"k2": _child(7), "k1": _child(7)}})
        assert [k for _, k, _ in WindowQuery("msgs").initial(tree)] == ["k1", "k2"]

    def test_new_child_is_added_known_child_is_changed(self):
        tree = Tree({"msgs": {"a": _child(1)}})
        query = WindowQuery("msgs")
        query.initial(tree)

        events = query.affected(tree, tree.set("msgs/b", _child(2)))
        assert [(t, k) for t, k, _ in events] == [("added", "b")]

        events = query.affected(tree, tree.update("msgs/a", {"text": "edited"}))
        assert [(t, k) for t, k, _ in events] == [("changed", "a")]
        assert events[0][2]["text"] == "edited"

    def test_event_filter(self):
        tree = Tree({"msgs": {"a": _child(1)}})
        query = WindowQuery("msgs", events=("changed",))
        assert query.initial(tree) == []
        assert query.affected(tree, tree.set("msgs/b", _child(2))) == []
        events = query.affected(tree, tree.set("msgs/b/text", "y"))
        assert [(t, k) for t, k, _ in events] == [("changed", "b")]

    def test_writes_elsewhere_are_ignored(self):
        tree = Tree()
        query = WindowQuery("rooms/r1/channels/c1/messages")
        query.initial(tree)
        assert query.affected(tree, tree.set("rooms/r1/channels/c2/messages/x", _child(1))) == []

    def test_deleted_child_emits_nothing(self):
        tree = Tree({"msgs": {"a": _child(1)}})
        query = WindowQuery("msgs")
        query.initial(tree)
        assert query.affected(tree, tree.set("msgs/a", None)) == []
        # re-created after deletion counts as new
        events = query.affected(tree, tree.set("msgs/a", _child(1)))
        assert [t for t, _, _ in events] == ["added"]

    def test_updates_before_a_full_window_are_ignored(self):
        tree = Tree({"msgs": {"a": _child(1), "b": _child(2), "c": _child(3)}})
        query = WindowQuery("msgs", limit=2)
        query.initial(tree)
        assert query.affected(tree, tree.update("msgs/a", {"text": "edited"})) == []
        events = query.affected(tree, tree.set("msgs/d", _child(4)))
        assert [(t, k) for t, k, _ in events] == [("added", "d")]
