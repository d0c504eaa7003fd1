"""Tests for the in-process change feed and subscription handles."""

from threadline.feed import MemoryFeed, Subscription
from tests.conftest import make_record


class Collector:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append((event.event_type, event.key))


async def test_subscribe_added_delivers_window_then_new_children(feed, scope):
    for i in range(3):
        await feed.set(scope.message_path(f"m{i}"), make_record(ts=i))
    seen = Collector()

    await feed.subscribe_added(scope.messages_path, 2, seen)
    key = await feed.push(scope.messages_path, make_record(ts=10))
    await feed.update(scope.message_path("m2"), {"text": "edited"})

    assert seen.events == [("added", "m1"), ("added", "m2"), ("added", key)]


async def test_subscribe_changed_only_reports_changes(feed, scope):
    await feed.set(scope.message_path("m1"), make_record())
    seen = Collector()

    await feed.subscribe_changed(scope.messages_path, seen)
    await feed.push(scope.messages_path, make_record(ts=10))
    await feed.update(scope.message_path("m1"), {"editedAt": 2_000, "text": "edited"})

    assert seen.events == [("changed", "m1")]


async def test_multi_field_update_is_one_event_per_child(feed, scope):
    await feed.set(scope.message_path("m1"), make_record())
    seen = Collector()
    await feed.subscribe(scope.messages_path, seen)
    seen.events.clear()

    await feed.update(scope.message_path("m1"), {"text": "a", "editedAt": 5_000})

    assert seen.events == [("changed", "m1")]


async def test_cancel_detaches_and_is_idempotent(feed, scope):
    seen = Collector()
    sub = await feed.subscribe(scope.messages_path, seen)
    assert sub.active
    assert feed.subscription_count == 1

    await sub.cancel()
    await sub.cancel()
    await feed.push(scope.messages_path, make_record())

    assert not sub.active
    assert feed.subscription_count == 0
    assert seen.events == []


async def test_failing_handler_does_not_stop_delivery(feed, scope):
    seen = Collector()

    async def broken(event):
        raise RuntimeError("handler bug")

    await feed.subscribe(scope.messages_path, broken)
    await feed.subscribe(scope.messages_path, seen)
    key = await feed.push(scope.messages_path, make_record())

    assert seen.events == [("added", key)]


async def test_point_reads_return_copies():
    feed = MemoryFeed({"a": {"b": 1}})
    value = await feed.get("a")
    value["b"] = 2
    assert await feed.get("a/b") == 1
    assert await feed.get("missing") is None


async def test_memory_subscription_is_ready_after_initial_events(feed, scope):
    await feed.set(scope.message_path("m1"), make_record())
    sub = await feed.subscribe(scope.messages_path, Collector())
    assert sub.ready
    assert await sub.wait_ready() is True


async def test_wait_ready_times_out_until_marked():
    sub = Subscription("channels/c1/messages")
    assert await sub.wait_ready(timeout=0.01) is False

    sub.mark_ready()
    assert await sub.wait_ready(timeout=0.01) is True


async def test_cancel_releases_ready_waiters():
    sub = Subscription("channels/c1/messages")
    await sub.cancel()
    assert await sub.wait_ready(timeout=0.01) is True
    assert not sub.active
