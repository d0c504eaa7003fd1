"""Change feed contract and the in-process implementation.

A feed exposes the remote store's four capabilities: ordered child
subscriptions, point reads, and create/partial-update writes. Every
subscription returns a :class:`Subscription` handle; callers detach by
cancelling it rather than relying on garbage collection.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Optional

from .keys import join_path, new_push_id
from .log import logger
from .models import FeedEvent
from .tree import Tree, WindowQuery

EventHandler = Callable[[FeedEvent], Awaitable[None]]


class Subscription:
    """Handle for one live subscription. ``cancel()`` is idempotent.

    The handle turns *ready* once the events for the children that existed at
    subscription time have been delivered.
    """

    def __init__(
        self, path: str, closer: Optional[Callable[["Subscription"], Awaitable[None]]] = None
    ) -> None:
        self.path = path
        self._closer = closer
        self._active = True
        self._ready = asyncio.Event()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def mark_ready(self) -> None:
        self._ready.set()

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait for the initial events. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._ready.set()
        if self._closer is not None:
            await self._closer(self)
        logger.debug("Subscription cancelled: {}", self.path)

    def __repr__(self) -> str:
        state = "active" if self._active else "cancelled"
        return f"<Subscription {self.path} {state}>"


class ChangeFeed(ABC):
    """Abstract interface for the remote ordered change feed."""

    @abstractmethod
    async def subscribe(
        self,
        path: str,
        handler: EventHandler,
        *,
        order_by: Optional[str] = "ts",
        limit: Optional[int] = None,
        events: Iterable[str] = ("added", "changed"),
    ) -> Subscription:
        """Subscribe to child events under a collection path."""

    @abstractmethod
    async def get(self, path: str) -> Any:
        """Point read. Returns None when nothing exists at ``path``."""

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Replace the value at ``path`` (None deletes)."""

    @abstractmethod
    async def update(self, path: str, fields: dict[str, Any]) -> None:
        """Partial multi-path update; a None field deletes that child."""

    @abstractmethod
    async def push(self, path: str, value: Any) -> str:
        """Create a child with a feed-assigned key and return the key."""

    async def subscribe_added(
        self, path: str, window_size: int, handler: EventHandler, *, order_by: str = "ts"
    ) -> Subscription:
        """Added events for the trailing ``window_size`` children and new ones."""
        return await self.subscribe(
            path, handler, order_by=order_by, limit=window_size, events=("added",)
        )

    async def subscribe_changed(
        self,
        path: str,
        handler: EventHandler,
        *,
        window_size: Optional[int] = None,
        order_by: str = "ts",
    ) -> Subscription:
        """Changed events for children already inside the window."""
        return await self.subscribe(
            path, handler, order_by=order_by, limit=window_size, events=("changed",)
        )

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""


async def dispatch(handler: EventHandler, event: FeedEvent) -> None:
    """Deliver one event, logging (not propagating) handler failures."""
    try:
        await handler(event)
    except Exception:
        logger.exception("Feed handler failed for {} event {}", event.event_type, event.key)


class MemoryFeed(ChangeFeed):
    """Feed backed by an in-process :class:`Tree`.

    Events are delivered to handlers as soon as a write is applied, before the
    write call returns. Useful for tests, demos and single-process embedding.
    """

    def __init__(self, data: Optional[dict[str, Any]] = None) -> None:
        self.tree = Tree(data)
        self._queries: list[tuple[WindowQuery, EventHandler, Subscription]] = []

    @property
    def subscription_count(self) -> int:
        return sum(1 for _, _, sub in self._queries if sub.active)

    async def subscribe(
        self,
        path: str,
        handler: EventHandler,
        *,
        order_by: Optional[str] = "ts",
        limit: Optional[int] = None,
        events: Iterable[str] = ("added", "changed"),
    ) -> Subscription:
        query = WindowQuery(path, order_by=order_by, limit=limit, events=events)
        sub = Subscription(query.path, self._detach)
        self._queries.append((query, handler, sub))
        logger.debug("MemoryFeed subscribe {} (limit={}, events={})", query.path, limit, sorted(query.events))

        for event_type, key, value in query.initial(self.tree):
            if not sub.active:
                break
            await dispatch(handler, FeedEvent(event_type=event_type, key=key, value=value))
        sub.mark_ready()
        return sub

    async def _detach(self, sub: Subscription) -> None:
        self._queries = [q for q in self._queries if q[2] is not sub]

    async def get(self, path: str) -> Any:
        return self.tree.get(path)

    async def set(self, path: str, value: Any) -> None:
        await self._publish(self.tree.set(path, value))

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self._publish(self.tree.update(path, fields))

    async def push(self, path: str, value: Any) -> str:
        key = new_push_id()
        await self.set(join_path(path, key), value)
        return key

    async def _publish(self, written: list[str]) -> None:
        for query, handler, sub in list(self._queries):
            for event_type, key, value in query.affected(self.tree, written):
                if not sub.active:
                    break
                await dispatch(handler, FeedEvent(event_type=event_type, key=key, value=value))


__all__ = [
    "ChangeFeed",
    "EventHandler",
    "MemoryFeed",
    "Subscription",
    "dispatch",
]
