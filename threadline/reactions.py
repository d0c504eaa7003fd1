"""Per-message emoji reaction sets and their live counts.

Each ``(message, emoji)`` pair maps to a set of user ids; the displayed count
is always the size of that set. The aggregator only adopts state that arrives
through the feed: :meth:`ReactionAggregator.toggle` writes the change and then
waits for the echo instead of mutating anything locally.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Optional

from .errors import InvalidScope, MessageNotFound, TransientFeedError
from .feed import ChangeFeed
from .keys import encode_key, join_path
from .log import logger
from .models import Scope

ReactionCallback = Callable[[str, dict[str, int]], None]


@dataclass
class ReactionListener:
    """Handle returned by :meth:`ReactionAggregator.subscribe`."""

    message_id: Optional[str]
    callback: ReactionCallback
    active: bool = True

    def cancel(self) -> None:
        self.active = False


@dataclass
class _Waiter:
    message_id: str
    emoji: str
    user_id: str
    target: bool
    future: asyncio.Future = field(repr=False)


class ReactionAggregator:
    """Maintains ``{message_id: {emoji: {user ids}}}`` for one scope."""

    def __init__(self, feed: ChangeFeed) -> None:
        self._feed = feed
        self._sets: dict[str, dict[str, frozenset[str]]] = {}
        self._first_seen: dict[str, dict[str, int]] = {}
        self._seq = itertools.count()
        self._listeners: list[ReactionListener] = []
        self._waiters: list[_Waiter] = []

    # ── Reads ───────────────────────────────────────────────────────────────

    def members(self, message_id: str, emoji: str) -> frozenset[str]:
        return self._sets.get(message_id, {}).get(emoji, frozenset())

    def is_member(self, message_id: str, emoji: str, user_id: str) -> bool:
        return user_id in self.members(message_id, emoji)

    def emojis(self, message_id: str) -> frozenset[str]:
        return frozenset(self._sets.get(message_id, {}))

    def counts(self, message_id: str) -> list[tuple[str, int]]:
        """``(emoji, count)`` pairs, most reacted first, then first seen first."""
        sets = self._sets.get(message_id, {})
        order = self._first_seen.get(message_id, {})
        return sorted(
            ((emoji, len(users)) for emoji, users in sets.items()),
            key=lambda item: (-item[1], order.get(item[0], 0)),
        )

    def snapshot(self, message_id: str) -> dict[str, int]:
        return dict(self.counts(message_id))

    # ── Feed-driven updates ─────────────────────────────────────────────────

    def apply(self, message_id: str, reactions: Mapping[str, Iterable[str]]) -> bool:
        """Adopt the reaction state carried by a feed record.

        Returns True if anything changed (and listeners were notified).
        """
        new = {emoji: frozenset(users) for emoji, users in reactions.items()}
        new = {emoji: users for emoji, users in new.items() if users}
        old = self._sets.get(message_id, {})
        changed = new != old

        if changed:
            order = self._first_seen.setdefault(message_id, {})
            for emoji in list(order):
                if emoji not in new:
                    del order[emoji]
            for emoji in new:
                if emoji not in order:
                    order[emoji] = next(self._seq)
            if new:
                self._sets[message_id] = new
            else:
                self._sets.pop(message_id, None)
                self._first_seen.pop(message_id, None)

        self._settle_waiters(message_id)
        if changed:
            self._notify(message_id)
        return changed

    def subscribe(self, message_id: Optional[str], callback: ReactionCallback) -> ReactionListener:
        """Call ``callback(message_id, snapshot)`` whenever a set changes.

        ``message_id=None`` listens to every message in the scope.
        """
        listener = ReactionListener(message_id, callback)
        self._listeners.append(listener)
        return listener

    def _notify(self, message_id: str) -> None:
        self._listeners = [l for l in self._listeners if l.active]
        snapshot = self.snapshot(message_id)
        for listener in list(self._listeners):
            if listener.message_id not in (None, message_id):
                continue
            try:
                listener.callback(message_id, dict(snapshot))
            except Exception:
                logger.exception("Reaction listener failed for message {}", message_id)

    # ── Writes ──────────────────────────────────────────────────────────────

    async def toggle(self, scope: Scope, message_id: str, emoji: str, user_id: str) -> bool:
        """Flip ``user_id``'s membership and return the confirmed new state.

        Returns once the feed has echoed the change back. Raises
        TransientFeedError if the write fails (state untouched), or
        InvalidScope if the scope is torn down before the echo arrives.
        """
        if not emoji or not emoji.strip():
            raise ValueError("emoji must not be blank")
        target = not self.is_member(message_id, emoji, user_id)
        path = join_path(scope.message_path(message_id), "reactions", encode_key(emoji))

        waiter = _Waiter(message_id, emoji, user_id, target, asyncio.get_running_loop().create_future())
        self._waiters.append(waiter)
        try:
            try:
                await self._feed.update(path, {encode_key(user_id): True if target else None})
            except TransientFeedError:
                logger.warning("Reaction {} on {} by {} failed to write", emoji, message_id, user_id)
                raise
            self._settle_waiters(message_id)
            return await waiter.future
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def _settle_waiters(self, message_id: str) -> None:
        for waiter in list(self._waiters):
            if waiter.message_id != message_id or waiter.future.done():
                continue
            if self.is_member(message_id, waiter.emoji, waiter.user_id) == waiter.target:
                waiter.future.set_result(waiter.target)

    def forget(self, message_id: str) -> None:
        """Drop one message that left the loaded window."""
        self._sets.pop(message_id, None)
        self._first_seen.pop(message_id, None)
        for waiter in self._waiters:
            if waiter.message_id == message_id and not waiter.future.done():
                waiter.future.set_exception(MessageNotFound(message_id))

    def clear(self) -> None:
        """Drop all state; pending toggles fail with InvalidScope."""
        for waiter in self._waiters:
            if not waiter.future.done():
                waiter.future.set_exception(
                    InvalidScope("scope changed before the reaction was confirmed")
                )
        self._waiters.clear()
        self._sets.clear()
        self._first_seen.clear()
        self._listeners.clear()
