"""Materialized view of the messages in one or more scopes.

Messages are kept sorted by ``(created_at, id)`` no matter in which order the
feed delivers them. Every upsert is idempotent: re-delivering an identical
record is a no-op, a record with new content replaces the old one in place
(or moves it, if the feed reassigned its timestamp).
"""

from __future__ import annotations

import bisect
from collections.abc import Callable
from typing import Any, Optional

from .errors import MalformedRecord
from .log import logger
from .models import FeedEvent, Message, Scope, message_from_record

MessageAdded = Callable[[Message, int], None]
MessageChanged = Callable[[Message, Message], None]
MessageRemoved = Callable[[Message], None]


class MessageStore:
    """Ordered, id-indexed message collection.

    ``on_added(message, index)`` fires for ids seen for the first time, with
    the display position inside the message's scope. ``on_changed(old, new)``
    fires when a known id arrives with different content.

    With ``window_size`` set, each scope keeps only its newest messages: the
    oldest ones are dropped once the window overflows and reported through
    ``on_removed(message)``. A record older than a full window is never added.
    """

    def __init__(
        self,
        on_added: Optional[MessageAdded] = None,
        on_changed: Optional[MessageChanged] = None,
        *,
        window_size: Optional[int] = None,
        on_removed: Optional[MessageRemoved] = None,
    ) -> None:
        if window_size is not None and window_size < 1:
            raise ValueError("window_size must be positive")
        self.on_added = on_added
        self.on_changed = on_changed
        self.on_removed = on_removed
        self.window_size = window_size
        self._by_id: dict[str, Message] = {}
        # per scope: parallel sorted lists of sort keys and messages
        self._keys: dict[Scope, list[tuple[int, str]]] = {}
        self._ordered: dict[Scope, list[Message]] = {}

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def upsert(self, message: Message) -> bool:
        """Insert or replace by id. Returns True if the id was new."""
        old = self._by_id.get(message.id)
        if old is not None and old.scope != message.scope:
            logger.warning(
                "Ignoring record {} for scope {}: already stored under {}",
                message.id, message.scope, old.scope,
            )
            return False
        if old == message:
            return False

        keys = self._keys.setdefault(message.scope, [])
        ordered = self._ordered.setdefault(message.scope, [])

        if old is not None:
            pos = bisect.bisect_left(keys, old.sort_key)
            if old.sort_key == message.sort_key:
                ordered[pos] = message
            else:
                del keys[pos]
                del ordered[pos]
                self._insert(keys, ordered, message)
            self._by_id[message.id] = message
            self._notify(self.on_changed, old, message)
            return False

        if self._full(keys) and message.sort_key < keys[0]:
            logger.debug("Skipping {}: older than the {} window", message.id, message.scope)
            return False

        index = self._insert(keys, ordered, message)
        self._by_id[message.id] = message
        self._notify(self.on_added, message, index)
        self._trim(message.scope)
        return True

    def _full(self, keys: list[tuple[int, str]]) -> bool:
        return self.window_size is not None and len(keys) >= self.window_size

    def _trim(self, scope: Scope) -> None:
        if self.window_size is None:
            return
        keys = self._keys[scope]
        ordered = self._ordered[scope]
        while len(keys) > self.window_size:
            del keys[0]
            evicted = ordered.pop(0)
            del self._by_id[evicted.id]
            self._notify(self.on_removed, evicted)

    @staticmethod
    def _insert(keys: list[tuple[int, str]], ordered: list[Message], message: Message) -> int:
        pos = bisect.bisect_left(keys, message.sort_key)
        keys.insert(pos, message.sort_key)
        ordered.insert(pos, message)
        return pos

    def apply_event(self, event: FeedEvent, scope: Scope) -> Optional[Message]:
        """Parse a feed event and upsert it. Malformed records are dropped."""
        try:
            message = message_from_record(event.key, event.value, scope)
        except MalformedRecord as exc:
            logger.warning("Dropping {} event: {}", event.event_type, exc)
            return None
        self.upsert(message)
        return self._by_id.get(message.id)

    def list_scope(self, scope: Scope) -> tuple[Message, ...]:
        """Messages of ``scope``, oldest first, as a snapshot taken at call time."""
        return tuple(self._ordered.get(scope, ()))

    def index_of(self, message_id: str) -> Optional[int]:
        message = self._by_id.get(message_id)
        if message is None:
            return None
        return bisect.bisect_left(self._keys[message.scope], message.sort_key)

    def clear(self) -> None:
        self._by_id.clear()
        self._keys.clear()
        self._ordered.clear()

    @staticmethod
    def _notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Message store callback {} failed", getattr(callback, "__name__", callback))
