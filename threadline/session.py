"""Session facade: one instance per active chat view.

Wires the feed, message store, reply resolver, reaction aggregator and search
index together behind a send/edit/reply/react API. The facade holds the
session user, the current room and scope, and the reply draft; there is no
module-level state.

Presentation code plugs in through plain callbacks:

- ``on_message_added(message, index)`` / ``on_message_changed(old, new)``
- ``on_quote(reply, quote)`` once a reply's parent is resolved
- ``on_reactions(message_id, {emoji: count})``
- ``on_scope_change(scope)`` / ``on_reply_draft(message | None)``

Room and channel listings can be followed live with :meth:`ChatSession.watch_rooms`
and :meth:`ChatSession.watch_channels`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from functools import partial
from typing import Any, Optional

from .config import ClientSettings, settings as default_settings
from .errors import (
    InvalidScope,
    MessageNotFound,
    NotAuthenticated,
    PermissionDenied,
)
from .feed import ChangeFeed, Subscription
from .log import logger
from .models import (
    FeedEvent,
    Message,
    NamedEntry,
    ReplyQuote,
    Scope,
    Session,
    channels_path,
    message_from_record,
    new_message_record,
    now_ms,
    reactions_from_record,
)
from .reactions import ReactionAggregator, ReactionCallback
from .resolver import ReplyResolver
from .search import SearchIndex
from .store import MessageStore

EntriesCallback = Callable[[list[NamedEntry]], None]


class ChatSession:
    """Composition root for one user's view of the chat."""

    def __init__(
        self,
        feed: ChangeFeed,
        user: Optional[Session] = None,
        *,
        settings: Optional[ClientSettings] = None,
        single_room: bool = False,
        on_message_added: Optional[Callable[[Message, int], None]] = None,
        on_message_changed: Optional[Callable[[Message, Message], None]] = None,
        on_quote: Optional[Callable[[Message, ReplyQuote], None]] = None,
        on_reactions: Optional[ReactionCallback] = None,
        on_scope_change: Optional[Callable[[Optional[Scope]], None]] = None,
        on_reply_draft: Optional[Callable[[Optional[Message]], None]] = None,
    ) -> None:
        cfg = settings or default_settings
        self.feed = feed
        self.user = user
        self.single_room = single_room
        self.window_size = cfg.window_size

        self.on_message_added = on_message_added
        self.on_message_changed = on_message_changed
        self.on_quote = on_quote
        self.on_reactions = on_reactions
        self.on_scope_change = on_scope_change
        self.on_reply_draft = on_reply_draft

        self.store = MessageStore(
            on_added=self._handle_added,
            on_changed=self._handle_changed,
            window_size=self.window_size,
            on_removed=self._handle_removed,
        )
        self.resolver = ReplyResolver(feed, snippet_lines=cfg.snippet_lines)
        self.reactions = ReactionAggregator(feed)
        self.search_index = SearchIndex(self.store, self.reactions)
        self._watch_reactions()

        self._room_id: Optional[str] = None
        self._scope: Optional[Scope] = None
        self._reply_draft: Optional[Message] = None
        self._subs: list[Subscription] = []
        self._quote_tasks: set[asyncio.Task] = set()
        self._replies: dict[str, set[str]] = {}
        self._generation = 0
        self._switch_lock = asyncio.Lock()
        self._rooms_watch: Optional[Subscription] = None
        self._channels_watch: Optional[Subscription] = None
        self._channels_callback: Optional[EntriesCallback] = None
        self._background: set[asyncio.Task] = set()

    # ── State ───────────────────────────────────────────────────────────────

    @property
    def scope(self) -> Optional[Scope]:
        return self._scope

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def reply_draft(self) -> Optional[Message]:
        return self._reply_draft

    def messages(self) -> list[Message]:
        if self._scope is None:
            return []
        return list(self.store.list_scope(self._scope))

    def quote_for(self, message: Message) -> Optional[ReplyQuote]:
        if message.parent_id is None:
            return None
        return self.resolver.peek(message.parent_id)

    def _require_user(self) -> Session:
        if self.user is None:
            raise NotAuthenticated("sign in before posting")
        return self.user

    def _require_scope(self) -> Scope:
        if self._scope is None:
            raise InvalidScope("pick a room and channel first")
        return self._scope

    # ── Scope lifecycle ─────────────────────────────────────────────────────

    async def switch_scope(self, scope: Optional[Scope]) -> None:
        """Tear down the current scope's listeners and attach to ``scope``.

        Concurrent calls are serialized; the last one to run wins.
        """
        async with self._switch_lock:
            if scope == self._scope and (scope is None or self._subs):
                return
            await self._teardown()
            self._generation += 1
            self._scope = scope
            if scope is not None:
                self._room_id = scope.room_id

            if self._reply_draft is not None and self._reply_draft.scope != scope:
                self.set_reply_draft(None)
            self._emit(self.on_scope_change, scope)
            if scope is None:
                return

            handler = partial(self._on_feed_event, scope, self._generation)
            # one subscription for both event kinds: no gap between window load and change tracking
            sub = await self.feed.subscribe(
                scope.messages_path,
                handler,
                order_by="ts",
                limit=self.window_size,
                events=("added", "changed"),
            )
            self._subs.append(sub)
            logger.info("Attached to scope {} (window={})", scope, self.window_size)

    async def wait_loaded(self, timeout: Optional[float] = None) -> bool:
        """Wait until the current scope's initial window has been delivered.

        Returns False if ``timeout`` expires first. With no scope selected
        there is nothing to wait for.
        """
        for sub in list(self._subs):
            if not await sub.wait_ready(timeout):
                return False
        return True

    async def _teardown(self) -> None:
        subs, self._subs = self._subs, []
        for sub in subs:
            await sub.cancel()
        if self._scope is not None:
            self.resolver.cancel_scope(self._scope)
        for task in list(self._quote_tasks):
            task.cancel()
        self._quote_tasks.clear()
        self._replies.clear()
        self.reactions.clear()
        self._watch_reactions()
        self.store.clear()

    def _watch_reactions(self) -> None:
        if self.on_reactions is not None:
            self.reactions.subscribe(None, self.on_reactions)

    async def close(self) -> None:
        """Detach from the feed. The feed itself stays open (caller owns it)."""
        async with self._switch_lock:
            await self._teardown()
            await self._unwatch_channels()
            self._channels_callback = None
            if self._rooms_watch is not None:
                await self._rooms_watch.cancel()
                self._rooms_watch = None
            for task in list(self._background):
                task.cancel()
            self.resolver.cancel_all()
            self._generation += 1
            self._scope = None

    # ── Inbound ─────────────────────────────────────────────────────────────

    async def _on_feed_event(self, scope: Scope, generation: int, event: FeedEvent) -> None:
        if generation != self._generation:
            return  # late delivery for a torn-down scope
        message = self.store.apply_event(event, scope)
        if message is None:
            return
        self.reactions.apply(message.id, reactions_from_record(event.value))

    def _handle_added(self, message: Message, index: int) -> None:
        self._emit(self.on_message_added, message, index)
        if message.parent_id is not None:
            self._replies.setdefault(message.parent_id, set()).add(message.id)
            self._spawn_quote(message)
        self._refresh_quotes(message)

    def _handle_changed(self, old: Message, new: Message) -> None:
        self._emit(self.on_message_changed, old, new)
        self._refresh_quotes(new)

    def _handle_removed(self, message: Message) -> None:
        self.reactions.forget(message.id)
        self._replies.pop(message.id, None)
        if message.parent_id is not None:
            self._replies.get(message.parent_id, set()).discard(message.id)

    def _refresh_quotes(self, parent: Message) -> None:
        quote = self.resolver.refresh(parent)
        if quote is None:
            return
        for reply_id in sorted(self._replies.get(parent.id, ())):
            reply = self.store.get(reply_id)
            if reply is not None:
                self._emit(self.on_quote, reply, quote)

    def _spawn_quote(self, message: Message) -> None:
        task = asyncio.create_task(self._attach_quote(message, self._generation))
        self._quote_tasks.add(task)
        task.add_done_callback(self._quote_tasks.discard)

    async def _attach_quote(self, message: Message, generation: int) -> None:
        quote = await self.resolver.resolve(message.scope, message.parent_id)
        if generation != self._generation or quote is None:
            return
        self._emit(self.on_quote, message, quote)

    @staticmethod
    def _emit(callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Presentation callback {} failed", getattr(callback, "__name__", callback))

    # ── Outbound ────────────────────────────────────────────────────────────

    def set_reply_draft(self, message: Optional[Message]) -> None:
        """Target the next send at ``message`` (None clears the draft)."""
        if message is not None and message.scope != self._scope:
            raise InvalidScope("reply target is not in the current scope")
        self._reply_draft = message
        self._emit(self.on_reply_draft, message)

    async def send(self, text: str) -> str:
        """Post ``text`` (as a reply if a draft is set). Returns the message id.

        The message shows up in the store only once the feed echoes it.
        """
        user = self._require_user()
        scope = self._require_scope()
        body = text.strip()
        if not body:
            raise ValueError("message text must not be blank")

        draft = self._reply_draft
        parent_id = draft.id if draft is not None else None
        record = new_message_record(user, body, parent_id, now_ms())
        key = await self.feed.push(scope.messages_path, record)
        logger.info("Sent {} to {}{}", key, scope, f" (reply to {parent_id})" if parent_id else "")

        if self._reply_draft is draft:
            self.set_reply_draft(None)
        return key

    async def edit(self, message_id: str, new_text: str) -> None:
        """Replace the text of one of the user's own messages."""
        user = self._require_user()
        scope = self._require_scope()
        message = await self._lookup(scope, message_id)
        if message.author_id != user.uid:
            raise PermissionDenied(f"{user.uid} cannot edit a message by {message.author_id}")
        body = new_text.strip()
        if not body:
            raise ValueError("message text must not be blank")

        await self.feed.update(
            scope.message_path(message_id),
            {"text": body, "editedAt": max(now_ms(), message.created_at)},
        )
        logger.info("Edited {} in {}", message_id, scope)

    async def _lookup(self, scope: Scope, message_id: str) -> Message:
        message = self.store.get(message_id)
        if message is not None:
            return message
        value = await self.feed.get(scope.message_path(message_id))
        if value is None:
            raise MessageNotFound(message_id)
        return message_from_record(message_id, value, scope)

    async def toggle_reaction(self, message_id: str, emoji: str) -> bool:
        """Toggle the user's ``emoji`` on a loaded message; returns membership."""
        user = self._require_user()
        scope = self._require_scope()
        if message_id not in self.store:
            raise MessageNotFound(message_id)
        return await self.reactions.toggle(scope, message_id, emoji, user.uid)

    def search(self, query: str, limit: Optional[int] = None) -> list[Message]:
        if self._scope is None:
            return []
        return self.search_index.search(query, self._scope, limit=limit)

    # ── Rooms & channels ────────────────────────────────────────────────────

    async def create_room(self, name: str) -> str:
        if self.single_room:
            raise InvalidScope("this chat has a single room")
        if not name.strip():
            raise ValueError("room name must not be blank")
        key = await self.feed.push("rooms", {"name": name.strip(), "createdAt": now_ms()})
        logger.info("Created room {} ({})", name, key)
        return key

    async def create_channel(self, name: str, room_id: Optional[str] = None) -> str:
        """Create a channel in ``room_id`` (default: the current room)."""
        room = self._channel_room(room_id)
        if not name.strip():
            raise ValueError("channel name must not be blank")
        key = await self.feed.push(channels_path(room), {"name": name.strip(), "createdAt": now_ms()})
        logger.info("Created channel {} ({}) in room {}", name, key, room or "-")
        return key

    def _channel_room(self, room_id: Optional[str]) -> Optional[str]:
        if self.single_room:
            return None
        room = room_id or self._room_id
        if room is None:
            raise InvalidScope("no room selected")
        return room

    async def list_rooms(self) -> list[NamedEntry]:
        if self.single_room:
            return []
        return _entries(await self.feed.get("rooms"))

    async def list_channels(self, room_id: Optional[str] = None) -> list[NamedEntry]:
        return _entries(await self.feed.get(channels_path(self._channel_room(room_id))))

    async def watch_rooms(self, callback: EntriesCallback) -> Subscription:
        """Follow the room list.

        ``callback`` gets the full sorted list once the existing rooms are
        loaded, then again after every room that is created or renamed.
        Replaces any earlier room watch.
        """
        if self.single_room:
            raise InvalidScope("this chat has a single room")
        if self._rooms_watch is not None:
            await self._rooms_watch.cancel()
        self._rooms_watch = await self._watch_entries("rooms", callback)
        return self._rooms_watch

    async def watch_channels(self, callback: EntriesCallback) -> Subscription:
        """Follow the channel list of the current room.

        The watch moves along with :meth:`select_room`.
        """
        path = channels_path(self._channel_room(None))
        await self._unwatch_channels()
        self._channels_callback = callback
        self._channels_watch = await self._watch_entries(path, callback)
        return self._channels_watch

    async def _unwatch_channels(self) -> None:
        if self._channels_watch is not None:
            await self._channels_watch.cancel()
            self._channels_watch = None

    async def _watch_entries(self, path: str, callback: EntriesCallback) -> Subscription:
        listing = _Listing(lambda entries: self._emit(callback, entries))
        sub = await self.feed.subscribe(
            path, listing.on_event, order_by="createdAt", events=("added", "changed")
        )
        listing.sub = sub
        if sub.ready:
            listing.publish()
        else:
            task = asyncio.create_task(listing.publish_when_ready())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        logger.debug("Watching {}", path)
        return sub

    async def select_room(self, room_id: str) -> Optional[Scope]:
        """Enter a room and open its first channel, if it has any."""
        if self.single_room:
            raise InvalidScope("this chat has a single room")
        self._room_id = room_id
        if self._channels_callback is not None:
            await self.watch_channels(self._channels_callback)
        channels = await self.list_channels(room_id)
        scope = Scope(room_id=room_id, channel_id=channels[0].id) if channels else None
        await self.switch_scope(scope)
        self._room_id = room_id
        return scope

    async def select_channel(self, channel_id: str) -> Scope:
        scope = Scope(room_id=self._channel_room(None), channel_id=channel_id)
        await self.switch_scope(scope)
        return scope


class _Listing:
    """Live room/channel entries behind one watch."""

    def __init__(self, publish: Callable[[list[NamedEntry]], None]) -> None:
        self._publish = publish
        self._entries: dict[str, NamedEntry] = {}
        self.sub: Optional[Subscription] = None

    async def on_event(self, event: FeedEvent) -> None:
        entry = _entry(event.key, event.value)
        if entry is None or self._entries.get(entry.id) == entry:
            return
        self._entries[entry.id] = entry
        # before the initial load completes, one publish covers everything
        if self.sub is not None and self.sub.ready:
            self.publish()

    def publish(self) -> None:
        self._publish(sorted(self._entries.values(), key=_entry_order))

    async def publish_when_ready(self) -> None:
        if self.sub is None:
            return
        await self.sub.wait_ready()
        if self.sub.active:
            self.publish()


def _entry(key: str, item: Any) -> Optional[NamedEntry]:
    if not isinstance(item, dict):
        return None
    created = item.get("createdAt")
    name = item.get("name")
    return NamedEntry(
        id=key,
        name=name if isinstance(name, str) and name else key,
        created_at=created if isinstance(created, int) and not isinstance(created, bool) else 0,
    )


def _entry_order(entry: NamedEntry) -> tuple[int, str]:
    return entry.created_at, entry.id


def _entries(value: Any) -> list[NamedEntry]:
    """Room/channel listing sorted by creation time, then id."""
    if not isinstance(value, dict):
        return []
    entries = []
    for key, item in value.items():
        entry = _entry(key, item)
        if entry is not None:
            entries.append(entry)
    return sorted(entries, key=_entry_order)
