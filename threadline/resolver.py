"""Lazy, memoized resolution of reply parents into quote snippets."""

from __future__ import annotations

import asyncio
from typing import Optional

from .errors import InvalidScope, TransientFeedError
from .feed import ChangeFeed
from .log import logger
from .models import Message, ReplyQuote, Scope


class ReplyResolver:
    """Resolves ``parent_id -> ReplyQuote | None`` with one point read per parent.

    Results (including "not found" and failed reads) are cached for the life
    of the resolver, which is meant to be one per session. Concurrent requests
    for the same unresolved parent share a single in-flight fetch.
    """

    def __init__(self, feed: ChangeFeed, *, snippet_lines: int = 2) -> None:
        self._feed = feed
        self.snippet_lines = snippet_lines
        self._cache: dict[str, Optional[ReplyQuote]] = {}
        self._inflight: dict[str, tuple[Scope, asyncio.Task]] = {}
        self.fetch_count = 0

    def is_cached(self, parent_id: str) -> bool:
        return parent_id in self._cache

    def peek(self, parent_id: str) -> Optional[ReplyQuote]:
        """Cached quote, without fetching."""
        return self._cache.get(parent_id)

    @property
    def pending(self) -> int:
        return len(self._inflight)

    async def resolve(self, scope: Optional[Scope], parent_id: str) -> Optional[ReplyQuote]:
        """Quote for ``parent_id``, or None if it does not exist or cannot be read.

        Returns None as well when the fetch was cancelled by a scope switch.
        """
        if scope is None:
            raise InvalidScope("cannot resolve a reply without a scope")
        if parent_id in self._cache:
            return self._cache[parent_id]

        entry = self._inflight.get(parent_id)
        if entry is None:
            task = asyncio.create_task(self._fetch(scope, parent_id))
            self._inflight[parent_id] = (scope, task)
            task.add_done_callback(lambda _t, pid=parent_id: self._forget(pid, _t))
        else:
            task = entry[1]

        # wait without propagating our own cancellation into the shared fetch
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    def _forget(self, parent_id: str, task: asyncio.Task) -> None:
        entry = self._inflight.get(parent_id)
        if entry is not None and entry[1] is task:
            del self._inflight[parent_id]

    async def _fetch(self, scope: Scope, parent_id: str) -> Optional[ReplyQuote]:
        self.fetch_count += 1
        try:
            value = await self._feed.get(scope.message_path(parent_id))
        except TransientFeedError as exc:
            logger.warning("Reply parent {} unreadable, caching miss: {}", parent_id, exc)
            value = None

        quote = None
        if isinstance(value, dict):
            quote = ReplyQuote.from_record(parent_id, value, self.snippet_lines)
        else:
            logger.debug("Reply parent {} not found in {}", parent_id, scope)
        self._cache[parent_id] = quote
        return quote

    def refresh(self, message: Message) -> Optional[ReplyQuote]:
        """Update the cached quote for a message already asked about.

        Called for every message the store sees, so an edited parent (or one
        that was missing and has now arrived) updates without a refetch.
        """
        if message.id not in self._cache:
            return None
        quote = ReplyQuote.from_message(message, self.snippet_lines)
        if self._cache[message.id] == quote:
            return None
        self._cache[message.id] = quote
        return quote

    def cancel_scope(self, scope: Scope) -> int:
        """Cancel in-flight fetches issued for ``scope``; nothing is cached for them."""
        cancelled = 0
        for parent_id, (task_scope, task) in list(self._inflight.items()):
            if task_scope == scope and not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.debug("Cancelled {} pending reply fetch(es) for {}", cancelled, scope)
        return cancelled

    def cancel_all(self) -> None:
        for _, task in list(self._inflight.values()):
            task.cancel()
