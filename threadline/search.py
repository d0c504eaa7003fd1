"""On-demand search over the loaded message window."""

from __future__ import annotations

from typing import Optional

from .models import Message, Scope
from .reactions import ReactionAggregator
from .store import MessageStore


class SearchIndex:
    """Case-insensitive scan over text, author name and reaction emoji.

    Only the messages currently held by the store are searched; the window is
    bounded so a linear scan stays cheap. Reacting users are not matched.
    """

    def __init__(self, store: MessageStore, reactions: Optional[ReactionAggregator] = None) -> None:
        self.store = store
        self.reactions = reactions

    def search(self, query: str, scope: Scope, limit: Optional[int] = None) -> list[Message]:
        """Matching messages, newest first. Blank queries match nothing."""
        needle = query.strip().casefold()
        if not needle:
            return []

        hits: list[Message] = []
        for message in reversed(self.store.list_scope(scope)):
            if self._matches(message, needle):
                hits.append(message)
                if limit is not None and len(hits) >= limit:
                    break
        return hits

    def _matches(self, message: Message, needle: str) -> bool:
        if needle in message.text.casefold():
            return True
        if needle in message.author_name.casefold():
            return True
        if self.reactions is not None:
            return any(needle in emoji.casefold() for emoji in self.reactions.emojis(message.id))
        return False
