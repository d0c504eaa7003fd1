"""Authoritative data tree for the feed server.

The whole tree lives in memory (a :class:`threadline.tree.Tree`) and every
write is mirrored to the ``nodes`` table, one row per scalar leaf, so the
server can rebuild the tree at startup.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.models.node import Node
from threadline.keys import join_path, new_push_id, split_path
from threadline.log import logger
from threadline.tree import Tree, flatten, unflatten


class TreeStore:
    """In-memory tree plus optional SQL persistence.

    Without a session factory the store is purely in memory (tests, demos).
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self.tree = Tree()
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    @property
    def persistent(self) -> bool:
        return self._session_factory is not None

    def attach(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load(self) -> int:
        """Rebuild the tree from the database. Returns the number of leaves."""
        if self._session_factory is None:
            return 0
        async with self._session_factory() as db:
            result = await db.execute(select(Node.path, Node.value))
            rows = [(path, json.loads(value)) for path, value in result.all()]
        self.tree = unflatten(rows)
        logger.info("Loaded {} leaf node(s) from the database", len(rows))
        return len(rows)

    def get(self, path: str) -> Any:
        return self.tree.get(path)

    async def set(self, path: str, value: Any) -> list[str]:
        async with self._lock:
            written = self.tree.set(path, value)
            await self._persist(written)
        return written

    async def update(self, path: str, fields: dict[str, Any]) -> list[str]:
        async with self._lock:
            written = self.tree.update(path, fields)
            await self._persist(written)
        return written

    async def push(self, path: str, value: Any) -> tuple[str, list[str]]:
        key = new_push_id()
        written = await self.set(join_path(path, key), value)
        return key, written

    async def _persist(self, written: list[str]) -> None:
        if self._session_factory is None:
            return
        async with self._session_factory() as db:
            for path in dict.fromkeys(written):
                await db.execute(delete(Node).where(_subtree_clause(path)))
                for leaf_path, leaf in flatten(self.tree.get(path), path):
                    db.add(Node(path=leaf_path, value=json.dumps(leaf)))
            await db.commit()


def _subtree_clause(path: str):
    """Rows at ``path``, below it, or scalar leaves at any of its ancestors."""
    segments = split_path(path)
    if not segments:
        return Node.path.is_not(None)
    ancestors = ["/".join(segments[:i]) for i in range(1, len(segments) + 1)]
    return or_(
        Node.path.in_(ancestors),
        Node.path.startswith(path + "/", autoescape=True),
    )


# Singleton used by the API process; main.py attaches the database at startup
tree_store = TreeStore()
