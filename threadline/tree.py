"""In-memory JSON tree with realtime-store write semantics.

Used by :class:`threadline.feed.MemoryFeed` and by the reference server in
``backend/app``. Writes follow the store contract:

- ``set(path, value)`` replaces the node; ``None`` deletes it.
- ``update(path, fields)`` applies every field as a ``set`` relative to
  ``path``; field names may span several segments (``"reactions/x/u1"``).
- Empty objects are pruned, so a node with no children does not exist.

:class:`WindowQuery` turns writes into ``added``/``changed`` child events for
a subscription over one collection path.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from typing import Any, Optional

from .keys import is_descendant, join_path, split_path


def _normalize(value: Any) -> Any:
    """Deep-copy a JSON value, dropping nulls and empty objects."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            v = _normalize(v)
            if v is not None:
                out[str(k)] = v
        return out or None
    if isinstance(value, list):
        return [copy.deepcopy(v) for v in value]
    return value


class Tree:
    """Nested-dict JSON tree addressed by slash paths."""

    def __init__(self, data: Optional[dict[str, Any]] = None) -> None:
        self._root: dict[str, Any] = _normalize(data) or {}

    def get(self, path: str = "") -> Any:
        """Return a copy of the node at ``path`` or None."""
        node: Any = self._root
        for seg in split_path(path):
            if not isinstance(node, dict) or seg not in node:
                return None
            node = node[seg]
        return copy.deepcopy(node)

    def exists(self, path: str) -> bool:
        return self.get(path) is not None

    def set(self, path: str, value: Any) -> list[str]:
        """Replace the node at ``path``. Returns the written paths."""
        segments = split_path(path)
        if not segments:
            self._root = _normalize(value) or {}
            return [""]
        value = _normalize(value)
        if value is None:
            self._delete(segments)
        else:
            node = self._root
            for seg in segments[:-1]:
                child = node.get(seg)
                if not isinstance(child, dict):
                    child = {}
                    node[seg] = child
                node = child
            node[segments[-1]] = value
        return ["/".join(segments)]

    def update(self, path: str, fields: dict[str, Any]) -> list[str]:
        """Apply a multi-path partial update rooted at ``path``."""
        written: list[str] = []
        for rel, value in fields.items():
            written.extend(self.set(join_path(path, rel), value))
        return written

    def _delete(self, segments: list[str]) -> None:
        trail: list[tuple[dict[str, Any], str]] = []
        node: Any = self._root
        for seg in segments:
            if not isinstance(node, dict) or seg not in node:
                return
            trail.append((node, seg))
            node = node[seg]
        parent, key = trail.pop()
        del parent[key]
        # prune now-empty ancestors
        while trail and not parent:
            parent, key = trail.pop()
            del parent[key]

    def leaves(self, path: str = "") -> list[tuple[str, Any]]:
        """Flatten the subtree at ``path`` into ``(path, scalar)`` pairs."""
        return list(flatten(self.get(path), join_path(path)))


def flatten(value: Any, prefix: str = "") -> Iterable[tuple[str, Any]]:
    if isinstance(value, dict):
        for k, v in value.items():
            yield from flatten(v, join_path(prefix, k))
    elif value is not None:
        yield prefix, value


def unflatten(rows: Iterable[tuple[str, Any]]) -> Tree:
    tree = Tree()
    for path, value in rows:
        tree.set(path, value)
    return tree


def _order_value(value: Any, order_by: Optional[str]) -> tuple[int, Any]:
    """Sort key: missing/non-numeric order values sort first."""
    if order_by is None:
        return (0, 0)
    v = value.get(order_by) if isinstance(value, dict) else None
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return (0, 0)
    return (1, v)


class WindowQuery:
    """A subscription over the children of one collection path.

    Children are ordered by ``order_by`` (ties broken by key) and the initial
    window holds the trailing ``limit`` of them. The query remembers which keys
    it has delivered so later writes can be classified as added or changed.
    """

    def __init__(
        self,
        path: str,
        order_by: Optional[str] = "ts",
        limit: Optional[int] = None,
        events: Iterable[str] = ("added", "changed"),
    ) -> None:
        if limit is not None and limit < 1:
            raise ValueError("limit must be positive")
        self.path = join_path(path)
        self.order_by = order_by
        self.limit = limit
        self.events = frozenset(events)
        self._known: set[str] = set()

    def ordered_children(self, tree: Tree) -> list[tuple[str, Any]]:
        children = tree.get(self.path)
        if not isinstance(children, dict):
            return []
        return sorted(
            children.items(),
            key=lambda kv: (_order_value(kv[1], self.order_by), kv[0]),
        )

    def initial(self, tree: Tree) -> list[tuple[str, str, Any]]:
        """Events for the current window, oldest first."""
        children = self.ordered_children(tree)
        if self.limit is not None:
            children = children[-self.limit:]
        self._known = {key for key, _ in children}
        if "added" not in self.events:
            return []
        return [("added", key, value) for key, value in children]

    def affected(self, tree: Tree, written: Iterable[str]) -> list[tuple[str, str, Any]]:
        """Classify the children touched by ``written`` paths into events."""
        base = split_path(self.path)
        keys: list[str] = []
        for path in written:
            if is_descendant(path, self.path) and len(split_path(path)) > len(base):
                key = split_path(path)[len(base)]
                if key not in keys:
                    keys.append(key)
            elif is_descendant(self.path, path):
                # write at or above the collection: every child may have moved
                current = tree.get(self.path)
                for key in sorted(self._known | set(current or {})):
                    if key not in keys:
                        keys.append(key)

        events: list[tuple[str, str, Any]] = []
        for key in keys:
            value = tree.get(join_path(self.path, key))
            if value is None:
                self._known.discard(key)
                continue
            if key in self._known:
                if "changed" in self.events:
                    events.append(("changed", key, value))
            elif not self._before_window(tree, key, value):
                self._known.add(key)
                if "added" in self.events:
                    events.append(("added", key, value))
        return events

    def _before_window(self, tree: Tree, key: str, value: Any) -> bool:
        """True if an unknown child sorts before a full window's oldest child."""
        if self.limit is None or len(self._known) < self.limit:
            return False
        oldest = min(
            (_order_value(tree.get(join_path(self.path, k)), self.order_by), k) for k in self._known
        )
        return (_order_value(value, self.order_by), key) < oldest
