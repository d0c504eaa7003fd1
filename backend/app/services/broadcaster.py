"""Event factories and the write -> WebSocket fan-out hook.

API handlers call :func:`publish` after every successful write; the
connection manager turns the written paths into ``child_added`` /
``child_changed`` events per subscription.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


async def publish(written: list[str]) -> int:
    """Fan out events for ``written`` paths. Never raises."""
    from backend.app.services.tree_store import tree_store
    from backend.app.services.ws_manager import ws_manager

    try:
        return await ws_manager.broadcast_changes(tree_store.tree, written)
    except Exception:
        logger.exception("Failed to broadcast changes for %s", written)
        return 0


# --- Event factory helpers ---


def child_event(sub_id: str, event_type: str, key: str, value: Any) -> dict[str, Any]:
    """Create a child_added / child_changed WebSocket event."""
    return {
        "type": f"child_{event_type}",
        "data": {
            "sub_id": sub_id,
            "key": key,
            "value": value,
        },
    }


def subscribed_event(sub_id: str, path: str) -> dict[str, Any]:
    return {"type": "subscribed", "data": {"sub_id": sub_id, "path": path}}


def synced_event(sub_id: str) -> dict[str, Any]:
    """Marks the end of a subscription's initial events."""
    return {"type": "synced", "data": {"sub_id": sub_id}}


def unsubscribed_event(sub_id: str) -> dict[str, Any]:
    return {"type": "unsubscribed", "data": {"sub_id": sub_id}}


def error_event(message: str) -> dict[str, Any]:
    return {"type": "error", "data": {"message": message}}


def pong_event() -> dict[str, Any]:
    return {"type": "pong"}
