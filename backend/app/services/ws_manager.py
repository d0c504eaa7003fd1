"""WebSocket connection manager for live child events.

Tracks connected WebSocket clients and their subscriptions. Each
subscription is a :class:`threadline.tree.WindowQuery` over one collection
path; after every write the manager asks each query which children were
added or changed and pushes those events to the owning client.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from starlette.websockets import WebSocket, WebSocketState

from backend.app.services.broadcaster import child_event
from threadline.tree import Tree, WindowQuery

logger = logging.getLogger(__name__)


@dataclass
class WSClient:
    """A connected WebSocket client with its subscriptions."""

    ws: WebSocket
    queries: dict[str, WindowQuery] = field(default_factory=dict)


class ConnectionManager:
    """Manages WebSocket connections and fans out child events.

    Safe for async usage within a single event loop (FastAPI).
    """

    def __init__(self) -> None:
        # Map of connection_id -> WSClient
        self._clients: dict[int, WSClient] = {}

    @property
    def active_count(self) -> int:
        return len(self._clients)

    @property
    def subscription_count(self) -> int:
        return sum(len(c.queries) for c in self._clients.values())

    async def accept(self, ws: WebSocket) -> int:
        """Accept a new WebSocket connection and return its connection ID."""
        await ws.accept()
        conn_id = id(ws)
        self._clients[conn_id] = WSClient(ws=ws)
        logger.info("WS client connected: %s", conn_id)
        return conn_id

    def disconnect(self, ws: WebSocket) -> None:
        """Remove a WebSocket connection and all of its subscriptions."""
        conn_id = id(ws)
        if conn_id in self._clients:
            del self._clients[conn_id]
            logger.info("WS client disconnected: %s", conn_id)

    async def subscribe(
        self, ws: WebSocket, sub_id: str, query: WindowQuery, tree: Tree
    ) -> list[dict[str, Any]]:
        """Register (or replace) a subscription and return its initial events."""
        client = self._clients.get(id(ws))
        if client is None:
            return []
        client.queries[sub_id] = query
        logger.debug("WS %s subscribed %s to %s", id(ws), sub_id, query.path)
        return [
            child_event(sub_id, event_type, key, value)
            for event_type, key, value in query.initial(tree)
        ]

    def unsubscribe(self, ws: WebSocket, sub_id: str) -> bool:
        client = self._clients.get(id(ws))
        if client is None:
            return False
        return client.queries.pop(sub_id, None) is not None

    async def broadcast_changes(self, tree: Tree, written: list[str]) -> int:
        """Push child events for ``written`` paths to every matching subscription.

        Returns the number of events sent.
        """
        sent = 0
        dead: list[int] = []

        for conn_id, client in list(self._clients.items()):
            for sub_id, query in list(client.queries.items()):
                for event_type, key, value in query.affected(tree, written):
                    if not await self._send(client, child_event(sub_id, event_type, key, value)):
                        dead.append(conn_id)
                        break
                    sent += 1
                if conn_id in dead:
                    break

        # Clean up dead connections
        for conn_id in dead:
            self._clients.pop(conn_id, None)
        return sent

    async def _send(self, client: WSClient, event: dict[str, Any]) -> bool:
        try:
            if client.ws.client_state == WebSocketState.CONNECTED:
                await client.ws.send_text(json.dumps(event))
                return True
        except Exception:
            logger.warning("Failed to send to WS %s, removing", id(client.ws))
        return False

    async def close_all(self) -> None:
        """Close all connections gracefully (for shutdown)."""
        for client in list(self._clients.values()):
            try:
                if client.ws.client_state == WebSocketState.CONNECTED:
                    await client.ws.close(code=1001, reason="Server shutting down")
            except Exception:
                logger.debug("Error closing WS %s during shutdown", id(client.ws))
        self._clients.clear()


# Singleton instance used by the API process
ws_manager = ConnectionManager()
