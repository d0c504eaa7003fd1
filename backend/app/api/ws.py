"""WebSocket endpoint for live child events.

Clients connect at /ws and subscribe to collection paths.

Protocol:
  Client -> Server (JSON):
    {"action": "subscribe", "sub_id": "s1", "path": "channels/c1/messages",
     "order_by": "ts", "limit": 500, "events": ["added", "changed"]}
    {"action": "unsubscribe", "sub_id": "s1"}
    {"action": "ping"}

  Server -> Client (JSON):
    {"type": "subscribed", "data": {"sub_id": "s1", "path": "..."}}
    {"type": "child_added", "data": {"sub_id": "s1", "key": "...", "value": {...}}}
    {"type": "child_changed", "data": {"sub_id": "s1", "key": "...", "value": {...}}}
    {"type": "synced", "data": {"sub_id": "s1"}}
    {"type": "unsubscribed", "data": {"sub_id": "s1"}}
    {"type": "pong"}
    {"type": "error", "data": {"message": "..."}}

Re-subscribing with an existing sub_id replaces that subscription and
re-delivers its window. Every subscribe reply is "subscribed", then one
child_added per child in the window, then "synced".
"""

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

from backend.app.config import settings
from backend.app.services.broadcaster import (
    error_event,
    pong_event,
    subscribed_event,
    synced_event,
    unsubscribed_event,
)
from backend.app.services.tree_store import tree_store
from backend.app.services.ws_manager import ws_manager
from threadline.tree import WindowQuery

router = APIRouter()

_VALID_EVENTS = {"added", "changed"}


def _build_query(msg: dict) -> WindowQuery:
    """Validate a subscribe request; raises ValueError with a client-facing message."""
    path = msg.get("path")
    if not isinstance(path, str) or not path.strip("/"):
        raise ValueError("subscribe requires a non-empty path")
    limit = msg.get("limit")
    if limit is not None:
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ValueError("limit must be a positive integer")
        limit = min(limit, settings.max_window)
    order_by = msg.get("order_by", "ts")
    if order_by is not None and not isinstance(order_by, str):
        raise ValueError("order_by must be a string")
    events = msg.get("events", ["added", "changed"])
    if not isinstance(events, list) or not events or not set(events) <= _VALID_EVENTS:
        raise ValueError("events must be a non-empty subset of ['added', 'changed']")
    return WindowQuery(path, order_by=order_by, limit=limit, events=events)


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket) -> None:
    """Main WebSocket endpoint for feed clients."""
    conn_id = await ws_manager.accept(ws)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await ws.send_text(json.dumps(error_event("Invalid JSON")))
                continue
            if not isinstance(msg, dict):
                await ws.send_text(json.dumps(error_event("Expected a JSON object")))
                continue

            action = msg.get("action", "")
            sub_id = msg.get("sub_id")

            if action == "subscribe":
                if not isinstance(sub_id, str) or not sub_id:
                    await ws.send_text(json.dumps(error_event("subscribe requires a sub_id")))
                    continue
                try:
                    query = _build_query(msg)
                except ValueError as exc:
                    await ws.send_text(json.dumps(error_event(str(exc))))
                    continue
                initial = await ws_manager.subscribe(ws, sub_id, query, tree_store.tree)
                await ws.send_text(json.dumps(subscribed_event(sub_id, query.path)))
                for event in initial:
                    await ws.send_text(json.dumps(event))
                await ws.send_text(json.dumps(synced_event(sub_id)))

            elif action == "unsubscribe":
                if isinstance(sub_id, str):
                    ws_manager.unsubscribe(ws, sub_id)
                await ws.send_text(json.dumps(unsubscribed_event(str(sub_id))))

            elif action == "ping":
                await ws.send_text(json.dumps(pong_event()))

            else:
                await ws.send_text(json.dumps(error_event(f"Unknown action: {action}")))

    except WebSocketDisconnect:
        logger.info("WS client {} disconnected normally", conn_id)
    except Exception:
        logger.exception("WS error for client {}", conn_id)
    finally:
        ws_manager.disconnect(ws)
