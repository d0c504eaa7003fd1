"""Remote change feed over HTTP + WebSocket.

Point reads and writes go through the server's REST surface (``/api/db``)
with httpx. Live child events arrive over a single WebSocket connection
(``/ws``) that multiplexes every subscription by ``sub_id``. When the socket
drops, the reader loop reconnects and re-sends every active subscription; the
server then re-delivers the window, which consumers handle as upserts.

Each subscription's initial events are followed by a ``synced`` frame, which
marks the matching :class:`Subscription` ready.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Iterable
from typing import Any, Optional

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import ClientSettings, settings as default_settings
from .errors import TransientFeedError
from .feed import ChangeFeed, EventHandler, Subscription, dispatch
from .log import logger
from .models import FeedEvent

_EVENT_TYPES = {"child_added": "added", "child_changed": "changed"}


class RemoteFeed(ChangeFeed):
    """ChangeFeed client for the threadline feed server.

    Example:
        async with RemoteFeed.from_settings() as feed:
            sub = await feed.subscribe_added("channels/c1/messages", 500, handler)
            ...
            await sub.cancel()
    """

    def __init__(
        self,
        base_url: str,
        ws_url: Optional[str] = None,
        *,
        timeout: float = 10.0,
        reconnect_delay: float = 2.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.ws_url = ws_url or ClientSettings(feed_url=self.base_url).ws_url
        self.reconnect_delay = reconnect_delay
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._ws: Optional[ClientConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._subs: dict[str, tuple[dict[str, Any], EventHandler, Subscription]] = {}
        self._closed = False

    @classmethod
    def from_settings(cls, cfg: Optional[ClientSettings] = None) -> "RemoteFeed":
        cfg = cfg or default_settings
        return cls(
            cfg.feed_url,
            cfg.ws_url,
            timeout=cfg.request_timeout,
            reconnect_delay=cfg.reconnect_delay,
        )

    async def __aenter__(self) -> "RemoteFeed":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── Point reads / writes ────────────────────────────────────────────────

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = await self._http.request(method, url, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransientFeedError(
                f"{method} {url} failed: {exc.response.status_code} {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientFeedError(f"{method} {url} failed: {exc}") from exc
        return resp.json()

    async def get(self, path: str) -> Any:
        data = await self._request("GET", "/api/db", params={"path": path})
        return data.get("value")

    async def set(self, path: str, value: Any) -> None:
        await self._request("PUT", "/api/db", json={"path": path, "value": value})

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self._request("PATCH", "/api/db", json={"path": path, "fields": fields})

    async def push(self, path: str, value: Any) -> str:
        data = await self._request("POST", "/api/db/push", json={"path": path, "value": value})
        return data["key"]

    # ── Subscriptions ───────────────────────────────────────────────────────

    async def subscribe(
        self,
        path: str,
        handler: EventHandler,
        *,
        order_by: Optional[str] = "ts",
        limit: Optional[int] = None,
        events: Iterable[str] = ("added", "changed"),
    ) -> Subscription:
        sub_id = uuid.uuid4().hex[:12]
        request = {
            "action": "subscribe",
            "sub_id": sub_id,
            "path": path,
            "order_by": order_by,
            "limit": limit,
            "events": sorted(events),
        }
        sub = Subscription(path, self._unsubscribe)
        self._subs[sub_id] = (request, handler, sub)
        try:
            if not await self._ensure_connected():
                await self._send(request)
        except TransientFeedError:
            self._subs.pop(sub_id, None)
            raise
        logger.info("Subscribed {} to {} (limit={})", sub_id, path, limit)
        return sub

    async def _unsubscribe(self, sub: Subscription) -> None:
        for sub_id, (_, _, candidate) in list(self._subs.items()):
            if candidate is sub:
                del self._subs[sub_id]
                try:
                    await self._send({"action": "unsubscribe", "sub_id": sub_id})
                except TransientFeedError:
                    # server drops subscriptions with the socket anyway
                    logger.debug("Unsubscribe {} not delivered", sub_id)

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._ws is None:
            raise TransientFeedError("feed socket is not connected")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as exc:
            raise TransientFeedError(f"feed socket closed: {exc}") from exc

    async def _open(self) -> None:
        """Open the socket and (re)send every registered subscription."""
        try:
            self._ws = await connect(self.ws_url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            raise TransientFeedError(f"cannot reach feed at {self.ws_url}: {exc}") from exc
        logger.info("Connected to feed at {} ({} subscription(s))", self.ws_url, len(self._subs))
        for request, _, _ in list(self._subs.values()):
            await self._send(request)

    async def _ensure_connected(self) -> bool:
        """Connect if needed. Returns True when a new socket was opened."""
        async with self._connect_lock:
            if self._ws is not None:
                return False
            await self._open()
            if self._reader is None or self._reader.done():
                self._reader = asyncio.create_task(self._listen())
            return True

    async def _listen(self) -> None:
        """Receive loop with reconnect + resubscribe."""
        while not self._closed:
            ws = self._ws
            if ws is None:
                try:
                    async with self._connect_lock:
                        if self._ws is None:
                            await self._open()
                except TransientFeedError as exc:
                    logger.warning("Feed reconnect failed: {} (retry in {}s)", exc, self.reconnect_delay)
                    await asyncio.sleep(self.reconnect_delay)
                continue
            try:
                raw = await ws.recv()
            except ConnectionClosed:
                if self._closed:
                    return
                logger.warning("Feed socket closed, reconnecting in {}s", self.reconnect_delay)
                self._ws = None
                await asyncio.sleep(self.reconnect_delay)
                continue
            await self._handle_message(raw)

    async def _handle_message(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Received invalid JSON from feed")
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object frame from feed: {!r}", data)
            return

        msg_type = data.get("type")
        payload = data.get("data")
        if not isinstance(payload, dict):
            payload = {}
        if msg_type == "error":
            logger.warning("Feed error: {}", payload.get("message"))
            return

        event_type = _EVENT_TYPES.get(msg_type) if isinstance(msg_type, str) else None
        if event_type is None and msg_type != "synced":
            return
        sub_id = payload.get("sub_id")
        entry = self._subs.get(sub_id) if isinstance(sub_id, str) else None
        if entry is None:
            return  # late event for a cancelled subscription
        _, handler, sub = entry
        if not sub.active:
            return
        if event_type is None:
            sub.mark_ready()
            return
        await dispatch(
            handler,
            FeedEvent(event_type=event_type, key=str(payload.get("key", "")), value=payload.get("value")),
        )

    async def close(self) -> None:
        self._closed = True
        for _, _, sub in list(self._subs.values()):
            await sub.cancel()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception:
                logger.opt(exception=True).debug("Error closing feed socket")
            self._ws = None
        await self._http.aclose()
        logger.info("Feed connection closed")
