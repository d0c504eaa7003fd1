"""Shared test fixtures for threadline.

Provides in-process feeds (plain, gated, failing and delayed-echo), session users and a
scope, record/message factories, an isolated in-memory SQLite database for
the persistence layer, and an async HTTP client wired to the real ASGI app.
"""

import asyncio
from collections.abc import AsyncGenerator
from typing import Any, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from backend.app.db import Base
from backend.app.main import app
from backend.app.services.tree_store import tree_store
from backend.app.services.ws_manager import ws_manager
from threadline.config import ClientSettings
from threadline.errors import TransientFeedError
from threadline.feed import MemoryFeed
from threadline.models import Message, Scope, Session
from threadline.tree import Tree

# ---------------------------------------------------------------------------
# Feeds
# ---------------------------------------------------------------------------


class GatedFeed(MemoryFeed):
    """MemoryFeed whose point reads block until ``gate`` is set."""

    def __init__(self, data: Optional[dict[str, Any]] = None) -> None:
        super().__init__(data)
        self.gate = asyncio.Event()
        self.get_calls: list[str] = []

    async def get(self, path: str) -> Any:
        self.get_calls.append(path)
        await self.gate.wait()
        return await super().get(path)


class FailingFeed(MemoryFeed):
    """MemoryFeed that raises TransientFeedError on demand."""

    def __init__(self, data: Optional[dict[str, Any]] = None) -> None:
        super().__init__(data)
        self.fail_reads = False
        self.fail_writes = False

    async def get(self, path: str) -> Any:
        if self.fail_reads:
            raise TransientFeedError(f"read of {path} failed")
        return await super().get(path)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        if self.fail_writes:
            raise TransientFeedError(f"update of {path} failed")
        await super().update(path, fields)

    async def set(self, path: str, value: Any) -> None:
        if self.fail_writes:
            raise TransientFeedError(f"set of {path} failed")
        await super().set(path, value)


class DelayedEchoFeed(MemoryFeed):
    """MemoryFeed that applies writes at once but delivers their events later.

    Mirrors a remote feed, where the echo of a write arrives after the write
    call has returned.
    """

    def __init__(self, data: Optional[dict[str, Any]] = None, delay: float = 0.01) -> None:
        super().__init__(data)
        self.delay = delay
        self._pending: set[asyncio.Task] = set()

    async def _publish(self, written: list[str]) -> None:
        task = asyncio.create_task(self._publish_later(written))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish_later(self, written: list[str]) -> None:
        await asyncio.sleep(self.delay)
        await super()._publish(written)

    async def drain(self) -> None:
        """Wait until every scheduled echo has been delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


@pytest.fixture
def feed() -> MemoryFeed:
    return MemoryFeed()


@pytest.fixture
def gated_feed() -> GatedFeed:
    return GatedFeed()


@pytest.fixture
def failing_feed() -> FailingFeed:
    return FailingFeed()


@pytest.fixture
async def delayed_feed() -> AsyncGenerator[DelayedEchoFeed, None]:
    feed = DelayedEchoFeed()
    yield feed
    await feed.drain()


# ---------------------------------------------------------------------------
# Users, scopes, settings
# ---------------------------------------------------------------------------


@pytest.fixture
def alice() -> Session:
    return Session(uid="alice", username="Alice")


@pytest.fixture
def bob() -> Session:
    return Session(uid="bob", username="Bob")


@pytest.fixture
def scope() -> Scope:
    return Scope(room_id="r1", channel_id="general")


@pytest.fixture
def other_scope() -> Scope:
    return Scope(room_id="r1", channel_id="random")


@pytest.fixture
def client_settings() -> ClientSettings:
    return ClientSettings(window_size=500, snippet_lines=2)


async def settle(rounds: int = 20) -> None:
    """Let pending tasks (quote fetches, echoes) run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def make_record(
    *,
    uid: str = "alice",
    username: str = "Alice",
    text: str = "Hello, world!",
    ts: int = 1_000,
    parent_id: Optional[str] = None,
    edited_at: Optional[int] = None,
    reactions: Optional[dict[str, dict[str, bool]]] = None,
) -> dict[str, Any]:
    """Message record as it is stored in the tree."""
    record: dict[str, Any] = {"uid": uid, "username": username, "text": text, "ts": ts}
    if parent_id is not None:
        record["parentId"] = parent_id
    if edited_at is not None:
        record["editedAt"] = edited_at
    if reactions is not None:
        record["reactions"] = reactions
    return record


def make_message(
    message_id: str,
    scope: Scope,
    *,
    ts: int = 1_000,
    text: str = "Hello, world!",
    author_id: str = "alice",
    author_name: str = "Alice",
    parent_id: Optional[str] = None,
) -> Message:
    return Message(
        id=message_id,
        scope=scope,
        author_id=author_id,
        author_name=author_name,
        text=text,
        created_at=ts,
        parent_id=parent_id,
    )


# ---------------------------------------------------------------------------
# Server fixtures
# ---------------------------------------------------------------------------

# In-memory engine for the persistence layer.  Tables are created/dropped
# per test so tests are fully isolated.
_test_engine = create_async_engine(
    "sqlite+aiosqlite://",
    echo=False,
    connect_args={"check_same_thread": False},
)

_TestSessionLocal = async_sessionmaker(
    _test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def _set_test_pragmas(dbapi_conn, connection_record):  # noqa: ARG001
    """Set SQLite PRAGMAs on every test connection (mirrors production behavior)."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout = 5000")
    cursor.close()


event.listen(_test_engine.sync_engine, "connect", _set_test_pragmas)


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over freshly created tables."""
    async with _test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield _TestSessionLocal

    async with _test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_server_state():
    """Each test starts with an empty, in-memory server tree and no WS clients."""
    tree_store.tree = Tree()
    yield
    tree_store.tree = Tree()
    ws_manager._clients.clear()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the real ASGI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
