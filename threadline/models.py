"""Pydantic models for threadline."""

from __future__ import annotations

import time
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import MalformedRecord
from .keys import decode_key, join_path
from .log import logger


def now_ms() -> int:
    return int(time.time() * 1000)


# ── Scope ────────────────────────────────────────────────────────────────────

class Scope(BaseModel):
    """Addressing unit within which messages are ordered and displayed.

    ``room_id`` is None for the single-room variant, where channels live at the
    top level of the tree.
    """
    model_config = ConfigDict(frozen=True)

    room_id: Optional[str] = None
    channel_id: str

    @property
    def base_path(self) -> str:
        if self.room_id is None:
            return join_path("channels", self.channel_id)
        return join_path("rooms", self.room_id, "channels", self.channel_id)

    @property
    def messages_path(self) -> str:
        return join_path(self.base_path, "messages")

    def message_path(self, message_id: str) -> str:
        return join_path(self.messages_path, message_id)

    def __str__(self) -> str:
        return f"{self.room_id or '-'}/{self.channel_id}"


def channels_path(room_id: Optional[str]) -> str:
    return "channels" if room_id is None else join_path("rooms", room_id, "channels")


# ── Session ──────────────────────────────────────────────────────────────────

class Session(BaseModel):
    """Authenticated user, supplied by the external auth collaborator."""
    model_config = ConfigDict(frozen=True)

    uid: str
    username: str
    email: Optional[str] = None
    created_at: Optional[int] = None


# ── Message ──────────────────────────────────────────────────────────────────

class Message(BaseModel):
    """Materialized chat message. Reactions are owned by the aggregator."""
    model_config = ConfigDict(frozen=True)

    id: str
    scope: Scope
    author_id: str
    author_name: str
    text: str
    created_at: int
    edited_at: Optional[int] = None
    parent_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Message":
        if self.edited_at is not None and self.edited_at < self.created_at:
            raise ValueError("editedAt precedes createdAt")
        if self.parent_id is not None and self.parent_id == self.id:
            raise ValueError("message replies to itself")
        return self

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.created_at, self.id)

    @property
    def edited(self) -> bool:
        return self.edited_at is not None


def message_from_record(key: str, value: Any, scope: Scope) -> Message:
    """Build a Message from a feed record, raising MalformedRecord on bad input."""
    if not isinstance(value, dict):
        raise MalformedRecord(key, "record is not an object")
    for required in ("ts", "text", "uid"):
        if value.get(required) is None:
            raise MalformedRecord(key, f"missing {required}")
    try:
        return Message(
            id=key,
            scope=scope,
            author_id=value["uid"],
            author_name=value.get("username") or "",
            text=value["text"],
            created_at=value["ts"],
            edited_at=value.get("editedAt"),
            parent_id=value.get("parentId"),
        )
    except ValidationError as exc:
        reason = "; ".join(err["msg"] for err in exc.errors())
        raise MalformedRecord(key, reason) from exc


def reactions_from_record(value: Any) -> dict[str, frozenset[str]]:
    """Extract ``{emoji: {user ids}}`` from a record's presence-at-path map."""
    raw = value.get("reactions") if isinstance(value, dict) else None
    if not isinstance(raw, dict):
        return {}
    reactions: dict[str, frozenset[str]] = {}
    for encoded, members in raw.items():
        if not isinstance(members, dict):
            continue
        try:
            emoji = decode_key(encoded)
        except ValueError as exc:
            logger.warning("Skipping reaction key: {}", exc)
            continue
        users = set()
        for uid, present in members.items():
            if not present:
                continue
            try:
                users.add(decode_key(uid))
            except ValueError as exc:
                logger.warning("Skipping reacting user on {!r}: {}", emoji, exc)
        if users:
            reactions[emoji] = frozenset(users)
    return reactions


def new_message_record(session: Session, text: str, parent_id: Optional[str], ts: int) -> dict[str, Any]:
    """Record written by a send."""
    return {
        "uid": session.uid,
        "username": session.username,
        "text": text,
        "ts": ts,
        "parentId": parent_id,
    }


# ── Reply quotes ─────────────────────────────────────────────────────────────

class ReplyQuote(BaseModel):
    """Short excerpt of a parent message shown inline with a reply."""
    model_config = ConfigDict(frozen=True)

    parent_id: str
    author_name: str
    snippet: str
    truncated: bool = False

    @classmethod
    def from_record(cls, parent_id: str, value: dict[str, Any], lines: int = 2) -> "ReplyQuote":
        text = value.get("text") or ""
        snippet = " ".join(text.split("\n")[:lines])
        return cls(
            parent_id=parent_id,
            author_name=value.get("username") or "",
            snippet=snippet,
            truncated=len(text) > len(snippet),
        )

    @classmethod
    def from_message(cls, message: Message, lines: int = 2) -> "ReplyQuote":
        return cls.from_record(
            message.id, {"text": message.text, "username": message.author_name}, lines
        )

    def render(self) -> str:
        return f"{self.author_name}: {self.snippet}{' …' if self.truncated else ''}"


# ── Feed events ──────────────────────────────────────────────────────────────

class FeedEvent(BaseModel):
    """One child mutation delivered by a feed subscription."""
    event_type: Literal["added", "changed"]
    key: str
    value: Any = None


class NamedEntry(BaseModel):
    """Room or channel listing entry."""
    id: str
    name: str
    created_at: int = Field(0)
