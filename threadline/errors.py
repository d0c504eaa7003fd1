"""Error kinds raised by the chat core."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for every error raised by threadline."""


class NotAuthenticated(ChatError):
    """A write was attempted without an active session."""


class PermissionDenied(ChatError):
    """The session user may not modify the target message."""


class InvalidScope(ChatError):
    """An operation needs a room/channel scope and none is selected."""


class TransientFeedError(ChatError):
    """Network or transport failure talking to the remote feed."""


class MalformedRecord(ChatError):
    """A feed payload is missing required fields or breaks a record invariant."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"malformed record {key!r}: {reason}")
        self.key = key
        self.reason = reason


class MessageNotFound(ChatError, KeyError):
    """No message with the given id exists in the current scope."""

    def __init__(self, message_id: str) -> None:
        super().__init__(message_id)
        self.message_id = message_id

    def __str__(self) -> str:
        return f"message not found: {self.message_id}"
