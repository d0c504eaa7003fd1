"""Path helpers, push-id generation and path-segment key encoding.

The remote store addresses records by ``/``-separated paths. Some characters
cannot appear inside a path segment, so user-supplied keys (emoji reactions,
mostly) go through :func:`encode_key` on the way out and :func:`decode_key`
on the way in. Nothing outside this module and the record parsers should ever
see an encoded key.
"""

from __future__ import annotations

import secrets
import time

# Characters that may not appear in a segment; "%" is the escape itself.
_RESERVED = frozenset(".#$[]/%")

# Lexicographically ordered alphabet so push ids sort by creation time.
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


def encode_key(key: str) -> str:
    """Escape a user-supplied key for use as a single path segment."""
    if not key:
        raise ValueError("key must not be empty")
    out = []
    for ch in key:
        if ch in _RESERVED or ord(ch) < 0x20 or ord(ch) == 0x7F:
            out.append("".join(f"%{b:02X}" for b in ch.encode("utf-8")))
        else:
            out.append(ch)
    return "".join(out)


def decode_key(segment: str) -> str:
    """Reverse :func:`encode_key`.

    Raises ValueError when the escapes do not spell valid UTF-8.
    """
    if "%" not in segment:
        return segment
    raw = bytearray()
    i = 0
    while i < len(segment):
        ch = segment[i]
        if ch == "%" and _is_hex(segment[i + 1 : i + 3]):
            raw.append(int(segment[i + 1 : i + 3], 16))
            i += 3
        else:
            raw.extend(ch.encode("utf-8"))
            i += 1
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"undecodable key {segment!r}") from exc


def _is_hex(pair: str) -> bool:
    return len(pair) == 2 and all(c in "0123456789abcdefABCDEF" for c in pair)


def split_path(path: str) -> list[str]:
    """Split a path into segments, ignoring leading/trailing/double slashes."""
    return [seg for seg in path.split("/") if seg]


def join_path(*parts: str) -> str:
    """Join path fragments (each may itself contain slashes)."""
    segments: list[str] = []
    for part in parts:
        segments.extend(split_path(part))
    return "/".join(segments)


def is_descendant(path: str, ancestor: str) -> bool:
    """True if ``path`` equals ``ancestor`` or lies below it."""
    p, a = split_path(path), split_path(ancestor)
    return p[: len(a)] == a


class PushIdGenerator:
    """Creation-ordered unique keys, 20 chars, in the style of realtime stores.

    8 chars encode the millisecond timestamp; 12 random chars follow. Two ids
    generated in the same millisecond increment the random part so ordering is
    still strictly monotonic within one generator.
    """

    def __init__(self) -> None:
        self._last_ms = -1
        self._last_rand: list[int] = [0] * 12

    def __call__(self, now_ms: int | None = None) -> str:
        ms = int(time.time() * 1000) if now_ms is None else now_ms
        if ms == self._last_ms:
            for i in range(11, -1, -1):
                if self._last_rand[i] != 63:
                    self._last_rand[i] += 1
                    break
                self._last_rand[i] = 0
        else:
            self._last_rand = [secrets.randbelow(64) for _ in range(12)]
        self._last_ms = ms

        ts_chars = []
        for _ in range(8):
            ts_chars.append(PUSH_CHARS[ms % 64])
            ms //= 64
        return "".join(reversed(ts_chars)) + "".join(PUSH_CHARS[r] for r in self._last_rand)


new_push_id = PushIdGenerator()
