"""Resumable positions in the timeline event stream.

A cursor is the ``(event_id, timestamp_ms)`` of the last delivered message, carried over the
wire as ``"<event_id>|<timestamp_ms>"``. Ordering is by timestamp with the event id only used
to tell apart events that share a timestamp. When several new events share the cursor's
timestamp the id check cannot tell which of them were already delivered; that gap is accepted.
"""

from __future__ import annotations

import threading

from matrix_mcp.models import Cursor

_SEPARATOR = "|"


def encode_cursor(cursor: Cursor) -> str:
    return f"{cursor.event_id}{_SEPARATOR}{cursor.timestamp_ms}"


def decode_cursor(token: str | None) -> Cursor | None:
    """Parse a cursor token. Malformed tokens decode to ``None`` rather than raising."""
    if not token:
        return None
    parts = token.split(_SEPARATOR)
    if len(parts) != 2:
        return None
    event_id, raw_ts = parts
    if not event_id:
        return None
    try:
        timestamp_ms = int(raw_ts)
    except ValueError:
        return None
    if timestamp_ms < 0:
        return None
    return Cursor(event_id=event_id, timestamp_ms=timestamp_ms)


def is_eligible(event_id: str, timestamp_ms: int, cursor: Cursor | None) -> bool:
    if cursor is None:
        return True
    if timestamp_ms > cursor.timestamp_ms:
        return True
    return timestamp_ms == cursor.timestamp_ms and event_id != cursor.event_id


class CursorStore:
    """Last delivered cursor per session identity, used when a caller omits ``since``.

    In-memory only: cursors do not survive a process restart.
    """

    def __init__(self) -> None:
        self._cursors: dict[tuple[str, str], Cursor] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, homeserver_url: str) -> Cursor | None:
        with self._lock:
            return self._cursors.get((user_id, homeserver_url))

    def advance(self, user_id: str, homeserver_url: str, cursor: Cursor) -> Cursor:
        """Move the stored cursor forward; never moves it back."""
        key = (user_id, homeserver_url)
        with self._lock:
            current = self._cursors.get(key)
            if current is None or is_eligible(cursor.event_id, cursor.timestamp_ms, current):
                self._cursors[key] = cursor
                return cursor
            return current

    def clear(self) -> None:
        with self._lock:
            self._cursors.clear()
