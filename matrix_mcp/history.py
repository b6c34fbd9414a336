"""Read-only queries over a room's buffered timeline."""

from __future__ import annotations

from collections import Counter

from matrix_mcp.models import ROOM_MESSAGE, TimelineEvent
from matrix_mcp.session import Room


def room_messages(room: Room) -> list[TimelineEvent]:
    """Buffered ``m.room.message`` events of ``room``, oldest first."""
    events = [e for e in room.get_buffered_timeline_events() if e.type == ROOM_MESSAGE]
    events.sort(key=lambda e: (e.origin_server_ts, e.event_id))
    return events


def messages_between(
    events: list[TimelineEvent], *, start_ms: int, end_ms: int
) -> list[TimelineEvent]:
    # Both bounds are inclusive.
    return [e for e in events if start_ms <= e.origin_server_ts <= end_ms]


def count_by_sender(events: list[TimelineEvent], *, limit: int) -> list[tuple[str, int]]:
    """Top ``limit`` senders by message count; ties keep the order senders first appeared in."""
    counts = Counter(e.sender for e in events if e.sender)
    return counts.most_common(limit)
