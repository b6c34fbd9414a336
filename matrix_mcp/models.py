from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ROOM_MESSAGE = "m.room.message"

WaitStatus = Literal["messages_received", "timeout", "no_messages"]


@dataclass(frozen=True, slots=True)
class Cursor:
    event_id: str
    timestamp_ms: int


@dataclass(frozen=True, slots=True)
class TimelineEvent:
    event_id: str
    room_id: str
    sender: str
    type: str
    origin_server_ts: int
    content: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: dict[str, Any], *, room_id: str) -> TimelineEvent:
        content = raw.get("content")
        return cls(
            event_id=str(raw.get("event_id") or ""),
            room_id=str(raw.get("room_id") or room_id),
            sender=str(raw.get("sender") or ""),
            type=str(raw.get("type") or ""),
            origin_server_ts=int(raw.get("origin_server_ts") or 0),
            content=content if isinstance(content, dict) else {},
        )


@dataclass(frozen=True, slots=True)
class InboundEvent:
    room_id: str
    room_name: str
    sender: str
    body: str
    event_id: str
    timestamp_ms: int


@dataclass(frozen=True, slots=True)
class WaitOutcome:
    status: WaitStatus
    messages: list[InboundEvent]
    next_cursor: str | None = None


@dataclass(frozen=True, slots=True)
class RoomInfo:
    room_id: str
    name: str
    is_direct: bool
    member_count: int
