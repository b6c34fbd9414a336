from __future__ import annotations

import itertools
from collections.abc import Callable
from typing import Any

import pytest

from matrix_mcp.models import ROOM_MESSAGE, TimelineEvent
from matrix_mcp.session import TimelineCallback

ME = "@me:example.org"
ALICE = "@alice:example.org"
HOMESERVER = "https://matrix.example.org"
ROOM_A = "!a:example.org"
ROOM_B = "!b:example.org"


class FakeRoom:
    def __init__(self, room_id: str, name: str, *, is_direct: bool = False) -> None:
        self.room_id = room_id
        self.name = name
        self.is_direct = is_direct
        self.member_count = 2
        self.timeline: list[TimelineEvent] = []

    def get_buffered_timeline_events(self) -> list[TimelineEvent]:
        return list(self.timeline)


class FakeSession:
    """In-memory stand-in for a connected homeserver session."""

    def __init__(self, user_id: str = ME, homeserver_url: str = HOMESERVER) -> None:
        self.user_id = user_id
        self.homeserver_url = homeserver_url
        self.closed = False
        self.rooms: dict[str, FakeRoom] = {
            ROOM_A: FakeRoom(ROOM_A, "Room A"),
            ROOM_B: FakeRoom(ROOM_B, "Alice", is_direct=True),
        }
        self.timeline_callbacks: list[TimelineCallback] = []
        self.close_callbacks: list[Callable[[], None]] = []
        self.subscribe_calls = 0
        self.sent: list[tuple[str, str, str]] = []

    def get_rooms(self) -> list[FakeRoom]:
        return list(self.rooms.values())

    def get_room(self, room_id: str) -> FakeRoom | None:
        return self.rooms.get(room_id)

    def subscribe_timeline_events(self, callback: TimelineCallback) -> None:
        self.subscribe_calls += 1
        self.timeline_callbacks.append(callback)

    def unsubscribe_timeline_events(self, callback: TimelineCallback) -> None:
        self.timeline_callbacks.remove(callback)

    def subscribe_close(self, callback: Callable[[], None]) -> None:
        self.close_callbacks.append(callback)

    def unsubscribe_close(self, callback: Callable[[], None]) -> None:
        self.close_callbacks.remove(callback)

    def buffer(self, event: TimelineEvent) -> None:
        self.rooms[event.room_id].timeline.append(event)

    def emit(self, event: TimelineEvent) -> None:
        if event.room_id in self.rooms:
            self.buffer(event)
        for callback in list(self.timeline_callbacks):
            callback(event)

    async def send_message(self, room_id: str, body: str, *, msgtype: str = "m.text") -> str:
        self.sent.append((room_id, body, msgtype))
        return f"$sent{len(self.sent)}"

    async def get_profile(self, user_id: str) -> dict[str, Any]:
        return {"displayname": "Alice", "avatar_url": "mxc://example.org/alice"}

    async def get_presence(self, user_id: str) -> dict[str, Any]:
        return {"presence": "online", "last_active_ago": 1200, "currently_active": True}

    async def close(self) -> None:
        self.closed = True
        for callback in list(self.close_callbacks):
            callback()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def make_event() -> Callable[..., TimelineEvent]:
    counter = itertools.count(1)

    def _make(
        *,
        room_id: str = ROOM_A,
        sender: str = ALICE,
        body: str = "hello",
        ts: int = 1_700_000_000_000,
        event_id: str | None = None,
        type: str = ROOM_MESSAGE,
    ) -> TimelineEvent:
        return TimelineEvent(
            event_id=event_id or f"$e{next(counter)}",
            room_id=room_id,
            sender=sender,
            type=type,
            origin_server_ts=ts,
            content={"msgtype": "m.text", "body": body},
        )

    return _make


@pytest.fixture
def anyio_backend() -> str:
    # The package is built on asyncio primitives; run anyio tests on asyncio only.
    return "asyncio"
