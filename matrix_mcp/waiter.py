"""Long-poll delivery of new room messages.

A wait first scans the rooms' already buffered timelines for messages newer than the cursor
and returns them straight away. Only when that finds nothing does it subscribe to live
timeline events, batching arrivals until a short quiet period passes or the timeout fires.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from enum import StrEnum

from matrix_mcp.cursor import CursorStore, decode_cursor, encode_cursor, is_eligible
from matrix_mcp.models import ROOM_MESSAGE, Cursor, InboundEvent, TimelineEvent, WaitOutcome
from matrix_mcp.session import Room, Session

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
MIN_TIMEOUT_MS = 1_000
DEBOUNCE_MS = 500


def clamp_timeout(timeout_ms: int) -> int:
    return max(int(timeout_ms), MIN_TIMEOUT_MS)


def _sort_key(event: InboundEvent) -> tuple[int, str]:
    return (event.timestamp_ms, event.event_id)


def _accepts(event: TimelineEvent, *, own_user_id: str, cursor: Cursor | None) -> bool:
    if event.type != ROOM_MESSAGE:
        return False
    if event.sender == own_user_id:
        return False
    return is_eligible(event.event_id, event.origin_server_ts, cursor)


def _inbound(event: TimelineEvent, room: Room | None) -> InboundEvent:
    return InboundEvent(
        room_id=event.room_id,
        room_name=(room.name if room is not None else "") or event.room_id,
        sender=event.sender,
        body=str(event.content.get("body") or ""),
        event_id=event.event_id,
        timestamp_ms=event.origin_server_ts,
    )


def catch_up(
    session: Session, *, cursor: Cursor | None, room_id: str | None = None
) -> list[InboundEvent]:
    """Collect buffered messages newer than ``cursor``, oldest first.

    Reads only what the session already holds; nothing is fetched from the homeserver.
    Without a cursor there is no known position to catch up from, so nothing is returned.
    """
    if cursor is None:
        return []
    if room_id is not None:
        room = session.get_room(room_id)
        rooms = [room] if room is not None else []
    else:
        rooms = session.get_rooms()

    found: dict[str, InboundEvent] = {}
    for room in rooms:
        for event in room.get_buffered_timeline_events():
            if _accepts(event, own_user_id=session.user_id, cursor=cursor):
                found.setdefault(event.event_id, _inbound(event, room))
    return sorted(found.values(), key=_sort_key)


class ListenerState(StrEnum):
    IDLE = "idle"
    COLLECTING = "collecting"
    SETTLED = "settled"


class LiveListener:
    """Waits for live room messages on one session for the duration of a single call.

    Every accepted message restarts the debounce countdown; the batch settles when the
    countdown elapses or when the overall timeout fires, whichever comes first. The session
    going away also settles the wait, with whatever was collected so far.
    """

    def __init__(
        self,
        session: Session,
        *,
        cursor: Cursor | None,
        timeout_ms: int,
        room_id: str | None = None,
        debounce_ms: int = DEBOUNCE_MS,
    ) -> None:
        self.session = session
        self.cursor = cursor
        self.room_id = room_id
        self.timeout_ms = clamp_timeout(timeout_ms)
        self.debounce_ms = debounce_ms
        self.state = ListenerState.IDLE
        self._collected: dict[str, InboundEvent] = {}
        self._done: asyncio.Future[tuple[list[InboundEvent], bool]] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._debounce: asyncio.TimerHandle | None = None
        self._timeout: asyncio.TimerHandle | None = None

    async def wait(self) -> tuple[list[InboundEvent], bool]:
        """Return ``(messages, timed_out)`` once the batch settles."""
        if self._done is not None:
            raise RuntimeError("LiveListener.wait() can only be called once")
        self._loop = asyncio.get_running_loop()
        self._done = self._loop.create_future()
        with self._subscription():
            self._timeout = self._loop.call_later(self.timeout_ms / 1000.0, self._settle, True)
            if self.session.closed:
                self._settle(False)
            return await self._done

    @contextmanager
    def _subscription(self) -> Iterator[None]:
        self.session.subscribe_timeline_events(self._on_event)
        self.session.subscribe_close(self._on_close)
        try:
            yield
        finally:
            self.session.unsubscribe_timeline_events(self._on_event)
            self.session.unsubscribe_close(self._on_close)
            self._cancel_timers()
            self.state = ListenerState.SETTLED

    def _cancel_timers(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        if self._timeout is not None:
            self._timeout.cancel()
            self._timeout = None

    def _on_event(self, event: TimelineEvent) -> None:
        try:
            self._collect(event)
        except Exception:
            # Drop the event, keep the wait alive.
            logger.warning(
                "Dropping timeline event %r", getattr(event, "event_id", None), exc_info=True
            )

    def _collect(self, event: TimelineEvent) -> None:
        if self.state is ListenerState.SETTLED or self._loop is None:
            return
        if not _accepts(event, own_user_id=self.session.user_id, cursor=self.cursor):
            return
        if self.room_id is not None and event.room_id != self.room_id:
            return
        if event.event_id in self._collected:
            return
        self._collected[event.event_id] = _inbound(event, self.session.get_room(event.room_id))
        self.state = ListenerState.COLLECTING
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = self._loop.call_later(self.debounce_ms / 1000.0, self._settle, False)

    def _on_close(self) -> None:
        logger.debug("Session for %s closed while waiting", self.session.user_id)
        self._settle(False)

    def _settle(self, timed_out: bool) -> None:
        if self._done is None or self._done.done():
            return
        self.state = ListenerState.SETTLED
        self._cancel_timers()
        messages = sorted(self._collected.values(), key=_sort_key)
        logger.debug("Wait settled: messages=%d timed_out=%s", len(messages), timed_out)
        self._done.set_result((messages, timed_out))


async def wait_for_messages(
    session: Session,
    *,
    cursor_store: CursorStore,
    room_id: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    since: str | None = None,
) -> WaitOutcome:
    """Deliver messages newer than ``since`` (or the last delivered cursor), waiting if needed.

    A supplied but malformed or empty ``since`` is treated as no cursor at all. When nothing is
    delivered, the supplied token comes back unchanged so an empty poll can be retried as is.
    """
    if since is not None:
        cursor = decode_cursor(since)
    else:
        cursor = cursor_store.get(session.user_id, session.homeserver_url)

    timed_out = False
    messages = catch_up(session, cursor=cursor, room_id=room_id)
    if not messages:
        listener = LiveListener(session, cursor=cursor, room_id=room_id, timeout_ms=timeout_ms)
        messages, timed_out = await listener.wait()

    if messages:
        last = max(messages, key=_sort_key)
        next_cursor = Cursor(event_id=last.event_id, timestamp_ms=last.timestamp_ms)
        cursor_store.advance(session.user_id, session.homeserver_url, next_cursor)
        return WaitOutcome(
            status="messages_received", messages=messages, next_cursor=encode_cursor(next_cursor)
        )

    return WaitOutcome(
        status="timeout" if timed_out else "no_messages",
        messages=[],
        next_cursor=since,
    )
