from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from matrix_mcp.models import TimelineEvent

logger = logging.getLogger(__name__)

TimelineCallback = Callable[[TimelineEvent], None]


class SessionError(RuntimeError):
    pass


class CredentialsRejectedError(SessionError):
    pass


class Room(Protocol):
    room_id: str
    name: str
    is_direct: bool
    member_count: int

    def get_buffered_timeline_events(self) -> Sequence[TimelineEvent]: ...


class Session(Protocol):
    user_id: str
    homeserver_url: str
    closed: bool

    def get_rooms(self) -> list[Room]: ...

    def get_room(self, room_id: str) -> Room | None: ...

    def subscribe_timeline_events(self, callback: TimelineCallback) -> None: ...

    def unsubscribe_timeline_events(self, callback: TimelineCallback) -> None: ...

    def subscribe_close(self, callback: Callable[[], None]) -> None: ...

    def unsubscribe_close(self, callback: Callable[[], None]) -> None: ...

    async def send_message(self, room_id: str, body: str, *, msgtype: str) -> str: ...

    async def get_profile(self, user_id: str) -> dict[str, Any]: ...

    async def get_presence(self, user_id: str) -> dict[str, Any]: ...

    async def close(self) -> None: ...


SessionFactory = Callable[[str, str, str], Awaitable[Session]]


class SessionCache:
    """One connected session per ``(user_id, homeserver_url)``.

    Failed sessions are evicted rather than retried, so the next call reconnects fresh.
    """

    def __init__(self, factory: SessionFactory) -> None:
        self._factory = factory
        self._sessions: dict[tuple[str, str], Session] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._closing: set[asyncio.Task[None]] = set()

    async def get_session(self, homeserver_url: str, user_id: str, access_token: str) -> Session:
        key = (user_id, homeserver_url)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            session = self._sessions.get(key)
            if session is not None and not session.closed:
                return session
            if session is not None:
                self._sessions.pop(key, None)
            try:
                session = await self._factory(homeserver_url, user_id, access_token)
            except SessionError:
                raise
            except Exception as e:
                raise SessionError(f"Cannot connect to {homeserver_url} as {user_id}: {e}") from e
            self._sessions[key] = session
            logger.info("Connected session for %s on %s", user_id, homeserver_url)
            return session

    def evict(self, user_id: str, homeserver_url: str) -> None:
        session = self._sessions.pop((user_id, homeserver_url), None)
        if session is None:
            return
        logger.info("Evicted session for %s on %s", user_id, homeserver_url)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(session.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._sessions

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            try:
                await session.close()
            except Exception:
                logger.warning("Failed to close session %s", session.user_id, exc_info=True)
