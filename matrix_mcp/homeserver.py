"""Matrix client-server API session backed by ``httpx``.

The session performs an initial sync to fill per-room timeline buffers, then keeps a background
long-poll ``/sync`` loop running. New timeline events are buffered first and then handed to
every subscribed callback, so a catch-up scan never misses an event a listener was told about.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable, Sequence
from typing import Any
from urllib.parse import quote

import httpx

from matrix_mcp.common import env_int, json_dumps
from matrix_mcp.models import TimelineEvent
from matrix_mcp.session import CredentialsRejectedError, SessionError, TimelineCallback

logger = logging.getLogger(__name__)

CLIENT_API = "/_matrix/client/v3"
INITIAL_TIMELINE_LIMIT = 50
BACKOFF_INITIAL_S = 1.0
BACKOFF_MAX_S = 30.0


def _path(*segments: str) -> str:
    return CLIENT_API + "".join("/" + quote(s, safe="") for s in segments)


def _events(container: dict[str, Any], section: str) -> list[Any]:
    block = container.get(section)
    events = block.get("events") if isinstance(block, dict) else None
    return events if isinstance(events, list) else []


class MatrixRoom:
    def __init__(self, room_id: str, *, timeline_limit: int) -> None:
        self.room_id = room_id
        self.is_direct = False
        self.member_count = 0
        self._explicit_name: str | None = None
        self._canonical_alias: str | None = None
        self._timeline: deque[TimelineEvent] = deque(maxlen=timeline_limit)

    @property
    def name(self) -> str:
        return self._explicit_name or self._canonical_alias or self.room_id

    def get_buffered_timeline_events(self) -> Sequence[TimelineEvent]:
        return list(self._timeline)

    def apply_state(self, raw: dict[str, Any]) -> None:
        content = raw.get("content") or {}
        if not isinstance(content, dict):
            return
        kind = raw.get("type")
        if kind == "m.room.name":
            self._explicit_name = str(content.get("name") or "") or None
        elif kind == "m.room.canonical_alias":
            self._canonical_alias = str(content.get("alias") or "") or None

    def append(self, event: TimelineEvent) -> None:
        self._timeline.append(event)


class MatrixSession:
    def __init__(
        self,
        homeserver_url: str,
        user_id: str,
        access_token: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sync_timeout_ms: int | None = None,
        timeline_limit: int | None = None,
    ) -> None:
        self.homeserver_url = homeserver_url.rstrip("/")
        self.user_id = user_id
        self.closed = False
        if sync_timeout_ms is None:
            sync_timeout_ms = env_int("MATRIX_MCP_SYNC_TIMEOUT_MS", default=30000, min_value=0)
        if timeline_limit is None:
            timeline_limit = env_int("MATRIX_MCP_TIMELINE_LIMIT", default=500, min_value=1)
        self._sync_timeout_ms = sync_timeout_ms
        self._timeline_limit = timeline_limit
        self._http = httpx.AsyncClient(
            base_url=self.homeserver_url,
            headers={"Authorization": f"Bearer {access_token}"},
            # Long-poll requests must outlive the server-side sync timeout.
            timeout=httpx.Timeout(10.0, read=sync_timeout_ms / 1000.0 + 15.0),
            transport=transport,
        )
        self._rooms: dict[str, MatrixRoom] = {}
        self._next_batch: str | None = None
        self._direct_ids: set[str] = set()
        self._timeline_callbacks: list[TimelineCallback] = []
        self._close_callbacks: list[Callable[[], None]] = []
        self._sync_task: asyncio.Task[None] | None = None

    async def connect(self) -> None:
        data = await self._request("GET", _path("account", "whoami"))
        whoami = str(data.get("user_id") or "")
        if whoami != self.user_id:
            raise SessionError(
                f"Access token belongs to {whoami or 'an unknown user'}, not {self.user_id}"
            )
        initial_filter = {"room": {"timeline": {"limit": INITIAL_TIMELINE_LIMIT}}}
        data = await self._request(
            "GET", _path("sync"), params={"timeout": 0, "filter": json_dumps(initial_filter)}
        )
        self._apply_sync(data, dispatch=False)
        self._sync_task = asyncio.create_task(self._sync_loop(), name=f"matrix-sync:{self.user_id}")
        self._sync_task.add_done_callback(self._on_sync_done)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            res = await self._http.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            raise SessionError(f"Cannot reach {self.homeserver_url}: {e}") from e
        if res.status_code in (401, 403):
            raise CredentialsRejectedError(
                f"Homeserver rejected credentials ({res.status_code}): {res.text}"
            )
        if res.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"{method} {path} failed with {res.status_code}: {res.text}",
                request=res.request,
                response=res,
            )
        payload = res.json()
        return payload if isinstance(payload, dict) else {}

    async def _sync_loop(self) -> None:
        backoff_s = BACKOFF_INITIAL_S
        while not self.closed:
            params: dict[str, Any] = {"timeout": self._sync_timeout_ms}
            if self._next_batch:
                params["since"] = self._next_batch
            try:
                data = await self._request("GET", _path("sync"), params=params)
            except CredentialsRejectedError as e:
                logger.error("Sync stopped for %s: %s", self.user_id, e)
                self._mark_closed()
                return
            except (SessionError, httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "Sync failed for %s, retrying in %.0fs: %s", self.user_id, backoff_s, e
                )
            else:
                backoff_s = BACKOFF_INITIAL_S
                self._apply_sync(data, dispatch=True)
                continue
            await asyncio.sleep(backoff_s)
            backoff_s = min(backoff_s * 2, BACKOFF_MAX_S)

    def _on_sync_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sync task for %s crashed", self.user_id, exc_info=exc)
            self._mark_closed()

    def _apply_sync(self, data: dict[str, Any], *, dispatch: bool) -> None:
        next_batch = data.get("next_batch")
        if isinstance(next_batch, str) and next_batch:
            self._next_batch = next_batch

        joined = ((data.get("rooms") or {}).get("join")) or {}
        fresh: list[TimelineEvent] = []
        for room_id, room_data in joined.items():
            if not isinstance(room_data, dict):
                logger.warning("Skipping malformed sync entry for room %s", room_id)
                continue
            room = self._rooms.get(room_id)
            if room is None:
                room = MatrixRoom(room_id, timeline_limit=self._timeline_limit)
                room.is_direct = room_id in self._direct_ids
                self._rooms[room_id] = room
            summary = room_data.get("summary")
            if isinstance(summary, dict) and isinstance(summary.get("m.joined_member_count"), int):
                room.member_count = summary["m.joined_member_count"]
            for raw in _events(room_data, "state"):
                try:
                    room.apply_state(raw)
                except Exception:
                    logger.warning("Skipping malformed state event in %s", room_id, exc_info=True)
            for raw in _events(room_data, "timeline"):
                try:
                    if "state_key" in raw:
                        room.apply_state(raw)
                    event = TimelineEvent.from_raw(raw, room_id=room_id)
                except Exception:
                    logger.warning(
                        "Skipping malformed timeline event in %s", room_id, exc_info=True
                    )
                    continue
                room.append(event)
                fresh.append(event)

        for left_id in ((data.get("rooms") or {}).get("leave")) or {}:
            self._rooms.pop(left_id, None)

        for raw in _events(data, "account_data"):
            if isinstance(raw, dict) and raw.get("type") == "m.direct":
                content = raw.get("content")
                if isinstance(content, dict):
                    self._apply_direct(content)

        if dispatch:
            for event in fresh:
                self._dispatch(event)

    def _apply_direct(self, content: dict[str, Any]) -> None:
        self._direct_ids = {
            rid for rooms in content.values() if isinstance(rooms, list) for rid in rooms
        }
        for room in self._rooms.values():
            room.is_direct = room.room_id in self._direct_ids

    def _dispatch(self, event: TimelineEvent) -> None:
        for callback in list(self._timeline_callbacks):
            try:
                callback(event)
            except Exception:
                logger.warning("Timeline callback failed for %s", event.event_id, exc_info=True)

    def _mark_closed(self) -> None:
        if self.closed:
            return
        self.closed = True
        for callback in list(self._close_callbacks):
            try:
                callback()
            except Exception:
                logger.warning("Close callback failed", exc_info=True)

    def get_rooms(self) -> list[MatrixRoom]:
        return list(self._rooms.values())

    def get_room(self, room_id: str) -> MatrixRoom | None:
        return self._rooms.get(room_id)

    def subscribe_timeline_events(self, callback: TimelineCallback) -> None:
        self._timeline_callbacks.append(callback)

    def unsubscribe_timeline_events(self, callback: TimelineCallback) -> None:
        if callback in self._timeline_callbacks:
            self._timeline_callbacks.remove(callback)

    def subscribe_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def unsubscribe_close(self, callback: Callable[[], None]) -> None:
        if callback in self._close_callbacks:
            self._close_callbacks.remove(callback)

    async def send_message(self, room_id: str, body: str, *, msgtype: str = "m.text") -> str:
        txn_id = uuid.uuid4().hex
        data = await self._request(
            "PUT",
            _path("rooms", room_id, "send", "m.room.message", txn_id),
            json={"msgtype": msgtype, "body": body},
        )
        return str(data.get("event_id") or "")

    async def get_profile(self, user_id: str) -> dict[str, Any]:
        return await self._request("GET", _path("profile", user_id))

    async def get_presence(self, user_id: str) -> dict[str, Any]:
        return await self._request("GET", _path("presence", user_id, "status"))

    async def close(self) -> None:
        self._mark_closed()
        if self._sync_task is not None:
            # A finished task already reported its outcome through _on_sync_done.
            if not self._sync_task.done():
                self._sync_task.cancel()
                try:
                    await self._sync_task
                except asyncio.CancelledError:
                    pass
            self._sync_task = None
        await self._http.aclose()


async def connect_session(homeserver_url: str, user_id: str, access_token: str) -> MatrixSession:
    session = MatrixSession(homeserver_url, user_id, access_token)
    try:
        await session.connect()
    except BaseException:
        await session.close()
        raise
    return session
