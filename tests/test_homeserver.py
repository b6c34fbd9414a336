from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest
from conftest import ALICE, HOMESERVER, ME, ROOM_A, ROOM_B

from matrix_mcp.homeserver import MatrixSession
from matrix_mcp.models import TimelineEvent
from matrix_mcp.session import CredentialsRejectedError, SessionError

INITIAL_SYNC: dict[str, Any] = {
    "next_batch": "s1",
    "rooms": {
        "join": {
            ROOM_A: {
                "summary": {"m.joined_member_count": 3},
                "state": {
                    "events": [
                        {"type": "m.room.name", "state_key": "", "content": {"name": "Room A"}}
                    ]
                },
                "timeline": {
                    "events": [
                        {
                            "type": "m.room.message",
                            "event_id": "$hist",
                            "sender": ALICE,
                            "origin_server_ts": 1000,
                            "content": {"msgtype": "m.text", "body": "earlier"},
                        }
                    ]
                },
            },
            ROOM_B: {
                "state": {
                    "events": [
                        {
                            "type": "m.room.canonical_alias",
                            "state_key": "",
                            "content": {"alias": "#alice-dm:example.org"},
                        }
                    ]
                },
                "timeline": {"events": []},
            },
        }
    },
    "account_data": {"events": [{"type": "m.direct", "content": {ALICE: [ROOM_B]}}]},
}


def _incremental(event_id: str, body: str, *, ts: int = 2000) -> dict[str, Any]:
    return {
        "next_batch": f"s-{event_id}",
        "rooms": {
            "join": {
                ROOM_A: {
                    "timeline": {
                        "events": [
                            {
                                "type": "m.room.message",
                                "event_id": event_id,
                                "sender": ALICE,
                                "origin_server_ts": ts,
                                "content": {"msgtype": "m.text", "body": body},
                            }
                        ]
                    }
                }
            }
        },
    }


class FakeHomeserver:
    def __init__(self, *, whoami: str = ME, whoami_status: int = 200) -> None:
        self.whoami = whoami
        self.whoami_status = whoami_status
        self.requests: list[httpx.Request] = []
        self.incremental: asyncio.Queue[httpx.Response] = asyncio.Queue()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/account/whoami"):
            return httpx.Response(self.whoami_status, json={"user_id": self.whoami})
        if path.endswith("/sync"):
            if "since" not in request.url.params:
                return httpx.Response(200, json=INITIAL_SYNC)
            return await self.incremental.get()
        if "/send/m.room.message/" in path:
            return httpx.Response(200, json={"event_id": "$sent"})
        if path.endswith("/status"):
            return httpx.Response(200, json={"presence": "online", "last_active_ago": 10})
        if "/profile/" in path:
            return httpx.Response(200, json={"displayname": "Alice"})
        return httpx.Response(404, json={"errcode": "M_NOT_FOUND"})


def _session(hs: FakeHomeserver) -> MatrixSession:
    return MatrixSession(
        HOMESERVER,
        ME,
        "secret-token",
        transport=httpx.MockTransport(hs.handler),
        sync_timeout_ms=1000,
        timeline_limit=10,
    )


@pytest.mark.anyio
async def test_connect_populates_rooms_from_initial_sync() -> None:
    hs = FakeHomeserver()
    session = _session(hs)
    await session.connect()
    try:
        room_a = session.get_room(ROOM_A)
        room_b = session.get_room(ROOM_B)
        assert room_a is not None and room_b is not None
        assert room_a.name == "Room A"
        assert room_a.member_count == 3
        assert room_a.is_direct is False
        assert room_b.name == "#alice-dm:example.org"
        assert room_b.is_direct is True
        assert [e.event_id for e in room_a.get_buffered_timeline_events()] == ["$hist"]
        assert hs.requests[0].headers["Authorization"] == "Bearer secret-token"
    finally:
        await session.close()


@pytest.mark.anyio
async def test_incremental_sync_buffers_then_dispatches() -> None:
    hs = FakeHomeserver()
    session = _session(hs)
    await session.connect()
    received: list[TimelineEvent] = []
    buffered_at_dispatch: list[bool] = []
    got_event = asyncio.Event()

    def on_event(event: TimelineEvent) -> None:
        room = session.get_room(event.room_id)
        assert room is not None
        buffered_at_dispatch.append(event in room.get_buffered_timeline_events())
        received.append(event)
        got_event.set()

    session.subscribe_timeline_events(on_event)
    try:
        await hs.incremental.put(httpx.Response(200, json=_incremental("$new", "hi")))
        await asyncio.wait_for(got_event.wait(), timeout=5)

        assert [e.event_id for e in received] == ["$new"]
        assert buffered_at_dispatch == [True]
        since_params = [r.url.params.get("since") for r in hs.requests if "since" in r.url.params]
        assert since_params[0] == "s1"
    finally:
        session.unsubscribe_timeline_events(on_event)
        await session.close()


@pytest.mark.anyio
async def test_failing_callback_does_not_block_others() -> None:
    hs = FakeHomeserver()
    session = _session(hs)
    await session.connect()
    got_event = asyncio.Event()

    def broken(event: TimelineEvent) -> None:
        raise RuntimeError("listener bug")

    session.subscribe_timeline_events(broken)
    session.subscribe_timeline_events(lambda event: got_event.set())
    try:
        await hs.incremental.put(httpx.Response(200, json=_incremental("$new", "hi")))
        await asyncio.wait_for(got_event.wait(), timeout=5)
    finally:
        await session.close()


@pytest.mark.anyio
async def test_rejected_credentials_during_sync_close_the_session() -> None:
    hs = FakeHomeserver()
    session = _session(hs)
    await session.connect()
    closed = asyncio.Event()
    session.subscribe_close(closed.set)
    try:
        await hs.incremental.put(httpx.Response(401, json={"errcode": "M_UNKNOWN_TOKEN"}))
        await asyncio.wait_for(closed.wait(), timeout=5)
        assert session.closed is True
    finally:
        await session.close()


@pytest.mark.anyio
async def test_whoami_mismatch_is_a_session_error() -> None:
    session = _session(FakeHomeserver(whoami="@someone-else:example.org"))
    try:
        with pytest.raises(SessionError, match="someone-else"):
            await session.connect()
    finally:
        await session.close()


@pytest.mark.anyio
async def test_unauthorized_connect_raises_credentials_error() -> None:
    session = _session(FakeHomeserver(whoami_status=401))
    try:
        with pytest.raises(CredentialsRejectedError):
            await session.connect()
    finally:
        await session.close()


@pytest.mark.anyio
async def test_unreachable_homeserver_is_a_session_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    session = MatrixSession(HOMESERVER, ME, "t", transport=httpx.MockTransport(refuse))
    try:
        with pytest.raises(SessionError, match="Cannot reach"):
            await session.connect()
    finally:
        await session.close()


@pytest.mark.anyio
async def test_send_message_puts_room_message() -> None:
    hs = FakeHomeserver()
    session = _session(hs)
    await session.connect()
    try:
        event_id = await session.send_message(ROOM_A, "hello there", msgtype="m.notice")
    finally:
        await session.close()

    assert event_id == "$sent"
    put = next(r for r in hs.requests if r.method == "PUT")
    assert put.url.path.startswith(f"/_matrix/client/v3/rooms/{ROOM_A}/send/m.room.message/")
    assert json.loads(put.content) == {"msgtype": "m.notice", "body": "hello there"}


@pytest.mark.anyio
async def test_profile_and_presence_lookups() -> None:
    hs = FakeHomeserver()
    session = _session(hs)
    await session.connect()
    try:
        profile = await session.get_profile(ALICE)
        presence = await session.get_presence(ALICE)
    finally:
        await session.close()

    assert profile["displayname"] == "Alice"
    assert presence["presence"] == "online"


def _message(event_id: str, *, ts: int = 2000) -> dict[str, Any]:
    return {
        "type": "m.room.message",
        "event_id": event_id,
        "sender": ALICE,
        "origin_server_ts": ts,
        "content": {"msgtype": "m.text", "body": event_id},
    }


@pytest.mark.anyio
async def test_malformed_events_are_skipped_and_sync_continues() -> None:
    hs = FakeHomeserver()
    session = _session(hs)
    await session.connect()
    received: list[str] = []
    got_later = asyncio.Event()

    def on_event(event: TimelineEvent) -> None:
        received.append(event.event_id)
        if event.event_id == "$later":
            got_later.set()

    session.subscribe_timeline_events(on_event)
    bad_ts = {**_message("$bad"), "origin_server_ts": "abc"}
    bad_content_ts = {**_message("$bad2"), "origin_server_ts": {"x": 1}}
    mixed = {
        "next_batch": "s2",
        "rooms": {
            "join": {
                ROOM_A: {
                    "summary": {"m.joined_member_count": None},
                    "timeline": {
                        "events": [
                            _message("$good1"),
                            bad_ts,
                            42,
                            bad_content_ts,
                            _message("$good2"),
                        ]
                    },
                }
            }
        },
    }
    try:
        await hs.incremental.put(httpx.Response(200, json=mixed))
        await hs.incremental.put(httpx.Response(200, json=_incremental("$later", "later")))
        await asyncio.wait_for(got_later.wait(), timeout=5)

        assert received == ["$good1", "$good2", "$later"]
        room_a = session.get_room(ROOM_A)
        assert room_a is not None
        assert [e.event_id for e in room_a.get_buffered_timeline_events()] == [
            "$hist",
            "$good1",
            "$good2",
            "$later",
        ]
        assert room_a.member_count == 3
        assert session.closed is False
    finally:
        await session.close()


@pytest.mark.anyio
async def test_crashed_sync_task_closes_the_session(monkeypatch) -> None:
    hs = FakeHomeserver()
    session = _session(hs)
    await session.connect()
    closed = asyncio.Event()
    session.subscribe_close(closed.set)

    def boom(data: dict[str, Any], *, dispatch: bool) -> None:
        raise RuntimeError("unexpected sync payload")

    monkeypatch.setattr(session, "_apply_sync", boom)
    try:
        await hs.incremental.put(httpx.Response(200, json=_incremental("$new", "hi")))
        await asyncio.wait_for(closed.wait(), timeout=5)
        assert session.closed is True
    finally:
        await session.close()
