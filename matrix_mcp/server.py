from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any, Literal

from mcp.server.fastmcp import FastMCP
from mcp.types import CallToolResult
from pydantic import Field

from matrix_mcp.common import (
    ErrorCode,
    env_str,
    iso_timestamp,
    parse_iso_timestamp,
    tool_error,
    tool_ok,
)
from matrix_mcp.cursor import CursorStore
from matrix_mcp.homeserver import connect_session
from matrix_mcp.history import count_by_sender, messages_between, room_messages
from matrix_mcp.models import RoomInfo
from matrix_mcp.render import render_room, render_timeline_message, render_wait_outcome
from matrix_mcp.session import Session, SessionCache, SessionError
from matrix_mcp.tool_schemas import (
    ActiveUsersOutput,
    JoinedRoomsOutput,
    MessagesByDateOutput,
    PingOutput,
    PresenceOutput,
    RoomMessagesOutput,
    SendMessageOutput,
    UserProfileOutput,
    WaitForMessagesOutput,
)
from matrix_mcp.waiter import DEFAULT_TIMEOUT_MS, wait_for_messages

logger = logging.getLogger(__name__)

SERVER_VERSION = "0.1.0"
REQUIRED_ENV = ("MATRIX_HOMESERVER_URL", "MATRIX_USER_ID", "MATRIX_ACCESS_TOKEN")
MAX_ROOM_MESSAGES = 100

sessions = SessionCache(connect_session)
# Last delivered position per user, used by wait-for-messages when `since` is omitted.
cursors = CursorStore()


@asynccontextmanager
async def _lifespan(_server: FastMCP) -> AsyncIterator[None]:
    try:
        yield
    finally:
        await sessions.close_all()


mcp = FastMCP(
    name="matrix-mcp",
    instructions=(
        "Tools for a Matrix homeserver account. Use list-joined-rooms to discover rooms, "
        "get-room-messages or get-messages-by-date to read history, identify-active-users to see "
        "who is talking, and send-message to reply. To follow new "
        "messages, call wait-for-messages in a loop and pass the returned `since` token back on "
        "the next call so nothing is delivered twice or skipped."
    ),
    lifespan=_lifespan,
)


def missing_env() -> list[str]:
    return [name for name in REQUIRED_ENV if not env_str(name, default="")]


def matrix_context() -> tuple[str, str, str]:
    """Return ``(homeserver_url, user_id, access_token)`` from the environment."""
    missing = missing_env()
    if missing:
        raise SessionError(f"Missing required environment variables: {', '.join(missing)}")
    return (
        env_str("MATRIX_HOMESERVER_URL", default=""),
        env_str("MATRIX_USER_ID", default=""),
        env_str("MATRIX_ACCESS_TOKEN", default=""),
    )


async def _connect() -> Session:
    homeserver_url, user_id, access_token = matrix_context()
    return await sessions.get_session(homeserver_url, user_id, access_token)


def _failure(action: str, e: Exception) -> CallToolResult:
    logger.error("Failed to %s: %s", action, e)
    try:
        homeserver_url, user_id, _ = matrix_context()
    except SessionError:
        pass
    else:
        sessions.evict(user_id, homeserver_url)
    code = (
        ErrorCode.SESSION_UNAVAILABLE if isinstance(e, SessionError) else ErrorCode.INTERNAL_ERROR
    )
    return tool_error(code=code, message=f"Error: Failed to {action} - {e}")


def _invalid(message: str) -> CallToolResult:
    return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=message)


def _room_not_found(room_id: str) -> CallToolResult:
    return tool_error(code=ErrorCode.ROOM_NOT_FOUND, message=f"Room not found: {room_id}")


def _validate_room_id(room_id: object) -> str | None:
    if not isinstance(room_id, str) or not room_id.startswith("!") or ":" not in room_id:
        return "roomId must look like !opaque:server"
    return None


def _validate_user_id(user_id: object) -> str | None:
    if not isinstance(user_id, str) or not user_id.startswith("@") or ":" not in user_id:
        return "userId must look like @localpart:server"
    return None


@mcp.tool(description="Health check for the Matrix MCP server.")
def ping() -> Annotated[CallToolResult, PingOutput]:
    """Health check; does not contact the homeserver."""
    return tool_ok(text="pong", structured={"ok": True, "version": SERVER_VERSION})


@mcp.tool(
    name="list-joined-rooms",
    description="List rooms the account has joined, including direct-message rooms.",
)
async def list_joined_rooms() -> Annotated[CallToolResult, JoinedRoomsOutput]:
    try:
        session = await _connect()
        rooms = [
            RoomInfo(
                room_id=r.room_id,
                name=r.name,
                is_direct=r.is_direct,
                member_count=r.member_count,
            )
            for r in session.get_rooms()
        ]
    except Exception as e:
        return _failure("list joined rooms", e)

    rooms.sort(key=lambda r: (r.name.lower(), r.room_id))
    structured_rooms = [render_room(r) for r in rooms]
    return tool_ok(structured={"rooms": structured_rooms, "count": len(structured_rooms)})


@mcp.tool(
    name="get-room-messages",
    description="Get the most recent messages the server has buffered for a room.",
)
async def get_room_messages(
    roomId: str,
    limit: int = 20,
) -> Annotated[CallToolResult, RoomMessagesOutput]:
    err = _validate_room_id(roomId)
    if err:
        return _invalid(err)
    if not isinstance(limit, int) or not 1 <= limit <= MAX_ROOM_MESSAGES:
        return _invalid(f"limit must be between 1 and {MAX_ROOM_MESSAGES}")

    try:
        session = await _connect()
        room = session.get_room(roomId)
        if room is None:
            return _room_not_found(roomId)
        events = room_messages(room)
    except Exception as e:
        return _failure("get room messages", e)

    messages = [render_timeline_message(e) for e in events[-limit:]]
    return tool_ok(
        structured={
            "roomId": room.room_id,
            "room": room.name,
            "messages": messages,
            "count": len(messages),
        }
    )


@mcp.tool(
    name="get-messages-by-date",
    description=(
        "Get buffered messages of a room sent between two ISO-8601 dates or datetimes "
        "(inclusive). Values without a timezone are taken as UTC."
    ),
)
async def get_messages_by_date(
    roomId: str,
    startDate: str,
    endDate: str,
) -> Annotated[CallToolResult, MessagesByDateOutput]:
    err = _validate_room_id(roomId)
    if err:
        return _invalid(err)
    start_ms = parse_iso_timestamp(startDate) if isinstance(startDate, str) else None
    end_ms = parse_iso_timestamp(endDate) if isinstance(endDate, str) else None
    if start_ms is None or end_ms is None:
        return _invalid("startDate and endDate must be ISO-8601 dates or datetimes")
    if start_ms > end_ms:
        return _invalid("startDate must not be after endDate")

    try:
        session = await _connect()
        room = session.get_room(roomId)
        if room is None:
            return _room_not_found(roomId)
        events = messages_between(room_messages(room), start_ms=start_ms, end_ms=end_ms)
    except Exception as e:
        return _failure("get messages by date", e)

    messages = [render_timeline_message(e) for e in events]
    return tool_ok(
        structured={
            "roomId": room.room_id,
            "room": room.name,
            "startDate": iso_timestamp(start_ms),
            "endDate": iso_timestamp(end_ms),
            "messages": messages,
            "count": len(messages),
        }
    )


@mcp.tool(
    name="identify-active-users",
    description="Rank the most active senders of a room by buffered message count.",
)
async def identify_active_users(
    roomId: str,
    limit: int = 10,
) -> Annotated[CallToolResult, ActiveUsersOutput]:
    err = _validate_room_id(roomId)
    if err:
        return _invalid(err)
    if not isinstance(limit, int) or not 1 <= limit <= MAX_ROOM_MESSAGES:
        return _invalid(f"limit must be between 1 and {MAX_ROOM_MESSAGES}")

    try:
        session = await _connect()
        room = session.get_room(roomId)
        if room is None:
            return _room_not_found(roomId)
        ranked = count_by_sender(room_messages(room), limit=limit)
    except Exception as e:
        return _failure("identify active users", e)

    users = [{"userId": user_id, "messageCount": count} for user_id, count in ranked]
    return tool_ok(
        structured={"roomId": room.room_id, "room": room.name, "users": users, "count": len(users)}
    )


@mcp.tool(name="send-message", description="Send a text message to a room.")
async def send_message(
    roomId: str,
    body: str,
    msgtype: Literal["m.text", "m.notice", "m.emote"] = "m.text",
) -> Annotated[CallToolResult, SendMessageOutput]:
    err = _validate_room_id(roomId)
    if err:
        return _invalid(err)
    if not isinstance(body, str) or not body.strip():
        return _invalid("body must be a non-empty string")

    try:
        session = await _connect()
        if session.get_room(roomId) is None:
            return _room_not_found(roomId)
        event_id = await session.send_message(roomId, body, msgtype=msgtype)
    except Exception as e:
        return _failure("send message", e)

    return tool_ok(structured={"roomId": roomId, "eventId": event_id})


@mcp.tool(name="get-user-profile", description="Get a user's display name and avatar.")
async def get_user_profile(userId: str) -> Annotated[CallToolResult, UserProfileOutput]:
    err = _validate_user_id(userId)
    if err:
        return _invalid(err)
    try:
        session = await _connect()
        profile = await session.get_profile(userId)
    except Exception as e:
        return _failure("get user profile", e)

    return tool_ok(
        structured={
            "userId": userId,
            "displayName": profile.get("displayname"),
            "avatarUrl": profile.get("avatar_url"),
        }
    )


@mcp.tool(name="get-presence", description="Get a user's presence (online/offline/unavailable).")
async def get_presence(userId: str) -> Annotated[CallToolResult, PresenceOutput]:
    err = _validate_user_id(userId)
    if err:
        return _invalid(err)
    try:
        session = await _connect()
        presence = await session.get_presence(userId)
    except Exception as e:
        return _failure("get presence", e)

    structured: dict[str, Any] = {
        "userId": userId,
        "presence": str(presence.get("presence") or "offline"),
        "lastActiveAgo": presence.get("last_active_ago"),
        "currentlyActive": presence.get("currently_active"),
        "statusMsg": presence.get("status_msg"),
    }
    return tool_ok(structured=structured)


@mcp.tool(
    name="wait-for-messages",
    description=(
        "Wait for new incoming messages in real time, including direct messages. "
        "Watches all joined rooms by default, or a specific room if roomId is provided. "
        "Returns as soon as messages arrive (with batching) or when the timeout expires. "
        "Use the returned `since` token on subsequent calls to avoid duplicates."
    ),
)
async def wait_for_messages_tool(
    roomId: Annotated[
        str | None,
        Field(description="Room ID to watch. Omit to watch all joined rooms including DMs."),
    ] = None,
    timeoutMs: Annotated[
        int,
        Field(description="How long to wait in milliseconds (default 30000, minimum 1000)."),
    ] = DEFAULT_TIMEOUT_MS,
    since: Annotated[
        str | None,
        Field(description="Continuation token from a previous wait-for-messages call."),
    ] = None,
) -> Annotated[CallToolResult, WaitForMessagesOutput]:
    """Long-poll for new room messages across joined rooms."""
    if roomId is not None:
        err = _validate_room_id(roomId)
        if err:
            return _invalid(err)
    if not isinstance(timeoutMs, int) or isinstance(timeoutMs, bool):
        return _invalid("timeoutMs must be an integer")
    if since is not None and not isinstance(since, str):
        return _invalid("since must be a string")

    try:
        session = await _connect()
        outcome = await wait_for_messages(
            session,
            cursor_store=cursors,
            room_id=roomId,
            timeout_ms=timeoutMs,
            since=since,
        )
    except Exception as e:
        return _failure("wait for messages", e)

    return tool_ok(structured=render_wait_outcome(outcome))


def main() -> None:
    missing = missing_env()
    if missing:
        logger.warning(
            "Missing required environment variables: %s. Homeserver tools will fail until "
            "they are set (in the environment or a .env file).",
            ", ".join(missing),
        )
    mcp.run(transport="stdio")
