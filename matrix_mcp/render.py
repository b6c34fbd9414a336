from __future__ import annotations

from typing import Any

from matrix_mcp.common import iso_timestamp
from matrix_mcp.models import InboundEvent, RoomInfo, TimelineEvent, WaitOutcome


def render_message(message: InboundEvent) -> dict[str, Any]:
    return {
        "room": message.room_name,
        "roomId": message.room_id,
        "sender": message.sender,
        "body": message.body,
        "eventId": message.event_id,
        "timestamp": iso_timestamp(message.timestamp_ms),
    }


def render_wait_outcome(outcome: WaitOutcome) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "status": outcome.status,
        "messageCount": len(outcome.messages),
        "messages": [render_message(m) for m in outcome.messages],
    }
    if outcome.next_cursor is not None:
        payload["since"] = outcome.next_cursor
    return payload


def render_room(room: RoomInfo) -> dict[str, Any]:
    return {
        "roomId": room.room_id,
        "name": room.name,
        "isDirect": room.is_direct,
        "memberCount": room.member_count,
    }


THREAD_REL_TYPES = ("m.thread", "io.element.thread")


def relation_ids(content: dict[str, Any]) -> dict[str, str]:
    """Reply and thread-root event ids from an event's ``m.relates_to``, when present."""
    relates_to = content.get("m.relates_to")
    if not isinstance(relates_to, dict):
        return {}
    ids: dict[str, str] = {}
    in_reply_to = relates_to.get("m.in_reply_to")
    if isinstance(in_reply_to, dict) and in_reply_to.get("event_id"):
        ids["replyToEventId"] = str(in_reply_to["event_id"])
    if relates_to.get("rel_type") in THREAD_REL_TYPES and relates_to.get("event_id"):
        ids["threadRootEventId"] = str(relates_to["event_id"])
    return ids


def render_timeline_message(event: TimelineEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "eventId": event.event_id,
        "sender": event.sender,
        "msgtype": str(event.content.get("msgtype") or ""),
        "body": str(event.content.get("body") or ""),
        "timestamp": iso_timestamp(event.origin_server_ts),
    }
    payload.update(relation_ids(event.content))
    return payload


def format_message_line(message: dict[str, Any], *, full: bool = False) -> str:
    """One-line console rendering of a wire message (as produced by ``render_message``)."""
    body = str(message.get("body") or "")
    if not full:
        lines = body.splitlines()
        body = lines[0][:80] if lines else ""
    return f"[{message['timestamp']}] {message['room']} <{message['sender']}> {body}"
