from __future__ import annotations

import json
import os
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from mcp.types import CallToolResult, TextContent

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class ErrorCode(StrEnum):
    SESSION_UNAVAILABLE = "SESSION_UNAVAILABLE"
    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def env_int(name: str, *, default: int, min_value: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as e:
            raise ValueError(f"{name} must be an int") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}")
    return value


def env_str(name: str, *, default: str) -> str:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def iso_timestamp(timestamp_ms: int) -> str:
    """Render a Matrix origin_server_ts (ms since epoch) as ISO-8601 UTC."""
    seconds, millis = divmod(int(timestamp_ms), 1000)
    dt = datetime.fromtimestamp(seconds, tz=UTC) + timedelta(milliseconds=millis)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_timestamp(value: str) -> int | None:
    """Parse an ISO-8601 date or datetime to ms since epoch. Naive values are taken as UTC."""
    try:
        dt = datetime.fromisoformat(value.strip())
    except (AttributeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def tool_ok(*, structured: dict[str, Any], text: str | None = None) -> CallToolResult:
    # MCP clients that ignore structuredContent still get the full JSON object as text.
    return CallToolResult(
        content=[TextContent(type="text", text=json_dumps(structured) if text is None else text)],
        structuredContent=structured,
    )


def tool_error(
    *,
    code: ErrorCode,
    message: str,
    structured: dict[str, Any] | None = None,
) -> CallToolResult:
    payload: dict[str, Any] = {"error": {"code": str(code), "message": message}}
    if structured:
        payload.update(structured)
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        structuredContent=payload,
        isError=True,
    )
