from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from matrix_mcp.cursor import CursorStore
from matrix_mcp.homeserver import connect_session
from matrix_mcp.models import RoomInfo
from matrix_mcp.render import format_message_line, render_room, render_wait_outcome
from matrix_mcp.session import Session, SessionCache, SessionError
from matrix_mcp.waiter import DEFAULT_TIMEOUT_MS, wait_for_messages

T = TypeVar("T")


@click.group()
@click.option(
    "--homeserver",
    envvar="MATRIX_HOMESERVER_URL",
    default=None,
    help="Homeserver base URL (defaults to $MATRIX_HOMESERVER_URL).",
)
@click.option(
    "--user-id",
    envvar="MATRIX_USER_ID",
    default=None,
    help="Full Matrix user id (defaults to $MATRIX_USER_ID).",
)
@click.option(
    "--access-token",
    envvar="MATRIX_ACCESS_TOKEN",
    default=None,
    help="Access token (defaults to $MATRIX_ACCESS_TOKEN).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    homeserver: str | None,
    user_id: str | None,
    access_token: str | None,
) -> None:
    """Administrative CLI for the Matrix MCP server."""
    ctx.ensure_object(dict)
    ctx.obj["homeserver"] = homeserver
    ctx.obj["user_id"] = user_id
    ctx.obj["access_token"] = access_token


def _credentials(ctx: click.Context) -> tuple[str, str, str]:
    obj = ctx.obj or {}
    missing = [
        flag
        for flag, key in (
            ("--homeserver", "homeserver"),
            ("--user-id", "user_id"),
            ("--access-token", "access_token"),
        )
        if not obj.get(key)
    ]
    if missing:
        raise click.ClickException(f"Missing credentials: {', '.join(missing)}")
    return obj["homeserver"], obj["user_id"], obj["access_token"]


def _with_session(ctx: click.Context, fn: Callable[[Session], Awaitable[T]]) -> T:
    homeserver, user_id, access_token = _credentials(ctx)

    async def _run() -> T:
        cache = SessionCache(connect_session)
        try:
            session = await cache.get_session(homeserver, user_id, access_token)
            return await fn(session)
        finally:
            await cache.close_all()

    try:
        return asyncio.run(_run())
    except SessionError as e:
        raise click.ClickException(str(e)) from e


@cli.group("rooms")
def rooms_group() -> None:
    """Room operations."""


@rooms_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_context
def rooms_list(ctx: click.Context, *, as_json: bool) -> None:
    """List joined rooms (including direct-message rooms)."""

    async def _list(session: Session) -> list[dict[str, Any]]:
        rooms = [
            RoomInfo(
                room_id=r.room_id, name=r.name, is_direct=r.is_direct, member_count=r.member_count
            )
            for r in session.get_rooms()
        ]
        rooms.sort(key=lambda r: (r.name.lower(), r.room_id))
        return [render_room(r) for r in rooms]

    rows = _with_session(ctx, _list)

    if as_json:
        click.echo(json.dumps({"rooms": rows}, ensure_ascii=False, sort_keys=True, indent=2))
        return

    click.echo(f"Rooms: {len(rows)}")
    for r in rows:
        kind = "dm" if r["isDirect"] else "room"
        click.echo(f"- {r['name']} ({r['roomId']}) {kind} members={r['memberCount']}")


@cli.command("wait")
@click.option("--room", "room_id", default=None, help="Only watch this room id.")
@click.option(
    "--timeout-ms",
    type=int,
    default=DEFAULT_TIMEOUT_MS,
    show_default=True,
    help="How long to wait (minimum 1000).",
)
@click.option("--since", default=None, help="Continuation token from a previous wait.")
@click.pass_context
def wait_command(
    ctx: click.Context, *, room_id: str | None, timeout_ms: int, since: str | None
) -> None:
    """Wait once for new messages and print the JSON result."""

    async def _wait(session: Session) -> dict[str, Any]:
        outcome = await wait_for_messages(
            session,
            cursor_store=CursorStore(),
            room_id=room_id,
            timeout_ms=timeout_ms,
            since=since,
        )
        return render_wait_outcome(outcome)

    payload = _with_session(ctx, _wait)
    click.echo(json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2))


@cli.command("watch")
@click.option("--room", "room_id", default=None, help="Only watch this room id.")
@click.option(
    "--timeout-ms",
    type=int,
    default=DEFAULT_TIMEOUT_MS,
    show_default=True,
    help="Long-poll timeout of each wait.",
)
@click.option(
    "--batches",
    type=int,
    default=0,
    show_default=True,
    help="Stop after this many message batches (0 = until Ctrl+C).",
)
@click.option("--full", is_flag=True, help="Show full message bodies instead of a preview.")
@click.pass_context
def watch_command(
    ctx: click.Context,
    *,
    room_id: str | None,
    timeout_ms: int,
    batches: int,
    full: bool,
) -> None:
    """Follow new messages in real time (like tail -f).

    Examples:

        matrix-mcp cli watch                          # All joined rooms
        matrix-mcp cli watch --room '!abc:example.org'  # One room
    """
    if batches < 0:
        raise click.ClickException("batches must be >= 0")

    async def _watch(session: Session) -> None:
        store = CursorStore()
        since: str | None = None
        received = 0
        while batches == 0 or received < batches:
            outcome = await wait_for_messages(
                session, cursor_store=store, room_id=room_id, timeout_ms=timeout_ms, since=since
            )
            since = outcome.next_cursor or since
            if not outcome.messages:
                if session.closed:
                    raise SessionError("Session was closed by the homeserver")
                continue
            received += 1
            for message in render_wait_outcome(outcome)["messages"]:
                click.echo(format_message_line(message, full=full))

    click.echo(click.style("--- Waiting for new messages (Ctrl+C to exit) ---", dim=True))
    try:
        _with_session(ctx, _watch)
    except KeyboardInterrupt:
        click.echo()
        click.echo(click.style("Stopped watching.", dim=True))
