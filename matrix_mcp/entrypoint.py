from __future__ import annotations

import logging
import sys

import click
from dotenv import find_dotenv, load_dotenv

from matrix_mcp.cli import cli as cli_group
from matrix_mcp.common import env_str


def configure_logging() -> None:
    # stdout carries the MCP stdio protocol; logs must go to stderr.
    level = env_str("MATRIX_MCP_LOG_LEVEL", default="WARNING").upper()
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context) -> None:
    """Matrix MCP server (stdio) and administrative CLI."""
    load_dotenv(find_dotenv(usecwd=True))
    configure_logging()
    if ctx.invoked_subcommand is None:
        from matrix_mcp.server import main as server_main

        server_main()


main.add_command(cli_group, name="cli")
