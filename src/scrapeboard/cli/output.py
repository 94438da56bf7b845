"""Shared console helpers for CLI commands."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import click
from rich.console import Console

from ..foundation.errors import ScrapeboardError, handle_error
from .client import ApiClient

console = Console()

STATE_STYLES = {
    "queued": "cyan",
    "claimed": "blue",
    "running": "yellow",
    "succeeded": "green",
    "failed": "red",
    "cancelled": "magenta",
    "idle": "green",
    "busy": "yellow",
    "draining": "cyan",
    "offline": "red",
    "debug": "dim",
    "info": "white",
    "warning": "yellow",
    "error": "red",
}


def styled(value: Optional[str]) -> str:
    if not value:
        return "-"
    style = STATE_STYLES.get(value.lower())
    return f"[{style}]{value}[/{style}]" if style else value


def short_time(value: Optional[str]) -> str:
    """Trim an ISO timestamp to seconds for tables."""
    if not value:
        return "-"
    return value.replace("T", " ")[:19]


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def fail(error: Exception, action: str) -> click.ClickException:
    """Turn any exception into a ClickException with a one-line message."""
    if isinstance(error, click.ClickException):
        return error
    if isinstance(error, ScrapeboardError):
        return click.ClickException(f"{action}: {error.message}")
    handle_error(error)
    return click.ClickException(f"{action}: {error}")


def call_api(ctx: click.Context, operation: Callable[[ApiClient], Awaitable[Any]]) -> Any:
    """Run ``operation`` against the server selected by ``--server``."""
    server = (ctx.obj or {}).get("server")

    async def runner() -> Any:
        async with ApiClient(server) as client:
            return await operation(client)

    return asyncio.run(runner())
