"""CLI command for reading, following and exporting the event log."""

import json
from pathlib import Path
from typing import Any, Dict

import aiohttp
import click
from rich.markup import escape

from ..output import call_api, console, fail, print_json, short_time, styled


def format_event(event: Dict[str, Any]) -> str:
    source = event["source"]
    scope = source["component"]
    if source.get("plugin_id"):
        scope += f" {source['plugin_id']}"
    if source.get("job_id"):
        scope += f" {source['job_id']}"
    return (
        f"[dim]{event['seq']:>6} {short_time(event['timestamp'])}[/dim] "
        f"{styled(event['level'].upper())} [cyan]{escape(scope)}[/cyan] {escape(event['message'])}"
    )


@click.command()
@click.option("--level", type=click.Choice(["debug", "info", "warning", "error"]), help="Minimum level")
@click.option("--source", help="Component name (scheduler, worker, extraction, ...)")
@click.option("--plugin", "plugin_id", help="Plugin id")
@click.option("--job", "job_id", help="Job id")
@click.option("--since", help="ISO timestamp lower bound")
@click.option("--until", help="ISO timestamp upper bound")
@click.option("--search", "-q", "text", help="Text search")
@click.option("--limit", type=int, default=100, show_default=True)
@click.option("--follow", "-f", is_flag=True, help="Keep streaming new events")
@click.option("--export", "export_format", type=click.Choice(["json", "csv"]), help="Download matching events")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="File for --export")
@click.option("--format", type=click.Choice(["text", "json"]), default="text", show_default=True)
@click.pass_context
def logs(ctx, level, source, plugin_id, job_id, since, until, text, limit, follow, export_format, output, format):
    """Show the event log.

    Examples:

        # Errors of one plugin
        scrapeboard logs --level error --plugin plg_1a2b3c4d5e6f

        # Live tail
        scrapeboard logs --follow

        # Download as CSV
        scrapeboard logs --export csv -o events.csv
    """
    params = {
        "level": level,
        "source": source,
        "plugin": plugin_id,
        "job": job_id,
        "since": since,
        "until": until,
        "q": text,
    }

    if export_format:
        try:
            body = call_api(ctx, lambda client: client.get("/logs/export", format=export_format, **params))
        except Exception as e:
            raise fail(e, "Failed to export logs")
        if not isinstance(body, str):
            body = json.dumps(body, indent=2)
        if output:
            Path(output).write_text(body, encoding="utf-8")
            console.print(f"[green]Exported logs to[/green] {output}")
        else:
            click.echo(body)
        return

    if follow:
        try:
            call_api(ctx, lambda client: _follow(client, params, format))
        except KeyboardInterrupt:
            return
        except Exception as e:
            raise fail(e, "Log stream failed")
        return

    try:
        data = call_api(ctx, lambda client: client.get("/logs", limit=limit, **params))
    except Exception as e:
        raise fail(e, "Failed to get logs")

    if format == "json":
        print_json(data)
        return
    for event in data["items"]:
        console.print(format_event(event))


async def _follow(client, params: Dict[str, Any], fmt: str) -> None:
    ws = await client.ws_connect("/logs/stream", **params)
    try:
        async for message in ws:
            if message.type != aiohttp.WSMsgType.TEXT:
                break
            event = json.loads(message.data)
            if fmt == "json":
                click.echo(message.data)
            else:
                console.print(format_event(event))
    finally:
        await ws.close()
