"""CLI command for previewing a plugin definition locally."""

import asyncio
from pathlib import Path

import click
from rich.markup import escape
from rich.table import Table

from ...core.extraction import ExtractionEngine
from ...core.fetcher import Fetcher
from ...core.registry import PluginRegistry
from ..output import console, fail, print_json
from .plugins import load_definition


async def _fetch(url: str, headers, timeout) -> str:
    async with Fetcher() as fetcher:
        return await fetcher.fetch(url, headers=headers, timeout=timeout)


@click.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--content",
    "content_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Use this saved page instead of fetching the target URL",
)
@click.option("--format", type=click.Choice(["table", "json"]), default="table", show_default=True)
def preview(definition_file, content_file, format):
    """Run a plugin's extraction once without a server and without storing anything."""
    definition = load_definition(definition_file)
    try:
        draft = PluginRegistry().validate(definition)
        if content_file:
            content = Path(content_file).read_text(encoding="utf-8", errors="replace")
        else:
            content = asyncio.run(_fetch(draft.target_url, draft.headers, draft.fetch_timeout))
        rows, missing = ExtractionEngine().extract_fields(
            content, draft.fields, draft.source_type, draft.item_selector
        )
    except Exception as e:
        raise fail(e, "Preview failed")

    if format == "json":
        print_json({"records": rows, "missing": missing, "items_total": len(rows)})
        return

    names = [rule.name for rule in draft.fields]
    table = Table(title=f"Preview of {draft.name} ({len(rows)} records)")
    table.add_column("#", style="dim", justify="right")
    for name in names:
        table.add_column(name)
    for index, row in enumerate(rows):
        table.add_row(str(index), *[escape(str(row.get(name))) for name in names])
    console.print(table)
    for name, reason in missing.items():
        console.print(f"[yellow]warning:[/yellow] field '{escape(name)}' matched nothing ({escape(reason)})")
