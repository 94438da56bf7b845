"""CLI commands for managing crawl plugins on a running server."""

from pathlib import Path
from typing import Any, Dict

import click
import yaml
from rich.markup import escape
from rich.table import Table

from ..output import call_api, console, fail, print_json, short_time


def load_definition(path: str) -> Dict[str, Any]:
    """Read a plugin definition from a YAML or JSON file."""
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise click.ClickException(f"Cannot read plugin definition {path}: {e}")
    if not isinstance(data, dict):
        raise click.ClickException(f"Plugin definition {path} must be a mapping")
    return data


@click.group()
def plugins():
    """Manage crawl plugins.

    Examples:

        # List enabled plugins
        scrapeboard plugins list --enabled

        # Register a plugin from a YAML file
        scrapeboard plugins add hn.yaml

        # Queue a run right now
        scrapeboard plugins run plg_1a2b3c4d5e6f
    """


@plugins.command(name="list")
@click.option("--enabled/--disabled", default=None, help="Filter by enabled state")
@click.option("--source-type", type=click.Choice(["html", "json"]), help="Filter by source type")
@click.option("--search", "-s", help="Search name and URL")
@click.option("--format", type=click.Choice(["table", "json"]), default="table", show_default=True)
@click.pass_context
def list_plugins(ctx, enabled, source_type, search, format):
    """List registered plugins."""
    try:
        data = call_api(ctx, lambda client: client.get(
            "/plugins",
            enabled=None if enabled is None else str(enabled).lower(),
            source_type=source_type,
            q=search,
        ))
    except Exception as e:
        raise fail(e, "Failed to list plugins")

    if format == "json":
        print_json(data)
        return

    table = Table(title=f"Plugins ({data['total']})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Schedule")
    table.add_column("Enabled")
    table.add_column("Next run")
    for plugin in data["items"]:
        table.add_row(
            plugin["id"],
            plugin["name"],
            plugin["source_type"],
            plugin["schedule"],
            "[green]yes[/green]" if plugin["enabled"] else "[dim]no[/dim]",
            short_time(plugin.get("next_fire_at")),
        )
    console.print(table)


@plugins.command()
@click.argument("plugin_id")
@click.option("--format", type=click.Choice(["table", "json"]), default="table", show_default=True)
@click.pass_context
def show(ctx, plugin_id, format):
    """Show one plugin with its field rules."""
    try:
        plugin = call_api(ctx, lambda client: client.get(f"/plugins/{plugin_id}"))
    except Exception as e:
        raise fail(e, "Failed to get plugin")

    if format == "json":
        print_json(plugin)
        return

    console.print(f"[bold]{plugin['name']}[/bold] ({plugin['id']})")
    console.print(f"  Target:   {plugin['target_url']} ({plugin['source_type']})")
    console.print(f"  Schedule: {plugin['schedule']}  next run {short_time(plugin.get('next_fire_at'))}")
    console.print(f"  Enabled:  {plugin['enabled']}")
    if plugin.get("item_selector"):
        console.print(f"  Items:    {plugin['item_selector']}")

    table = Table(title="Fields")
    table.add_column("Name", style="cyan")
    table.add_column("Selector")
    table.add_column("Type")
    table.add_column("Attribute")
    for rule in plugin["fields"]:
        table.add_row(
            rule["name"],
            rule["selector"],
            rule["value_type"] + (" []" if rule.get("multiple") else ""),
            rule.get("attribute") or "-",
        )
    console.print(table)


@plugins.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def add(ctx, definition_file):
    """Register a plugin from a YAML or JSON definition file."""
    definition = load_definition(definition_file)
    try:
        plugin = call_api(ctx, lambda client: client.post("/plugins", definition))
    except Exception as e:
        raise fail(e, "Failed to create plugin")
    console.print(f"[green]Created plugin[/green] {plugin['id']} ({plugin['name']})")


@plugins.command()
@click.argument("plugin_id")
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def update(ctx, plugin_id, definition_file):
    """Replace a plugin's definition."""
    definition = load_definition(definition_file)
    try:
        plugin = call_api(ctx, lambda client: client.put(f"/plugins/{plugin_id}", definition))
    except Exception as e:
        raise fail(e, "Failed to update plugin")
    console.print(f"[green]Updated plugin[/green] {plugin['id']}")


@plugins.command()
@click.argument("plugin_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx, plugin_id, yes):
    """Delete a plugin. Its job history and records are kept."""
    if not yes:
        click.confirm(f"Delete plugin {plugin_id}?", abort=True)
    try:
        call_api(ctx, lambda client: client.delete(f"/plugins/{plugin_id}"))
    except Exception as e:
        raise fail(e, "Failed to delete plugin")
    console.print(f"[green]Deleted plugin[/green] {plugin_id}")


@plugins.command()
@click.argument("plugin_id")
@click.pass_context
def enable(ctx, plugin_id):
    """Enable scheduled runs."""
    try:
        call_api(ctx, lambda client: client.post(f"/plugins/{plugin_id}/enable"))
    except Exception as e:
        raise fail(e, "Failed to enable plugin")
    console.print(f"Plugin {plugin_id} enabled")


@plugins.command()
@click.argument("plugin_id")
@click.pass_context
def disable(ctx, plugin_id):
    """Disable scheduled runs."""
    try:
        call_api(ctx, lambda client: client.post(f"/plugins/{plugin_id}/disable"))
    except Exception as e:
        raise fail(e, "Failed to disable plugin")
    console.print(f"Plugin {plugin_id} disabled")


@plugins.command()
@click.argument("plugin_id")
@click.pass_context
def run(ctx, plugin_id):
    """Queue a high-priority run now."""
    try:
        result = call_api(ctx, lambda client: client.post(f"/plugins/{plugin_id}/run"))
    except Exception as e:
        raise fail(e, "Failed to run plugin")
    console.print(f"Queued job [cyan]{result['job_id']}[/cyan]")


@plugins.command()
@click.argument("plugin_id")
@click.option("--since", help="Only records extracted after this ISO timestamp")
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--job", "job_id", help="Only records of this job")
@click.option("--format", type=click.Choice(["table", "json"]), default="table", show_default=True)
@click.pass_context
def records(ctx, plugin_id, since, limit, job_id, format):
    """Show extracted records."""
    try:
        data = call_api(ctx, lambda client: client.get(
            f"/plugins/{plugin_id}/records", since=since, limit=limit, job=job_id
        ))
    except Exception as e:
        raise fail(e, "Failed to get records")

    if format == "json":
        print_json(data)
        return

    items = data["items"]
    if not items:
        console.print("[dim]No records[/dim]")
        return
    names = list(items[0]["fields"].keys())
    table = Table(title=f"Records for {plugin_id}")
    table.add_column("Extracted", style="dim")
    for name in names:
        table.add_column(name)
    for record in items:
        table.add_row(
            short_time(record["extracted_at"]),
            *[escape(str(record["fields"].get(name))) for name in names],
        )
    console.print(table)
