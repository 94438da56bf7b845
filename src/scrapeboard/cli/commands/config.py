"""CLI command for managing configuration."""

import json
from pathlib import Path
from typing import Any, Dict

import click
import yaml
from rich.table import Table
from rich.tree import Tree

from ...foundation.config import ConfigManager, get_config_manager
from ..output import console, fail


@click.group()
def config():
    """Manage Scrapeboard configuration.

    Settings come from defaults, /etc/scrapeboard/config.yaml,
    ~/.scrapeboard/config.yaml, the file given with --config and
    SCRAPEBOARD_<SECTION>__<KEY> environment variables, in that order.

    Examples:

        # Show current configuration
        scrapeboard config show

        # Get a specific setting
        scrapeboard config get workers.pool_size

        # Initialize default configuration
        scrapeboard config init
    """


@config.command()
@click.option(
    "--format",
    type=click.Choice(["yaml", "json", "table"]),
    default="table",
    show_default=True,
    help="Output format"
)
@click.option("--section", help="Show only specific configuration section")
def show(format, section):
    """Show current configuration."""
    config_manager = get_config_manager()
    if section:
        config_data = config_manager.get_section(section)
        if config_data is None:
            raise click.ClickException(f"Configuration section '{section}' not found")
    else:
        config_data = config_manager.get_all_settings()

    if format == "json":
        console.print(json.dumps(config_data, indent=2, default=str))
    elif format == "yaml":
        console.print(yaml.dump(config_data, default_flow_style=False))
    elif section:
        _show_config_section(section, config_data)
    else:
        _show_config_tree(config_data)


@config.command()
@click.argument("key")
@click.option(
    "--format",
    type=click.Choice(["yaml", "json", "raw"]),
    default="raw",
    show_default=True,
    help="Output format"
)
def get(key, format):
    """Get a specific configuration value."""
    value = get_config_manager().get_setting(key)
    if value is None:
        raise click.ClickException(f"Configuration key '{key}' not found")

    if format == "json":
        console.print(json.dumps(value, indent=2, default=str))
    elif format == "yaml":
        console.print(yaml.dump({key: value}, default_flow_style=False))
    elif isinstance(value, (dict, list)):
        console.print(json.dumps(value, default=str))
    else:
        console.print(str(value))


@config.command()
@click.option(
    "--config-path",
    type=click.Path(dir_okay=False),
    help="Configuration file path (default: ~/.scrapeboard/config.yaml)"
)
@click.option("--force", is_flag=True, help="Overwrite existing configuration file")
@click.pass_context
def init(ctx, config_path, force):
    """Write a configuration file with default settings."""
    quiet = (ctx.obj or {}).get("quiet", False)
    config_manager = get_config_manager()
    config_file = Path(config_path) if config_path else config_manager.get_default_config_path()

    if config_file.exists() and not force:
        raise click.ClickException(f"Configuration file already exists: {config_file}. Use --force to overwrite.")

    try:
        created = config_manager.create_default_config(config_file)
    except Exception as e:
        raise fail(e, "Failed to initialize configuration")

    if quiet:
        console.print(str(created))
    else:
        console.print(f"[green]Default configuration created:[/green] {created}")


@config.command()
@click.option(
    "--config-path",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file to validate"
)
@click.pass_context
def validate(ctx, config_path):
    """Validate configuration."""
    try:
        if config_path:
            config_manager = ConfigManager(config_path)
            config_manager.load_from_file()
        else:
            config_manager = get_config_manager()
        result = config_manager.validate_config()
    except Exception as e:
        raise fail(e, "Failed to validate configuration")

    for warning in result["warnings"]:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    if not result["valid"]:
        console.print("[red]Configuration validation failed:[/red]")
        for error in result["errors"]:
            console.print(f"  - {error}")
        ctx.exit(1)
    console.print("[green]Configuration is valid.[/green]")


@config.command()
def path():
    """Show configuration file paths."""
    config_manager = get_config_manager()
    table = Table(title="Configuration Paths")
    table.add_column("Type", style="cyan")
    table.add_column("Path", style="green")
    table.add_column("Exists", style="yellow")

    current_path = config_manager.config_path
    if current_path:
        table.add_row("Current", str(current_path), "Yes" if current_path.exists() else "No")
    default_path = config_manager.get_default_config_path()
    table.add_row("Default", str(default_path), "Yes" if default_path.exists() else "No")
    system_path = config_manager.get_system_config_path()
    table.add_row("System", str(system_path), "Yes" if system_path.exists() else "No")
    console.print(table)


# Helper functions

def _show_config_tree(config_data: Dict[str, Any]) -> None:
    """Show configuration as a tree structure."""
    tree = Tree("Configuration")

    def add_dict_to_tree(parent_node, data):
        for key, value in data.items():
            if isinstance(value, dict):
                section_node = parent_node.add(f"[bold cyan]{key}[/bold cyan]")
                add_dict_to_tree(section_node, value)
            elif isinstance(value, str):
                parent_node.add(f'{key}: "{value}"')
            elif isinstance(value, bool):
                parent_node.add(f"{key}: [green]{value}[/green]")
            elif isinstance(value, (int, float)):
                parent_node.add(f"{key}: [yellow]{value}[/yellow]")
            else:
                parent_node.add(f"{key}: {value}")

    add_dict_to_tree(tree, config_data)
    console.print(tree)


def _show_config_section(section_name: str, config_data: Dict[str, Any]) -> None:
    """Show a specific configuration section as a table."""
    table = Table(title=f"Configuration Section: {section_name}")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Type", style="yellow")

    def add_dict_to_table(data, prefix=""):
        for key, value in data.items():
            full_key = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                add_dict_to_table(value, full_key)
            else:
                value_str = json.dumps(value) if isinstance(value, list) else str(value)
                table.add_row(full_key, value_str, type(value).__name__)

    add_dict_to_table(config_data)
    console.print(table)
