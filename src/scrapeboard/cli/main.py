"""Main CLI entry point for Scrapeboard."""

import sys
from typing import Optional

import click
from rich.console import Console

from ..foundation.config import ConfigManager, set_config_manager
from ..foundation.errors import ScrapeboardError
from ..foundation.logging import setup_logging
from ..version import __version__
from .commands import config, jobs, logs, plugins, preview, serve, workers

console = Console(stderr=True)


def setup_cli_logging(verbose: int, log_to_file: bool = False) -> None:
    """Setup logging based on verbosity level.

    Args:
        verbose: Verbosity level (0-2)
        log_to_file: Also write the configured log file
    """
    level_map = {
        0: "WARNING",
        1: "INFO",
        2: "DEBUG",
    }
    setup_logging(level=level_map.get(verbose, "DEBUG"), log_file=None if log_to_file else "")


def handle_cli_error(error: Exception, debug: bool = False) -> int:
    """Print an error raised outside click's own handling and return the exit code."""
    if isinstance(error, ScrapeboardError):
        console.print(f"[red]Error:[/red] {error.message}")
        if error.details:
            console.print(f"Details: {error.details}")
        return 1
    if isinstance(error, click.ClickException):
        error.show()
        return error.exit_code
    if debug:
        console.print_exception()
    else:
        console.print(f"[red]Unexpected error:[/red] {error}")
        console.print("Use --verbose for more details")
    return 1


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="Configuration file path")
@click.option("--server", envvar="SCRAPEBOARD_SERVER", help="Server URL for remote commands (default: api.host/api.port)")
@click.option("--verbose", "-v", count=True, help="Increase verbosity (use -v, -vv)")
@click.option("--quiet", "-q", is_flag=True, help="Suppress output except errors")
@click.version_option(version=__version__, prog_name="scrapeboard")
@click.pass_context
def cli(ctx, config_path, server, verbose, quiet):
    """Scrapeboard - scheduled crawl plugins, a worker pool and an event log.

    `serve` runs the engine and its HTTP API. The other commands talk to a
    running server, except `preview` and `config`, which work locally.

    Examples:

        # Run the server
        scrapeboard serve --port 8080

        # Register and trigger a plugin
        scrapeboard plugins add hn.yaml
        scrapeboard plugins run plg_1a2b3c4d5e6f

        # Follow the event log
        scrapeboard logs --follow
    """
    ctx.ensure_object(dict)
    if quiet:
        verbose = 0

    config_manager = ConfigManager(config_path)
    config_manager.load_hierarchical()
    set_config_manager(config_manager)

    setup_cli_logging(verbose, log_to_file=ctx.invoked_subcommand == "serve")

    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["server"] = server
    ctx.obj["config_path"] = config_path


cli.add_command(serve)
cli.add_command(plugins)
cli.add_command(jobs)
cli.add_command(workers)
cli.add_command(logs)
cli.add_command(preview)
cli.add_command(config)


def main(args: Optional[list] = None) -> int:
    """Console script entry point.

    Args:
        args: Command line arguments (defaults to sys.argv)

    Returns:
        Exit code
    """
    if args is None:
        args = sys.argv[1:]
    try:
        result = cli.main(args=args, prog_name="scrapeboard", standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.exceptions.Abort:
        console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        return 130
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        return 130
    except Exception as e:
        debug = any(arg.startswith("-v") or arg == "--verbose" for arg in args)
        return handle_cli_error(e, debug)


if __name__ == "__main__":
    sys.exit(main())
