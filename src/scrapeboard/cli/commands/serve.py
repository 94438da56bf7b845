"""CLI command that runs the engine and the HTTP API."""

import click
from aiohttp import web

from ...api import create_app
from ...core.engine import Engine
from ...foundation.config import get_config_manager
from ...foundation.logging import get_logger
from ..output import console

logger = get_logger(__name__)


@click.command()
@click.option("--host", help="Bind address (default: api.host)")
@click.option("--port", type=int, help="Port (default: api.port)")
@click.option("--workers", "pool_size", type=int, help="Worker pool size (default: workers.pool_size)")
@click.option("--database", type=click.Path(dir_okay=False), help="SQLite database path (default: storage.database_path)")
def serve(host, port, pool_size, database):
    """Run the scheduler, the worker pool and the HTTP API until interrupted."""
    config = get_config_manager()
    if pool_size is not None:
        config.set_setting("workers.pool_size", pool_size)
    host = host or config.get_setting("api.host", "127.0.0.1")
    port = port or int(config.get_setting("api.port", 8080))

    engine = Engine(config_manager=config, database_path=database)
    app = create_app(engine, manage_engine=True)

    console.print(f"[green]Scrapeboard listening on[/green] http://{host}:{port}")
    logger.info(f"Serving API on {host}:{port}")
    web.run_app(app, host=host, port=port, print=None)
