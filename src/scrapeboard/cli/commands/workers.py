"""CLI command showing the worker pool."""

import click
from rich.panel import Panel
from rich.table import Table

from ..output import call_api, console, fail, print_json, styled


@click.command()
@click.option("--format", type=click.Choice(["table", "json"]), default="table", show_default=True)
@click.pass_context
def workers(ctx, format):
    """Show worker slots, queue depth and process metrics."""
    try:
        data = call_api(ctx, lambda client: client.get("/workers"))
    except Exception as e:
        raise fail(e, "Failed to get workers")

    if format == "json":
        print_json(data)
        return

    pool = data.get("pool", {})
    summary = (
        f"Workers: {pool.get('size', len(data['workers']))}"
        f"  Queue depth: {data['queue_depth']}"
        f"  Waiting retry: {data['waiting_retry']}"
    )
    if pool.get("elastic"):
        summary += f"  Elastic: {pool['min_workers']}-{pool['max_workers']}"
    system = data.get("system") or {}
    if "memory_usage_mb" in system:
        summary += f"\nMemory: {system['memory_usage_mb']:.1f} MB  CPU: {system.get('cpu_percent', 0):.1f}%"
    console.print(Panel(summary, title="Worker pool"))

    table = Table()
    table.add_column("Worker", style="cyan")
    table.add_column("Status")
    table.add_column("Job")
    table.add_column("Heartbeat age", justify="right")
    table.add_column("Uptime", justify="right")
    table.add_column("Done", justify="right")
    table.add_column("Failed", justify="right")
    for worker in data["workers"]:
        table.add_row(
            worker["id"],
            styled(worker["status"]),
            worker.get("current_job_id") or "-",
            f"{worker['heartbeat_age']:.1f}s",
            f"{worker['uptime']:.0f}s",
            str(worker["jobs_completed"]),
            str(worker["jobs_failed"]),
        )
    console.print(table)
