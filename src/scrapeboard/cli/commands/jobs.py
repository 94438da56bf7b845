"""CLI commands for inspecting and cancelling jobs."""

import click
from rich.markup import escape
from rich.table import Table

from ..output import call_api, console, fail, print_json, short_time, styled


def _progress(job) -> str:
    if job.get("items_total") is None:
        return str(job.get("items_processed") or 0)
    return f"{job.get('items_processed') or 0}/{job['items_total']}"


@click.group()
def jobs():
    """Inspect and cancel jobs.

    Examples:

        # Failed jobs of one plugin
        scrapeboard jobs list --status failed --plugin plg_1a2b3c4d5e6f

        # Cancel a queued or running job
        scrapeboard jobs cancel job_0123456789abcdef
    """


@jobs.command(name="list")
@click.option(
    "--status",
    type=click.Choice(["queued", "claimed", "running", "succeeded", "failed", "cancelled"]),
    help="Filter by state",
)
@click.option("--plugin", "plugin_id", help="Filter by plugin id")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--size", type=int, default=20, show_default=True)
@click.option("--format", type=click.Choice(["table", "json"]), default="table", show_default=True)
@click.pass_context
def list_jobs(ctx, status, plugin_id, page, size, format):
    """List jobs, newest first."""
    try:
        data = call_api(ctx, lambda client: client.get(
            "/jobs", status=status, plugin=plugin_id, page=page, size=size
        ))
    except Exception as e:
        raise fail(e, "Failed to list jobs")

    if format == "json":
        print_json(data)
        return

    table = Table(title=f"Jobs (page {data['page']}/{max(data['pages'], 1)}, {data['total']} total)")
    table.add_column("ID", style="cyan")
    table.add_column("Plugin")
    table.add_column("State")
    table.add_column("Priority")
    table.add_column("Attempt")
    table.add_column("Items")
    table.add_column("Created", style="dim")
    table.add_column("Worker")
    for job in data["items"]:
        table.add_row(
            job["id"],
            job["plugin_id"],
            styled(job["state"]),
            job["priority"],
            f"{job['attempt']}/{job['max_attempts']}",
            _progress(job),
            short_time(job["created_at"]),
            job.get("worker_id") or "-",
        )
    console.print(table)


@jobs.command()
@click.argument("job_id")
@click.option("--format", type=click.Choice(["table", "json"]), default="table", show_default=True)
@click.pass_context
def show(ctx, job_id, format):
    """Show one job."""
    try:
        job = call_api(ctx, lambda client: client.get(f"/jobs/{job_id}"))
    except Exception as e:
        raise fail(e, "Failed to get job")

    if format == "json":
        print_json(job)
        return

    table = Table(title=f"Job {job['id']}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Plugin", job["plugin_id"])
    table.add_row("State", styled(job["state"]))
    table.add_row("Trigger", job["trigger"])
    table.add_row("Priority", job["priority"])
    table.add_row("Attempt", f"{job['attempt']}/{job['max_attempts']}")
    table.add_row("Items", _progress(job))
    table.add_row("Created", short_time(job["created_at"]))
    table.add_row("Started", short_time(job.get("started_at")))
    table.add_row("Finished", short_time(job.get("finished_at")))
    if job.get("next_attempt_at"):
        table.add_row("Next attempt", short_time(job["next_attempt_at"]))
    table.add_row("Worker", job.get("worker_id") or "-")
    if job.get("error"):
        error = job["error"]
        table.add_row("Error", f"[red]{escape(error.get('type') or '')}[/red] {escape(error.get('message') or '')}")
    console.print(table)


@jobs.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx, job_id):
    """Cancel a job. Running jobs stop at their next step."""
    try:
        result = call_api(ctx, lambda client: client.post(f"/jobs/{job_id}/cancel"))
    except Exception as e:
        raise fail(e, "Failed to cancel job")
    if result["pending"]:
        console.print(f"Cancellation requested for {job_id}; the worker stops at its next step")
    else:
        console.print(f"Job {job_id} {styled('cancelled')}")
