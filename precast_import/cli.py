"""Precast import CLI.

Commands:
- init: Initialize database schema
- import: Import element types from an Excel workbook (inline or via the worker queue)
- status: Show the status of an import job
- jobs: List import jobs for a project
- running: Show jobs running in this process
- enable-rollback: Allow rollback of a job's data
- terminate: Cancel a job and roll back its data if enabled
- rollback: Roll back a finished job's element types
- web serve: Run the HTTP API
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from precast_import.config import get_config
from precast_import.core.logging import configure_logging
from precast_import.core.queue import enqueue_import
from precast_import.db.connection import close_db, get_engine, get_session_factory
from precast_import.db.models import Base
from precast_import.importing.types import (
    ImportJobError,
    JobNotFoundError,
    RollbackDenied,
)
from precast_import.jobs.manager import JobManager

app = typer.Typer(
    name="precast-import",
    help="Precast element-type import jobs",
    no_args_is_help=True,
)

web_cli = typer.Typer(help="Web API")
app.add_typer(web_cli, name="web")

console = Console()


def _manager() -> JobManager:
    return JobManager.from_config(get_config(), get_session_factory())


def _run(coro):
    """Run ``coro`` and dispose the engine afterwards."""

    async def _wrapped():
        try:
            return await coro
        finally:
            await close_db()

    return asyncio.run(_wrapped())


@app.callback()
def main():
    configure_logging()


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        engine = get_engine()
        async with engine.begin() as conn:
            if drop:
                console.print("[yellow]Dropping existing tables...[/yellow]")
                await conn.run_sync(Base.metadata.drop_all)
            console.print("[green]Creating tables...[/green]")
            await conn.run_sync(Base.metadata.create_all)

    _run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command(name="import")
def import_cmd(
    file: Path = typer.Argument(..., help="Element types workbook (XLSX)"),
    project_id: int = typer.Option(..., "--project", help="Project ID"),
    batch_size: int | None = typer.Option(None, "--batch-size", help="Element types per batch (1-50)"),
    concurrent_batches: int | None = typer.Option(
        None, "--concurrent-batches", help="Concurrent batches (1-20)"
    ),
    user_name: str = typer.Option("", "--user", help="Recorded as created_by"),
    queue: bool = typer.Option(False, "--queue", help="Hand the job to the arq worker"),
):
    """Import element types from a workbook."""
    if not file.exists():
        console.print(f"[red]File not found: {file}[/red]")
        raise typer.Exit(1)

    async def _import():
        manager = _manager()
        if queue:
            size, concurrency = manager.validate_batch_settings(batch_size, concurrent_batches)
            job = await manager.create_job(project_id, str(file.resolve()), user_name)
            await enqueue_import(
                job.id, project_id, str(file.resolve()), size, concurrency, user_name
            )
            return job.id, None

        job_id = await manager.start_import(
            project_id,
            str(file.resolve()),
            batch_size=batch_size,
            concurrent_batches=concurrent_batches,
            user_name=user_name,
        )
        with console.status(f"[bold]Importing job {job_id}...[/bold]"):
            outcome = await manager.wait_for(job_id)
        return job_id, outcome

    try:
        job_id, outcome = _run(_import())
    except ImportJobError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    if outcome is None:
        console.print(f"[green]✓ Queued import job {job_id}[/green]")
        return

    color = "green" if outcome.status.value == "completed" else "yellow"
    console.print(f"[{color}]Job {job_id}: {outcome.status.value}[/{color}]")
    console.print(outcome.message)
    for error in outcome.errors[:5]:
        console.print(f"  [red]•[/red] {error}")
    if len(outcome.errors) > 5:
        console.print(f"  ... and {len(outcome.errors) - 5} more")


@app.command()
def status(job_id: int = typer.Argument(..., help="Import job ID")):
    """Show the status of an import job."""
    try:
        data = _run(_manager().get_job_status(job_id))
    except JobNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Import job {job_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key in (
        "project_id",
        "status",
        "progress",
        "total_items",
        "processed_items",
        "created_by",
        "created_at",
        "completed_at",
        "rollback_enabled",
        "result",
        "error",
    ):
        table.add_row(key, str(data.get(key)))
    console.print(table)


@app.command()
def jobs(project_id: int = typer.Option(..., "--project", help="Project ID")):
    """List import jobs of a project, newest first."""
    rows = _run(_manager().list_jobs(project_id))
    if not rows:
        console.print("[yellow]No import jobs[/yellow]")
        return

    table = Table(title=f"Import jobs for project {project_id}")
    table.add_column("ID", justify="right")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Items", justify="right")
    table.add_column("Created")
    for row in rows:
        table.add_row(
            str(row["id"]),
            row["status"],
            f"{row['progress']}%",
            f"{row['processed_items']}/{row['total_items']}",
            row["created_at"] or "",
        )
    console.print(table)


@app.command()
def running():
    """Show jobs registered in this process."""
    snapshot = _manager().list_running()
    console.print(snapshot)


@app.command(name="enable-rollback")
def enable_rollback(job_id: int = typer.Argument(..., help="Import job ID")):
    """Allow rollback of the data created by a job."""
    try:
        _run(_manager().enable_rollback(job_id))
    except JobNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Rollback enabled for job {job_id}[/green]")


@app.command()
def terminate(job_id: int = typer.Argument(..., help="Import job ID")):
    """Cancel a job and, if enabled, roll back its data."""

    async def _terminate():
        manager = _manager()
        accepted = await manager.cancel_and_rollback(job_id)
        report = None
        if accepted.rollback_task is not None:
            report = await accepted.rollback_task
        return accepted, report, manager.rollback_engine.last_errors.get(job_id)

    try:
        accepted, report, rollback_error = _run(_terminate())
    except JobNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Job {job_id} cancelled[/green]")
    if report is not None:
        console.print(report.to_dict()["message"])
    elif rollback_error:
        console.print(f"[yellow]Rollback not performed: {rollback_error}[/yellow]")
    elif not accepted.rollback_scheduled:
        console.print("[dim]Rollback not enabled; data kept[/dim]")


@app.command()
def rollback(
    project_id: int = typer.Option(..., "--project", help="Project ID"),
    job_id: int = typer.Argument(..., help="Import job ID"),
):
    """Delete every element type created by a job (gated)."""
    try:
        report = _run(_manager().rollback(job_id, project_id))
    except RollbackDenied as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    except ImportJobError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]{report.to_dict()['message']}[/green]")
    table = Table(title="Deleted records")
    table.add_column("Table", style="cyan")
    table.add_column("Rows", justify="right")
    for name, count in report.deleted.items():
        table.add_row(name, str(count))
    console.print(table)


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8001, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the FastAPI import service."""
    import uvicorn

    typer.echo(f"Starting import service on http://{host}:{port}")
    uvicorn.run("precast_import.web.app:app", host=host, port=port, reload=reload, workers=1)


if __name__ == "__main__":
    app()
