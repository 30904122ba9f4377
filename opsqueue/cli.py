"""opsqueue CLI - worker, operator API and queue maintenance"""

import asyncio
from typing import Any

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from opsqueue.config.settings import get_settings
from opsqueue.core.exceptions import OpsQueueException
from opsqueue.infra.database import Database
from opsqueue.jobs.store import JobStore

console = Console()

app = typer.Typer(
    name="opsqueue",
    help="Durable job worker for notifications, uploads and thumbnails",
    rich_markup_mode="rich",
    no_args_is_help=True,
)


def print_success(message: str):
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    console.print(f"[red]✗ {message}[/red]")


def create_stats_table(stats: dict[str, Any]) -> Table:
    """Jobs per queue and state"""
    states = ["available", "running", "retryable", "completed", "discarded"]
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("Queue", justify="left", style="cyan", no_wrap=True)
    for state in states:
        table.add_column(state.capitalize(), justify="right")

    for queue, counts in sorted(stats["by_queue"].items()):
        table.add_row(queue, *(str(counts.get(state, 0)) for state in states))

    table.add_section()
    table.add_row(
        "[bold]total[/bold]", *(str(stats["by_state"].get(state, 0)) for state in states)
    )
    return table


@app.command()
def run():
    """Run the job worker until SIGINT/SIGTERM"""
    from opsqueue.main import main

    main()


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Bind host (default from settings)"),
    port: int | None = typer.Option(None, help="Bind port (default from settings)"),
):
    """Serve the operator HTTP API"""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "opsqueue.api:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
    )


@app.command("init-db")
def init_db():
    """Create all tables from model metadata (development only; use alembic elsewhere)"""

    async def _create() -> None:
        database = Database(get_settings())
        try:
            await database.create_all()
        finally:
            await database.close()

    asyncio.run(_create())
    print_success("Database tables created")


@app.command()
def stats():
    """Show job counts by queue and state"""
    settings = get_settings()

    async def _stats() -> dict[str, Any]:
        database = Database(settings)
        try:
            async with database.SessionLocal() as session:
                return await JobStore(settings).stats(session)
        finally:
            await database.close()

    result = asyncio.run(_stats())
    console.print(create_stats_table(result))
    console.print(f"Queue depth: [yellow]{result['queue_depth']}[/yellow]")


@app.command()
def retry(job_id: int = typer.Argument(..., help="Job ID to make available again")):
    """Re-queue a discarded, completed or backing-off job"""
    settings = get_settings()

    async def _retry() -> str:
        database = Database(settings)
        try:
            async with database.SessionLocal() as session:
                job = await JobStore(settings).retry(session, job_id)
                await session.commit()
                return job.kind
        finally:
            await database.close()

    try:
        kind = asyncio.run(_retry())
    except OpsQueueException as e:
        print_error(e.message)
        raise typer.Exit(1)

    print_success(f"Job {job_id} ({kind}) queued for retry")


if __name__ == "__main__":
    app()
