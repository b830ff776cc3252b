"""Backfill CLI - Main Entry Point"""

import asyncio
import signal

import typer
from rich.console import Console
from rich.panel import Panel

from backfill.config.logging import get_logger
from backfill.v1.core.exceptions import DrainTimeoutError
from backfill.v1.migrations.engine import MigrationEngine

from .commands import jobs
from .utils.engine import configure, run_with_engine
from .utils.formatting import (
    create_drain_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
logger = get_logger(__name__)

# Create main Typer app
app = typer.Typer(
    name="backfill",
    help="🗄️ Backfill - Background data migration operator CLI",
    rich_markup_mode="rich",
)

# Job commands live in their own module but stay top level
app.command("schedule")(jobs.schedule)
app.command("pending")(jobs.pending)
app.command("stats")(jobs.stats)
app.command("dead")(jobs.dead)
app.command("requeue-dead")(jobs.requeue_dead)
app.command("purge-dead")(jobs.purge_dead)


@app.command("init-db")
def init_db(ctx: typer.Context):
    """🧱 Create the background migration queue table"""

    async def _init(engine: MigrationEngine):
        await engine.database.init_models()

    run_with_engine(ctx, _init)
    print_success("Queue table is ready")


@app.command("list")
def list_migrations(ctx: typer.Context):
    """📋 List migration names this deployment can execute"""

    async def _list(engine: MigrationEngine) -> list[str]:
        return sorted(engine.registry.list())

    names = run_with_engine(ctx, _list)
    if not names:
        print_warning("No migrations registered")
        return

    for name in names:
        console.print(f"• [cyan]{name}[/cyan]")


@app.command()
def drain(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Migration name"),
    ignore_delay: bool = typer.Option(
        False, "--ignore-delay", help="Run delayed jobs without waiting for them"
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", min=0, help="Give up after this many seconds"
    ),
):
    """🚰 Run every remaining job of a migration in this process"""
    print_info(f"Draining {name}" + (" (ignoring delays)" if ignore_delay else ""))

    async def _drain(engine: MigrationEngine):
        return await engine.drain_controller().drain(
            name, ignore_delay=ignore_delay, timeout=timeout
        )

    try:
        report = run_with_engine(ctx, _drain)
    except DrainTimeoutError as e:
        print_error(e.message)
        raise typer.Exit(1) from None

    console.print(create_drain_panel(report))
    if report.dead:
        print_warning(f"{report.dead} jobs were dead-lettered, see: backfill dead {name}")


@app.command()
def worker(
    ctx: typer.Context,
    once: bool = typer.Option(
        False, "--once", help="Process one batch of eligible jobs and exit"
    ),
):
    """⚙️ Run a background migration worker"""

    async def _work(engine: MigrationEngine) -> int:
        migration_worker = engine.worker()
        if once:
            return await migration_worker.run_once()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(
                    sig, lambda: asyncio.create_task(migration_worker.stop())
                )
            except NotImplementedError:
                logger.warning("Signal handling not supported", signal=sig.name)

        await migration_worker.start()
        return 0

    processed = run_with_engine(ctx, _work)
    if once:
        print_success(f"Processed {processed} jobs")


@app.command()
def status(ctx: typer.Context):
    """📊 Check database connectivity and queue depth"""
    settings = ctx.obj["settings"]

    async def _status(engine: MigrationEngine):
        async with engine.database.SessionLocal() as session:
            return await engine.queue.stats(session)

    try:
        queue_stats = run_with_engine(ctx, _status)
    except Exception as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the database is reachable and initialized:\n"
                f"[cyan]backfill init-db[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    pending = sum(queue_stats.pending_by_name.values())
    dead = sum(queue_stats.dead_by_name.values())
    console.print(
        Panel(
            f"🚀 [green]Connected Successfully![/green]\n\n"
            f"• Environment: [yellow]{settings.environment}[/yellow]\n"
            f"• Pending jobs: [cyan]{pending}[/cyan]\n"
            f"• Dead jobs: [red]{dead}[/red]",
            title="System Status",
            border_style="green",
        )
    )


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"🗄️ [bold cyan]Backfill CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.callback()
def main(
    ctx: typer.Context,
    database_url: str | None = typer.Option(
        None, "--database-url", help="Override DATABASE_URL for this invocation"
    ),
):
    """
    🗄️ Backfill CLI - Background data migrations

    Schedule migration jobs, watch what is still pending and drain a
    migration before cleaning up its source data.
    """
    configure(ctx, database_url)


if __name__ == "__main__":
    app()
