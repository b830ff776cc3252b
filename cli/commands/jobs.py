"""Job Commands - Scheduling, inspection and dead letter management"""

import json
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel

from backfill.v1.core.exceptions import MigrationError
from backfill.v1.migrations.engine import MigrationEngine
from backfill.v1.migrations.schemas import DeadJobResponse, PendingResponse

from ..utils.engine import run_with_engine
from ..utils.formatting import (
    create_dead_jobs_table,
    create_pending_panel,
    create_stats_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()


def parse_argument(raw: str) -> Any:
    """Read a command line argument as JSON, falling back to a plain string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def schedule(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Migration name"),
    arguments: list[str] | None = typer.Argument(
        None, help="Arguments for perform, parsed as JSON where possible"
    ),
    delay: float = typer.Option(
        0.0, "--delay", "-d", min=0, help="Seconds before the job becomes eligible"
    ),
):
    """📥 Schedule one migration job"""
    parsed = [parse_argument(raw) for raw in arguments or []]

    async def _schedule(engine: MigrationEngine):
        if delay:
            return await engine.scheduler.schedule_in(delay, name, parsed)
        return await engine.scheduler.schedule_one(name, parsed)

    try:
        job_id = run_with_engine(ctx, _schedule)
    except MigrationError as e:
        print_error(f"Failed to schedule {name}: {e.message}")
        raise typer.Exit(1) from None

    print_success(f"Scheduled {name}{tuple(parsed)} as job {job_id}")
    if delay:
        print_info(f"Eligible in {delay:g}s")


def pending(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Migration name"),
):
    """⏳ Show outstanding work for one migration"""

    async def _pending(engine: MigrationEngine) -> PendingResponse:
        tracker = engine.tracker
        count = await tracker.count_pending(name)
        return PendingResponse(
            name=name,
            pending=count,
            eligible=await tracker.count_eligible(name),
            dead=await tracker.dead_count(name),
            has_pending=count > 0,
            next_run_at=await tracker.next_run_at(name),
        )

    console.print(create_pending_panel(run_with_engine(ctx, _pending)))


def stats(ctx: typer.Context):
    """📊 Show queued, running and dead jobs per migration"""

    async def _stats(engine: MigrationEngine):
        async with engine.database.SessionLocal() as session:
            return await engine.queue.stats(session)

    queue_stats = run_with_engine(ctx, _stats)

    if not queue_stats.total_jobs:
        console.print(
            Panel(
                "📭 [green]No background migration jobs in the queue[/green]",
                title="Background Migrations",
                border_style="green",
            )
        )
        return

    console.print(create_stats_table(queue_stats))
    by_status = ", ".join(
        f"{status}: {count}" for status, count in sorted(queue_stats.by_status.items())
    )
    console.print(f"\n📊 [cyan]{queue_stats.total_jobs}[/cyan] jobs ({by_status})")


def dead(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Migration name"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
):
    """💀 List dead-lettered jobs of a migration"""

    async def _dead(engine: MigrationEngine):
        async with engine.database.SessionLocal() as session:
            jobs = await engine.queue.list_dead(session, name, limit=limit)
        return [DeadJobResponse.model_validate(job).model_dump() for job in jobs]

    jobs = run_with_engine(ctx, _dead)

    if not jobs:
        print_success(f"No dead jobs for {name}")
        return

    console.print(create_dead_jobs_table(jobs))


def requeue_dead(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Migration name"),
):
    """🔁 Requeue dead-lettered jobs of a migration"""

    async def _requeue(engine: MigrationEngine) -> int:
        async with engine.database.SessionLocal() as session:
            return await engine.queue.requeue_dead(session, name)

    requeued = run_with_engine(ctx, _requeue)

    if requeued:
        print_success(f"Requeued {requeued} dead {name} jobs")
    else:
        print_warning(f"No dead jobs for {name}")


def purge_dead(
    ctx: typer.Context,
    older_than_days: int | None = typer.Option(
        None,
        "--older-than-days",
        min=0,
        help="Retention window, defaults to JOB_CLEANUP_AFTER_DAYS",
    ),
):
    """🧹 Delete dead-lettered jobs past the retention window"""

    async def _purge(engine: MigrationEngine) -> int:
        async with engine.database.SessionLocal() as session:
            return await engine.queue.purge_dead(session, older_than_days)

    print_success(f"Purged {run_with_engine(ctx, _purge)} dead jobs")
