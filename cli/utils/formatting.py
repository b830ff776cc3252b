"""Rich Formatting Utilities for Operator CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from backfill.v1.migrations.schemas import (
    DrainReport,
    PendingResponse,
    QueueStatsResponse,
)

console = Console()


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_pending_panel(pending: PendingResponse) -> Panel:
    """Create formatted panel for one migration's outstanding work"""
    status = "[yellow]pending[/yellow]" if pending.has_pending else "[green]drained[/green]"
    next_run = pending.next_run_at.isoformat() if pending.next_run_at else "-"

    content = f"""
• Status: {status}
• Pending: [cyan]{pending.pending}[/cyan]
• Eligible now: [blue]{pending.eligible}[/blue]
• Next run at: [yellow]{next_run}[/yellow]
• Dead: [red]{pending.dead}[/red]
"""

    return Panel(content, title=f"Migration {pending.name}", border_style="cyan")


def create_drain_panel(report: DrainReport) -> Panel:
    """Create formatted panel for a finished drain"""
    border = "red" if report.dead else "green"

    content = f"""
• Executed: [cyan]{report.executed}[/cyan]
• Succeeded: [green]{report.succeeded}[/green]
• Retried: [yellow]{report.retried}[/yellow]
• Dead: [red]{report.dead}[/red]
• Elapsed: [blue]{report.elapsed_s:.2f}s[/blue]
"""

    return Panel(content, title=f"Drained {report.name}", border_style=border)


def create_stats_table(stats: QueueStatsResponse) -> Table:
    """Create formatted table of queue contents per migration"""
    table = Table(title="Background Migrations", box=box.ROUNDED)

    table.add_column("Migration", justify="left", style="cyan", no_wrap=True)
    table.add_column("Pending", justify="right", style="yellow")
    table.add_column("Dead", justify="right", style="red")

    names = sorted(set(stats.pending_by_name) | set(stats.dead_by_name))
    for name in names:
        table.add_row(
            name,
            str(stats.pending_by_name.get(name, 0)),
            str(stats.dead_by_name.get(name, 0)),
        )

    return table


def create_dead_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create formatted table for dead-lettered jobs"""
    table = Table(title="Dead Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Arguments", justify="left", style="white")
    table.add_column("Attempts", justify="right", style="yellow")
    table.add_column("Error", justify="left", style="red")

    for job in jobs:
        error = job.get("last_error") or "-"
        table.add_row(
            str(job.get("id", ""))[:8],  # Short ID
            str(job.get("arguments", [])),
            str(job.get("attempts", 0)),
            error[:60] + "..." if len(error) > 60 else error,
        )

    return table
