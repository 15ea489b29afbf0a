"""Work command implementation."""

from typing import Optional

import typer
from rich.console import Console

from ticketflow.core.context import RuntimeContext
from ticketflow.workflow.worker import Worker

console = Console()


def command(
    once: bool = typer.Option(False, "--once", help="Run a single job and exit"),
    max_jobs: Optional[int] = typer.Option(None, "--max-jobs", help="Stop after this many jobs"),
    eager: bool = typer.Option(False, "--eager", help="Ignore dispatch delays"),
    daemon: bool = typer.Option(False, "--daemon", help="Keep polling when the queue is empty"),
):
    """Process queued stage jobs.

    By default the worker stops once the queue is empty, waiting for delayed
    jobs to become due.
    """
    runtime = RuntimeContext()
    stats = Worker(runtime).run(
        stop_when_empty=not daemon,
        max_jobs=1 if once else max_jobs,
        eager=eager,
    )

    console.print("\n[bold]Worker Summary:[/bold]")
    console.print(f"  Processed: {stats.processed}")
    console.print(f"  ✓ Succeeded: [green]{stats.succeeded}[/green]")
    if stats.released:
        console.print(f"  ↻ Retried: [yellow]{stats.released}[/yellow]")
    if stats.failed:
        console.print(f"  ✗ Failed: [red]{stats.failed}[/red]")
        for error in stats.errors[-5:]:
            console.print(f"    [dim]{error}[/dim]")
        console.print("[yellow]Hint:[/yellow] Inspect failures with 'ticketflow bundle TICKET'")
        raise typer.Exit(code=1)
