"""Stats command implementation."""

import typer
from rich.console import Console
from rich.table import Table

from ticketflow.core.context import RuntimeContext

console = Console()


def command():
    """Show aggregate workflow statistics and queue depth."""
    runtime = RuntimeContext()
    stats = runtime.machine.get_statistics()

    table = Table(title="Workflows")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Total", str(stats["total_workflows"]))
    table.add_row("Completed", f"[green]{stats['completed']}[/green]")
    table.add_row("Failed", f"[red]{stats['failed']}[/red]")
    table.add_row("In progress", str(stats["in_progress"]))
    table.add_row("Success rate", f"{stats['success_rate']}%")
    table.add_row("Avg duration", f"{stats['average_duration_minutes']} min")
    console.print(table)

    if stats["by_state"]:
        console.print("\n[bold]By state:[/bold]")
        for state, count in sorted(stats["by_state"].items()):
            console.print(f"  {state}: {count}")

    queue = runtime.queue
    console.print(
        f"\n[dim]Queue: {len(queue.pending())} pending, {len(queue.failed_jobs())} failed jobs[/dim]"
    )
