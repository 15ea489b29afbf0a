"""Retry command implementation."""

import typer
from rich.console import Console

from ticketflow.core.context import RuntimeContext
from ticketflow.workflow.errors import InvalidTransition, RetryLimitExceeded

console = Console()


def command(ticket: str = typer.Argument(..., help="Ticket ID or external key")):
    """Restart a failed workflow from the stage it failed in."""
    runtime = RuntimeContext()
    record = runtime.repository.find_ticket(ticket)
    if record is None or runtime.repository.get_workflow(record.id) is None:
        console.print(f"[red]ERROR:[/red] No workflow found for ticket: {ticket}")
        raise typer.Exit(code=1)

    try:
        workflow = runtime.machine.retry_workflow(record.id)
    except InvalidTransition as e:
        console.print(f"[red]ERROR:[/red] {e}")
        console.print("[yellow]Hint:[/yellow] Only failed, non-cancelled workflows can be retried")
        raise typer.Exit(code=1)
    except RetryLimitExceeded as e:
        console.print(f"[red]ERROR:[/red] {e}")
        console.print("[yellow]Hint:[/yellow] Use 'ticketflow ingest --force' to restart from scratch")
        raise typer.Exit(code=1)

    console.print(
        f"[green]✓[/green] Workflow for {record.external_key} resumed at "
        f"[bold]{workflow.state.value}[/bold] (retry {workflow.retries})"
    )
