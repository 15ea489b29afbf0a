"""Cancel command implementation."""

import typer
from rich.console import Console

from ticketflow.core.context import RuntimeContext

console = Console()


def command(ticket: str = typer.Argument(..., help="Ticket ID or external key")):
    """Cancel a workflow; queued stages for it become no-ops."""
    runtime = RuntimeContext()
    record = runtime.repository.find_ticket(ticket)
    if record is None or runtime.repository.get_workflow(record.id) is None:
        console.print(f"[red]ERROR:[/red] No workflow found for ticket: {ticket}")
        raise typer.Exit(code=1)

    workflow = runtime.machine.cancel_workflow(record.id)
    if workflow.is_cancelled:
        console.print(
            f"[green]✓[/green] Workflow for {record.external_key} cancelled "
            f"[dim](was {workflow.meta.get('cancelled_from_state')})[/dim]"
        )
    else:
        console.print(f"[yellow]Workflow for {record.external_key} is {workflow.state.value}; nothing to cancel[/yellow]")
