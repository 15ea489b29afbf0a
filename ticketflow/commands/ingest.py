"""Ingest command implementation."""

import typer
from rich.console import Console

from ticketflow.core.context import RuntimeContext
from ticketflow.utils.path_resolver import PathResolutionError, resolve_file_argument
from ticketflow.workflow.errors import RetryLimitExceeded
from ticketflow.workflow.ingest import TicketFileError, TicketIngestor

console = Console()


def command(
    ticket_file: str = typer.Argument(..., help="Path to ticket YAML file (or a directory holding one)"),
    project: str = typer.Option(..., "--project", "-p", help="Project name from [projects.<name>]"),
    force: bool = typer.Option(False, "--force", help="Restart a failed or cancelled workflow"),
):
    """Ingest a ticket and start its workflow.

    The ticket file needs ``key`` and ``title``; ``body``,
    ``acceptance_criteria``, ``priority``, ``labels`` and ``assignee`` are
    optional. Run ``ticketflow work`` afterwards to process the queue.
    """
    try:
        path = resolve_file_argument(ticket_file)
    except PathResolutionError as e:
        console.print(f"[red]ERROR:[/red] {e}")
        raise typer.Exit(code=1)

    runtime = RuntimeContext()
    try:
        ticket, workflow = TicketIngestor(runtime).ingest(path, project, force=force)
    except (TicketFileError, ValueError) as e:
        console.print(f"[red]ERROR:[/red] {e}")
        console.print("[yellow]Hint:[/yellow] Ticket files need at least 'key' and 'title'")
        raise typer.Exit(code=1)
    except RetryLimitExceeded as e:
        console.print(f"[red]ERROR:[/red] {e}")
        console.print("[yellow]Hint:[/yellow] Use --force to restart past the retry ceiling")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Ticket [bold]{ticket.external_key}[/bold] ingested as #{ticket.id}")
    console.print(f"[dim]Workflow state: {workflow.state.value} (retries {workflow.retries})[/dim]")
    console.print(f"[dim]Data directory: {runtime.data_dir}[/dim]")
