"""Repair command implementation."""

from typing import Optional

import typer
from rich.console import Console

from ticketflow.core.context import RuntimeContext
from ticketflow.workflow.models import FailureBundle, utcnow_iso
from ticketflow.workflow.repair import MAX_ATTEMPTS

console = Console()

MANUAL_REPAIR_DELAY = 5


def command(
    ticket: str = typer.Argument(..., help="Ticket ID or external key"),
    bundle: Optional[str] = typer.Option(None, "--bundle", help="Specific bundle path (default: latest)"),
    force: bool = typer.Option(False, "--force", help="Queue an attempt even when the cap is reached"),
    reset: bool = typer.Option(False, "--reset", help="Reset the repair attempts counter first"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Queue a repair attempt for a failed ticket."""
    runtime = RuntimeContext()
    record = runtime.repository.find_ticket(ticket)
    workflow = runtime.repository.get_workflow(record.id) if record else None
    if record is None or workflow is None:
        console.print(f"[red]ERROR:[/red] No workflow found for ticket: {ticket}")
        raise typer.Exit(code=1)
    if workflow.is_cancelled:
        console.print(f"[red]ERROR:[/red] Workflow for {record.external_key} was cancelled")
        console.print("[yellow]Hint:[/yellow] Use 'ticketflow ingest --force' to restart it")
        raise typer.Exit(code=1)

    console.print(f"[bold]{record.external_key}[/bold]: {record.title}")
    console.print(
        f"[dim]State {workflow.state.value}, repair attempts "
        f"{workflow.meta.get('repair_attempts', 0)}, escalated "
        f"{'yes' if workflow.meta.get('repair_escalated') else 'no'}[/dim]"
    )

    bundle_path = bundle or runtime.collector.latest_bundle_path(record)
    data = runtime.collector.load_bundle(bundle_path) if bundle_path else None
    if data is None:
        console.print("[red]ERROR:[/red] No failure bundle found for this ticket")
        console.print("[yellow]Hint:[/yellow] A repair needs a bundle captured by a failed stage")
        raise typer.Exit(code=1)
    console.print(f"Using bundle: {bundle_path}")

    attempts = int(workflow.meta.get("repair_attempts", 0))
    if reset:
        runtime.repository.merge_workflow_meta(
            record.id, {"repair_attempts": 0, "repair_reset_at": utcnow_iso()}
        )
        attempts = 0
        console.print("[green]✓[/green] Repair attempts counter reset")
    elif attempts >= MAX_ATTEMPTS and not force:
        console.print(f"[yellow]Maximum repair attempts ({MAX_ATTEMPTS}) already reached[/yellow]")
        if yes or not typer.confirm("Force another attempt?"):
            console.print("[yellow]Hint:[/yellow] Pass --force or --reset to queue another attempt")
            raise typer.Exit(code=1)

    suggestions = FailureBundle.from_dict(data).ranked_suggestions()
    if suggestions:
        top = suggestions[0]
        console.print(f"Likely strategy: [bold]{top.type}[/bold] ({top.priority.value}) - {top.action}")

    if not yes and not typer.confirm("Proceed with repair attempt?"):
        raise typer.Exit(code=1)

    attempt = min(attempts + 1, MAX_ATTEMPTS)
    runtime.repository.merge_workflow_meta(
        record.id,
        {"repair_initiated_at": utcnow_iso(), "repair_initiated_by": "console", "repair_escalated": False},
    )
    job = runtime.dispatcher.dispatch(
        "RepairAttempt", record.id, delay=MANUAL_REPAIR_DELAY, bundle_path=bundle_path, attempt=attempt
    )
    if job is None:
        console.print("[red]ERROR:[/red] Repair could not be queued")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Repair attempt {attempt} queued (runs in {MANUAL_REPAIR_DELAY}s)")
    console.print("[dim]Run 'ticketflow work' to process it[/dim]")
