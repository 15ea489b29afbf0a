"""Status command implementation."""

import json

import typer
from rich.console import Console
from rich.table import Table

from ticketflow.core.context import RuntimeContext
from ticketflow.workflow.errors import WorkflowNotFound

console = Console()

SHOWN_META = (
    "branch",
    "failed_stage",
    "error",
    "fix_iterations",
    "repair_attempts",
    "repair_escalated",
    "review_score",
    "pr_url",
)


def command(
    ticket: str = typer.Argument(..., help="Ticket ID or external key"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw status document"),
):
    """Show the workflow status of a ticket."""
    runtime = RuntimeContext()
    record = runtime.repository.find_ticket(ticket)
    if record is None:
        console.print(f"[red]ERROR:[/red] Ticket not found: {ticket}")
        raise typer.Exit(code=1)

    try:
        status = runtime.machine.get_status(record.id)
    except WorkflowNotFound as e:
        console.print(f"[red]ERROR:[/red] {e}")
        console.print("[yellow]Hint:[/yellow] Start it with 'ticketflow ingest'")
        raise typer.Exit(code=1)

    if as_json:
        console.print_json(json.dumps(status, default=str))
        return

    table = Table(title=f"{record.external_key}: {record.title}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("State", status["current_state"])
    table.add_row("Retries", str(status["retries"]))
    table.add_row("Cancelled", "yes" if status["is_cancelled"] else "no")
    table.add_row("Plan / Patch / PR", " / ".join(
        "yes" if status[k] else "no" for k in ("has_plan", "has_patch", "has_pr")
    ))
    table.add_row("Duration", f"{status['duration_minutes']} min")
    spent = status["time_spent"]
    if spent["by_phase"]:
        phases = ", ".join(f"{phase} {seconds:g}s" for phase, seconds in spent["by_phase"].items())
        table.add_row("Time spent", f"{spent['total_seconds']:g}s ({phases})")
    table.add_row("Next states", ", ".join(status["next_possible_states"]) or "-")
    for key in SHOWN_META:
        if key in status["metadata"]:
            table.add_row(key, str(status["metadata"][key]))
    console.print(table)
