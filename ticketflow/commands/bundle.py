"""Bundle command implementation."""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ticketflow.core.context import RuntimeContext
from ticketflow.workflow.models import FailureBundle

console = Console()


def command(
    ticket: str = typer.Argument(..., help="Ticket ID or external key"),
    path: Optional[str] = typer.Option(None, "--path", help="Specific bundle path (default: latest)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the bundle JSON to this file"),
):
    """Show or save the failure bundle captured for a ticket."""
    runtime = RuntimeContext()
    record = runtime.repository.find_ticket(ticket)
    if record is None:
        console.print(f"[red]ERROR:[/red] Ticket not found: {ticket}")
        raise typer.Exit(code=1)

    bundle_path = path or runtime.collector.latest_bundle_path(record)
    data = runtime.collector.load_bundle(bundle_path) if bundle_path else None
    if data is None:
        console.print(f"[red]ERROR:[/red] No failure bundle found for {record.external_key}")
        workflow = runtime.repository.get_workflow(record.id)
        for failure in (workflow.meta.get("failures", []) if workflow else []):
            console.print(f"  - {failure.get('captured_at')}: {failure.get('message', '')[:80]}")
        raise typer.Exit(code=1)

    if output:
        output.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        console.print(f"[green]✓[/green] Failure bundle saved to: {output}")

    bundle = FailureBundle.from_dict(data)
    table = Table(title=f"Failure bundle: {bundle_path}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Version", bundle.version)
    table.add_row("Timestamp", bundle.timestamp)
    table.add_row("Job", bundle.job)
    table.add_row("Kind", bundle.error_kind)
    table.add_row("Exception", str(bundle.exception.get("class", "unknown")))
    table.add_row("Message", bundle.message[:120])
    console.print(table)

    suggestions = bundle.ranked_suggestions()
    if suggestions:
        console.print("\n[bold]Repair suggestions:[/bold]")
        for suggestion in suggestions:
            console.print(f"  [{suggestion.priority.value}] {suggestion.type}: {suggestion.action}")
