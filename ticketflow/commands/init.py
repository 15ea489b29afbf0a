"""Init command implementation."""

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax

from ticketflow.core.config import Config
from ticketflow.core.context import DATA_DIR_NAME

console = Console()


def command(
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite existing configuration"
    ),
    show_config: bool = typer.Option(
        False, "--show", help="Show default configuration without creating"
    ),
    local: bool = typer.Option(
        False, "--local", help=f"Also create a {DATA_DIR_NAME} data directory here"
    ),
):
    """Initialize ticketflow configuration (XDG-compliant).

    Writes ~/.config/ticketflow/config.toml with default providers, workflow
    limits and policies, and creates the state and cache directories. With
    --local, tickets run from this directory keep their records in
    ./.ticketflow instead of the shared state directory.
    """
    config = Config()

    if show_config:
        console.print("\n[bold]Default configuration:[/bold]\n")
        console.print(Syntax(Config.get_default_config(), "toml", theme="monokai", line_numbers=True))
        console.print(f"\n[dim]Would be created at: {config.config_file}[/dim]")
        return

    if config.exists() and not force:
        console.print(
            Panel(
                f"[yellow]Configuration already exists:[/yellow] {config.config_file}\n\n"
                f"Re-run with [bold]--force[/bold] to replace it, or [bold]--show[/bold] "
                f"to print the defaults",
                title="Config Exists",
                border_style="yellow",
            )
        )
        raise typer.Exit(code=1)

    try:
        if force and config.exists():
            config.config_file.unlink()
            console.print("[yellow]Removed existing config[/yellow]")

        config_path = config.create_default()
        dirs = config.create_directories()
        if local:
            dirs["data"] = Path.cwd() / DATA_DIR_NAME
            dirs["data"].mkdir(exist_ok=True)
    except FileExistsError as e:
        console.print(f"[red]ERROR:[/red] {e}")
        raise typer.Exit(code=1)
    except OSError as e:
        console.print(f"[red]ERROR:[/red] Failed to create configuration: {e}")
        raise typer.Exit(code=1)

    listing = "\n".join(f"  • {name.capitalize()}: {path}" for name, path in dirs.items())
    console.print(
        Panel(
            f"[green]✓[/green] Configuration created: [bold]{config_path}[/bold]\n\n"
            f"[dim]Directories:[/dim]\n{listing}\n\n"
            f"[dim]Next: add a [projects.<name>] table with repo_url, then "
            f"`ticketflow ingest <ticket.yaml> --project <name>`.[/dim]",
            title="Ticketflow Initialized",
            border_style="green",
        )
    )
