"""Main Typer application instance."""

import typer

from ticketflow.commands import bundle, cancel, ingest, init, repair, retry, stats, status, work
from ticketflow.utils.logging import configure_logging

app = typer.Typer(
    name="ticketflow",
    help="Turn tickets into reviewed pull requests through a self-healing pipeline",
    add_completion=False
)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    configure_logging(verbose)


app.command(name="init")(init.command)
app.command(name="ingest")(ingest.command)
app.command(name="work")(work.command)
app.command(name="status")(status.command)
app.command(name="stats")(stats.command)
app.command(name="retry")(retry.command)
app.command(name="cancel")(cancel.command)
app.command(name="bundle")(bundle.command)
app.command(name="repair")(repair.command)


def main():
    """Entry point for pip-installed command."""
    app()


if __name__ == "__main__":
    main()
