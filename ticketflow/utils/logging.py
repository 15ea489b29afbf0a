"""Log setup for the CLI."""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(name)s: %(message)s"


def configure_logging(verbose: bool = False, console: Console | None = None) -> None:
    """Route ``ticketflow`` loggers through a rich handler on stderr.

    Args:
        verbose: Log at DEBUG instead of INFO
        console: Console to render to (default: a stderr console)
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=verbose,
        markup=False,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("ticketflow")
    for existing in list(root.handlers):
        if isinstance(existing, RichHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False
