"""Utility modules for the ticketflow CLI."""

from ticketflow.utils.logging import configure_logging
from ticketflow.utils.path_resolver import PathResolutionError, resolve_file_argument

__all__ = [
    "PathResolutionError",
    "configure_logging",
    "resolve_file_argument",
]
