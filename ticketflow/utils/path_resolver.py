"""Path resolution utilities for CLI arguments."""

from pathlib import Path
from typing import Optional

TICKET_SUFFIXES = (".yaml", ".yml")


class PathResolutionError(Exception):
    """Raised when path resolution fails."""
    pass


def resolve_file_argument(
    arg: str,
    expected_suffixes: Optional[tuple[str, ...]] = TICKET_SUFFIXES,
    arg_name: str = "ticket file"
) -> Path:
    """Resolve a file path from a CLI argument.

    Handles:
    1. Line number notation (e.g., "ticket.yaml:12" -> "ticket.yaml")
    2. Directory inference (if the dir holds exactly one file with an
       expected suffix)

    Args:
        arg: Raw argument string from CLI
        expected_suffixes: Suffixes to look for when inferring from a directory
        arg_name: Name of the argument for error messages

    Returns:
        Resolved Path object

    Raises:
        PathResolutionError: If path cannot be resolved
    """
    if ":" in arg:
        arg = arg.split(":", 1)[0]

    path = Path(arg)

    if path.is_file():
        return path

    if path.is_dir() and expected_suffixes:
        matching_files = sorted(
            f for f in path.iterdir()
            if f.is_file() and f.suffix.lower() in expected_suffixes
        )

        if not matching_files:
            raise PathResolutionError(
                f"{arg_name.capitalize()} not found: no {'/'.join(expected_suffixes)} files in directory: {path}"
            )
        if len(matching_files) > 1:
            files_list = "\n  ".join(f.name for f in matching_files)
            raise PathResolutionError(
                f"{arg_name.capitalize()} ambiguous: multiple candidates in {path}:\n  {files_list}\n"
                f"Please specify the exact file."
            )
        return matching_files[0]

    if path.is_dir():
        raise PathResolutionError(
            f"{arg_name.capitalize()} is a directory: {path}\n"
            f"Please specify the exact file."
        )

    raise PathResolutionError(f"{arg_name.capitalize()} not found: {path}")
