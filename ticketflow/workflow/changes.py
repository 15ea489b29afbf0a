"""Applying AI-proposed file changes to a ticket workspace."""

from __future__ import annotations

import difflib
import hashlib
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SNAPSHOT_SKIPPED_DIRS = {".git", "node_modules", "vendor", "__pycache__", ".venv", "venv", ".mypy_cache", ".ruff_cache", ".pytest_cache"}


def resolve_in_workspace(workspace: Path, relative: str) -> Path:
    """Resolve a workspace-relative path, refusing paths outside the workspace.

    Raises:
        ValueError: If the path escapes the workspace
    """
    workspace = Path(workspace).resolve()
    target = (workspace / relative).resolve()
    if not target.is_relative_to(workspace):
        raise ValueError(f"Path escapes workspace: {relative}")
    return target


def apply_change(workspace: Path, change: dict[str, Any]) -> tuple[str, str] | None:
    """Apply one ``{file, content}`` or ``{file, old, new}`` change.

    Returns:
        ``(before, after)`` file contents, or None when nothing was written
        (snippet not found, or no usable fields)
    """
    target = resolve_in_workspace(workspace, change["file"])
    before = target.read_text(encoding="utf-8") if target.is_file() else ""

    if "old" in change and "new" in change:
        if not change["old"] or change["old"] not in before:
            logger.warning(f"Snippet not found in {change['file']}, change skipped")
            return None
        after = before.replace(change["old"], change["new"], 1)
    elif "content" in change:
        after = change["content"]
    else:
        return None

    if after == before and target.exists():
        return None
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(after, encoding="utf-8")
    return before, after


def change_line_count(change: dict[str, Any]) -> int:
    """Lines a proposed change touches, for diff budgets."""
    if "old" in change and "new" in change:
        return len(str(change["old"]).splitlines()) + len(str(change["new"]).splitlines())
    return len(str(change.get("content", "")).splitlines())


def line_delta(before: str, after: str) -> tuple[int, int]:
    """Count ``(additions, deletions)`` between two file versions."""
    additions = deletions = 0
    for line in difflib.unified_diff(before.splitlines(), after.splitlines(), lineterm="", n=0):
        if line.startswith("+") and not line.startswith("+++"):
            additions += 1
        elif line.startswith("-") and not line.startswith("---"):
            deletions += 1
    return additions, deletions


def snapshot_workspace(workspace: Path) -> dict[str, str]:
    """Content hash of every file in the workspace, keyed by relative path."""
    workspace = Path(workspace)
    hashes: dict[str, str] = {}
    if not workspace.is_dir():
        return hashes
    for path in workspace.rglob("*"):
        relative = path.relative_to(workspace)
        if any(part in SNAPSHOT_SKIPPED_DIRS for part in relative.parts) or not path.is_file():
            continue
        hashes[relative.as_posix()] = hashlib.sha1(path.read_bytes()).hexdigest()
    return hashes


def changed_paths(before: dict[str, str], after: dict[str, str]) -> list[str]:
    """Paths added, removed or modified between two snapshots."""
    return sorted(
        path for path in before.keys() | after.keys() if before.get(path) != after.get(path)
    )
