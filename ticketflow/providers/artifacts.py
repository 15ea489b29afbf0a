"""Filesystem-backed artifact store."""

from __future__ import annotations

import logging
from pathlib import Path

from ticketflow.workflow.errors import ArtifactNotFound

logger = logging.getLogger(__name__)


class LocalArtifactStore:
    """Stores artifacts as files below a root directory.

    Paths are relative, e.g. ``artifacts/tickets/7/2026-01-31/lint_output.log``.
    Every write path is unique per ticket and timestamp, so no locking is done.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def path(self, path: str) -> Path:
        """Resolve a relative artifact path, refusing escapes from the root."""
        resolved = (self.root / path).resolve()
        if not resolved.is_relative_to(self.root.resolve()):
            raise ValueError(f"Artifact path escapes store root: {path}")
        return resolved

    def put(self, path: str, content: str | bytes) -> str:
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
        logger.debug(f"Artifact stored: {path}")
        return path

    def get(self, path: str) -> str:
        target = self.path(path)
        if not target.is_file():
            raise ArtifactNotFound(f"Artifact not found: {path}")
        return target.read_text(encoding="utf-8", errors="replace")

    def exists(self, path: str) -> bool:
        return self.path(path).is_file()
