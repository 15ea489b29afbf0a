"""Ticket tracker bindings."""

from __future__ import annotations

import logging
from pathlib import Path

from ticketflow.workflow.models import utcnow_iso

logger = logging.getLogger(__name__)


class LocalTicketProvider:
    """Appends comments to ``<root>/<external_key>.md``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def add_comment(self, external_key: str, markdown: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"{external_key}.md"
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"\n---\n_{utcnow_iso()}_\n\n{markdown}\n")
        logger.info(f"Comment added to {external_key}")


class NullTicketProvider:
    """Discards comments, for projects without a tracker."""

    def add_comment(self, external_key: str, markdown: str) -> None:
        logger.debug(f"Comment for {external_key} discarded")
