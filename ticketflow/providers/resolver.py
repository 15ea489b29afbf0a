"""Per-project capability resolution.

Each capability maps a fixed set of binding names to factories. A project's
``providers`` table wins over the ``[providers]`` configuration, which wins
over the built-in default.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from ticketflow.providers.claude import ClaudeProvider
from ticketflow.providers.contracts import (
    AiImplementer,
    AiPlanner,
    AiReviewer,
    CommandRunner,
    EmbeddingIndexer,
    TicketProvider,
    VcsProvider,
)
from ticketflow.providers.indexer import LexicalIndexer
from ticketflow.providers.runner import LocalCommandRunner
from ticketflow.providers.tickets import LocalTicketProvider, NullTicketProvider
from ticketflow.providers.vcs import GitHubCliProvider, LocalVcsProvider
from ticketflow.workflow.errors import ProviderNotFound
from ticketflow.workflow.models import Project

logger = logging.getLogger(__name__)

Factory = Callable[["ProviderResolver"], Any]


def _claude(resolver: ProviderResolver) -> ClaudeProvider:
    config = resolver.config
    return ClaudeProvider(
        cli_command=config.get("claude.cli_command", "claude"),
        timeout=int(config.get("claude.timeout", 600)),
        cli_flags=config.get("claude.cli_flags", []),
    )


STRATEGIES: dict[str, dict[str, Factory]] = {
    "ticket_provider": {
        "local": lambda r: LocalTicketProvider(r.data_dir / "comments"),
        "none": lambda r: NullTicketProvider(),
    },
    "vcs_provider": {
        "local": lambda r: LocalVcsProvider(r.data_dir / "pulls"),
        "github": lambda r: GitHubCliProvider(cli_command=r.config.get("github.cli_command", "gh")),
    },
    "ai.planner": {"claude": _claude},
    "ai.implement": {"claude": _claude},
    "ai.review": {"claude": _claude},
    "embeddings": {"lexical": lambda r: LexicalIndexer(r.data_dir / "index")},
    "runner": {
        "local": lambda r: LocalCommandRunner(int(r.config.get("workflow.command_timeout", 300))),
    },
}

DEFAULTS = {
    "ticket_provider": "local",
    "vcs_provider": "local",
    "ai.planner": "claude",
    "ai.implement": "claude",
    "ai.review": "claude",
    "embeddings": "lexical",
    "runner": "local",
}


class ProviderResolver:
    """Resolves capability bindings for a project.

    Instances are cached per (capability, binding name).
    """

    def __init__(self, config, data_dir: Path):
        self.config = config
        self.data_dir = Path(data_dir)
        self._cache: dict[tuple[str, str], Any] = {}

    def binding_name(self, capability: str, project: Optional[Project] = None) -> str:
        if capability not in STRATEGIES:
            raise ProviderNotFound(f"Unknown capability: {capability}")
        if project and project.providers.get(capability):
            return project.providers[capability]
        return self.config.get(f"providers.{capability}") or DEFAULTS[capability]

    def resolve(self, capability: str, project: Optional[Project] = None) -> Any:
        """Return the binding for ``capability``.

        Raises:
            ProviderNotFound: If the capability or the binding name is unknown
        """
        name = self.binding_name(capability, project)
        factory = STRATEGIES[capability].get(name)
        if factory is None:
            available = ", ".join(sorted(STRATEGIES[capability]))
            raise ProviderNotFound(
                f"No '{name}' binding for {capability} (available: {available})"
            )
        key = (capability, name)
        if key not in self._cache:
            logger.debug(f"Resolved {capability} -> {name}")
            self._cache[key] = factory(self)
        return self._cache[key]

    def override(self, capability: str, instance: Any) -> None:
        """Pin a binding instance for every project (tests, embedding code)."""
        if capability not in STRATEGIES:
            raise ProviderNotFound(f"Unknown capability: {capability}")
        for name in STRATEGIES[capability]:
            self._cache[(capability, name)] = instance

    def ticket_provider(self, project: Optional[Project] = None) -> TicketProvider:
        return self.resolve("ticket_provider", project)

    def vcs(self, project: Optional[Project] = None) -> VcsProvider:
        return self.resolve("vcs_provider", project)

    def planner(self, project: Optional[Project] = None) -> AiPlanner:
        return self.resolve("ai.planner", project)

    def implementer(self, project: Optional[Project] = None) -> AiImplementer:
        return self.resolve("ai.implement", project)

    def reviewer(self, project: Optional[Project] = None) -> AiReviewer:
        return self.resolve("ai.review", project)

    def embeddings(self, project: Optional[Project] = None) -> EmbeddingIndexer:
        return self.resolve("embeddings", project)

    def runner(self, project: Optional[Project] = None) -> CommandRunner:
        return self.resolve("runner", project)
