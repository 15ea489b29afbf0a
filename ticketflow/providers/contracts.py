"""Capability contracts consumed by the workflow core.

Concrete bindings live next to this module and are selected per project by
:class:`ticketflow.providers.resolver.ProviderResolver`. The workflow core
only ever depends on these protocols.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Protocol

from ticketflow.workflow.models import (
    CommandResult,
    PatchSummary,
    ReviewResult,
    Ticket,
)


class TicketProvider(Protocol):
    """Remote issue tracker."""

    def add_comment(self, external_key: str, markdown: str) -> None: ...


class VcsProvider(Protocol):
    """Remote code host able to open pull requests."""

    def open_pr(
        self,
        title: str,
        body: str,
        base_branch: str,
        head_branch: str,
        is_draft: bool,
        labels: list[str],
        reviewers: list[str],
        assignees: list[str],
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        """Open a pull request.

        Returns:
            ``{"id", "url", "is_draft", "labels"}``
        """
        ...


class AiPlanner(Protocol):
    def plan(self, ticket: Ticket, rag_context: list[dict[str, Any]]) -> dict[str, Any]:
        """Draft a plan.

        Returns:
            ``{"steps", "test_strategy", "risk", "estimated_hours",
            "files_affected", "dependencies", "summary"}``
        """
        ...


class AiImplementer(Protocol):
    def implement(
        self, step: dict[str, Any], context: dict[str, Any], workspace_path: Path
    ) -> PatchSummary: ...


class AiReviewer(Protocol):
    def review(
        self,
        patch_summary: dict[str, Any],
        test_results: dict[str, Any],
        checks_pass: bool,
        policy_violations: list[str],
    ) -> ReviewResult: ...


class CommandRunner(Protocol):
    """Runs shell commands inside a workspace."""

    def run(
        self,
        workspace_path: Path,
        command: str,
        language: Optional[str] = None,
        timeout: int = 300,
    ) -> CommandResult: ...

    def run_direct(
        self, workspace_path: Path, command: str, timeout: int = 300
    ) -> CommandResult: ...


class EmbeddingIndexer(Protocol):
    def index_repository(
        self, repo_path: Path, project_id: int, allowed_paths: Optional[dict[str, list[str]]] = None
    ) -> int: ...

    def search(
        self, query: str, k: int = 10, project_id: Optional[int] = None
    ) -> list[dict[str, Any]]:
        """Return up to ``k`` hits as ``{"content", "score", "metadata"}``."""
        ...

    def clear_project_embeddings(self, project_id: int) -> None: ...


class ArtifactStore(Protocol):
    """Path-addressed storage for logs, reports and failure bundles."""

    def put(self, path: str, content: str | bytes) -> str: ...

    def get(self, path: str) -> str:
        """Raises ArtifactNotFound when ``path`` does not exist."""
        ...

    def exists(self, path: str) -> bool: ...


class AstEditor(Protocol):
    """Structured source edits."""

    def replace_function(self, file_path: Path, function_name: str, new_code: str) -> bool: ...

    def add_import(self, file_path: Path, import_line: str) -> bool: ...
