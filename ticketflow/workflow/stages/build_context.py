"""BuildContext stage: workspace checkout, repository profile and retrieval index."""

from __future__ import annotations

import logging
import re

from ticketflow.workflow.models import Ticket, Workflow, WorkflowState, utcnow_iso
from ticketflow.workflow.stages.base import StageJob

logger = logging.getLogger(__name__)

_BRANCH_UNSAFE = re.compile(r"[^a-z0-9._-]+")


def branch_name(ticket: Ticket, prefix: str = "ticketflow/") -> str:
    """Work branch for a ticket, e.g. ``ticketflow/proj-123``."""
    slug = _BRANCH_UNSAFE.sub("-", ticket.external_key.lower()).strip("-.")
    return f"{prefix}{slug or ticket.id}"


class BuildContext(StageJob):
    """Prepares the workspace a ticket's later stages operate on.

    Without a workspace nothing can be repaired, so failures are captured
    but never handed to the repair engine.
    """

    name = "BuildContext"
    phase = "context"
    tries = 3
    timeout = 600
    entry_states = (WorkflowState.INGESTED,)
    repairable = False

    def run(self, ticket: Ticket, workflow: Workflow) -> None:
        project = self.project_for(ticket)
        workspace = self.runtime.workspace_for(ticket.id)
        git = self.runtime.git_for(ticket.id)

        git.clone(project.repo_url)
        branch = branch_name(ticket, self.runtime.config.get("git.branch_prefix", "ticketflow/"))
        git.checkout_branch(branch)
        logger.info(f"Workspace ready for ticket {ticket.id} on branch {branch}")

        profile = self.runtime.profiler.profile_repository(workspace)
        project.language_profile = profile
        self.repository.save_project(project)

        indexer = self.runtime.resolver.embeddings(project)
        indexer.clear_project_embeddings(project.id)
        chunk_count = indexer.index_repository(workspace, project.id, project.allowed_paths or None)

        self.machine.transition(
            ticket.id,
            WorkflowState.CONTEXT_READY,
            {
                "context_ready": True,
                "context_built_at": utcnow_iso(),
                "workspace_path": str(workspace),
                "branch": branch,
                "indexed_chunks": chunk_count,
                "languages": profile.get("languages", []),
            },
        )
        self.dispatch("PlanTicket")
