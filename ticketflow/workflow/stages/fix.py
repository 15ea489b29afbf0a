"""FixIteration stage: targeted fixes for review issues."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any

from ticketflow.workflow.changes import apply_change
from ticketflow.workflow.errors import WorkflowError
from ticketflow.workflow.models import StepIntent, Ticket, Workflow, WorkflowState, utcnow_iso
from ticketflow.workflow.stages.base import StageJob
from ticketflow.workflow.stages.implement import FileChangeTracker, compute_risk_score

logger = logging.getLogger(__name__)

UNKNOWN_FILE = "unknown"


def group_issues_by_file(issues: list[dict[str, Any]]) -> OrderedDict[str, list[dict[str, Any]]]:
    grouped: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()
    for issue in issues:
        grouped.setdefault(issue.get("file") or UNKNOWN_FILE, []).append(issue)
    return grouped


class FixIteration(StageJob):
    """Asks for one fix per file with outstanding issues, then re-runs checks.

    The iteration cap lives in ReviewPatch; this stage never counts.
    """

    name = "FixIteration"
    phase = "implement"
    tries = 2
    timeout = 300
    entry_states = (WorkflowState.FIXING,)

    def run(self, ticket: Ticket, workflow: Workflow) -> None:
        project = self.project_for(ticket)
        patch = self.repository.latest_patch(ticket.id)
        if patch is None:
            raise WorkflowError(f"No patch to fix for ticket {ticket.id}")
        workspace = self.workspace_for(ticket)

        issues = self.payload.get("issues")
        if issues is None:
            issues = (patch.summary.get("review") or {}).get("issues", [])
        grouped = group_issues_by_file(issues)
        iteration = int(workflow.meta.get("fix_iterations", 1))
        logger.info(
            f"Fix iteration {iteration} for ticket {ticket.id}: "
            f"{len(issues)} issues in {len(grouped)} files"
        )

        implementer = self.runtime.resolver.implementer(project)
        tracker = FileChangeTracker()
        fixes_applied = 0
        for file, file_issues in grouped.items():
            targets = [] if file == UNKNOWN_FILE else [{"path": file, "type": "file"}]
            step = {
                "id": f"fix_{iteration}_{len(tracker.files) + 1}",
                "intent": StepIntent.FIX.value,
                "targets": targets,
                "rationale": "Fix review issues: "
                + "; ".join(str(issue.get("message", "")) for issue in file_issues[:5]),
                "acceptance": ["Review issues resolved", "Checks pass"],
            }
            context = {
                "issues": file_issues,
                "files_touched": patch.files_touched,
                "review_summary": (patch.summary.get("review") or {}).get("summary", ""),
            }
            summary = implementer.implement(step, context, workspace)
            for change in summary.changes:
                if "old" not in change or "new" not in change:
                    logger.warning(f"Fix for {change.get('file')} is not a before/after replacement, skipped")
                    continue
                applied = apply_change(workspace, change)
                if applied is not None:
                    tracker.record(change["file"], *applied)
                    fixes_applied += 1

        self.format_files(project, workspace, tracker.files)

        files = list(dict.fromkeys(patch.files_touched + tracker.files))
        additions = int(patch.diff_stats.get("additions", 0)) + tracker.additions
        deletions = int(patch.diff_stats.get("deletions", 0)) + tracker.deletions
        new_patch = self.repository.create_patch(
            ticket.id,
            files_touched=files,
            diff_stats={"additions": additions, "deletions": deletions},
            risk_score=compute_risk_score(files, additions + deletions),
            summary={
                "notes": patch.summary.get("notes", ""),
                "previous_patch_id": patch.id,
                "fix_iteration": iteration,
                "fixes_applied": fixes_applied,
                "fixed_files": tracker.files,
                "fixed_at": utcnow_iso(),
            },
        )
        logger.info(
            f"Fix iteration {iteration} for ticket {ticket.id} applied {fixes_applied} fixes "
            f"(patch {new_patch.id})"
        )
        self.dispatch("RunChecks")
