"""ImplementPlan stage: apply AI-authored changes step by step."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Iterable, Optional

from ticketflow.workflow.changes import apply_change, line_delta, resolve_in_workspace
from ticketflow.workflow.errors import WorkflowError
from ticketflow.workflow.models import (
    Plan,
    PlanStep,
    Project,
    StepIntent,
    Ticket,
    Workflow,
    WorkflowState,
    utcnow_iso,
)
from ticketflow.workflow.stages.base import StageJob

logger = logging.getLogger(__name__)

_SECURITY_PATH = re.compile(r"auth|security|password|token|secret|permission", re.I)
_MIGRATION_PATH = re.compile(r"migrations?/|alembic/|schema", re.I)
_CONFIG_PATH = re.compile(r"(^|/)(config|settings)|\.env|\.(ini|toml|ya?ml|cfg)$", re.I)


def compute_risk_score(files: Iterable[str], lines_changed: int) -> int:
    """Heuristic patch risk (0-100) from size and the kind of paths touched."""
    files = list(files)
    score = min(len(files) * 2, 20) + min(lines_changed // 10, 30)
    if any(_SECURITY_PATH.search(f) for f in files):
        score += 10
    if any(_MIGRATION_PATH.search(f) for f in files):
        score += 15
    if any(_CONFIG_PATH.search(f) for f in files):
        score += 5
    return min(score, 100)


class FileChangeTracker:
    """Accumulates touched files and line counts across applied changes."""

    def __init__(self) -> None:
        self.files: list[str] = []
        self.additions = 0
        self.deletions = 0

    def record(self, file: str, before: str, after: str) -> None:
        added, deleted = line_delta(before, after)
        self.additions += added
        self.deletions += deleted
        if file not in self.files:
            self.files.append(file)

    @property
    def diff_stats(self) -> dict[str, int]:
        return {"additions": self.additions, "deletions": self.deletions}


class ImplementPlan(StageJob):
    """Turns the stored plan into a Patch."""

    name = "ImplementPlan"
    phase = "implement"
    tries = 2
    timeout = 600
    entry_states = (WorkflowState.PLANNED, WorkflowState.IMPLEMENTING)

    def run(self, ticket: Ticket, workflow: Workflow) -> None:
        project = self.project_for(ticket)
        plan = self.repository.get_plan(ticket.id)
        if plan is None:
            raise WorkflowError(f"No plan stored for ticket {ticket.id}")
        workspace = self.workspace_for(ticket)

        if workflow.state == WorkflowState.PLANNED:
            self.machine.transition(
                ticket.id, WorkflowState.IMPLEMENTING, {"implementation_started_at": utcnow_iso()}
            )

        implementer = self.runtime.resolver.implementer(project)
        tracker = FileChangeTracker()
        notes = []
        for index, step in enumerate(plan.steps, start=1):
            logger.info(f"Ticket {ticket.id}: implementing step {index}/{len(plan.steps)} ({step.id})")
            context = self.step_context(ticket, project, plan, tracker.files)
            summary = implementer.implement(step.to_dict(), context, workspace)
            for change in summary.changes:
                self.apply_step_change(workspace, step, change, tracker)
            if summary.notes:
                notes.append(f"{step.id}: {summary.notes}")

        if not tracker.files:
            raise WorkflowError(f"Implementation produced no file changes for ticket {ticket.id}")

        self.format_files(project, workspace, tracker.files)

        patch = self.repository.create_patch(
            ticket.id,
            files_touched=tracker.files,
            diff_stats=tracker.diff_stats,
            risk_score=compute_risk_score(tracker.files, tracker.additions + tracker.deletions),
            summary={
                "notes": "\n".join(notes),
                "steps": [step.id for step in plan.steps],
                "plan_version": plan.version,
                "implemented_at": utcnow_iso(),
            },
        )
        logger.info(
            f"Patch {patch.id} stored for ticket {ticket.id}: {len(patch.files_touched)} files, "
            f"+{tracker.additions}/-{tracker.deletions}, risk {patch.risk_score}"
        )

        self.repository.merge_workflow_meta(
            ticket.id, {"implementation_completed_at": utcnow_iso(), "patch_id": patch.id}
        )
        self.dispatch("RunChecks")

    def step_context(
        self, ticket: Ticket, project: Project, plan: Plan, files_touched: list[str]
    ) -> dict[str, Any]:
        return {
            "ticket": {
                "key": ticket.external_key,
                "title": ticket.title,
                "body": ticket.body,
                "acceptance_criteria": ticket.acceptance_criteria,
            },
            "plan_summary": plan.summary,
            "test_strategy": plan.test_strategy,
            "language_profile": project.language_profile,
            "files_touched": list(files_touched),
        }

    def apply_step_change(
        self, workspace: Path, step: PlanStep, change: dict[str, Any], tracker: FileChangeTracker
    ) -> bool:
        """Apply one change, preferring an AST edit for function and method targets.

        Returns:
            True if the file changed
        """
        file = change.get("file")
        if not file:
            return False
        target = resolve_in_workspace(workspace, file)

        if step.intent == StepIntent.REMOVE and "content" not in change and "old" not in change:
            if not target.is_file():
                return False
            before = target.read_text(encoding="utf-8")
            target.unlink()
            tracker.record(file, before, "")
            return True

        function = _function_target(step, file)
        if function and target.suffix == ".py" and target.is_file() and "content" in change:
            before = target.read_text(encoding="utf-8")
            if self.runtime.ast_editor.replace_function(target, function, change["content"]):
                tracker.record(file, before, target.read_text(encoding="utf-8"))
                return True
            logger.info(f"AST edit of {function} in {file} not possible, falling back to raw change")

        applied = apply_change(workspace, change)
        if applied is None:
            return False
        tracker.record(file, *applied)
        return True


def _function_target(step: PlanStep, file: str) -> Optional[str]:
    for target in step.targets:
        if target.get("path") == file and target.get("type") in ("function", "method") and target.get("function"):
            return target["function"]
    return None
