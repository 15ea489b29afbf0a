"""Bounded self-healing of failed workflows.

RepairEngine reads a failure bundle, picks a strategy from its highest-ranked
suggestion and tries, in a fixed order, auto-fix commands, AST-level fixes,
an AI test fix and an AI minimal fix until one of them changes files. The
change is then verified by re-running lint and tests: the workflow resumes
from its checkpoint on success, another attempt is scheduled on failure,
and after MAX_ATTEMPTS the failure is escalated to an operator.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ticketflow.providers.ast_tools import PythonAstEditor
from ticketflow.providers.contracts import AstEditor
from ticketflow.providers.profiler import auto_fix_commands
from ticketflow.workflow.changes import (
    apply_change,
    change_line_count,
    changed_paths,
    snapshot_workspace,
)
from ticketflow.workflow.errors import ChecksFailed, WorkflowError
from ticketflow.workflow.failure_collector import FailureCollector
from ticketflow.workflow.file_extraction import extract_candidate_files
from ticketflow.workflow.models import (
    FailureBundle,
    Priority,
    Project,
    RepairStrategy,
    StepIntent,
    Ticket,
    WorkflowState,
    utcnow_iso,
)
from ticketflow.workflow.repository import Repository
from ticketflow.workflow.state_machine import WorkflowStateMachine

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
MAX_DIFF_BUDGET = 50
RETRY_DELAY = 30
RESUME_DELAY = 10

STRATEGY_ACTIONS = {
    "lint_fix": ["format", "lint"],
    "test_fix": ["fix_tests", "update_assertions"],
    "type_fix": ["fix_types", "update_signatures"],
    "import_fix": ["add_imports", "fix_namespace"],
    "syntax_fix": ["fix_syntax"],
    "permission_fix": ["check_permissions", "minimal_fix"],
    "timeout_fix": ["optimize", "minimal_fix"],
}
DEFAULT_ACTIONS = ["analyze", "minimal_fix"]

_MISSING_NAME = [
    re.compile(r"name '(\w+)' is not defined"),
    re.compile(r"cannot import name '(\w+)'"),
    re.compile(r"Class ['\"]?([\w\\.]+?)['\"]? not found"),
]
_TYPE_ERROR_LINE = re.compile(r"([\w./-]+\.py):(\d+):(?:\d+:)? error: .*return", re.I)


class RepairError(WorkflowError):
    """Raised when a repair attempt cannot proceed."""


@dataclass
class RepairOutcome:
    """What one apply/verify pass did."""

    success: bool = False
    step: Optional[str] = None
    changes: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    test_results: dict[str, str] = field(default_factory=dict)
    failed_output: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "step": self.step,
            "changes": list(self.changes),
            "files": list(self.files),
            "test_results": dict(self.test_results),
        }


class RepairEngine:
    """Runs one repair attempt for a ticket.

    Attributes:
        repository: Typed record access
        machine: State machine used to restore, fail and resume workflows
        collector: Failure collector for reading and capturing bundles
        resolver: Capability resolver (implementer, runner)
        ast_editor: Structured Python editor
        workspaces_root: Directory holding ``<ticket_id>/repo`` checkouts
    """

    def __init__(
        self,
        repository: Repository,
        machine: WorkflowStateMachine,
        collector: FailureCollector,
        resolver,
        workspaces_root: Path,
        ast_editor: Optional[AstEditor] = None,
    ):
        self.repository = repository
        self.machine = machine
        self.collector = collector
        self.resolver = resolver
        self.workspaces_root = Path(workspaces_root)
        self.ast_editor = ast_editor or PythonAstEditor()

    def workspace_for(self, ticket: Ticket) -> Path:
        return self.workspaces_root / str(ticket.id) / "repo"

    def attempt_repair(self, ticket: Ticket, bundle_path: str, attempt_number: int) -> dict[str, Any]:
        """Run one repair attempt.

        Returns:
            ``{"outcome": "success" | "retry" | "escalated" | "cancelled", ...}``
        """
        logger.info(
            f"Starting repair attempt {attempt_number} for ticket {ticket.id} ({bundle_path})"
        )
        workflow = self.repository.require_workflow(ticket.id)
        if workflow.is_cancelled:
            logger.info(f"Ticket {ticket.id}: workflow cancelled, repair skipped")
            return {"outcome": "cancelled"}

        if attempt_number > MAX_ATTEMPTS:
            self.escalate(ticket, "Maximum repair attempts exceeded", attempt_number)
            return {"outcome": "escalated", "reason": "Maximum repair attempts exceeded"}

        data = self.collector.load_bundle(bundle_path)
        if data is None:
            reason = f"Failure bundle unreadable: {bundle_path}"
            self.escalate(ticket, reason, attempt_number)
            return {"outcome": "escalated", "reason": reason}

        self.repository.merge_workflow_meta(
            ticket.id,
            {"repair_initiated_at": utcnow_iso(), "repair_attempts": max(
                attempt_number, int(workflow.meta.get("repair_attempts", 0))
            )},
        )

        bundle = FailureBundle.from_dict(data)
        try:
            strategy = self.analyze(bundle)
            outcome = self.apply(ticket, strategy, bundle)
        except Exception as e:
            logger.error(f"Repair attempt {attempt_number} for ticket {ticket.id} raised: {e}")
            new_bundle = self.collector.capture_failure(
                e, ticket, "RepairAttempt", {"previous_bundle": bundle_path}
            )
            return self._retry_or_escalate(
                ticket, new_bundle, attempt_number, str(e), {"error": str(e)}
            )

        if outcome.success:
            self._handle_success(ticket, attempt_number, outcome)
            return {"outcome": "success", "strategy": strategy.to_dict(), **outcome.to_dict()}

        logger.warning(
            f"Repair attempt {attempt_number} for ticket {ticket.id} failed: {outcome.to_dict()}"
        )
        next_bundle = bundle_path
        failed_checks = [c for c, status in outcome.test_results.items() if status != "passed"]
        if failed_checks:
            next_bundle = self.collector.capture_failure(
                ChecksFailed(failed_checks, outcome.failed_output),
                ticket,
                "RepairAttempt",
                {"previous_bundle": bundle_path, "strategy": strategy.type},
            )
        return self._retry_or_escalate(
            ticket, next_bundle, attempt_number, "Repair attempts failed", outcome.to_dict()
        )

    def analyze(self, bundle: FailureBundle) -> RepairStrategy:
        """Derive the repair strategy from the highest-priority suggestion."""
        best = None
        for suggestion in bundle.ranked_suggestions():
            if best is None or suggestion.priority.weight > best.priority.weight:
                best = suggestion

        if best is None:
            strategy_type, priority, commands = "minimal_fix", Priority.MEDIUM, []
        else:
            strategy_type, priority, commands = best.type, best.priority, list(best.commands)

        actions = list(STRATEGY_ACTIONS.get(strategy_type, DEFAULT_ACTIONS))
        if "lint" in actions and not commands:
            commands = auto_fix_commands(bundle.repo_profile)
        return RepairStrategy(
            type=strategy_type,
            priority=priority,
            actions=actions,
            target_files=extract_candidate_files(bundle.to_dict(), strategy_type),
            commands=commands,
        )

    def apply(self, ticket: Ticket, strategy: RepairStrategy, bundle: FailureBundle) -> RepairOutcome:
        """Try the fix steps in order, then verify the first one that changed files."""
        workspace = self.workspace_for(ticket)
        if not workspace.is_dir():
            raise RepairError(f"Workspace not found for ticket {ticket.id}: {workspace}")
        project = self.repository.get_project(ticket.project_id)
        actions = set(strategy.actions)

        steps = []
        if actions & {"format", "lint"}:
            steps.append(("lint", self._apply_lint_fixes))
        if actions & {"fix_types", "update_signatures", "add_imports", "fix_namespace"}:
            steps.append(("ast", self._apply_ast_fixes))
        if "fix_tests" in actions:
            steps.append(("test", self._apply_test_fixes))
        steps.append(("ai", self._apply_minimal_fix))

        for name, step in steps:
            before = snapshot_workspace(workspace)
            notes = step(ticket, project, workspace, strategy, bundle)
            files = changed_paths(before, snapshot_workspace(workspace))
            if files:
                logger.info(f"Ticket {ticket.id}: repair step '{name}' changed {len(files)} file(s)")
                outcome = RepairOutcome(step=name, changes=notes + files, files=files)
                return self.verify(ticket, project, workspace, outcome)
            logger.info(f"Ticket {ticket.id}: repair step '{name}' changed nothing")

        return RepairOutcome(success=False, changes=["No repair step changed any file"])

    def verify(
        self, ticket: Ticket, project: Optional[Project], workspace: Path, outcome: RepairOutcome
    ) -> RepairOutcome:
        """Re-run lint and tests; every executed check must pass."""
        commands = (project.language_profile if project else {}).get("commands") or {}
        runner = self.resolver.runner(project)
        outputs = []
        for check, timeout in (("lint", 60), ("test", 180)):
            command = commands.get(check)
            if not command:
                continue
            result = runner.run_direct(workspace, command, timeout=timeout)
            outcome.test_results[check] = "passed" if result.exit_code == 0 else "failed"
            if result.exit_code != 0:
                outputs.append(f"$ {command}\n{result.output}")
        outcome.failed_output = "\n\n".join(outputs)[-20000:]
        outcome.success = all(status == "passed" for status in outcome.test_results.values())
        logger.info(f"Ticket {ticket.id}: repair verification {outcome.test_results or 'skipped (no checks)'}")
        return outcome

    def escalate(
        self,
        ticket: Ticket,
        reason: str,
        attempt_number: int,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Mark the workflow FAILED for manual intervention."""
        logger.error(f"Escalating ticket {ticket.id} after repair attempt {attempt_number}: {reason}")
        workflow = self.repository.require_workflow(ticket.id)
        self.machine.fail(
            ticket.id,
            reason,
            stage="RepairAttempt",
            meta_patch={
                "repair_escalated": True,
                "escalation_reason": reason,
                "escalation_details": details or {},
                "escalated_at": utcnow_iso(),
                "action_required": "Manual intervention needed",
                "repair_attempts": max(
                    min(attempt_number, MAX_ATTEMPTS), int(workflow.meta.get("repair_attempts", 0))
                ),
            },
        )

    def _retry_or_escalate(
        self,
        ticket: Ticket,
        bundle_path: str,
        attempt_number: int,
        reason: str,
        details: dict[str, Any],
    ) -> dict[str, Any]:
        if attempt_number < MAX_ATTEMPTS:
            self.machine.dispatcher.dispatch(
                "RepairAttempt",
                ticket.id,
                delay=RETRY_DELAY,
                bundle_path=bundle_path,
                attempt=attempt_number + 1,
            )
            return {"outcome": "retry", "bundle_path": bundle_path, "next_attempt": attempt_number + 1}
        self.escalate(ticket, reason, attempt_number, details)
        return {"outcome": "escalated", "reason": reason}

    def _handle_success(self, ticket: Ticket, attempt_number: int, outcome: RepairOutcome) -> None:
        logger.info(f"Repair successful for ticket {ticket.id} (attempt {attempt_number})")
        meta = {
            "repair_success": True,
            "repair_attempts": attempt_number,
            "repair_changes": outcome.changes,
            "repaired_at": utcnow_iso(),
        }
        workflow = self.repository.require_workflow(ticket.id)
        if workflow.state == WorkflowState.FAILED:
            workflow = self.machine.restore_checkpoint(ticket.id, meta)
        else:
            workflow = self.repository.merge_workflow_meta(ticket.id, meta)

        if workflow.state == WorkflowState.TESTING:
            self.machine.dispatcher.dispatch("RunChecks", ticket.id, delay=RESUME_DELAY)
        elif workflow.state == WorkflowState.IMPLEMENTING:
            self.machine.dispatcher.dispatch("ImplementPlan", ticket.id, delay=RESUME_DELAY)
        else:
            self.machine.dispatch_next(workflow, delay=RESUME_DELAY)

    # Fix steps. Each returns human-readable notes; changed files are
    # detected by the caller.

    def _apply_lint_fixes(self, ticket, project, workspace, strategy, bundle) -> list[str]:
        runner = self.resolver.runner(project)
        notes = []
        for command in strategy.commands:
            result = runner.run_direct(workspace, command, timeout=60)
            if result.exit_code == 0:
                notes.append(f"Applied: {command}")
            else:
                logger.debug(f"Auto-fix command exited {result.exit_code}: {command}")
        return notes

    def _apply_ast_fixes(self, ticket, project, workspace, strategy, bundle) -> list[str]:
        notes = []
        message = bundle.message
        logs = "\n".join(log.get("content", "") for log in bundle.command_logs)

        if strategy.type == "import_fix":
            names = [m.group(1).replace("\\", ".").rsplit(".", 1)[-1] for p in _MISSING_NAME for m in p.finditer(message)]
            for name in dict.fromkeys(names):
                module = self.ast_editor.find_definition(workspace, name)
                if not module:
                    logger.debug(f"No definition of {name} in workspace")
                    continue
                for file in strategy.target_files:
                    path = workspace / file
                    if path.suffix != ".py" or not path.is_file():
                        continue
                    if _module_name(file) == module:
                        continue
                    if self.ast_editor.add_import(path, f"from {module} import {name}"):
                        notes.append(f"Added import of {name} to {file}")

        if strategy.type == "type_fix":
            for file, line in _TYPE_ERROR_LINE.findall(f"{message}\n{logs}"):
                path = workspace / file
                if not path.is_file():
                    continue
                function = self.ast_editor.function_at_line(path, int(line))
                if function and self.ast_editor.remove_return_annotation(path, function):
                    notes.append(f"Removed return annotation of {function} in {file}")
        return notes

    def _apply_test_fixes(self, ticket, project, workspace, strategy, bundle) -> list[str]:
        test_logs = [
            log.get("content", "")
            for log in bundle.command_logs
            if log.get("type") == "test" and log.get("status") == "failed"
        ]
        if not test_logs:
            return []
        step = {
            "intent": StepIntent.FIX_TESTS.value,
            "targets": [{"path": f, "type": "test"} for f in strategy.target_files],
            "rationale": "Fix failing tests based on error logs",
            "acceptance": ["Tests pass", "No regression"],
        }
        context = {"test_logs": test_logs, "failure": bundle.exception}
        summary = self.resolver.implementer(project).implement(step, context, workspace)
        notes = []
        for change in summary.changes:
            if apply_change(workspace, change) is not None:
                notes.append(f"Fixed test: {change['file']}")
        return notes

    def _apply_minimal_fix(self, ticket, project, workspace, strategy, bundle) -> list[str]:
        step = {
            "intent": StepIntent.MINIMAL_FIX.value,
            "targets": [{"path": f, "type": "file"} for f in strategy.target_files],
            "rationale": f"Fix: {bundle.message[:500]}",
            "acceptance": ["Error resolved", "Tests pass", "Minimal changes"],
        }
        context = {
            "failure": bundle.failure,
            "suggestions": bundle.suggestions,
            "code_context": bundle.code_context,
            "last_diffs": bundle.last_diffs,
            "command_logs": bundle.command_logs[-2:],
            "diff_budget": MAX_DIFF_BUDGET,
            "policies": {"minimal_changes": True, "preserve_functionality": True, "respect_style": True},
        }
        summary = self.resolver.implementer(project).implement(step, context, workspace)
        return apply_within_budget(workspace, summary.changes, MAX_DIFF_BUDGET)


def apply_within_budget(workspace: Path, changes: list[dict[str, Any]], budget: int) -> list[str]:
    """Apply changes in order while they fit the remaining line budget.

    A change larger than what is left of the budget is skipped whole, never
    truncated.

    Returns:
        Notes for the applied changes
    """
    used = 0
    notes = []
    for change in changes:
        if not change.get("file"):
            continue
        lines = change_line_count(change)
        if used + lines > budget:
            logger.warning(
                f"Diff budget exceeded, skipping change to {change['file']} ({lines} lines)"
            )
            continue
        if apply_change(workspace, change) is not None:
            used += lines
            notes.append(f"Fixed: {change['file']}")
    return notes


def _module_name(relative: str) -> str:
    parts = list(Path(relative).with_suffix("").parts)
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    if parts and parts[0] == "src":
        parts = parts[1:]
    return ".".join(parts)
