"""Workflow state machine for ticket-to-PR automation.

This module provides the WorkflowStateMachine class that owns every state
change of a ticket's workflow. Stage jobs never write the state field
directly: they call transition(), fail() or restore_checkpoint(), which
validate the move against STATE_TRANSITIONS and persist state, counters and
meta in a single locked update of the workflow record.

The machine also answers read-only questions (get_status, get_statistics) and
knows which stage job handles each state (dispatch_next), which is how
retries and repairs resume the pipeline.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from ticketflow.workflow.errors import (
    InvalidTransition,
    RetryLimitExceeded,
    WorkflowNotFound,
)
from ticketflow.workflow.gates import (
    DispatchGate,
    GateContext,
    NotCancelledGate,
    RetryCeilingGate,
)
from ticketflow.workflow.models import (
    GateResult,
    Run,
    RunStatus,
    Ticket,
    Workflow,
    WorkflowState,
    parse_timestamp,
    utcnow_iso,
)
from ticketflow.workflow.queue import Dispatcher, Job
from ticketflow.workflow.repository import Repository

logger = logging.getLogger(__name__)

S = WorkflowState

STATE_TRANSITIONS: dict[WorkflowState, tuple[WorkflowState, ...]] = {
    S.INGESTED: (S.CONTEXT_READY,),
    S.CONTEXT_READY: (S.PLANNED,),
    S.PLANNED: (S.IMPLEMENTING,),
    S.IMPLEMENTING: (S.TESTING,),
    S.TESTING: (S.REVIEWING, S.FIXING),
    S.REVIEWING: (S.FIXING, S.PR_CREATED),
    S.FIXING: (S.TESTING,),
    S.PR_CREATED: (S.DONE,),
    S.DONE: (),
    S.FAILED: (S.INGESTED,),
}

# Job that does the work for a workflow sitting in a given state. A workflow
# only reaches REVIEWING once its review is recorded, so it resumes by
# publishing the PR.
STAGE_FOR_STATE: dict[WorkflowState, str] = {
    S.INGESTED: "BuildContext",
    S.CONTEXT_READY: "PlanTicket",
    S.PLANNED: "ImplementPlan",
    S.IMPLEMENTING: "ImplementPlan",
    S.TESTING: "RunChecks",
    S.REVIEWING: "CreatePullRequest",
    S.FIXING: "FixIteration",
}

DEFAULT_MANDATORY_CHECKS = {"lint": True, "typecheck": True, "test": True}


class WorkflowStateMachine:
    """Validates and persists workflow state changes.

    Attributes:
        repository: Typed record access
        dispatcher: Queues stage jobs (with the cancellation guard)
        max_retries: Ceiling on orchestration-level restarts of a workflow
        stage_delay: Seconds between a stage finishing and the next starting
    """

    def __init__(
        self,
        repository: Repository,
        dispatcher: Dispatcher,
        max_retries: int = 3,
        stage_delay: float = 5,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.max_retries = max_retries
        self.stage_delay = stage_delay

    @staticmethod
    def can_transition(current: WorkflowState, new_state: WorkflowState) -> bool:
        return WorkflowState(new_state) in STATE_TRANSITIONS[WorkflowState(current)]

    def _gate_context(self, job_name: str = "") -> GateContext:
        return GateContext(
            repository=self.repository, job_name=job_name, max_retries=self.max_retries
        )

    def _run_gate(self, workflow: Workflow, gate: DispatchGate) -> GateResult:
        """Run a gate against the workflow and log the outcome."""
        gate_name = gate.__class__.__name__
        result = gate.check(workflow, self._gate_context())
        if result.passed:
            logger.debug(f"Gate {gate_name} passed for ticket {workflow.ticket_id}")
        else:
            logger.warning(
                f"Gate {gate_name} failed for ticket {workflow.ticket_id}: {result.reason}"
            )
        return result

    def start(self, ticket: Ticket, force: bool = False) -> Workflow:
        """Create or restart the workflow for a ticket and dispatch context building.

        A finished workflow (DONE, or PR_CREATED with a ready PR) is returned
        untouched, as is one that is still in progress.

        Args:
            ticket: Ticket to start
            force: Restart a failed workflow even past its retry ceiling or
                after cancellation

        Returns:
            The workflow as persisted

        Raises:
            RetryLimitExceeded: If the workflow failed too often and force is False
        """
        workflow = self.repository.get_workflow(ticket.id)

        if workflow is None:
            workflow = Workflow(
                ticket_id=ticket.id,
                state=S.INGESTED,
                retries=1,
                meta={"started_at": utcnow_iso()},
            )
            self.repository.save_workflow(workflow)
            logger.info(f"Workflow created for ticket {ticket.id} ({ticket.external_key})")
            self.dispatcher.dispatch("BuildContext", ticket.id)
            return workflow

        if workflow.state == S.DONE or (
            workflow.state == S.PR_CREATED and not workflow.meta.get("pr_draft", True)
        ):
            logger.info(f"Workflow for ticket {ticket.id} already complete ({workflow.state.value})")
            return workflow

        if workflow.state != S.FAILED:
            logger.info(f"Workflow for ticket {ticket.id} already in progress ({workflow.state.value})")
            return workflow

        if not force:
            for gate in (NotCancelledGate(), RetryCeilingGate()):
                result = self._run_gate(workflow, gate)
                if not result.passed:
                    raise RetryLimitExceeded(result.reason)

        def restart(wf: Workflow) -> None:
            wf.state = S.INGESTED
            wf.retries += 1
            wf.meta.update(
                previous_state=S.FAILED.value,
                transitioned_at=utcnow_iso(),
                restarted_at=utcnow_iso(),
            )
            wf.meta.pop("error", None)
            if force:
                wf.meta.pop("cancelled", None)

        workflow = self.repository.update_workflow(ticket.id, restart)
        logger.info(f"Workflow restarted for ticket {ticket.id} (attempt {workflow.retries})")
        self.dispatcher.dispatch("BuildContext", ticket.id)
        return workflow

    def transition(
        self,
        ticket_id: int,
        new_state: WorkflowState,
        meta_patch: Optional[dict[str, Any]] = None,
        increment: Optional[dict[str, int]] = None,
    ) -> Workflow:
        """Move the workflow to ``new_state`` and merge ``meta_patch`` into meta.

        Counters named in ``increment`` (e.g. ``{"fix_iterations": 1}``) are
        bumped in the same locked update as the state change.

        Raises:
            InvalidTransition: If ``new_state`` is not a legal successor; the
                stored workflow is left unchanged
            WorkflowNotFound: If the ticket has no workflow
        """
        new_state = WorkflowState(new_state)
        old: dict[str, WorkflowState] = {}

        def apply(wf: Workflow) -> None:
            if wf.is_cancelled:
                raise InvalidTransition(wf.state.value, new_state.value, "workflow cancelled")
            if not self.can_transition(wf.state, new_state):
                raise InvalidTransition(wf.state.value, new_state.value)
            old["state"] = wf.state
            wf.meta.update(meta_patch or {})
            for counter, step in (increment or {}).items():
                wf.meta[counter] = int(wf.meta.get(counter, 0)) + step
            wf.meta.update(previous_state=wf.state.value, transitioned_at=utcnow_iso())
            wf.state = new_state

        workflow = self.repository.update_workflow(ticket_id, apply)
        logger.info(f"Ticket {ticket_id}: {old['state'].value} -> {new_state.value}")
        return workflow

    def fail(
        self,
        ticket_id: int,
        error: str,
        stage: Optional[str] = None,
        meta_patch: Optional[dict[str, Any]] = None,
    ) -> Workflow:
        """Mark a workflow FAILED, keeping the state it failed in as checkpoint."""

        def apply(wf: Workflow) -> None:
            if wf.state != S.FAILED:
                wf.meta["previous_state"] = wf.state.value
                wf.state = S.FAILED
            wf.meta.update(meta_patch or {})
            wf.meta.update(error=error, failed_at=utcnow_iso())
            if stage:
                wf.meta["failed_stage"] = stage

        workflow = self.repository.update_workflow(ticket_id, apply)
        logger.error(f"Ticket {ticket_id}: workflow FAILED ({stage or 'unknown stage'}): {error}")
        return workflow

    def restore_checkpoint(
        self,
        ticket_id: int,
        meta_patch: Optional[dict[str, Any]] = None,
        increment_retries: bool = False,
    ) -> Workflow:
        """Return a FAILED workflow to the state recorded when it failed.

        Raises:
            InvalidTransition: If the workflow is not FAILED or was cancelled
        """

        def apply(wf: Workflow) -> None:
            if wf.state != S.FAILED:
                raise InvalidTransition(wf.state.value, "checkpoint", "workflow is not FAILED")
            if wf.is_cancelled:
                raise InvalidTransition(wf.state.value, "checkpoint", "workflow cancelled")
            checkpoint = wf.checkpoint
            if checkpoint is None or checkpoint in (S.FAILED, S.DONE):
                checkpoint = S.INGESTED
            wf.meta.update(meta_patch or {})
            wf.meta.update(previous_state=S.FAILED.value, transitioned_at=utcnow_iso())
            wf.meta.pop("error", None)
            wf.state = checkpoint
            if increment_retries:
                wf.retries += 1

        workflow = self.repository.update_workflow(ticket_id, apply)
        logger.info(f"Ticket {ticket_id}: FAILED -> {workflow.state.value} (checkpoint restored)")
        return workflow

    def retry_workflow(self, ticket_id: int) -> Workflow:
        """Restart a FAILED workflow from its checkpoint.

        Raises:
            InvalidTransition: If the workflow is not FAILED or was cancelled
            RetryLimitExceeded: If the retry ceiling is reached
        """
        workflow = self.repository.require_workflow(ticket_id)
        if workflow.state != S.FAILED:
            raise InvalidTransition(workflow.state.value, "retry", "can only retry failed workflows")
        if workflow.is_cancelled:
            raise InvalidTransition(workflow.state.value, "retry", "workflow cancelled")
        result = self._run_gate(workflow, RetryCeilingGate())
        if not result.passed:
            raise RetryLimitExceeded(result.reason)

        workflow = self.restore_checkpoint(
            ticket_id, {"retried_at": utcnow_iso()}, increment_retries=True
        )
        logger.info(f"Retrying workflow for ticket {ticket_id} (retry {workflow.retries})")
        self.dispatch_next(workflow)
        return workflow

    def cancel_workflow(self, ticket_id: int) -> Workflow:
        """Cancel a workflow.

        Calling it again, or on a DONE workflow, leaves the record untouched.
        """

        def apply(wf: Workflow) -> None:
            if wf.is_cancelled or wf.state == S.DONE:
                return
            wf.meta.update(
                cancelled=True,
                cancelled_at=utcnow_iso(),
                cancelled_from_state=wf.state.value,
            )
            wf.state = S.FAILED

        workflow = self.repository.update_workflow(ticket_id, apply)
        logger.info(f"Workflow for ticket {ticket_id} cancelled")
        return workflow

    def dispatch_next(self, workflow: Workflow, delay: Optional[float] = None) -> Optional[Job]:
        """Dispatch the job that handles the workflow's current state."""
        job_name = STAGE_FOR_STATE.get(workflow.state)
        if job_name is None:
            logger.info(f"No job follows state {workflow.state.value} for ticket {workflow.ticket_id}")
            return None
        payload: dict[str, Any] = {}
        if job_name == "CreatePullRequest":
            payload["draft"] = not workflow.meta.get("review_passed", False)
        return self.dispatcher.dispatch(
            job_name,
            workflow.ticket_id,
            delay=self.stage_delay if delay is None else delay,
            **payload,
        )

    def get_status(self, ticket_id: int) -> dict[str, Any]:
        """Summarise one workflow for operators and tests. Pure read."""
        workflow = self.repository.get_workflow(ticket_id)
        ticket = self.repository.get_ticket(ticket_id)
        if workflow is None or ticket is None:
            raise WorkflowNotFound(f"No workflow for ticket {ticket_id}")

        return {
            "workflow_id": workflow.ticket_id,
            "ticket_id": ticket.id,
            "external_key": ticket.external_key,
            "current_state": workflow.state.value,
            "is_complete": workflow.state == S.DONE,
            "is_failed": workflow.state == S.FAILED,
            "is_cancelled": workflow.is_cancelled,
            "retries": workflow.retries,
            "has_plan": self.repository.get_plan(ticket_id) is not None,
            "has_patch": self.repository.latest_patch(ticket_id) is not None,
            "has_pr": bool(self.repository.pull_requests_for(ticket_id)),
            "created_at": workflow.created_at,
            "updated_at": workflow.updated_at,
            "duration_minutes": _duration_minutes(workflow),
            "next_possible_states": [s.value for s in STATE_TRANSITIONS[workflow.state]],
            "time_spent": self.repository.time_spent(ticket_id),
            "metadata": dict(workflow.meta),
        }

    def get_statistics(self) -> dict[str, Any]:
        """Aggregate counts over every stored workflow."""
        workflows = self.repository.all_workflows()
        by_state: dict[str, int] = {}
        for workflow in workflows:
            by_state[workflow.state.value] = by_state.get(workflow.state.value, 0) + 1

        total = len(workflows)
        completed = by_state.get(S.DONE.value, 0)
        failed = by_state.get(S.FAILED.value, 0)
        durations = [_duration_minutes(wf) for wf in workflows if wf.state == S.DONE]

        return {
            "total_workflows": total,
            "completed": completed,
            "failed": failed,
            "in_progress": total - completed - failed,
            "success_rate": round(completed / total * 100, 2) if total else 0,
            "average_duration_minutes": round(sum(durations) / len(durations), 2) if durations else 0,
            "by_state": by_state,
        }

    @staticmethod
    def evaluate_mandatory_checks(
        runs: Iterable[Run], mandatory_checks: Optional[dict[str, bool]] = None
    ) -> dict[str, Any]:
        """Compare the latest run of each mandatory check against policy.

        Args:
            runs: Runs for the ticket, oldest first
            mandatory_checks: Mapping of check type to "is mandatory"

        Returns:
            Dict with ``passed`` (bool), per-check ``results`` and the list of
            ``failures`` (mandatory checks that failed or never ran)
        """
        checks = DEFAULT_MANDATORY_CHECKS if mandatory_checks is None else mandatory_checks
        latest: dict[str, Run] = {}
        for run in runs:
            latest[run.type.value] = run

        results: dict[str, str] = {}
        failures: list[str] = []
        for check, required in checks.items():
            run = latest.get(check)
            if run is None:
                status = "missing"
            elif run.status == RunStatus.SUCCESS:
                status = "passed"
            elif run.status == RunStatus.SKIPPED:
                status = "skipped"
            else:
                status = "failed"
            results[check] = status
            if required and status in ("failed", "missing"):
                failures.append(check)

        return {"passed": not failures, "results": results, "failures": failures}


def _duration_minutes(workflow: Workflow) -> float:
    created = parse_timestamp(workflow.created_at)
    updated = parse_timestamp(workflow.updated_at)
    if created is None or updated is None:
        return 0.0
    return round((updated - created).total_seconds() / 60, 2)
