"""Shared shape of every pipeline stage job.

A stage consumes a ticket plus the artifact of the previous stage, produces
its own artifact and a state transition, and on success dispatches the next
stage. The worker drives a stage through three entry points:

- handle(): gates, then run(); on an exception the workflow is marked FAILED
  (keeping the state it failed in as checkpoint) and the exception re-raised
  so the worker can apply the stage's attempt ceiling
- a retried attempt first restores the checkpoint its own failure recorded
- failed(): called once the attempt ceiling is exhausted; captures a failure
  bundle and hands repairable stages to the repair engine
"""

from __future__ import annotations

import logging
import shlex
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ClassVar, Iterator, Optional

from ticketflow.providers.runner import CommandBlocked
from ticketflow.workflow.errors import WorkflowError, WorkspaceNotFound
from ticketflow.workflow.gates import ExpectedStateGate, GateContext, NotCancelledGate
from ticketflow.workflow.models import (
    GateResult,
    Project,
    Ticket,
    Workflow,
    WorkflowState,
    utcnow_iso,
)

logger = logging.getLogger(__name__)


class StageJob:
    """Base class for pipeline stages.

    Attributes:
        name: Job name used in the queue and in failure bundles
        tries: Attempt ceiling applied by the worker
        timeout: Seconds before the worker abandons an attempt
        entry_states: States the workflow may be in when the stage starts
        repairable: Whether exhausted failures are handed to the repair engine
        phase: Worklog phase the stage's time is booked under
    """

    name: ClassVar[str] = ""
    tries: ClassVar[int] = 3
    timeout: ClassVar[int] = 300
    entry_states: ClassVar[tuple[WorkflowState, ...]] = ()
    repairable: ClassVar[bool] = True
    phase: ClassVar[str] = ""

    def __init__(self, runtime, payload: dict[str, Any]):
        """Initialize the stage for one queued job.

        Args:
            runtime: RuntimeContext giving access to records and providers
            payload: Job payload; always carries ``ticket_id``
        """
        self.runtime = runtime
        self.payload = payload
        self.ticket_id = int(payload["ticket_id"])

    @property
    def repository(self):
        return self.runtime.repository

    @property
    def machine(self):
        return self.runtime.machine

    def handle(self) -> None:
        """Run the stage for its ticket.

        Raises:
            Exception: Whatever run() raised, after the workflow was marked FAILED
        """
        ticket = self.repository.get_ticket(self.ticket_id)
        workflow = self.repository.get_workflow(self.ticket_id)
        if ticket is None or workflow is None:
            logger.warning(f"{self.name}: ticket {self.ticket_id} has no workflow, job dropped")
            return

        workflow = self._resume_own_failure(workflow)
        for gate in self.gates():
            result = self._run_gate(workflow, gate)
            if not result.passed:
                logger.info(f"{self.name} skipped for ticket {self.ticket_id}: {result.reason}")
                return

        logger.info(f"{self.name} started for ticket {ticket.id} ({ticket.external_key})")
        with self.tracked(ticket) as section:
            try:
                self.run(ticket, workflow)
            except Exception as e:
                current = self.repository.get_workflow(self.ticket_id)
                if current is not None and current.is_cancelled:
                    logger.info(f"{self.name} stopped for ticket {self.ticket_id}: workflow cancelled")
                    section["status"] = "cancelled"
                    return
                if current is not None and current.state == WorkflowState.FAILED:
                    # Already failed by the worker's timeout; keep that error.
                    logger.warning(f"{self.name} stopped for ticket {self.ticket_id} after timing out: {e}")
                    raise
                logger.error(f"{self.name} failed for ticket {self.ticket_id}: {e}")
                self.machine.fail(
                    self.ticket_id,
                    str(e),
                    stage=self.name,
                    meta_patch={"error_class": type(e).__name__},
                )
                raise
        logger.info(f"{self.name} completed for ticket {ticket.id}")

    def run(self, ticket: Ticket, workflow: Workflow) -> None:
        raise NotImplementedError

    @contextmanager
    def tracked(self, ticket: Ticket, notes: Optional[str] = None) -> Iterator[dict[str, Any]]:
        """Book the time spent in the block as a Worklog, failed or not.

        The yielded dict holds the ``status`` and ``notes`` to record; the
        status turns to ``failed`` when the block raises.
        """
        section: dict[str, Any] = {"status": "completed", "notes": notes}
        started_at = utcnow_iso()
        started = time.monotonic()
        try:
            yield section
        except BaseException:
            section["status"] = "failed"
            raise
        finally:
            seconds = round(time.monotonic() - started, 3)
            self.repository.create_worklog(
                ticket.id,
                phase=self.phase or self.name,
                started_at=started_at,
                ended_at=utcnow_iso(),
                seconds=seconds,
                status=section["status"],
                notes=section["notes"],
            )
            logger.info(
                f"Tracked {self.phase or self.name} for ticket {ticket.id}: "
                f"{seconds}s ({section['status']})"
            )

    def gates(self) -> list:
        gates: list = [NotCancelledGate()]
        if self.entry_states:
            gates.append(ExpectedStateGate(self.entry_states))
        return gates

    def failed(self, exception: BaseException) -> None:
        """Capture a failure bundle once the attempt ceiling is exhausted."""
        ticket = self.repository.get_ticket(self.ticket_id)
        workflow = self.repository.get_workflow(self.ticket_id)
        if ticket is None or workflow is None or workflow.is_cancelled:
            return

        bundle_path = self.runtime.collector.capture_failure(
            exception, ticket, self.name, {"job_payload": dict(self.payload)}
        )
        if not self.repairable:
            logger.error(
                f"{self.name} exhausted its attempts for ticket {ticket.id}; "
                f"not auto-repaired (bundle: {bundle_path})"
            )
            return

        attempt = int(workflow.meta.get("repair_attempts", 0)) + 1
        logger.info(f"Handing ticket {ticket.id} to repair (attempt {attempt}, bundle {bundle_path})")
        self.runtime.dispatcher.dispatch(
            "RepairAttempt", ticket.id, bundle_path=bundle_path, attempt=attempt
        )

    def project_for(self, ticket: Ticket) -> Project:
        project = self.repository.get_project(ticket.project_id)
        if project is None:
            raise WorkflowError(f"Project {ticket.project_id} not found for ticket {ticket.id}")
        return project

    def workspace_for(self, ticket: Ticket) -> Path:
        """Checkout prepared by BuildContext.

        Raises:
            WorkspaceNotFound: If context building has not produced it yet
        """
        workspace = self.runtime.workspace_for(ticket.id)
        if not workspace.is_dir():
            raise WorkspaceNotFound(f"Workspace not found for ticket {ticket.id}: {workspace}")
        return workspace

    def format_files(self, project: Project, workspace: Path, files: list[str]) -> list[str]:
        """Run the project's formatter on each file and the lint auto-fix once.

        Best-effort: failures are logged and never fail the stage.

        Returns:
            Files the formatter exited zero on
        """
        commands = project.language_profile.get("commands") or {}
        runner = self.runtime.resolver.runner(project)
        formatted = []
        format_command = commands.get("format")
        for file in files:
            if not format_command or not (workspace / file).is_file():
                continue
            if "**" in format_command:
                command = format_command.replace("**", shlex.quote(file))
            else:
                command = f"{format_command} {shlex.quote(file)}"
            try:
                result = runner.run_direct(workspace, command, timeout=60)
            except CommandBlocked as e:
                logger.warning(f"Formatter blocked for ticket {self.ticket_id}: {e}")
                break
            if result.succeeded:
                formatted.append(file)
            else:
                logger.warning(f"Formatter exited {result.exit_code} on {file} (ticket {self.ticket_id})")

        lint_fix = commands.get("lint_fix")
        if lint_fix and files:
            try:
                result = runner.run_direct(workspace, lint_fix, timeout=120)
                if not result.succeeded:
                    logger.warning(f"Lint auto-fix exited {result.exit_code} (ticket {self.ticket_id})")
            except CommandBlocked as e:
                logger.warning(f"Lint auto-fix blocked for ticket {self.ticket_id}: {e}")
        return formatted

    def dispatch(self, job_name: str, delay: Optional[float] = None, **payload: Any) -> None:
        """Dispatch the next stage for this ticket after the stage delay."""
        self.runtime.dispatcher.dispatch(
            job_name,
            self.ticket_id,
            delay=self.machine.stage_delay if delay is None else delay,
            **payload,
        )

    def _resume_own_failure(self, workflow: Workflow) -> Workflow:
        """Undo this stage's own FAILED mark before a retried attempt."""
        if (
            workflow.state == WorkflowState.FAILED
            and workflow.meta.get("failed_stage") == self.name
            and not workflow.is_cancelled
            and not workflow.meta.get("repair_escalated")
        ):
            logger.info(f"{self.name}: retrying ticket {self.ticket_id} from its checkpoint")
            return self.machine.restore_checkpoint(self.ticket_id)
        return workflow

    def _run_gate(self, workflow: Workflow, gate) -> GateResult:
        context = GateContext(
            repository=self.repository,
            job_name=self.name,
            max_retries=self.machine.max_retries,
        )
        return gate.check(workflow, context)
