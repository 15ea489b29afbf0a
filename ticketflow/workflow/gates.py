"""Dispatch gate protocol and context for workflow guards.

This module defines the DispatchGate protocol that every guard implements, and
the GateContext dataclass that gives gates read access to the records they
need. Gates run before a job is enqueued and again before a stage executes, so
a cancelled or out-of-sequence workflow never does further work.

How to implement a new gate:
-----------------------------
1. Create a class that implements the DispatchGate protocol
2. Implement the check(workflow, context) method
3. Return GateResult(passed=True) if the workflow may proceed
4. Return GateResult(passed=False, reason="...") otherwise

Example:
--------
    class HasPlanGate:
        def check(self, workflow: Workflow, context: GateContext) -> GateResult:
            if context.repository.get_plan(workflow.ticket_id):
                return GateResult(passed=True)
            return GateResult(passed=False, reason="No plan for ticket")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol

from ticketflow.workflow.models import GateResult, Workflow, WorkflowState
from ticketflow.workflow.repository import Repository


class DispatchGate(Protocol):
    """Protocol defining the interface for dispatch gates.

    Gates must be side-effect free: they only inspect the workflow and the
    context and report whether work may continue.
    """

    def check(self, workflow: Workflow, context: GateContext) -> GateResult:
        """Validate whether the workflow may proceed.

        Args:
            workflow: The workflow about to receive work
            context: Gate context providing access to stored records

        Returns:
            GateResult with passed=True if the workflow may proceed, or
            passed=False with a descriptive reason.
        """
        ...


@dataclass
class GateContext:
    """Context object providing gates with access to records and settings."""

    repository: Repository
    job_name: str = ""
    max_retries: int = 3


class NotCancelledGate:
    """Blocks any further work on a cancelled workflow."""

    def check(self, workflow: Workflow, context: GateContext) -> GateResult:
        if workflow.is_cancelled:
            return GateResult(
                passed=False,
                reason=f"Workflow for ticket {workflow.ticket_id} was cancelled",
                metadata={"cancelled_at": workflow.meta.get("cancelled_at")},
            )
        return GateResult(passed=True)


class ExpectedStateGate:
    """Passes only when the workflow is in one of the accepted states."""

    def __init__(self, states: Iterable[WorkflowState]):
        self.states = frozenset(states)

    def check(self, workflow: Workflow, context: GateContext) -> GateResult:
        if workflow.state in self.states:
            return GateResult(passed=True)
        expected = ", ".join(sorted(s.value for s in self.states))
        return GateResult(
            passed=False,
            reason=(
                f"{context.job_name or 'Job'} expects state in [{expected}], "
                f"workflow is {workflow.state.value}"
            ),
            metadata={"state": workflow.state.value},
        )


class RetryCeilingGate:
    """Blocks restarts of a failed workflow once its retries are used up."""

    def check(self, workflow: Workflow, context: GateContext) -> GateResult:
        if workflow.state != WorkflowState.FAILED:
            return GateResult(passed=True)
        if workflow.retries >= context.max_retries:
            return GateResult(
                passed=False,
                reason=(
                    f"Workflow has reached the retry ceiling "
                    f"({workflow.retries}/{context.max_retries})"
                ),
                metadata={"retries": workflow.retries},
            )
        return GateResult(passed=True)
