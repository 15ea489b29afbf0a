"""RepairAttempt job: one bounded self-healing attempt."""

from __future__ import annotations

import logging

from ticketflow.workflow.models import Ticket, Workflow
from ticketflow.workflow.stages.base import StageJob

logger = logging.getLogger(__name__)


class RepairAttempt(StageJob):
    """Hands a failure bundle to the repair engine.

    Runs whatever state the workflow is in (FAILED after an exhausted stage,
    TESTING after a self-healing check failure); the engine decides whether
    to resume, retry or escalate.
    """

    name = "RepairAttempt"
    phase = "repair"
    tries = 1
    timeout = 300
    repairable = False

    def handle(self) -> None:
        ticket = self.repository.get_ticket(self.ticket_id)
        workflow = self.repository.get_workflow(self.ticket_id)
        if ticket is None or workflow is None:
            logger.warning(f"{self.name}: ticket {self.ticket_id} has no workflow, job dropped")
            return
        with self.tracked(ticket, notes=f"attempt {self.payload.get('attempt', 1)}"):
            self.run(ticket, workflow)

    def run(self, ticket: Ticket, workflow: Workflow) -> None:
        result = self.runtime.repair_engine.attempt_repair(
            ticket, self.payload["bundle_path"], int(self.payload.get("attempt", 1))
        )
        logger.info(f"Repair attempt for ticket {ticket.id} finished: {result['outcome']}")

    def failed(self, exception: BaseException) -> None:
        """Escalate when the repair job itself crashed."""
        ticket = self.repository.get_ticket(self.ticket_id)
        if ticket is None:
            return
        self.runtime.repair_engine.escalate(
            ticket,
            f"Repair job failed: {exception}",
            int(self.payload.get("attempt", 1)),
            {"error": str(exception), "bundle_path": self.payload.get("bundle_path")},
        )
