"""Typed access to the records kept in the record store."""

from __future__ import annotations

from typing import Any, Callable, Optional

from ticketflow.workflow.errors import WorkflowNotFound
from ticketflow.workflow.models import (
    Patch,
    Plan,
    Project,
    PullRequest,
    Run,
    Ticket,
    Workflow,
    Worklog,
    utcnow_iso,
)
from ticketflow.workflow.store import RecordStore


class Repository:
    """Loads and saves workflow records as dataclasses.

    Workflows, plans and tickets are keyed by ticket id (one per ticket);
    patches, runs, pull requests and worklogs get their own ids and are looked up by
    ``ticket_id``.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    # Projects

    def get_project(self, project_id: int) -> Optional[Project]:
        data = self.store.get("projects", project_id)
        return Project.from_dict(data) if data else None

    def find_project(self, name: str) -> Optional[Project]:
        matches = self.store.where("projects", name=name)
        return Project.from_dict(matches[0]) if matches else None

    def upsert_project(self, name: str, **attributes: Any) -> Project:
        existing = self.find_project(name)
        if existing:
            for key, value in attributes.items():
                if value is not None:
                    setattr(existing, key, value)
            self.save_project(existing)
            return existing
        project = Project(id=self.store.next_id("projects"), name=name, **attributes)
        self.save_project(project)
        return project

    def save_project(self, project: Project) -> None:
        self.store.put("projects", project.id, project.to_dict())

    # Tickets

    def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        data = self.store.get("tickets", ticket_id)
        return Ticket.from_dict(data) if data else None

    def find_ticket(self, identifier: str) -> Optional[Ticket]:
        """Find a ticket by numeric id or external key."""
        if str(identifier).isdigit():
            ticket = self.get_ticket(int(identifier))
            if ticket:
                return ticket
        matches = self.store.where("tickets", external_key=str(identifier))
        return Ticket.from_dict(matches[0]) if matches else None

    def create_ticket(self, project_id: int, external_key: str, title: str, **attributes: Any) -> Ticket:
        ticket = Ticket(
            id=self.store.next_id("tickets"),
            project_id=project_id,
            external_key=external_key,
            title=title,
            **attributes,
        )
        self.save_ticket(ticket)
        return ticket

    def save_ticket(self, ticket: Ticket) -> None:
        self.store.put("tickets", ticket.id, ticket.to_dict())

    def all_tickets(self) -> list[Ticket]:
        return [Ticket.from_dict(data) for data in self.store.all("tickets")]

    # Workflows

    def get_workflow(self, ticket_id: int) -> Optional[Workflow]:
        data = self.store.get("workflows", ticket_id)
        return Workflow.from_dict(data) if data else None

    def require_workflow(self, ticket_id: int) -> Workflow:
        workflow = self.get_workflow(ticket_id)
        if workflow is None:
            raise WorkflowNotFound(f"No workflow for ticket {ticket_id}")
        return workflow

    def save_workflow(self, workflow: Workflow) -> None:
        workflow.updated_at = utcnow_iso()
        self.store.put("workflows", workflow.ticket_id, workflow.to_dict())

    def update_workflow(
        self, ticket_id: int, mutate: Callable[[Workflow], None]
    ) -> Workflow:
        """Apply ``mutate`` to the stored workflow under the record lock."""

        def apply(data: dict[str, Any]) -> dict[str, Any]:
            workflow = Workflow.from_dict(data)
            mutate(workflow)
            workflow.updated_at = utcnow_iso()
            return workflow.to_dict()

        try:
            return Workflow.from_dict(self.store.update("workflows", ticket_id, apply))
        except KeyError as e:
            raise WorkflowNotFound(f"No workflow for ticket {ticket_id}") from e

    def merge_workflow_meta(self, ticket_id: int, meta: dict[str, Any]) -> Workflow:
        """Merge keys into workflow meta without touching the state."""
        return self.update_workflow(ticket_id, lambda wf: wf.meta.update(meta))

    def all_workflows(self) -> list[Workflow]:
        return [Workflow.from_dict(data) for data in self.store.all("workflows")]

    # Plans

    def get_plan(self, ticket_id: int) -> Optional[Plan]:
        data = self.store.get("plans", ticket_id)
        return Plan.from_dict(data) if data else None

    def save_plan(self, plan: Plan) -> Plan:
        """Update-or-create the plan keyed by ticket."""
        self.store.put("plans", plan.ticket_id, plan.to_dict())
        return plan

    # Patches

    def create_patch(self, ticket_id: int, **attributes: Any) -> Patch:
        patch = Patch(id=self.store.next_id("patches"), ticket_id=ticket_id, **attributes)
        self.save_patch(patch)
        return patch

    def save_patch(self, patch: Patch) -> None:
        self.store.put("patches", patch.id, patch.to_dict())

    def get_patch(self, patch_id: int) -> Optional[Patch]:
        data = self.store.get("patches", patch_id)
        return Patch.from_dict(data) if data else None

    def latest_patch(self, ticket_id: int) -> Optional[Patch]:
        data = self.store.latest("patches", ticket_id=ticket_id)
        return Patch.from_dict(data) if data else None

    def patches_for(self, ticket_id: int) -> list[Patch]:
        return [Patch.from_dict(d) for d in self.store.where("patches", ticket_id=ticket_id)]

    def update_patch_summary(self, patch_id: int, summary: dict[str, Any]) -> Patch:
        def apply(data: dict[str, Any]) -> None:
            data.setdefault("summary", {}).update(summary)

        return Patch.from_dict(self.store.update("patches", patch_id, apply))

    # Runs

    def create_run(self, ticket_id: int, **attributes: Any) -> Run:
        run = Run(id=self.store.next_id("runs"), ticket_id=ticket_id, **attributes)
        self.store.put("runs", run.id, run.to_dict())
        return run

    def runs_for(self, ticket_id: int) -> list[Run]:
        return [Run.from_dict(d) for d in self.store.where("runs", ticket_id=ticket_id)]

    # Pull requests

    def create_pull_request(self, ticket_id: int, **attributes: Any) -> PullRequest:
        pr = PullRequest(id=self.store.next_id("pull_requests"), ticket_id=ticket_id, **attributes)
        self.store.put("pull_requests", pr.id, pr.to_dict())
        return pr

    def pull_requests_for(self, ticket_id: int) -> list[PullRequest]:
        return [
            PullRequest.from_dict(d)
            for d in self.store.where("pull_requests", ticket_id=ticket_id)
        ]

    # Worklogs

    def create_worklog(self, ticket_id: int, **attributes: Any) -> Worklog:
        worklog = Worklog(id=self.store.next_id("worklogs"), ticket_id=ticket_id, **attributes)
        self.store.put("worklogs", worklog.id, worklog.to_dict())
        return worklog

    def worklogs_for(self, ticket_id: int) -> list[Worklog]:
        return [Worklog.from_dict(d) for d in self.store.where("worklogs", ticket_id=ticket_id)]

    def time_spent(self, ticket_id: int) -> dict[str, Any]:
        """Seconds spent on completed phases, in total and per phase."""
        by_phase: dict[str, float] = {}
        for worklog in self.worklogs_for(ticket_id):
            if worklog.status == "completed":
                by_phase[worklog.phase] = round(by_phase.get(worklog.phase, 0.0) + worklog.seconds, 3)
        return {"total_seconds": round(sum(by_phase.values()), 3), "by_phase": by_phase}
