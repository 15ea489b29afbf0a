"""Ticket ingestion from YAML files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from ticketflow.workflow.models import Priority, Project, Ticket, Workflow
from ticketflow.workflow.validation import PlanValidator

logger = logging.getLogger(__name__)


class TicketFileError(ValueError):
    """Raised when a ticket file cannot be turned into a ticket."""


def load_ticket_file(path: Path) -> dict[str, Any]:
    """Parse and validate a ticket YAML file.

    Expected keys: ``key`` and ``title`` (required), then ``body`` (or
    ``description``), ``acceptance_criteria``, ``priority``, ``labels``,
    ``assignee`` and ``url``.

    Raises:
        FileNotFoundError: If the file is missing
        TicketFileError: If it is not valid YAML or misses required keys
    """
    PlanValidator.validate_ticket_file(path)
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise TicketFileError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise TicketFileError(f"Ticket file must contain a mapping: {path}")

    missing = [k for k in ("key", "title") if not data.get(k)]
    if missing:
        raise TicketFileError(f"Ticket file {path} is missing required fields: {', '.join(missing)}")

    criteria = data.get("acceptance_criteria") or []
    if isinstance(criteria, str):
        criteria = [criteria]
    labels = data.get("labels") or []
    if not isinstance(labels, list) or not isinstance(criteria, list):
        raise TicketFileError(f"labels and acceptance_criteria must be lists in {path}")

    return {
        "external_key": str(data["key"]),
        "title": str(data["title"]).strip(),
        "body": str(data.get("body") or data.get("description") or "").strip(),
        "acceptance_criteria": [str(c) for c in criteria],
        "priority": Priority.coerce(data.get("priority", "medium")).value,
        "labels": [str(label) for label in labels],
        "assignee": data.get("assignee"),
        "meta": {"url": data["url"]} if data.get("url") else {},
    }


class TicketIngestor:
    """Creates projects and tickets, then starts their workflows."""

    def __init__(self, runtime):
        self.runtime = runtime

    @property
    def repository(self):
        return self.runtime.repository

    def resolve_project(self, name: str) -> Project:
        """Find or create a project from the ``[projects.<name>]`` config table.

        Raises:
            TicketFileError: If the project is unknown and has no ``repo_url``
        """
        settings = self.runtime.config.project(name)
        existing = self.repository.find_project(name)
        if existing is None and not settings.get("repo_url"):
            raise TicketFileError(
                f"Project '{name}' is not configured; add [projects.{name}] with repo_url"
            )
        attributes = {
            key: settings[key]
            for key in ("repo_url", "default_branch", "allowed_paths", "providers")
            if settings.get(key) is not None
        }
        return self.repository.upsert_project(name, **attributes)

    def ingest(self, path: Path, project_name: str, force: bool = False) -> tuple[Ticket, Workflow]:
        """Ingest one ticket file and start its workflow.

        An existing ticket with the same key is updated in place.

        Returns:
            The ticket and its workflow
        """
        fields = load_ticket_file(path)
        project = self.resolve_project(project_name)

        ticket = self.repository.find_ticket(fields["external_key"])
        if ticket is None:
            ticket = self.repository.create_ticket(project.id, **fields)
            logger.info(f"Ingested ticket {ticket.external_key} as #{ticket.id} (project {project.name})")
        else:
            for key, value in fields.items():
                if key == "meta":
                    ticket.meta.update(value)
                else:
                    setattr(ticket, key, value)
            ticket.project_id = project.id
            self.repository.save_ticket(ticket)
            logger.info(f"Updated existing ticket {ticket.external_key} (#{ticket.id})")

        workflow = self.runtime.machine.start(ticket, force=force)
        return ticket, workflow
