"""Durable job queue and dispatcher.

Jobs are stored in a single JSON document guarded by a file lock. A job only
becomes visible to workers once its ``available_at`` time has passed, which is
how stages schedule the next stage after a fixed delay.

A reservation is a lease: a job whose worker died without releasing it is
handed out again once its lease (the stage timeout) plus a margin has passed.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from ticketflow.workflow.gates import GateContext, NotCancelledGate
from ticketflow.workflow.models import utcnow_iso
from ticketflow.workflow.repository import Repository
from ticketflow.workflow.store import atomic_write_json, locked_file

logger = logging.getLogger(__name__)

DEFAULT_LEASE = 900.0
RECLAIM_MARGIN = 60.0


@dataclass
class Job:
    """One queued unit of work."""

    name: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    available_at: float = 0.0
    reserved: bool = False
    reserved_at: Optional[float] = None
    lease: Optional[float] = None
    created_at: str = field(default_factory=utcnow_iso)
    last_error: Optional[str] = None

    @property
    def ticket_id(self) -> Optional[int]:
        return self.payload.get("ticket_id")


class JobQueue:
    """File-backed FIFO queue with delayed availability."""

    def __init__(self, path: Path, lease: float = DEFAULT_LEASE, margin: float = RECLAIM_MARGIN):
        self.path = Path(path)
        self.lease = lease
        self.margin = margin
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> dict[str, list[dict[str, Any]]]:
        if not self.path.exists():
            return {"jobs": [], "failed": []}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _mutate(self, fn):
        with locked_file(self.path):
            data = self._load()
            result = fn(data)
            atomic_write_json(self.path, data)
            return result

    def push(
        self, name: str, payload: dict[str, Any], delay: float = 0, lease: Optional[float] = None
    ) -> Job:
        job = Job(name=name, payload=payload, available_at=time.time() + delay, lease=lease)
        self._mutate(lambda data: data["jobs"].append(asdict(job)))
        return job

    def expires_at(self, entry: dict[str, Any]) -> float:
        """When a reservation may be reclaimed."""
        lease = entry.get("lease") or self.lease
        return (entry.get("reserved_at") or 0.0) + lease + self.margin

    def reserve(self, now: Optional[float] = None) -> Optional[Job]:
        """Claim the oldest job whose delay has elapsed.

        Reservations older than their lease are reclaimed first. ``now`` only
        moves the delay horizon; leases always run on the wall clock.
        """
        clock = time.time()
        now = clock if now is None else now

        def claim(data):
            for entry in data["jobs"]:
                if entry["reserved"] and self.expires_at(entry) <= clock:
                    logger.warning(
                        f"Reclaiming {entry['name']} ({entry['id']}) for ticket "
                        f"{entry['payload'].get('ticket_id')}: reservation expired"
                    )
                    entry["reserved"] = False
                    entry["reserved_at"] = None
                    entry["last_error"] = "Reservation expired"
            for entry in data["jobs"]:
                if not entry["reserved"] and entry["available_at"] <= now:
                    entry["reserved"] = True
                    entry["reserved_at"] = clock
                    entry["attempts"] += 1
                    return Job(**entry)
            return None

        return self._mutate(claim)

    def release(self, job: Job, delay: float = 0, error: Optional[str] = None) -> None:
        """Put a reserved job back for another attempt."""

        def put_back(data):
            for entry in data["jobs"]:
                if entry["id"] == job.id:
                    entry["reserved"] = False
                    entry["reserved_at"] = None
                    entry["available_at"] = time.time() + delay
                    entry["last_error"] = error

        self._mutate(put_back)

    def delete(self, job: Job) -> None:
        def remove(data):
            data["jobs"] = [e for e in data["jobs"] if e["id"] != job.id]

        self._mutate(remove)

    def fail(self, job: Job, error: str) -> None:
        """Move a job to the failed list."""

        def move(data):
            data["jobs"] = [e for e in data["jobs"] if e["id"] != job.id]
            entry = asdict(job)
            entry.update(reserved=False, reserved_at=None, last_error=error, failed_at=utcnow_iso())
            data["failed"].append(entry)

        self._mutate(move)

    def pending(self) -> list[Job]:
        return [Job(**entry) for entry in self._load()["jobs"]]

    def failed_jobs(self) -> list[dict[str, Any]]:
        return list(self._load()["failed"])

    def next_available_in(self) -> Optional[float]:
        """Seconds until the next job becomes due or reclaimable, or None if empty."""
        waiting = [
            self.expires_at(e) if e["reserved"] else e["available_at"] for e in self._load()["jobs"]
        ]
        if not waiting:
            return None
        return max(0.0, min(waiting) - time.time())


class Dispatcher:
    """Schedules stage jobs for a ticket, refusing work for cancelled workflows."""

    def __init__(
        self, queue: JobQueue, repository: Repository, leases: Optional[dict[str, float]] = None
    ):
        self.queue = queue
        self.repository = repository
        self.leases = leases or {}
        self._guard = NotCancelledGate()

    def dispatch(
        self, job_name: str, ticket_id: int, delay: float = 0, **payload: Any
    ) -> Optional[Job]:
        """Enqueue ``job_name`` for ``ticket_id`` after ``delay`` seconds.

        Returns:
            The queued Job, or None when the workflow was cancelled
        """
        workflow = self.repository.get_workflow(ticket_id)
        if workflow is not None:
            result = self._guard.check(
                workflow, GateContext(repository=self.repository, job_name=job_name)
            )
            if not result.passed:
                logger.info(f"Skipping dispatch of {job_name} for ticket {ticket_id}: {result.reason}")
                return None

        job = self.queue.push(
            job_name, {"ticket_id": ticket_id, **payload}, delay=delay, lease=self.leases.get(job_name)
        )
        logger.info(f"Dispatched {job_name} for ticket {ticket_id} (delay {delay}s)")
        return job
