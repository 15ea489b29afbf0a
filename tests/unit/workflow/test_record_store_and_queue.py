"""Unit tests for the JSON record store, job queue and dispatcher."""

import tempfile
import time
from pathlib import Path

import pytest

from ticketflow.workflow.models import Workflow, WorkflowState
from ticketflow.workflow.queue import Dispatcher, JobQueue
from ticketflow.workflow.repository import Repository
from ticketflow.workflow.store import RecordStore


@pytest.fixture
def temp_root():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class TestRecordStore:
    """Tests for RecordStore."""

    def test_next_id_is_sequential_per_collection(self, temp_root):
        store = RecordStore(temp_root)

        assert [store.next_id("tickets") for _ in range(3)] == [1, 2, 3]
        assert store.next_id("runs") == 1

    def test_put_get_and_delete(self, temp_root):
        store = RecordStore(temp_root)
        store.put("tickets", 1, {"id": 1, "title": "A"})

        assert store.get("tickets", 1) == {"id": 1, "title": "A"}
        assert store.delete("tickets", 1) is True
        assert store.get("tickets", 1) is None
        assert store.delete("tickets", 1) is False

    def test_update_mutates_in_place(self, temp_root):
        store = RecordStore(temp_root)
        store.put("workflows", 7, {"ticket_id": 7, "meta": {}})

        updated = store.update("workflows", 7, lambda data: data["meta"].update(x=1))

        assert updated["meta"] == {"x": 1}
        assert store.get("workflows", 7)["meta"] == {"x": 1}

    def test_update_missing_record_raises(self, temp_root):
        with pytest.raises(KeyError):
            RecordStore(temp_root).update("workflows", 1, lambda data: None)

    def test_all_orders_by_numeric_id_and_skips_sequence(self, temp_root):
        store = RecordStore(temp_root)
        for record_id in (10, 2, 1):
            store.next_id("runs")
            store.put("runs", record_id, {"id": record_id, "ticket_id": 1})

        assert [r["id"] for r in store.all("runs")] == [1, 2, 10]
        assert store.latest("runs", ticket_id=1)["id"] == 10
        assert store.where("runs", ticket_id=2) == []

    def test_no_temp_files_left_behind(self, temp_root):
        store = RecordStore(temp_root)
        store.put("tickets", 1, {"id": 1})

        assert not list((temp_root / "tickets").glob("*.tmp"))


class TestJobQueue:
    """Tests for JobQueue."""

    def test_delayed_job_is_not_reserved_early(self, temp_root):
        queue = JobQueue(temp_root / "queue.json")
        queue.push("PlanTicket", {"ticket_id": 1}, delay=60)

        assert queue.reserve() is None
        assert queue.next_available_in() > 50
        job = queue.reserve(now=time.time() + 61)
        assert job.name == "PlanTicket"
        assert job.attempts == 1

    def test_reserved_job_is_invisible_until_released(self, temp_root):
        queue = JobQueue(temp_root / "queue.json")
        queue.push("RunChecks", {"ticket_id": 1})
        job = queue.reserve()

        assert queue.reserve() is None
        queue.release(job, delay=0, error="boom")
        again = queue.reserve()
        assert again.id == job.id
        assert again.attempts == 2
        assert again.last_error == "boom"

    def test_expired_reservation_is_reclaimed(self, temp_root):
        """A job left reserved by a dead worker is handed out again after its lease."""
        queue = JobQueue(temp_root / "queue.json", margin=0)
        queue.push("RunChecks", {"ticket_id": 1}, lease=0.05)
        orphan = queue.reserve()

        assert queue.reserve() is None
        time.sleep(0.1)
        again = queue.reserve()

        assert again.id == orphan.id
        assert again.attempts == 2
        assert again.last_error == "Reservation expired"

    def test_live_reservation_is_kept(self, temp_root):
        queue = JobQueue(temp_root / "queue.json")
        queue.push("RunChecks", {"ticket_id": 1}, lease=300)
        queue.reserve()

        assert queue.reserve(now=time.time() + 1000) is None
        assert queue.next_available_in() > 300

    def test_fifo_order(self, temp_root):
        queue = JobQueue(temp_root / "queue.json")
        queue.push("A", {"ticket_id": 1})
        queue.push("B", {"ticket_id": 2})

        assert queue.reserve().name == "A"
        assert queue.reserve().name == "B"

    def test_delete_and_fail(self, temp_root):
        queue = JobQueue(temp_root / "queue.json")
        first = queue.push("A", {"ticket_id": 1})
        queue.push("B", {"ticket_id": 1})
        queue.delete(first)
        second = queue.reserve()
        queue.fail(second, "exhausted")

        assert queue.pending() == []
        failed = queue.failed_jobs()
        assert [entry["name"] for entry in failed] == ["B"]
        assert failed[0]["last_error"] == "exhausted"
        assert queue.next_available_in() is None


class TestDispatcher:
    """Tests for Dispatcher."""

    def test_dispatch_adds_ticket_id_to_payload(self, temp_root):
        repository = Repository(RecordStore(temp_root / "records"))
        dispatcher = Dispatcher(JobQueue(temp_root / "queue.json"), repository)

        job = dispatcher.dispatch("ReviewPatch", 3, checks_pass=True)

        assert job.payload == {"ticket_id": 3, "checks_pass": True}
        assert job.ticket_id == 3

    def test_dispatch_for_cancelled_workflow_is_noop(self, temp_root):
        repository = Repository(RecordStore(temp_root / "records"))
        queue = JobQueue(temp_root / "queue.json")
        repository.save_workflow(
            Workflow(ticket_id=3, state=WorkflowState.FAILED, meta={"cancelled": True})
        )

        assert Dispatcher(queue, repository).dispatch("PlanTicket", 3) is None
        assert queue.pending() == []

    def test_dispatch_uses_stage_lease(self, temp_root):
        repository = Repository(RecordStore(temp_root / "records"))
        dispatcher = Dispatcher(JobQueue(temp_root / "queue.json"), repository, leases={"RunChecks": 900.0})

        checks = dispatcher.dispatch("RunChecks", 3)
        other = dispatcher.dispatch("PlanTicket", 3)

        assert checks.lease == 900.0
        assert other.lease is None
