"""Unit tests for the queue worker."""

import tempfile
import threading
import time
from pathlib import Path

import pytest

from ticketflow.core.config import Config
from ticketflow.core.context import RuntimeContext
from ticketflow.workflow.models import Workflow, WorkflowState
from ticketflow.workflow.stages.base import StageJob
from ticketflow.workflow.worker import Worker


class RecordingStage(StageJob):
    name = "Recording"
    tries = 1
    calls: list = []

    def run(self, ticket, workflow):
        RecordingStage.calls.append(ticket.id)


class FlakyStage(StageJob):
    name = "Flaky"
    tries = 2
    failures_left = 0

    def run(self, ticket, workflow):
        if FlakyStage.failures_left > 0:
            FlakyStage.failures_left -= 1
            raise RuntimeError("transient hiccup")


class BrokenStage(StageJob):
    name = "Broken"
    tries = 2
    repairable = False

    def run(self, ticket, workflow):
        raise RuntimeError("always broken")


class RepairableStage(BrokenStage):
    name = "Repairable"
    tries = 1
    repairable = True


class SlowStage(StageJob):
    name = "Slow"
    tries = 1
    timeout = 0.2
    repairable = False

    def run(self, ticket, workflow):
        time.sleep(1)


class OverlapStage(StageJob):
    """Outlives its timeout, then tries to advance the workflow."""

    name = "Overlap"
    tries = 2
    timeout = 0.2
    repairable = False
    lock = threading.Lock()
    active = 0
    peak = 0
    calls = 0

    def run(self, ticket, workflow):
        with OverlapStage.lock:
            OverlapStage.calls += 1
            OverlapStage.active += 1
            OverlapStage.peak = max(OverlapStage.peak, OverlapStage.active)
        try:
            time.sleep(0.6)
        finally:
            with OverlapStage.lock:
                OverlapStage.active -= 1
        self.machine.transition(ticket.id, WorkflowState.CONTEXT_READY)


STAGES = {
    stage.name: stage
    for stage in (RecordingStage, FlakyStage, BrokenStage, RepairableStage, SlowStage, OverlapStage)
}


@pytest.fixture
def runtime():
    """Runtime over a temporary data dir with one ticket in INGESTED."""
    with tempfile.TemporaryDirectory() as tmpdir:
        context = RuntimeContext(config=Config.from_dict({}), data_dir=Path(tmpdir))
        project = context.repository.upsert_project("demo", repo_url="/tmp/demo.git")
        ticket = context.repository.create_ticket(project.id, "DEMO-1", "Add greeting")
        context.repository.save_workflow(Workflow(ticket_id=ticket.id, retries=1))
        RecordingStage.calls = []
        FlakyStage.failures_left = 0
        OverlapStage.active = OverlapStage.peak = OverlapStage.calls = 0
        yield context


def ticket_id(runtime):
    return runtime.repository.find_ticket("DEMO-1").id


def job_names(runtime):
    return [job.name for job in runtime.queue.pending()]


class TestWorker:
    """Tests for Worker.run and Worker.process."""

    def test_successful_job_is_deleted(self, runtime):
        runtime.dispatcher.dispatch("Recording", ticket_id(runtime))

        stats = Worker(runtime, STAGES).run(eager=True)

        assert stats.processed == 1
        assert stats.succeeded == 1
        assert RecordingStage.calls == [ticket_id(runtime)]
        assert runtime.queue.pending() == []

    def test_failed_attempt_is_released_then_resumes_from_checkpoint(self, runtime):
        FlakyStage.failures_left = 1
        runtime.dispatcher.dispatch("Flaky", ticket_id(runtime))

        stats = Worker(runtime, STAGES).run(eager=True)

        assert stats.released == 1
        assert stats.succeeded == 1
        assert stats.errors == [f"Flaky[{ticket_id(runtime)}]: RuntimeError: transient hiccup"]
        workflow = runtime.repository.get_workflow(ticket_id(runtime))
        assert workflow.state == WorkflowState.INGESTED

    def test_exhausted_job_moves_to_failed_with_bundle(self, runtime):
        runtime.dispatcher.dispatch("Broken", ticket_id(runtime))

        stats = Worker(runtime, STAGES).run(eager=True)

        assert stats.processed == 2
        assert stats.failed == 1
        failed = runtime.queue.failed_jobs()
        assert failed[0]["name"] == "Broken"
        assert "always broken" in failed[0]["last_error"]
        workflow = runtime.repository.get_workflow(ticket_id(runtime))
        assert workflow.state == WorkflowState.FAILED
        assert workflow.meta["failed_stage"] == "Broken"
        assert workflow.meta["failure_count"] == 1
        assert runtime.queue.pending() == []

    def test_exhausted_repairable_job_dispatches_repair(self, runtime):
        runtime.dispatcher.dispatch("Repairable", ticket_id(runtime))

        Worker(runtime, STAGES).run(max_jobs=1, eager=True)

        jobs = runtime.queue.pending()
        assert [job.name for job in jobs] == ["RepairAttempt"]
        assert jobs[0].payload["attempt"] == 1
        assert jobs[0].payload["bundle_path"].startswith("artifacts/tickets/")

    def test_unknown_job_is_failed(self, runtime):
        runtime.queue.push("Mystery", {"ticket_id": ticket_id(runtime)})

        stats = Worker(runtime, STAGES).run(eager=True)

        assert stats.failed == 1
        assert runtime.queue.failed_jobs()[0]["last_error"] == "Unknown job: Mystery"

    def test_timeout_marks_workflow_failed(self, runtime):
        runtime.dispatcher.dispatch("Slow", ticket_id(runtime))

        stats = Worker(runtime, STAGES).run(eager=True)

        assert stats.failed == 1
        workflow = runtime.repository.get_workflow(ticket_id(runtime))
        assert workflow.state == WorkflowState.FAILED
        assert workflow.meta["error_class"] == "JobTimeout"
        assert "timed out after 0.2 seconds" in workflow.meta["error"]

    def test_max_jobs_limits_run(self, runtime):
        for _ in range(3):
            runtime.dispatcher.dispatch("Recording", ticket_id(runtime))

        stats = Worker(runtime, STAGES).run(max_jobs=2, eager=True)

        assert stats.processed == 2
        assert job_names(runtime) == ["Recording"]

    def test_cancelled_workflow_job_is_skipped(self, runtime):
        runtime.queue.push("Recording", {"ticket_id": ticket_id(runtime)})
        runtime.machine.cancel_workflow(ticket_id(runtime))

        stats = Worker(runtime, STAGES).run(eager=True)

        assert stats.succeeded == 1
        assert RecordingStage.calls == []

    def test_timed_out_attempt_never_overlaps_its_retry(self, runtime):
        """The retry starts only after the timed-out handler has returned."""
        runtime.dispatcher.dispatch("Overlap", ticket_id(runtime))

        stats = Worker(runtime, STAGES).run(eager=True)

        assert OverlapStage.calls == 2
        assert OverlapStage.peak == 1
        assert stats.released == 1
        assert stats.failed == 1

    def test_late_handler_cannot_move_timed_out_workflow(self, runtime):
        runtime.dispatcher.dispatch("Overlap", ticket_id(runtime))

        Worker(runtime, STAGES).run(eager=True)

        workflow = runtime.repository.get_workflow(ticket_id(runtime))
        assert workflow.state == WorkflowState.FAILED
        assert workflow.checkpoint == WorkflowState.INGESTED
        assert workflow.meta["error_class"] == "JobTimeout"
        assert workflow.meta["failed_stage"] == "Overlap"


class TestWorklogs:
    """Every stage attempt books its time, failed or not."""

    def test_successful_attempt_books_completed_worklog(self, runtime):
        runtime.dispatcher.dispatch("Recording", ticket_id(runtime))

        Worker(runtime, STAGES).run(eager=True)

        [worklog] = runtime.repository.worklogs_for(ticket_id(runtime))
        assert worklog.phase == "Recording"
        assert worklog.status == "completed"
        assert worklog.seconds >= 0
        assert worklog.started_at <= worklog.ended_at

    def test_failed_attempts_are_booked_but_not_counted(self, runtime):
        runtime.dispatcher.dispatch("Broken", ticket_id(runtime))
        runtime.dispatcher.dispatch("Recording", ticket_id(runtime))

        Worker(runtime, STAGES).run(eager=True)

        worklogs = runtime.repository.worklogs_for(ticket_id(runtime))
        assert [(w.phase, w.status) for w in worklogs] == [
            ("Broken", "failed"),
            ("Broken", "failed"),
            ("Recording", "completed"),
        ]
        spent = runtime.repository.time_spent(ticket_id(runtime))
        assert list(spent["by_phase"]) == ["Recording"]
        assert spent["total_seconds"] == spent["by_phase"]["Recording"]

    def test_skipped_job_books_nothing(self, runtime):
        runtime.queue.push("Recording", {"ticket_id": ticket_id(runtime)})
        runtime.machine.cancel_workflow(ticket_id(runtime))

        Worker(runtime, STAGES).run(eager=True)

        assert runtime.repository.worklogs_for(ticket_id(runtime)) == []
