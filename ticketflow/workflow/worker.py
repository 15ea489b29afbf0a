"""Queue worker driving stage jobs."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Optional

from ticketflow.workflow.errors import JobTimeout
from ticketflow.workflow.queue import Job
from ticketflow.workflow.stages import STAGES

logger = logging.getLogger(__name__)


@dataclass
class WorkerStats:
    """Counters for one worker run."""

    processed: int = 0
    succeeded: int = 0
    released: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class Worker:
    """Reserves due jobs and runs them through their stage class.

    Each attempt runs in its own thread so the stage timeout can be enforced.
    A failed attempt goes back on the queue until the stage's ``tries`` are
    used up; then the stage's ``failed()`` hook runs and the job moves to the
    failed list.
    """

    def __init__(self, runtime, stages: Optional[dict] = None):
        self.runtime = runtime
        self.stages = stages if stages is not None else STAGES

    def run(
        self,
        stop_when_empty: bool = True,
        max_jobs: Optional[int] = None,
        sleep: float = 1.0,
        eager: bool = False,
    ) -> WorkerStats:
        """Process jobs until the queue drains or ``max_jobs`` is reached.

        Args:
            stop_when_empty: Return once no job is queued at all; delayed
                jobs are waited for
            max_jobs: Maximum number of attempts to run
            sleep: Upper bound on one idle wait in seconds
            eager: Ignore dispatch delays

        Returns:
            Counters for this run
        """
        stats = WorkerStats()
        queue = self.runtime.queue
        while max_jobs is None or stats.processed < max_jobs:
            job = queue.reserve(now=float("inf") if eager else None)
            if job is None:
                wait = queue.next_available_in()
                if wait is None and stop_when_empty:
                    break
                time.sleep(min(sleep, wait) if wait is not None else sleep)
                continue
            self.process(job, stats)
        logger.info(
            f"Worker finished: {stats.processed} processed, {stats.succeeded} succeeded, "
            f"{stats.released} released, {stats.failed} failed"
        )
        return stats

    def process(self, job: Job, stats: WorkerStats) -> None:
        stats.processed += 1
        queue = self.runtime.queue
        stage_class = self.stages.get(job.name)
        if stage_class is None:
            logger.error(f"Unknown job {job.name} ({job.id}), moved to failed jobs")
            queue.fail(job, f"Unknown job: {job.name}")
            stats.failed += 1
            return

        stage = stage_class(self.runtime, job.payload)
        logger.debug(f"Running {job.name} for ticket {job.ticket_id} (attempt {job.attempts}/{stage.tries})")
        try:
            self.execute(stage)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            stats.errors.append(f"{job.name}[{job.ticket_id}]: {error}")
            if job.attempts < stage.tries:
                logger.warning(f"{job.name} attempt {job.attempts}/{stage.tries} failed, retrying: {error}")
                queue.release(job, delay=0, error=error)
                stats.released += 1
                return
            logger.error(f"{job.name} exhausted {stage.tries} attempts for ticket {job.ticket_id}: {error}")
            try:
                stage.failed(e)
            finally:
                queue.fail(job, error)
                stats.failed += 1
            return

        queue.delete(job)
        stats.succeeded += 1

    def execute(self, stage) -> None:
        """Run ``stage.handle()`` with the stage timeout.

        A timed-out attempt marks the workflow FAILED at once, so the late
        handler can no longer move it, and the worker then waits for that
        handler to return before the job is retried or failed. At most one
        handler runs per job.

        Raises:
            JobTimeout: If the attempt outlives ``stage.timeout``
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ticketflow-{stage.name}")
        future = executor.submit(stage.handle)
        try:
            future.result(timeout=stage.timeout)
        except FutureTimeout as e:
            error = f"{stage.name} timed out after {stage.timeout} seconds"
            self.mark_timed_out(stage, error)
            logger.warning(f"{error} (ticket {stage.ticket_id}); waiting for the attempt to stop")
            executor.shutdown(wait=True)
            raise JobTimeout(error) from e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def mark_timed_out(self, stage, error: str) -> None:
        workflow = self.runtime.repository.get_workflow(stage.ticket_id)
        if workflow is None or workflow.is_cancelled or workflow.is_terminal:
            return
        self.runtime.machine.fail(
            stage.ticket_id, error, stage=stage.name, meta_patch={"error_class": JobTimeout.__name__}
        )
