"""RunChecks stage: lint, typecheck and tests with stored artifacts."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Optional

from ticketflow.workflow.errors import ChecksFailed, WorkflowError
from ticketflow.workflow.models import (
    Patch,
    Project,
    Run,
    RunStatus,
    RunType,
    Ticket,
    Workflow,
    WorkflowState,
    utcnow,
    utcnow_iso,
)
from ticketflow.workflow.stages.base import StageJob

logger = logging.getLogger(__name__)

CHECK_ORDER = (RunType.LINT, RunType.TYPECHECK, RunType.TEST)
SELF_HEALING_CHECKS = {"lint", "typecheck"}
CHECK_TIMEOUT = 300
REPAIR_DELAY = 10

JUNIT_CANDIDATES = (
    "junit.xml",
    "test-results/junit.xml",
    "coverage/junit.xml",
    "tests/_output/junit.xml",
    "test-results.xml",
)
COVERAGE_CANDIDATES = (
    "coverage.xml",
    "coverage/clover.xml",
    "coverage/cobertura-coverage.xml",
    "coverage/lcov.info",
    "coverage.out",
)


def add_coverage_flags(command: str) -> str:
    """Ask the detected test runner for a coverage report."""
    if "pytest" in command:
        return f"{command} --cov --cov-report=xml --cov-report=html"
    if "jest" in command:
        return f"{command} --coverage"
    if "phpunit" in command:
        return f"{command} --coverage-clover coverage.xml"
    if "go test" in command:
        return f"{command} -coverprofile=coverage.out"
    return command


def parse_coverage_percentage(content: str) -> Optional[float]:
    """Line coverage from a Cobertura or Clover XML report.

    Returns:
        Percentage rounded to two decimals, or None for other formats
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError:
        return None
    line_rate = root.get("line-rate")
    if line_rate is not None:
        return round(float(line_rate) * 100, 2)
    metrics = root.find("./project/metrics")
    if metrics is not None:
        statements = int(metrics.get("statements", 0))
        covered = int(metrics.get("coveredstatements", 0))
        if statements:
            return round(covered / statements * 100, 2)
    return None


class RunChecks(StageJob):
    """Runs the project's checks against the latest patch.

    Mandatory lint and typecheck failures go to the repair engine; test
    failures only lower ``checks_pass`` for the review.
    """

    name = "RunChecks"
    phase = "test"
    tries = 3
    timeout = 900
    entry_states = (WorkflowState.IMPLEMENTING, WorkflowState.FIXING, WorkflowState.TESTING)

    def run(self, ticket: Ticket, workflow: Workflow) -> None:
        project = self.project_for(ticket)
        patch = self.repository.latest_patch(ticket.id)
        if patch is None:
            raise WorkflowError(f"No patch to check for ticket {ticket.id}")
        workspace = self.workspace_for(ticket)

        if workflow.state != WorkflowState.TESTING:
            self.machine.transition(ticket.id, WorkflowState.TESTING, {"checks_started_at": utcnow_iso()})

        runs: list[Run] = []
        outputs: dict[str, str] = {}
        coverage = None
        for check in CHECK_ORDER:
            run, output, check_coverage = self.run_check(ticket, project, patch, workspace, check)
            runs.append(run)
            if run.status == RunStatus.FAILED:
                outputs[check.value] = output
            if check_coverage is not None:
                coverage = check_coverage

        if coverage is not None:
            self.repository.update_patch_summary(patch.id, {"test_coverage": coverage})

        evaluation = self.machine.evaluate_mandatory_checks(
            runs, self.runtime.policies.get("mandatory_checks")
        )
        self.repository.merge_workflow_meta(
            ticket.id,
            {
                "checks_completed_at": utcnow_iso(),
                "checks_passed": evaluation["passed"],
                "check_results": evaluation["results"],
                "mandatory_failures": evaluation["failures"],
            },
        )
        logger.info(f"Checks completed for ticket {ticket.id}: {evaluation['results']}")

        healable = [check for check in evaluation["failures"] if check in SELF_HEALING_CHECKS]
        if healable:
            self.start_self_healing(ticket, healable, outputs, evaluation)
            return

        self.dispatch("ReviewPatch", checks_pass=evaluation["passed"])

    def run_check(
        self, ticket: Ticket, project: Project, patch: Patch, workspace: Path, check: RunType
    ) -> tuple[Run, str, Optional[float]]:
        """Run one check and store its artifacts.

        Returns:
            The Run record, the combined output and the coverage percentage
            (tests only, when a report was found)
        """
        command = (project.language_profile.get("commands") or {}).get(check.value)
        if not command:
            logger.info(f"No {check.value} command for ticket {ticket.id}, skipped")
            run = self.repository.create_run(
                ticket.id, type=check, status=RunStatus.SKIPPED, patch_id=patch.id
            )
            return run, "", None

        if check == RunType.TEST:
            command = add_coverage_flags(command)
        logger.info(f"Running {check.value} for ticket {ticket.id}: {command}")
        runner = self.runtime.resolver.runner(project)
        result = runner.run_direct(workspace, command, timeout=CHECK_TIMEOUT)

        output = f"$ {command}\n{result.stdout}\n\nERRORS:\n{result.stderr}"
        artifacts: dict[str, Optional[str]] = {
            "log": self.store_artifact(ticket, f"{check.value}_output", "log", output)
        }
        coverage = None
        if check == RunType.TEST:
            artifacts["junit"] = self.store_first(ticket, workspace, JUNIT_CANDIDATES, "junit")
            artifacts["coverage"], coverage = self.store_coverage(ticket, workspace)

        run = self.repository.create_run(
            ticket.id,
            type=check,
            status=RunStatus.SUCCESS if result.succeeded else RunStatus.FAILED,
            patch_id=patch.id,
            exit_code=result.exit_code,
            artifacts=artifacts,
        )
        logger.info(f"{check.value} check for ticket {ticket.id}: exit {result.exit_code}")
        return run, output, coverage

    def store_artifact(self, ticket: Ticket, stem: str, suffix: str, content: str) -> str:
        now = utcnow()
        path = (
            f"artifacts/tickets/{ticket.id}/{now:%Y-%m-%d}/"
            f"{stem}_{now:%H-%M-%S-%f}.{suffix}"
        )
        return self.runtime.artifacts.put(path, content)

    def store_first(
        self, ticket: Ticket, workspace: Path, candidates: tuple[str, ...], stem: str
    ) -> Optional[str]:
        for candidate in candidates:
            path = workspace / candidate
            if path.is_file():
                return self.store_artifact(
                    ticket, stem, path.suffix.lstrip(".") or "txt", path.read_text(encoding="utf-8", errors="replace")
                )
        return None

    def store_coverage(self, ticket: Ticket, workspace: Path) -> tuple[Optional[str], Optional[float]]:
        for candidate in COVERAGE_CANDIDATES:
            path = workspace / candidate
            if not path.is_file():
                continue
            content = path.read_text(encoding="utf-8", errors="replace")
            stored = self.store_artifact(ticket, "coverage", path.suffix.lstrip(".") or "txt", content)
            percentage = parse_coverage_percentage(content) if path.suffix == ".xml" else None
            return stored, percentage
        return None, None

    def start_self_healing(
        self,
        ticket: Ticket,
        failed_checks: list[str],
        outputs: dict[str, str],
        evaluation: dict[str, Any],
    ) -> None:
        """Capture a bundle for failing lint/typecheck checks and dispatch a repair."""
        output = "\n\n".join(outputs.get(check, "") for check in failed_checks)
        bundle_path = self.runtime.collector.capture_failure(
            ChecksFailed(failed_checks, output),
            ticket,
            self.name,
            {"check_results": evaluation["results"]},
        )
        workflow = self.repository.require_workflow(ticket.id)
        attempt = int(workflow.meta.get("repair_attempts", 0)) + 1
        logger.warning(
            f"Mandatory checks failed for ticket {ticket.id} ({', '.join(failed_checks)}); "
            f"dispatching repair attempt {attempt}"
        )
        self.dispatch("RepairAttempt", delay=REPAIR_DELAY, bundle_path=bundle_path, attempt=attempt)
