"""ReviewPatch stage: policy check plus AI review, then routing."""

from __future__ import annotations

import logging
from typing import Any

from ticketflow.workflow.errors import WorkflowError
from ticketflow.workflow.models import (
    PolicyCheckResult,
    ReviewResult,
    Ticket,
    Workflow,
    WorkflowState,
    utcnow_iso,
)
from ticketflow.workflow.stages.base import StageJob

logger = logging.getLogger(__name__)

FIX_DELAY = 10

ROUTE_PR = "pr"
ROUTE_FIX = "fix"
ROUTE_DRAFT_PR = "draft_pr"


def merge_review(
    policy: PolicyCheckResult, review: ReviewResult, checks_pass: bool
) -> dict[str, Any]:
    """Combine the policy check and the AI review into one verdict.

    ``passed`` needs the policy, the reviewer and the checks; the score is
    the mean of the policy's inverse risk and the AI quality score.
    """
    issues: list[dict[str, Any]] = [
        {"type": "policy", "severity": "high", "message": violation, "fixable": True}
        for violation in policy.violations
    ]
    issues += [{**issue, "type": "ai_review"} for issue in review.issues]
    issues += [{**issue, "type": "security"} for issue in review.security_issues]

    passed = policy.passed and review.is_approved() and checks_pass
    fixable = not any(
        issue.get("severity") == "critical" and not issue.get("fixable", True) for issue in issues
    )
    return {
        "passed": passed,
        "score": int(((100 - policy.risk_score) + review.quality_score) / 2),
        "status": "approved" if passed else "needs_changes",
        "issues": issues,
        "suggestions": list(policy.warnings) + list(review.suggestions),
        "checklist": list(policy.review_checklist),
        "risk_level": policy.risk_level,
        "risk_score": policy.risk_score,
        "fixable": fixable,
        "policy_passed": policy.passed,
        "ai_approved": review.is_approved(),
        "checks_passed": checks_pass,
        "summary": review.summary,
    }


def decide_route(review: dict[str, Any], iterations: int, max_iterations: int) -> str:
    """Where a reviewed patch goes next.

    A failed review loops back through FixIteration only while it is fixable
    and the iteration budget lasts; otherwise a draft PR keeps the ticket
    moving.
    """
    if review["passed"]:
        return ROUTE_PR
    if review.get("fixable", True) and iterations < max_iterations:
        return ROUTE_FIX
    return ROUTE_DRAFT_PR


class ReviewPatch(StageJob):
    """Reviews the latest patch and routes to a fix iteration or a PR."""

    name = "ReviewPatch"
    phase = "review"
    tries = 2
    timeout = 300
    entry_states = (WorkflowState.TESTING,)

    def run(self, ticket: Ticket, workflow: Workflow) -> None:
        project = self.project_for(ticket)
        patch = self.repository.latest_patch(ticket.id)
        if patch is None:
            raise WorkflowError(f"No patch to review for ticket {ticket.id}")
        checks_pass = bool(self.payload.get("checks_pass", workflow.meta.get("checks_passed", False)))

        policy = self.runtime.enforcer.check_patch_compliance(patch)
        logger.info(
            f"Policy check for ticket {ticket.id}: passed={policy.passed} "
            f"risk={policy.risk_score} ({policy.risk_level}) violations={len(policy.violations)}"
        )

        review = self.runtime.resolver.reviewer(project).review(
            patch_summary={
                "files_touched": patch.files_touched,
                "diff_stats": patch.diff_stats,
                "risk_score": patch.risk_score,
                "summary": patch.summary,
            },
            test_results={"runs": self.recent_runs(ticket)},
            checks_pass=checks_pass,
            policy_violations=policy.violations,
        )
        final = merge_review(policy, review, checks_pass)
        self.repository.update_patch_summary(
            patch.id, {"review": final, "review_completed_at": utcnow_iso()}
        )

        self.machine.transition(
            ticket.id,
            WorkflowState.REVIEWING,
            {
                "review_completed_at": utcnow_iso(),
                "review_passed": final["passed"],
                "review_score": final["score"],
            },
        )
        logger.info(
            f"Review for ticket {ticket.id}: passed={final['passed']} score={final['score']} "
            f"issues={len(final['issues'])}"
        )

        iterations = int(workflow.meta.get("fix_iterations", 0))
        max_iterations = self.runtime.max_fix_iterations
        route = decide_route(final, iterations, max_iterations)

        if route == ROUTE_FIX:
            self.machine.transition(
                ticket.id, WorkflowState.FIXING, increment={"fix_iterations": 1}
            )
            logger.info(f"Dispatching fix iteration {iterations + 1}/{max_iterations} for ticket {ticket.id}")
            self.dispatch("FixIteration", delay=FIX_DELAY, issues=final["issues"])
        elif route == ROUTE_PR:
            self.dispatch("CreatePullRequest", draft=False)
        else:
            reason = "max_iterations_reached" if iterations >= max_iterations else "not_fixable"
            logger.warning(f"Review failed for ticket {ticket.id} ({reason}), opening a draft PR")
            self.dispatch("CreatePullRequest", draft=True)

    def recent_runs(self, ticket: Ticket) -> list[dict[str, Any]]:
        return [
            {
                "type": run.type.value,
                "status": run.status.value,
                "exit_code": run.exit_code,
                "artifacts": run.artifacts,
                "created_at": run.created_at,
            }
            for run in reversed(self.repository.runs_for(ticket.id)[-10:])
        ]
