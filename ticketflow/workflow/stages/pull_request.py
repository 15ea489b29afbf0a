"""CreatePullRequest stage: commit, push and open the PR."""

from __future__ import annotations

import logging
from typing import Any, Optional

from ticketflow.workflow.errors import WorkflowError
from ticketflow.workflow.models import (
    Patch,
    Plan,
    Project,
    RunType,
    Ticket,
    Workflow,
    WorkflowState,
    utcnow,
    utcnow_iso,
)
from ticketflow.workflow.stages.base import StageJob

logger = logging.getLogger(__name__)

DRAFT_RISK_LEVELS = {"medium", "high", "critical"}
BOT_LABEL = "bot-generated"


def should_be_draft(review: dict[str, Any], forced: bool = False) -> bool:
    if forced:
        return True
    if review.get("risk_level", "low") in DRAFT_RISK_LEVELS:
        return True
    if not review.get("passed", True):
        return True
    return any(issue.get("severity") == "critical" for issue in review.get("issues", []))


def generate_labels(ticket: Ticket, project: Project, review: dict[str, Any], draft: bool) -> list[str]:
    labels = list(ticket.labels)
    labels.append(f"risk:{review.get('risk_level', 'unknown')}")
    labels.append(BOT_LABEL)
    labels += ["draft", "needs-review"] if draft else ["ready-for-review"]
    labels += [f"lang:{language}" for language in project.language_profile.get("languages", [])]
    return list(dict.fromkeys(labels))


def determine_reviewers(pool: list[str], requirements: dict[str, Any]) -> list[str]:
    """Pick reviewers from the configured pool per the risk level's requirements.

    Names containing "senior" or "security" fill those roles; the rest of the
    pool tops the list up to ``min_reviewers``.
    """
    reviewers: list[str] = []
    if requirements.get("require_senior"):
        reviewers += [r for r in pool if "senior" in r]
    if requirements.get("require_security_review"):
        reviewers += [r for r in pool if "security" in r]
    remaining = [r for r in pool if r not in reviewers]
    min_reviewers = int(requirements.get("min_reviewers", 1))
    while len(set(reviewers)) < min_reviewers and remaining:
        reviewers.append(remaining.pop(0))
    return [r for r in dict.fromkeys(reviewers) if r]


def commit_message(ticket: Ticket, plan: Optional[Plan], patch: Patch, review: dict[str, Any]) -> str:
    lines = [f"[{ticket.external_key}] {ticket.title}", ""]
    if plan and plan.steps:
        lines.append("Implementation:")
        for index, step in enumerate(plan.steps):
            lines.append(f"- {step.rationale}")
            if index >= 4 and len(plan.steps) > 5:
                lines.append("- ...and more")
                break
        lines.append("")
    lines.append(f"Files changed: {len(patch.files_touched)}")
    lines.append(f"Risk level: {review.get('risk_level', 'unknown')}")
    return "\n".join(lines) + "\n"


class CreatePullRequest(StageJob):
    """Publishes the latest patch as a pull request."""

    name = "CreatePullRequest"
    phase = "pr"
    tries = 3
    timeout = 300
    entry_states = (WorkflowState.REVIEWING,)

    def run(self, ticket: Ticket, workflow: Workflow) -> None:
        project = self.project_for(ticket)
        patch = self.repository.latest_patch(ticket.id)
        if patch is None:
            raise WorkflowError(f"No patch to publish for ticket {ticket.id}")
        plan = self.repository.get_plan(ticket.id)
        review = patch.summary.get("review") or {}
        workspace = self.workspace_for(ticket)
        git = self.runtime.git_for(ticket.id)

        branch = workflow.meta.get("branch") or git.current_branch()
        sha = git.commit_all(commit_message(ticket, plan, patch, review))
        if git.has_remote():
            git.push_branch(branch)
        else:
            logger.warning(f"Workspace for ticket {ticket.id} has no remote, branch not pushed")

        draft = should_be_draft(review, forced=bool(self.payload.get("draft")))
        risk_level = review.get("risk_level", "low")
        reviewers = determine_reviewers(
            list(self.runtime.config.get("pr.reviewers", []) or []),
            self.runtime.enforcer.review_requirements(risk_level),
        )
        labels = generate_labels(ticket, project, review, draft)
        assignees = [ticket.assignee] if ticket.assignee else list(self.runtime.config.get("pr.assignees", []) or [])

        title = f"[{ticket.external_key}] {ticket.title}"
        created = self.runtime.resolver.vcs(project).open_pr(
            title=f"[DRAFT] {title}" if draft else title,
            body=self.pr_body(ticket, plan, patch, review),
            base_branch=project.default_branch or "main",
            head_branch=branch,
            is_draft=draft,
            labels=labels,
            reviewers=reviewers,
            assignees=assignees,
            metadata={
                "ticket_id": ticket.id,
                "patch_id": patch.id,
                "commit": sha,
                "workspace_path": str(workspace),
            },
        )
        is_draft = bool(created.get("is_draft", draft))
        pr = self.repository.create_pull_request(
            ticket.id,
            provider_id=str(created.get("id", "")),
            url=created.get("url", ""),
            branch=branch,
            is_draft=is_draft,
            labels=list(created.get("labels", labels)),
            reviewers=reviewers,
        )
        logger.info(f"Pull request created for ticket {ticket.id}: {pr.url} (draft={is_draft})")

        self.machine.transition(
            ticket.id,
            WorkflowState.PR_CREATED,
            {"pr_created_at": utcnow_iso(), "pr_url": pr.url, "pr_id": pr.id, "pr_draft": is_draft},
        )
        if not is_draft:
            self.machine.transition(ticket.id, WorkflowState.DONE, {"completed_at": utcnow_iso()})

    def pr_body(self, ticket: Ticket, plan: Optional[Plan], patch: Patch, review: dict[str, Any]) -> str:
        lines = ["## What", "", ticket.body or ticket.title, ""]
        if ticket.acceptance_criteria:
            lines.append("### Acceptance Criteria")
            lines += [f"- [ ] {criterion}" for criterion in ticket.acceptance_criteria]
            lines.append("")

        lines += ["## Why", "", (plan.summary if plan and plan.summary else "Implementation needed as per ticket requirements."), ""]

        lines += ["## How", ""]
        if plan:
            lines += [f"{i}. **{step.intent.value}**: {step.rationale}" for i, step in enumerate(plan.steps, start=1)]
        lines.append("")

        lines += ["## How Tested", ""]
        runs = self.repository.runs_for(ticket.id)[-5:]
        if runs:
            lines += [f"- **{run.type.value}**: {run.status.value}" for run in reversed(runs)]
        else:
            lines.append("- No automated checks were run")
        if plan and plan.test_strategy:
            lines += ["", f"**Test Strategy**: {plan.test_strategy}"]
        lines.append("")

        lines += [
            "## Risks",
            "",
            f"- **Risk Level**: {review.get('risk_level', 'unknown').capitalize()} "
            f"(Score: {review.get('score', 0)}/100)",
        ]
        if review.get("issues"):
            lines += ["", "### Known Issues"]
            lines += [f"- [{i.get('severity', 'medium')}] {i.get('message', '')}" for i in review["issues"][:5]]
        lines.append("")

        lines += ["## Checklist", ""]
        lines += [f"- [ ] {item}" for item in review.get("checklist", [])] or ["- [ ] Self-review completed"]
        lines.append("")

        lines += [
            "## Metrics",
            "",
            "| Metric | Value |",
            "|--------|-------|",
            f"| Files Changed | {len(patch.files_touched)} |",
            f"| Lines Added | {patch.diff_stats.get('additions', 0)} |",
            f"| Lines Removed | {patch.diff_stats.get('deletions', 0)} |",
        ]
        if patch.summary.get("test_coverage") is not None:
            lines.append(f"| Test Coverage | {patch.summary['test_coverage']}% |")
        lines += [f"| Review Score | {review.get('score', 0)}/100 |", ""]

        lines += ["## Links", "", f"- Ticket: {ticket.meta.get('url') or ticket.external_key}"]
        for run_type, kind, name in (
            (RunType.TEST, "junit", "Test Results (JUnit)"),
            (RunType.TEST, "coverage", "Code Coverage Report"),
            (RunType.LINT, "log", "Lint Report"),
        ):
            path = self.latest_artifact(ticket, run_type, kind)
            if path:
                lines.append(f"- {name}: `{path}`")

        lines += ["", "---", f"_Generated by ticketflow - {utcnow():%Y-%m-%d %H:%M:%S} UTC_"]
        return "\n".join(lines) + "\n"

    def latest_artifact(self, ticket: Ticket, run_type: RunType, kind: str) -> Optional[str]:
        for run in reversed(self.repository.runs_for(ticket.id)):
            if run.type == run_type:
                return run.artifacts.get(kind)
        return None
