"""PlanTicket stage: retrieval-augmented planning."""

from __future__ import annotations

import json
import logging
from typing import Any

from ticketflow.workflow.errors import PolicyViolation
from ticketflow.workflow.models import Plan, Project, Ticket, Workflow, WorkflowState, utcnow_iso
from ticketflow.workflow.stages.base import StageJob
from ticketflow.workflow.validation import PlanValidator

logger = logging.getLogger(__name__)

RAG_TOP_K = 20
PROFILE_RELEVANCE = 0.8


def rag_query(ticket: Ticket) -> str:
    parts = [ticket.title, ticket.body, *ticket.acceptance_criteria]
    return "\n".join(part for part in parts if part)


def format_plan_comment(plan: Plan) -> str:
    """Markdown summary of a plan for the ticket tracker."""
    lines = ["## Implementation plan", "", "### Summary", plan.summary or "Plan generated for implementation", ""]
    lines.append("### Steps")
    for index, step in enumerate(plan.steps, start=1):
        targets = ", ".join(f"`{t.get('path')}`" for t in step.targets if t.get("path"))
        line = f"{index}. **{step.intent.value}**: {step.rationale}"
        if targets:
            line += f" ({targets})"
        lines.append(line)
    lines += [
        "",
        "### Details",
        f"- **Risk level**: {plan.risk_level}",
        f"- **Estimated hours**: {plan.estimated_hours}",
        f"- **Files affected**: {len(plan.files_affected)}",
    ]
    if plan.test_strategy:
        lines += ["", "### Test strategy", plan.test_strategy]
    return "\n".join(lines) + "\n"


class PlanTicket(StageJob):
    """Drafts, validates and stores the implementation plan."""

    name = "PlanTicket"
    phase = "plan"
    tries = 3
    timeout = 300
    entry_states = (WorkflowState.CONTEXT_READY,)

    def run(self, ticket: Ticket, workflow: Workflow) -> None:
        project = self.project_for(ticket)
        rag_context = self.build_rag_context(ticket, project)
        logger.info(f"Planning ticket {ticket.id} with {len(rag_context)} context items")

        data = self.runtime.resolver.planner(project).plan(ticket, rag_context)
        normalized = PlanValidator.normalize_plan(data)
        warnings = PlanValidator.validate_plan(normalized)
        for warning in warnings:
            logger.warning(f"Plan for ticket {ticket.id}: {warning}")

        plan = PlanValidator.build_plan(ticket.id, normalized)
        compliance = self.runtime.enforcer.check_plan_compliance(plan)
        if not compliance.passed:
            raise PolicyViolation(compliance.violations)

        previous = self.repository.get_plan(ticket.id)
        if previous is not None:
            plan.version = f"{int(float(previous.version)) + 1}.0"
        plan.metadata.update(
            {
                "validation_warnings": warnings,
                "policy_warnings": compliance.warnings,
                "policy_risk_score": compliance.risk_score,
                "policy_risk_level": compliance.risk_level,
                "context_items": len(rag_context),
            }
        )
        self.repository.save_plan(plan)
        logger.info(f"Plan stored for ticket {ticket.id}: {len(plan.steps)} steps, risk {plan.risk_level}")

        meta: dict[str, Any] = {
            "plan_generated_at": utcnow_iso(),
            "plan_steps": len(plan.steps),
            "plan_risk": plan.risk_level,
        }
        if self.runtime.config.get("tickets.post_plan_comment", True):
            meta.update(self.post_plan_comment(ticket, project, plan))

        self.machine.transition(ticket.id, WorkflowState.PLANNED, meta)
        self.dispatch("ImplementPlan")

    def build_rag_context(self, ticket: Ticket, project: Project) -> list[dict[str, Any]]:
        """Top-K code chunks for the ticket text plus the project profile."""
        hits = self.runtime.resolver.embeddings(project).search(
            rag_query(ticket), k=RAG_TOP_K, project_id=project.id
        )
        context = []
        for hit in hits:
            metadata = hit.get("metadata") or {}
            source = metadata.get("file_path", "unknown")
            if metadata.get("start_line"):
                source = f"{source}:{metadata['start_line']}"
            context.append(
                {"content": hit.get("content", ""), "relevance": hit.get("score", 0), "source": source}
            )
        if project.language_profile:
            context.append(
                {
                    "content": json.dumps(project.language_profile, indent=2),
                    "relevance": PROFILE_RELEVANCE,
                    "source": "project_profile",
                }
            )
        return context

    def post_plan_comment(self, ticket: Ticket, project: Project, plan: Plan) -> dict[str, Any]:
        """Post the plan summary to the tracker; a failure never fails the stage."""
        try:
            self.runtime.resolver.ticket_provider(project).add_comment(
                ticket.external_key, format_plan_comment(plan)
            )
        except Exception as e:
            logger.warning(f"Failed to post plan comment for {ticket.external_key}: {e}")
            return {"plan_comment_posted": False, "plan_comment_failed": True, "plan_comment_error": str(e)}
        return {"plan_comment_posted": True}
