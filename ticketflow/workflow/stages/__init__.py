"""Pipeline stage jobs, keyed by the name used in the job queue."""

from ticketflow.workflow.stages.base import StageJob
from ticketflow.workflow.stages.build_context import BuildContext
from ticketflow.workflow.stages.checks import RunChecks
from ticketflow.workflow.stages.fix import FixIteration
from ticketflow.workflow.stages.implement import ImplementPlan
from ticketflow.workflow.stages.plan import PlanTicket
from ticketflow.workflow.stages.pull_request import CreatePullRequest
from ticketflow.workflow.stages.repair import RepairAttempt
from ticketflow.workflow.stages.review import ReviewPatch

STAGES: dict[str, type[StageJob]] = {
    stage.name: stage
    for stage in (
        BuildContext,
        PlanTicket,
        ImplementPlan,
        RunChecks,
        ReviewPatch,
        FixIteration,
        CreatePullRequest,
        RepairAttempt,
    )
}

__all__ = [
    "STAGES",
    "BuildContext",
    "CreatePullRequest",
    "FixIteration",
    "ImplementPlan",
    "PlanTicket",
    "RepairAttempt",
    "ReviewPatch",
    "RunChecks",
    "StageJob",
]
