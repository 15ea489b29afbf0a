"""Type-safe data models and state enums for the ticket workflow.

This module provides the foundational type system for the pipeline: workflow
lifecycle states, the records persisted by the record store (projects,
tickets, workflows, plans, patches, runs, pull requests) and the value objects
exchanged with capability providers.

Every persisted record offers ``to_dict()`` / ``from_dict()`` so the record
store only ever deals with plain JSON-compatible dictionaries.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    """Return the current UTC time in ISO-8601 format."""
    return utcnow().isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp written by :func:`utcnow_iso`."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class WorkflowState(str, Enum):
    """Workflow lifecycle states."""

    INGESTED = "INGESTED"
    CONTEXT_READY = "CONTEXT_READY"
    PLANNED = "PLANNED"
    IMPLEMENTING = "IMPLEMENTING"
    TESTING = "TESTING"
    REVIEWING = "REVIEWING"
    FIXING = "FIXING"
    PR_CREATED = "PR_CREATED"
    DONE = "DONE"
    FAILED = "FAILED"


TERMINAL_STATES = {WorkflowState.DONE, WorkflowState.FAILED}


class RunType(str, Enum):
    """Verification check kinds."""

    LINT = "lint"
    TYPECHECK = "typecheck"
    TEST = "test"
    BUILD = "build"
    REVIEW = "review"


class RunStatus(str, Enum):
    """Verification check outcomes."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepIntent(str, Enum):
    """What a plan step (or a corrective change) intends to do."""

    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"
    ADD_TEST = "add_test"
    REFACTOR = "refactor"
    FIX = "fix"
    FIX_TESTS = "fix_tests"
    MINIMAL_FIX = "minimal_fix"


PLAN_INTENTS = {
    StepIntent.ADD,
    StepIntent.MODIFY,
    StepIntent.REMOVE,
    StepIntent.ADD_TEST,
    StepIntent.REFACTOR,
}


class Priority(str, Enum):
    """Suggestion and issue priorities, ranked by weight."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]

    @classmethod
    def coerce(cls, value: Any) -> Priority:
        """Convert a free-form priority string, defaulting to MEDIUM."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.MEDIUM


_PRIORITY_WEIGHTS = {
    Priority.CRITICAL: 100,
    Priority.HIGH: 75,
    Priority.MEDIUM: 50,
    Priority.LOW: 25,
}


class _Record:
    """Mixin giving dataclass records a JSON round trip."""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)  # type: ignore[call-overload]
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Project(_Record):
    """A repository the pipeline works on."""

    id: int
    name: str
    repo_url: str
    default_branch: str = "main"
    language_profile: dict[str, Any] = field(default_factory=dict)
    allowed_paths: dict[str, list[str]] = field(default_factory=dict)
    providers: dict[str, str] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class Ticket(_Record):
    """Unit of work ingested from a tracker or the CLI."""

    id: int
    project_id: int
    external_key: str
    title: str
    body: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    status: str = "open"
    priority: str = "medium"
    labels: list[str] = field(default_factory=list)
    assignee: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class Workflow(_Record):
    """State machine instance, one per ticket."""

    ticket_id: int
    state: WorkflowState = WorkflowState.INGESTED
    retries: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def __post_init__(self) -> None:
        self.state = WorkflowState(self.state)

    @property
    def is_cancelled(self) -> bool:
        return bool(self.meta.get("cancelled"))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def checkpoint(self) -> Optional[WorkflowState]:
        """State recorded when the workflow last failed."""
        previous = self.meta.get("previous_state")
        return WorkflowState(previous) if previous else None


@dataclass
class PlanStep(_Record):
    """One ordered step of an implementation plan."""

    id: str
    intent: StepIntent = StepIntent.MODIFY
    targets: list[dict[str, Any]] = field(default_factory=list)
    rationale: str = ""
    acceptance: list[str] = field(default_factory=list)
    estimated_minutes: int = 30
    dependencies: list[str] = field(default_factory=list)
    risk_factors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.intent = StepIntent(self.intent)


@dataclass
class Plan(_Record):
    """AI-authored implementation plan for a ticket."""

    ticket_id: int
    steps: list[PlanStep] = field(default_factory=list)
    version: str = "1.0"
    summary: str = ""
    risk_level: str = "low"
    test_strategy: str = ""
    estimated_hours: float = 0.0
    files_affected: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["steps"] = [step.to_dict() for step in self.steps]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        plan = super().from_dict(data)
        plan.steps = [
            step if isinstance(step, PlanStep) else PlanStep.from_dict(step)
            for step in plan.steps
        ]
        return plan


@dataclass
class Patch(_Record):
    """Concrete code changes produced by implementation or fixing."""

    id: int
    ticket_id: int
    files_touched: list[str] = field(default_factory=list)
    diff_stats: dict[str, int] = field(default_factory=dict)
    risk_score: int = 0
    summary: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)

    @property
    def total_lines_changed(self) -> int:
        return int(self.diff_stats.get("additions", 0)) + int(
            self.diff_stats.get("deletions", 0)
        )


@dataclass
class Run(_Record):
    """Outcome of one verification check. Never mutated after creation."""

    id: int
    ticket_id: int
    type: RunType
    status: RunStatus
    patch_id: Optional[int] = None
    exit_code: Optional[int] = None
    artifacts: dict[str, Optional[str]] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)

    def __post_init__(self) -> None:
        self.type = RunType(self.type)
        self.status = RunStatus(self.status)


@dataclass
class PullRequest(_Record):
    """Pull request opened through a VCS provider."""

    id: int
    ticket_id: int
    provider_id: str
    url: str
    branch: str
    is_draft: bool = False
    labels: list[str] = field(default_factory=list)
    reviewers: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class Worklog(_Record):
    """Time spent on one phase of a ticket, recorded per stage attempt."""

    id: int
    ticket_id: int
    phase: str
    started_at: str
    ended_at: str
    seconds: float
    status: str = "completed"
    notes: Optional[str] = None


@dataclass(frozen=True)
class GateResult:
    """Result of a dispatch gate check."""

    passed: bool
    reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CommandResult:
    """Result of a command executed in a workspace."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


@dataclass(frozen=True)
class Suggestion:
    """Ranked repair suggestion derived from a failure."""

    type: str
    priority: Priority
    action: str
    commands: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "priority": self.priority.value,
            "action": self.action,
            "commands": list(self.commands),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Suggestion:
        return cls(
            type=data.get("type", "minimal_fix"),
            priority=Priority.coerce(data.get("priority", "medium")),
            action=data.get("action", ""),
            commands=list(data.get("commands") or []),
        )


@dataclass
class RepairStrategy:
    """Concrete plan for one repair attempt."""

    type: str
    priority: Priority
    actions: list[str]
    target_files: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "priority": self.priority.value,
            "actions": list(self.actions),
            "target_files": list(self.target_files),
            "commands": list(self.commands),
        }


@dataclass
class PatchSummary:
    """Changes proposed by the AI implementation capability.

    Each change is either ``{"file", "content"}`` (write the whole file) or
    ``{"file", "old", "new"}`` (replace a snippet).
    """

    changes: list[dict[str, Any]] = field(default_factory=list)
    notes: str = ""


@dataclass
class ReviewResult:
    """Outcome of an AI code review."""

    status: str = "needs_changes"
    issues: list[dict[str, Any]] = field(default_factory=list)
    security_issues: list[dict[str, Any]] = field(default_factory=list)
    suggestions: list[dict[str, Any]] = field(default_factory=list)
    quality_score: int = 0
    summary: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_approved(self) -> bool:
        return self.status == "approved"


@dataclass
class PolicyCheckResult:
    """Result of a policy compliance check."""

    passed: bool = True
    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    required_checks: list[dict[str, Any]] = field(default_factory=list)
    security_findings: list[dict[str, Any]] = field(default_factory=list)
    review_checklist: list[str] = field(default_factory=list)
    risk_score: int = 0
    risk_level: str = "low"
    retryable: bool = False
    retry_reason: Optional[str] = None

    def add_violation(self, violation: str) -> None:
        self.violations.append(violation)
        self.passed = False

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def add_check(self, name: str, mandatory: bool, description: str) -> None:
        self.required_checks.append(
            {"name": name, "mandatory": mandatory, "description": description}
        )

    def add_security_finding(
        self, tool: str, message: str, severity: str = "medium"
    ) -> None:
        self.security_findings.append(
            {"tool": tool, "message": message, "severity": severity}
        )
        if severity in ("critical", "high"):
            self.passed = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FailureBundle:
    """Typed view over a stored failure bundle document."""

    version: str = "1.0"
    timestamp: str = ""
    ticket: dict[str, Any] = field(default_factory=dict)
    failure: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    suggestions: list[dict[str, Any]] = field(default_factory=list)
    last_diffs: list[dict[str, Any]] = field(default_factory=list)
    code_context: list[dict[str, Any]] = field(default_factory=list)
    repo_profile: dict[str, Any] = field(default_factory=dict)
    command_logs: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureBundle:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def job(self) -> str:
        return self.failure.get("job", "")

    @property
    def error_kind(self) -> str:
        return self.failure.get("error_kind", "error")

    @property
    def exception(self) -> dict[str, Any]:
        return self.failure.get("exception", {})

    @property
    def message(self) -> str:
        return str(self.exception.get("message", ""))

    def ranked_suggestions(self) -> list[Suggestion]:
        return [Suggestion.from_dict(s) for s in self.suggestions]
