"""Exceptions raised by the workflow core."""

from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for workflow errors."""

    #: Error kind recorded in failure bundles for classification.
    kind = "error"


class InvalidTransition(WorkflowError):
    """Raised when a state change is not a legal successor of the current state."""

    kind = "validation"

    def __init__(self, current: str, requested: str, reason: Optional[str] = None):
        self.current = current
        self.requested = requested
        message = f"Invalid transition: {current} -> {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class WorkflowNotFound(WorkflowError):
    """Raised when a ticket has no workflow record."""

    kind = "validation"


class RetryLimitExceeded(WorkflowError):
    """Raised when a failed workflow has used up its retries."""

    kind = "validation"


class PlanValidationError(WorkflowError):
    """Raised when a generated plan does not match the plan schema."""

    kind = "validation"


class PolicyViolation(WorkflowError):
    """Raised when a plan or patch breaks a hard policy rule."""

    kind = "validation"

    def __init__(self, violations: list[str]):
        self.violations = violations
        super().__init__("Policy violations: " + "; ".join(violations))


class ChecksFailed(WorkflowError):
    """Synthetic failure describing mandatory checks that exited non-zero."""

    kind = "check_failure"

    def __init__(self, failed_checks: list[str], output: str = ""):
        self.failed_checks = failed_checks
        self.output = output
        super().__init__(f"Checks failed: {', '.join(failed_checks)}")


class WorkspaceNotFound(WorkflowError):
    """Raised when a stage runs before the workspace has been prepared."""


class JobTimeout(WorkflowError):
    """Raised by the worker when a job exceeds its timeout."""

    kind = "transient"


class ProviderNotFound(WorkflowError):
    """Raised when a capability has no binding with the requested name."""


class ProviderError(WorkflowError):
    """Raised when a capability provider call fails."""

    kind = "transient"


class ArtifactNotFound(WorkflowError):
    """Raised when an artifact path does not exist in the artifact store."""
