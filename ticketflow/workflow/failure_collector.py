"""Failure bundles for self-healing.

The collector turns an exception raised by a stage (or a synthetic
:class:`ChecksFailed`) into a self-contained JSON document: the exception and
its sanitised trace, recent command logs, recent patches, nearby code and a
ranked list of repair suggestions. Bundles are written to the artifact store
and only their path is handed around.
"""

from __future__ import annotations

import json
import logging
import platform
import re
import subprocess
import sys
import traceback
from pathlib import Path
from typing import Any, Optional

from ticketflow.providers.contracts import ArtifactStore
from ticketflow.providers.profiler import auto_fix_commands
from ticketflow.workflow.errors import ArtifactNotFound, ChecksFailed
from ticketflow.workflow.models import (
    Priority,
    Project,
    Suggestion,
    Ticket,
    utcnow,
)
from ticketflow.workflow.repository import Repository

logger = logging.getLogger(__name__)

MAX_TRACE_FRAMES = 30
MAX_LOG_CHARS = 50_000
RECENT_FAILURES = 10
RECENT_PATCHES = 3
RECENT_LOGS = 5

_SYNTAX = re.compile(r"syntax ?error|parse error|invalid syntax|unexpected (token|indent|eof)", re.I)
_IMPORT = re.compile(
    r"(class|module|name|function) ['\"]?[\w.\\]+['\"]? (is )?not (found|defined)"
    r"|cannot import name|no module named|cannot find module",
    re.I,
)
_TYPE = re.compile(
    r"type ?error|type mismatch|incompatible (return )?type|return type|typecheck|mypy|must be of type",
    re.I,
)
_LINT = re.compile(
    r"\b(lint(er|ing)?|style|format(ter|ting)?|ruff|flake8|eslint|pint|black|prettier|pycodestyle)\b",
    re.I,
)
_TEST = re.compile(r"\b(pytest|unittest|jest|phpunit|assert(ion)?(error)?|\d+ (failed|errors?))\b", re.I)
_PERMISSION = re.compile(r"permission denied|operation not permitted|\beacces\b", re.I)
_TIMEOUT = re.compile(r"\btimed? ?out\b", re.I)

_SYNTAX_CLASSES = {"SyntaxError", "IndentationError", "TabError"}
_IMPORT_CLASSES = {"ImportError", "ModuleNotFoundError", "NameError"}
_TYPE_CLASSES = {"TypeError"}
_TEST_CLASSES = {"AssertionError"}
_PERMISSION_CLASSES = {"PermissionError"}
_TIMEOUT_CLASSES = {"JobTimeout", "TimeoutError", "TimeoutExpired"}
# Stages whose failure output comes from the project's own check commands.
_CHECK_STAGES = {"RunChecks", "RepairAttempt"}
_TRANSIENT_CLASSES = (TimeoutError, ConnectionError, subprocess.TimeoutExpired)

_CREDENTIALS_IN_URL = re.compile(r"([a-z][a-z0-9+.-]*://)([^:/@\s]+):([^@\s]+)@", re.I)


def error_kind(exception: BaseException) -> str:
    """Error taxonomy entry recorded in the bundle."""
    if isinstance(exception, _TRANSIENT_CLASSES):
        return "transient"
    return getattr(exception, "kind", "error")


def classify_failure(
    exception_class: str,
    message: str,
    source_stage: str = "",
    failed_checks: Optional[list[str]] = None,
    profile: Optional[dict[str, Any]] = None,
) -> list[Suggestion]:
    """Derive repair suggestions, highest priority first.

    Every matching category contributes one suggestion; ties keep the
    category order below. An unmatched failure yields ``minimal_fix``.
    Test output only counts when it came from a check command: a failed
    ``test`` check, or a test runner's output in a checking stage.
    """
    failed_checks = failed_checks or []
    suggestions: list[Suggestion] = []

    if exception_class in _SYNTAX_CLASSES or _SYNTAX.search(message):
        suggestions.append(
            Suggestion("syntax_fix", Priority.CRITICAL, "Fix syntax errors in the reported files")
        )
    if exception_class in _IMPORT_CLASSES or _IMPORT.search(message):
        suggestions.append(
            Suggestion("import_fix", Priority.HIGH, "Add missing imports or fix the module path")
        )
    if exception_class in _TYPE_CLASSES or "typecheck" in failed_checks or _TYPE.search(message):
        suggestions.append(
            Suggestion("type_fix", Priority.HIGH, "Fix type declarations and signatures")
        )
    if "lint" in failed_checks or _LINT.search(message):
        suggestions.append(
            Suggestion(
                "lint_fix",
                Priority.MEDIUM,
                "Run code formatter and linter with auto-fix",
                auto_fix_commands(profile or {}),
            )
        )
    from_tests = source_stage in _CHECK_STAGES and _TEST.search(message)
    if "test" in failed_checks or exception_class in _TEST_CLASSES or from_tests:
        suggestions.append(
            Suggestion("test_fix", Priority.MEDIUM, "Review test expectations and update the implementation")
        )
    if exception_class in _PERMISSION_CLASSES or _PERMISSION.search(message):
        suggestions.append(
            Suggestion("permission_fix", Priority.MEDIUM, "Check file permissions and ownership")
        )
    if exception_class in _TIMEOUT_CLASSES or _TIMEOUT.search(message):
        suggestions.append(
            Suggestion("timeout_fix", Priority.MEDIUM, "Optimize the slow operation or split it up")
        )
    if not suggestions:
        suggestions.append(
            Suggestion("minimal_fix", Priority.MEDIUM, "Apply the smallest change that resolves the error")
        )

    return sorted(suggestions, key=lambda s: s.priority.weight, reverse=True)


class FailureCollector:
    """Captures failure bundles and records them on the workflow."""

    def __init__(
        self,
        repository: Repository,
        artifacts: ArtifactStore,
        resolver=None,
        workspaces_root: Optional[Path] = None,
        data_dir: Optional[Path] = None,
    ):
        self.repository = repository
        self.artifacts = artifacts
        self.resolver = resolver
        self.workspaces_root = Path(workspaces_root) if workspaces_root else None
        self.data_dir = Path(data_dir) if data_dir else None

    def capture_failure(
        self,
        exception: BaseException,
        ticket: Ticket,
        source_stage: str,
        extra_context: Optional[dict[str, Any]] = None,
    ) -> str:
        """Build, store and register a failure bundle.

        Returns:
            Artifact store path of the bundle
        """
        logger.info(
            f"Capturing failure for ticket {ticket.id} in {source_stage}: "
            f"{type(exception).__name__}"
        )
        project = self.repository.get_project(ticket.project_id)
        bundle = self._build_bundle(exception, ticket, project, source_stage, extra_context or {})

        now = utcnow()
        path = (
            f"artifacts/tickets/{ticket.id}/{now:%Y-%m-%d}/"
            f"failure_bundle_{ticket.id}_{now:%H-%M-%S-%f}.json"
        )
        self.artifacts.put(path, json.dumps(bundle, indent=2, default=str))
        self._register(ticket.id, path, source_stage, str(exception))
        logger.info(f"Failure bundle stored for ticket {ticket.id}: {path}")
        return path

    def load_bundle(self, path: str) -> Optional[dict[str, Any]]:
        """Read a bundle; None when missing or unreadable."""
        try:
            return json.loads(self.artifacts.get(path))
        except ArtifactNotFound:
            return None
        except (ValueError, OSError) as e:
            logger.error(f"Failed to load bundle {path}: {e}")
            return None

    def get_latest_bundle(self, ticket: Ticket) -> Optional[dict[str, Any]]:
        workflow = self.repository.get_workflow(ticket.id)
        if workflow is None or not workflow.meta.get("failures"):
            return None
        latest = workflow.meta["failures"][-1]
        if not latest.get("bundle_path"):
            return None
        return self.load_bundle(latest["bundle_path"])

    def latest_bundle_path(self, ticket: Ticket) -> Optional[str]:
        workflow = self.repository.get_workflow(ticket.id)
        failures = workflow.meta.get("failures") if workflow else None
        return failures[-1].get("bundle_path") if failures else None

    def _build_bundle(
        self,
        exception: BaseException,
        ticket: Ticket,
        project: Optional[Project],
        source_stage: str,
        extra_context: dict[str, Any],
    ) -> dict[str, Any]:
        profile = project.language_profile if project else {}
        exception_info = self._exception_info(exception, ticket.id)
        failed_checks = exception.failed_checks if isinstance(exception, ChecksFailed) else []
        suggestions = classify_failure(
            exception_info["class"], exception_info["message"], source_stage, failed_checks, profile
        )

        return {
            "version": "1.0",
            "timestamp": utcnow().isoformat(),
            "ticket": {
                "id": ticket.id,
                "external_key": ticket.external_key,
                "title": ticket.title,
                "status": ticket.status,
            },
            "failure": {
                "job": source_stage,
                "error_kind": error_kind(exception),
                "exception": exception_info,
            },
            "context": {**self._system_context(ticket, project), **extra_context},
            "artifacts": self._artifacts(ticket.id),
            "suggestions": [s.to_dict() for s in suggestions],
            "last_diffs": self._last_diffs(ticket.id),
            "code_context": self._code_context(exception_info, project),
            "repo_profile": profile,
            "command_logs": self._command_logs(ticket.id),
        }

    def _exception_info(self, exception: BaseException, ticket_id: int) -> dict[str, Any]:
        frames = traceback.extract_tb(exception.__traceback__) if exception.__traceback__ else []
        file = line = None
        if frames:
            file, line = frames[-1].filename, frames[-1].lineno
        if isinstance(exception, SyntaxError) and exception.filename:
            file, line = exception.filename, exception.lineno

        message = str(exception)
        if isinstance(exception, ChecksFailed) and exception.output:
            message = f"{message}\n{exception.output[-2000:]}"

        trace = "".join(traceback.format_list(frames[-MAX_TRACE_FRAMES:]))
        return {
            "class": type(exception).__name__,
            "message": self._sanitize(message, ticket_id),
            "code": getattr(exception, "code", None) or getattr(exception, "errno", None) or 0,
            "file": self._sanitize(file, ticket_id) if file else None,
            "line": line,
            "trace": self._sanitize(trace, ticket_id),
        }

    def _sanitize(self, text: str, ticket_id: int) -> str:
        """Replace local paths with placeholders and strip URL credentials."""
        if self.workspaces_root:
            workspace = str(self.workspaces_root / str(ticket_id) / "repo")
            text = text.replace(workspace, "[WORKSPACE]")
        if self.data_dir:
            text = text.replace(str(self.data_dir), "[DATA]")
        text = text.replace(sys.prefix, "[PYTHON]")
        return _CREDENTIALS_IN_URL.sub(r"\1[REDACTED]:[REDACTED]@", text)

    def _system_context(self, ticket: Ticket, project: Optional[Project]) -> dict[str, Any]:
        workflow = self.repository.get_workflow(ticket.id)
        context: dict[str, Any] = {
            "python": platform.python_version(),
            "platform": platform.platform(),
            "workflow_state": workflow.state.value if workflow else None,
            "project_id": ticket.project_id,
            "project_name": project.name if project else None,
        }
        plan = self.repository.get_plan(ticket.id)
        if plan:
            context["plan"] = {
                "risk": plan.risk_level,
                "test_strategy": plan.test_strategy,
                "steps_count": len(plan.steps),
            }
        patch = self.repository.latest_patch(ticket.id)
        if patch:
            context["last_patch"] = {
                "id": patch.id,
                "files_touched": len(patch.files_touched),
                "risk_score": patch.risk_score,
                "lines_added": patch.diff_stats.get("additions", 0),
                "lines_removed": patch.diff_stats.get("deletions", 0),
            }
        runs = self.repository.runs_for(ticket.id)[-RECENT_LOGS:]
        if runs:
            context["test_results"] = [
                {"type": r.type.value, "status": r.status.value, "created_at": r.created_at}
                for r in reversed(runs)
            ]
        return context

    def _artifacts(self, ticket_id: int) -> list[dict[str, Any]]:
        artifacts = []
        for run in self.repository.runs_for(ticket_id)[-RECENT_LOGS * 3:]:
            for kind, path in run.artifacts.items():
                if path:
                    artifacts.append({"type": kind, "path": path, "run_type": run.type.value})
        return artifacts

    def _last_diffs(self, ticket_id: int) -> list[dict[str, Any]]:
        patches = self.repository.patches_for(ticket_id)[-RECENT_PATCHES:]
        return [
            {
                "patch_id": patch.id,
                "created_at": patch.created_at,
                "files_touched": list(patch.files_touched),
                "diff_stats": dict(patch.diff_stats),
                "summary": patch.summary.get("notes", ""),
            }
            for patch in reversed(patches)
        ]

    def _code_context(
        self, exception_info: dict[str, Any], project: Optional[Project]
    ) -> list[dict[str, Any]]:
        if self.resolver is None or project is None:
            return []
        query = exception_info["message"]
        if exception_info.get("file"):
            query += " " + Path(exception_info["file"]).name
        try:
            hits = self.resolver.embeddings(project).search(query, k=10, project_id=project.id)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to collect code context: {e}")
            return []
        return [
            {
                "file": hit.get("metadata", {}).get("file_path"),
                "relevance": hit.get("score", 0),
                "snippet": hit.get("content", "")[:500],
            }
            for hit in hits
        ]

    def _command_logs(self, ticket_id: int) -> list[dict[str, Any]]:
        logs = []
        for run in reversed(self.repository.runs_for(ticket_id)[-RECENT_LOGS:]):
            path = run.artifacts.get("log")
            if not path:
                continue
            try:
                content = self.artifacts.get(path)
            except ArtifactNotFound:
                logger.warning(f"Command log missing for run {run.id}: {path}")
                continue
            logs.append(
                {
                    "type": run.type.value,
                    "status": run.status.value,
                    "created_at": run.created_at,
                    "content": content[-MAX_LOG_CHARS:],
                }
            )
        return logs

    def _register(self, ticket_id: int, path: str, source_stage: str, message: str) -> None:
        workflow = self.repository.get_workflow(ticket_id)
        if workflow is None:
            return
        captured_at = utcnow().isoformat()

        def apply(wf) -> None:
            failures = list(wf.meta.get("failures", []))
            failures.append(
                {
                    "bundle_path": path,
                    "job": source_stage,
                    "message": message[:1000],
                    "captured_at": captured_at,
                }
            )
            wf.meta["failures"] = failures[-RECENT_FAILURES:]
            wf.meta["failure_count"] = int(wf.meta.get("failure_count", 0)) + 1
            wf.meta["last_failure_at"] = captured_at

        self.repository.update_workflow(ticket_id, apply)
