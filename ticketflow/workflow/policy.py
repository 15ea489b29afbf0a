"""Policy enforcement and risk assessment for plans and patches.

PolicyEnforcer is a pure function of its input and the policy mapping it was
built with: no I/O, no side effects, so the same plan or patch always yields
the same result. Policy files are read up front by :func:`load_policies`.
"""

from __future__ import annotations

import copy
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from ticketflow.workflow.models import Patch, Plan, PolicyCheckResult

logger = logging.getLogger(__name__)

DEFAULT_POLICIES: dict[str, Any] = {
    "limits": {
        "max_plan_steps": 50,
        "max_files_changed": 20,
        "max_loc_changed": 500,
    },
    "allowed_paths": {"include": [], "exclude": []},
    "mandatory_checks": {"lint": True, "typecheck": True, "test": True},
    "risk_scoring": {
        "weights": {
            "large_changeset": 10,
            "api_breaking_change": 25,
            "database_migration": 30,
            "insufficient_test_coverage": 20,
        },
        "thresholds": {"critical": 80, "high": 60, "medium": 40},
    },
    "review_requirements": {
        "low": {"min_reviewers": 1},
        "medium": {"min_reviewers": 1},
        "high": {"min_reviewers": 2, "require_senior": True},
        "critical": {
            "min_reviewers": 2,
            "require_senior": True,
            "require_security_review": True,
        },
    },
    "security_rules": [],
}

BASE_CHECKLIST = [
    "Code follows project style guidelines",
    "Tests pass locally",
    "No hardcoded secrets or credentials",
    "Error handling is appropriate",
    "Documentation updated if needed",
]


def merge_policies(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_policies(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_policies(
    overrides: Optional[dict[str, Any]] = None, security_file: Optional[Path] = None
) -> dict[str, Any]:
    """Build the effective policy mapping.

    Args:
        overrides: The ``[policies]`` table from configuration
        security_file: Optional YAML file with a ``rules`` list of
            ``{pattern, message, severity}`` path rules

    Returns:
        Defaults merged with overrides and security rules

    Raises:
        ValueError: If the security file is not valid YAML
    """
    policies = merge_policies(DEFAULT_POLICIES, overrides or {})
    if security_file and Path(security_file).exists():
        try:
            with open(security_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid security policy file {security_file}: {e}") from e
        rules = data.get("rules", [])
        policies["security_rules"] = list(policies.get("security_rules", [])) + list(rules)
        logger.info(f"Loaded {len(rules)} security rules from {security_file}")
    return policies


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


def path_matches(path: str, pattern: str) -> bool:
    """Match a repository-relative path against a glob.

    ``**`` matches across directories, ``*`` and ``?`` stay within one
    path segment.
    """
    if path.startswith("./"):
        path = path[2:]
    return bool(_glob_regex(pattern).match(path))


def is_path_allowed(path: str, allowed_paths: dict[str, list[str]]) -> bool:
    include = allowed_paths.get("include") or []
    exclude = allowed_paths.get("exclude") or []
    if any(path_matches(path, p) for p in exclude):
        return False
    return not include or any(path_matches(path, p) for p in include)


class PolicyEnforcer:
    """Evaluates plans and patches against configured policy rules."""

    def __init__(self, policies: Optional[dict[str, Any]] = None):
        self.policies = merge_policies(DEFAULT_POLICIES, policies or {})

    @property
    def limits(self) -> dict[str, int]:
        return self.policies["limits"]

    @property
    def weights(self) -> dict[str, int]:
        return self.policies["risk_scoring"]["weights"]

    def check_plan_compliance(self, plan: Plan) -> PolicyCheckResult:
        result = PolicyCheckResult()

        step_count = len(plan.steps)
        max_steps = self.limits.get("max_plan_steps", 50)
        if step_count > max_steps:
            result.add_violation(f"Plan has too many steps: {step_count} (max: {max_steps})")
            result.retryable = True

        file_count = len(plan.files_affected)
        max_files = self.limits.get("max_files_changed", 20)
        if file_count > max_files:
            result.add_warning(f"Plan affects many files: {file_count} (max: {max_files})")

        self._check_allowed_paths(plan.files_affected, result)

        result.risk_score = self.plan_risk_score(plan)
        result.risk_level = self.risk_level(result.risk_score)

        if not result.passed and result.retryable:
            result.retry_reason = "Policy violations can be fixed: " + "; ".join(result.violations)
        return result

    def check_patch_compliance(self, patch: Patch) -> PolicyCheckResult:
        result = PolicyCheckResult()

        total_loc = patch.total_lines_changed
        max_loc = self.limits.get("max_loc_changed", 500)
        if total_loc > max_loc:
            result.add_violation(f"Too many lines changed: {total_loc} (max: {max_loc})")

        file_count = len(patch.files_touched)
        max_files = self.limits.get("max_files_changed", 20)
        if file_count > max_files:
            result.add_violation(f"Too many files changed: {file_count} (max: {max_files})")

        self._check_allowed_paths(patch.files_touched, result)

        for check, required in self.policies.get("mandatory_checks", {}).items():
            if required:
                result.add_check(check, True, f"{check} must pass")

        self._scan_security_rules(patch.files_touched, result)

        result.risk_score = self.patch_risk_score(patch)
        result.risk_level = self.risk_level(result.risk_score)
        result.review_checklist = self.review_checklist(patch, result.risk_level)

        if not result.passed:
            result.retryable = not any(
                f["severity"] == "critical" for f in result.security_findings
            )
            if result.retryable:
                result.retry_reason = "Policy violations can be fixed: " + "; ".join(
                    result.violations
                )
        return result

    def plan_risk_score(self, plan: Plan) -> int:
        score = 0
        for step in plan.steps:
            for factor in step.risk_factors:
                score += self.weights.get(factor, 5)
        if len(plan.files_affected) > 10:
            score += self.weights.get("large_changeset", 10)
        return min(score, 100)

    def patch_risk_score(self, patch: Patch) -> int:
        score = int(patch.risk_score)
        summary = patch.summary
        if patch.total_lines_changed > 300:
            score += self.weights.get("large_changeset", 10)
        if summary.get("breaking_changes"):
            score += self.weights.get("api_breaking_change", 25)
        if _requires_migration(patch):
            score += self.weights.get("database_migration", 30)
        coverage = summary.get("test_coverage")
        if coverage is not None and float(coverage) < 70:
            score += self.weights.get("insufficient_test_coverage", 20)
        return min(score, 100)

    def risk_level(self, score: int) -> str:
        thresholds = self.policies["risk_scoring"]["thresholds"]
        if score >= thresholds.get("critical", 80):
            return "critical"
        if score >= thresholds.get("high", 60):
            return "high"
        if score >= thresholds.get("medium", 40):
            return "medium"
        return "low"

    def review_requirements(self, risk_level: str) -> dict[str, Any]:
        return dict(self.policies.get("review_requirements", {}).get(risk_level, {}))

    def review_checklist(self, patch: Patch, risk_level: str) -> list[str]:
        checklist = list(BASE_CHECKLIST)
        requirements = self.review_requirements(risk_level)
        if requirements.get("require_senior"):
            checklist.append("Senior developer review required")
        if requirements.get("require_security_review"):
            checklist.append("Security team review required")
        min_reviewers = requirements.get("min_reviewers", 1)
        if min_reviewers > 1:
            checklist.append(f"Minimum {min_reviewers} reviewers required")
        if len(patch.files_touched) > 10:
            checklist.append("Large changeset - extra careful review needed")
        if _requires_migration(patch):
            checklist.append("Database migration - verify rollback procedure")
        if patch.summary.get("breaking_changes"):
            checklist.append("Breaking changes - check backward compatibility")
        return checklist

    def _check_allowed_paths(self, paths: Iterable[str], result: PolicyCheckResult) -> None:
        allowed = self.policies.get("allowed_paths") or {}
        for path in paths:
            if not is_path_allowed(path, allowed):
                result.add_violation(f"Path not allowed for modification: {path}")

    def _scan_security_rules(self, paths: Iterable[str], result: PolicyCheckResult) -> None:
        for rule in self.policies.get("security_rules", []):
            pattern = rule.get("pattern")
            if not pattern:
                continue
            for path in paths:
                if path_matches(path, pattern):
                    result.add_security_finding(
                        rule.get("tool", "path_rules"),
                        rule.get("message", f"Sensitive path changed: {path}").format(path=path),
                        rule.get("severity", "medium"),
                    )


def _requires_migration(patch: Patch) -> bool:
    return bool(patch.summary.get("requires_migration"))
