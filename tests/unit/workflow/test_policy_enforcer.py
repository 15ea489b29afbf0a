"""Unit tests for the policy enforcer."""

import copy
import tempfile
from pathlib import Path

import pytest

from ticketflow.workflow.models import Patch, Plan, PlanStep
from ticketflow.workflow.policy import (
    DEFAULT_POLICIES,
    PolicyEnforcer,
    is_path_allowed,
    load_policies,
    merge_policies,
    path_matches,
)


def make_patch(files=1, additions=10, deletions=0, risk_score=0, **summary):
    return Patch(
        id=1,
        ticket_id=1,
        files_touched=[f"src/module_{i}.py" for i in range(files)],
        diff_stats={"additions": additions, "deletions": deletions},
        risk_score=risk_score,
        summary=summary,
    )


def make_plan(steps=1, files=None, risk_factors=None):
    return Plan(
        ticket_id=1,
        steps=[
            PlanStep(id=f"step_{i}", rationale="do it", risk_factors=list(risk_factors or []))
            for i in range(steps)
        ],
        files_affected=list(files or []),
    )


class TestPathMatching:
    """Tests for glob matching of repository paths."""

    @pytest.mark.parametrize(
        "path,pattern,expected",
        [
            ("src/app.py", "src/**", True),
            ("src/deep/nested/app.py", "src/**", True),
            ("db/migrations/001.sql", "**/migrations/**", True),
            ("migrations/001.sql", "**/migrations/**", True),
            ("src/app.py", "*.py", False),
            ("app.py", "*.py", True),
            ("./src/app.py", "src/*.py", True),
            ("src/a/app.py", "src/*.py", False),
        ],
    )
    def test_path_matches(self, path, pattern, expected):
        assert path_matches(path, pattern) is expected

    def test_exclude_wins_over_include(self):
        allowed = {"include": ["src/**"], "exclude": ["src/secrets/**"]}

        assert is_path_allowed("src/app.py", allowed)
        assert not is_path_allowed("src/secrets/key.py", allowed)
        assert not is_path_allowed("docs/readme.md", allowed)

    def test_empty_include_allows_everything_not_excluded(self):
        assert is_path_allowed("anything/at/all.txt", {"include": [], "exclude": []})


class TestPatchCompliance:
    """Tests for check_patch_compliance."""

    def test_too_many_files_is_hard_violation(self):
        """25 files against a limit of 20 fails the check."""
        result = PolicyEnforcer().check_patch_compliance(make_patch(files=25))

        assert not result.passed
        assert "Too many files changed: 25 (max: 20)" in result.violations
        assert result.retryable

    def test_too_many_lines_is_hard_violation(self):
        result = PolicyEnforcer().check_patch_compliance(make_patch(additions=400, deletions=200))

        assert not result.passed
        assert any("Too many lines changed: 600" in v for v in result.violations)

    def test_small_patch_passes_with_mandatory_checks_listed(self):
        result = PolicyEnforcer().check_patch_compliance(make_patch())

        assert result.passed
        assert [c["name"] for c in result.required_checks] == ["lint", "typecheck", "test"]
        assert result.risk_level == "low"

    def test_disallowed_path_is_violation(self):
        enforcer = PolicyEnforcer({"allowed_paths": {"include": ["tests/**"]}})

        result = enforcer.check_patch_compliance(make_patch(files=1))

        assert not result.passed
        assert result.violations == ["Path not allowed for modification: src/module_0.py"]

    def test_critical_security_rule_is_not_retryable(self):
        enforcer = PolicyEnforcer(
            {"security_rules": [{"pattern": "src/**", "message": "Touches {path}", "severity": "critical"}]}
        )

        result = enforcer.check_patch_compliance(make_patch())

        assert not result.passed
        assert not result.retryable
        assert result.security_findings[0]["message"] == "Touches src/module_0.py"

    def test_risk_score_adds_weights(self):
        enforcer = PolicyEnforcer()
        patch = make_patch(
            risk_score=20, requires_migration=True, breaking_changes=True, test_coverage=50
        )

        result = enforcer.check_patch_compliance(patch)

        assert result.risk_score == min(20 + 30 + 25 + 20, 100)
        assert result.risk_level == "critical"
        assert "Security team review required" in result.review_checklist
        assert "Database migration - verify rollback procedure" in result.review_checklist

    def test_evaluation_is_pure(self):
        """Same input, same output; the patch and policies are not mutated."""
        enforcer = PolicyEnforcer()
        patch = make_patch(files=25)
        before = copy.deepcopy(patch.to_dict())
        policies_before = copy.deepcopy(enforcer.policies)

        first = enforcer.check_patch_compliance(patch)
        second = enforcer.check_patch_compliance(patch)

        assert first.to_dict() == second.to_dict()
        assert patch.to_dict() == before
        assert enforcer.policies == policies_before


class TestPlanCompliance:
    """Tests for check_plan_compliance."""

    def test_too_many_steps_is_retryable_violation(self):
        result = PolicyEnforcer({"limits": {"max_plan_steps": 2}}).check_plan_compliance(make_plan(steps=3))

        assert not result.passed
        assert result.retryable
        assert result.retry_reason.startswith("Policy violations can be fixed")

    def test_many_files_is_only_a_warning(self):
        plan = make_plan(files=[f"src/f{i}.py" for i in range(21)])

        result = PolicyEnforcer().check_plan_compliance(plan)

        assert result.passed
        assert result.warnings == ["Plan affects many files: 21 (max: 20)"]

    def test_plan_risk_uses_step_factors(self):
        plan = make_plan(steps=2, risk_factors=["database_migration", "unknown_factor"])

        assert PolicyEnforcer().plan_risk_score(plan) == 2 * (30 + 5)


class TestPolicyLoading:
    """Tests for policy merging and loading."""

    def test_merge_is_deep_and_does_not_touch_defaults(self):
        merged = merge_policies(DEFAULT_POLICIES, {"limits": {"max_files_changed": 5}})

        assert merged["limits"] == {"max_plan_steps": 50, "max_files_changed": 5, "max_loc_changed": 500}
        assert DEFAULT_POLICIES["limits"]["max_files_changed"] == 20

    def test_review_requirements_by_risk(self):
        enforcer = PolicyEnforcer()

        assert enforcer.review_requirements("high") == {"min_reviewers": 2, "require_senior": True}
        assert enforcer.review_requirements("unknown") == {}

    def test_load_security_rules_from_yaml(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            rules_file = Path(tmpdir) / "security.yaml"
            rules_file.write_text(
                "rules:\n  - pattern: '**/auth/**'\n    message: Auth code changed\n    severity: high\n"
            )

            policies = load_policies({}, rules_file)

        assert policies["security_rules"] == [
            {"pattern": "**/auth/**", "message": "Auth code changed", "severity": "high"}
        ]

    def test_invalid_security_yaml_raises(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            rules_file = Path(tmpdir) / "security.yaml"
            rules_file.write_text("rules: [unclosed\n")

            with pytest.raises(ValueError):
                load_policies({}, rules_file)
