"""Integration tests for the ticket pipeline with a real git repository.

The AI capabilities and the command runner are replaced with fakes; git,
the record store, the queue and every stage run for real.
"""

import json
import shutil
import subprocess
from pathlib import Path

import pytest

from ticketflow.core.config import Config
from ticketflow.core.context import RuntimeContext
from ticketflow.workflow.ingest import TicketIngestor
from ticketflow.workflow.models import CommandResult, PatchSummary, ReviewResult, WorkflowState
from ticketflow.workflow.worker import Worker

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

GREETING = 'def greet(name):\n    return f"Hello, {name}"\n'
UNFORMATTED = 'def greet( name ):\n    return f"Hello, {name}"\n'

TICKET_YAML = """\
key: DEMO-1
title: Add greeting helper
description: Provide a greet() helper for the CLI.
acceptance_criteria:
  - greet("Ada") returns "Hello, Ada"
labels: [feature]
"""


def git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def upstream(tmp_path, monkeypatch):
    """A Python repository with ruff and pytest configured, on branch main."""
    for key, value in {
        "GIT_AUTHOR_NAME": "Test User",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test User",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    }.items():
        monkeypatch.setenv(key, value)

    repo = tmp_path / "upstream"
    (repo / "src").mkdir(parents=True)
    (repo / "tests").mkdir()
    (repo / "src" / "app.py").write_text("import os\n\n\ndef main():\n    return os.getcwd()\n")
    (repo / "tests" / "test_app.py").write_text("def test_placeholder():\n    assert True\n")
    (repo / "pyproject.toml").write_text(
        '[project]\nname = "demo"\n'
        '[project.optional-dependencies]\ntest = ["pytest>=7"]\n'
        "[tool.ruff]\nline-length = 100\n"
    )
    git(repo, "init")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "add", "-A")
    git(repo, "commit", "-m", "Initial commit")
    return repo


class FakePlanner:
    def __init__(self):
        self.calls = []

    def plan(self, ticket, rag_context):
        self.calls.append((ticket.external_key, rag_context))
        return {
            "summary": "Add a greet helper",
            "risk_level": "low",
            "estimated_hours": 1,
            "test_strategy": "Unit test greet()",
            "steps": [
                {
                    "intent": "add",
                    "rationale": "Create the greet helper",
                    "targets": [{"path": "src/greet.py", "type": "file"}],
                    "acceptance": ["greet returns a greeting"],
                }
            ],
        }


class FakeImplementer:
    def __init__(self, content=GREETING):
        self.content = content
        self.steps = []

    def implement(self, step, context, workspace):
        self.steps.append(step)
        if step["intent"] == "fix":
            return PatchSummary(
                changes=[{"file": "src/greet.py", "old": "Hello", "new": "Hello there"}],
                notes="polished wording",
            )
        return PatchSummary(changes=[{"file": "src/greet.py", "content": self.content}])


class FakeReviewer:
    def __init__(self, approve=True):
        self.approve = approve
        self.calls = 0

    def review(self, patch_summary, test_results, checks_pass, policy_violations):
        self.calls += 1
        if self.approve:
            return ReviewResult(status="approved", quality_score=90, summary="Looks good")
        return ReviewResult(
            status="needs_changes",
            quality_score=40,
            issues=[
                {"file": "src/greet.py", "severity": "medium", "message": "Wording", "fixable": True}
            ],
        )


class FakeRunner:
    """Answers every check command; lint fails until ``ruff format .`` ran."""

    def __init__(self, lint_clean=True):
        self.lint_clean = lint_clean
        self.commands = []

    def run_direct(self, workspace, command, timeout=None):
        self.commands.append(command)
        if command == "ruff format .":
            target = Path(workspace) / "src" / "greet.py"
            if target.is_file():
                target.write_text(GREETING)
            self.lint_clean = True
        if command == "ruff check ." and not self.lint_clean:
            return CommandResult(exit_code=1, stdout="src/greet.py:1:10: E201 Whitespace after '('")
        return CommandResult(exit_code=0, stdout="ok")

    run = run_direct


def build_runtime(tmp_path, upstream, planner, implementer, reviewer, runner):
    config = Config.from_dict(
        {
            "workflow": {"stage_delay": 0},
            "providers": {"ticket_provider": "none"},
            "projects": {"demo": {"repo_url": str(upstream), "default_branch": "main"}},
        }
    )
    runtime = RuntimeContext(config=config, data_dir=tmp_path / "data")
    runtime.resolver.override("ai.planner", planner)
    runtime.resolver.override("ai.implement", implementer)
    runtime.resolver.override("ai.review", reviewer)
    runtime.resolver.override("runner", runner)
    return runtime


def ingest(runtime, tmp_path):
    ticket_file = tmp_path / "DEMO-1.yaml"
    ticket_file.write_text(TICKET_YAML)
    ticket, _ = TicketIngestor(runtime).ingest(ticket_file, "demo")
    return ticket


class TestPipeline:
    """End-to-end runs from INGESTED to a pull request."""

    def test_happy_path_reaches_done(self, tmp_path, upstream):
        planner = FakePlanner()
        runner = FakeRunner()
        runtime = build_runtime(tmp_path, upstream, planner, FakeImplementer(), FakeReviewer(), runner)
        ticket = ingest(runtime, tmp_path)

        stats = Worker(runtime).run(eager=True)

        assert stats.failed == 0, stats.errors
        workflow = runtime.repository.get_workflow(ticket.id)
        assert workflow.state == WorkflowState.DONE
        assert workflow.meta["branch"] == "ticketflow/demo-1"
        assert workflow.meta["pr_draft"] is False

        workspace = runtime.workspace_for(ticket.id)
        assert (workspace / "src" / "greet.py").read_text() == GREETING
        assert runtime.git_for(ticket.id).changed_files() == []
        assert runtime.git_for(ticket.id).branch_exists_remote("ticketflow/demo-1")

        pr = runtime.repository.pull_requests_for(ticket.id)[-1]
        assert pr.is_draft is False
        assert "bot-generated" in pr.labels
        assert "lang:python" in pr.labels

        assert "ruff format src/greet.py" in runner.commands
        assert any(command.startswith("pytest --cov") for command in runner.commands)
        sources = [item["source"] for item in planner.calls[0][1]]
        assert "project_profile" in sources

    def test_lint_failure_self_heals(self, tmp_path, upstream):
        runner = FakeRunner(lint_clean=False)
        runtime = build_runtime(
            tmp_path, upstream, FakePlanner(), FakeImplementer(UNFORMATTED), FakeReviewer(), runner
        )
        ticket = ingest(runtime, tmp_path)

        stats = Worker(runtime).run(eager=True)

        assert stats.failed == 0, stats.errors
        workflow = runtime.repository.get_workflow(ticket.id)
        assert workflow.state == WorkflowState.DONE
        assert workflow.meta["repair_success"] is True
        assert workflow.meta["repair_attempts"] == 1
        assert workflow.meta["checks_passed"] is True
        assert "ruff format ." in runner.commands
        assert (runtime.workspace_for(ticket.id) / "src" / "greet.py").read_text() == GREETING

        bundle = runtime.collector.latest_bundle_path(ticket)
        data = json.loads(runtime.artifacts.get(bundle))
        assert data["failure"]["job"] == "RunChecks"

    def test_failing_review_ends_in_draft_pr(self, tmp_path, upstream):
        implementer = FakeImplementer()
        reviewer = FakeReviewer(approve=False)
        runtime = build_runtime(tmp_path, upstream, FakePlanner(), implementer, reviewer, FakeRunner())
        ticket = ingest(runtime, tmp_path)

        stats = Worker(runtime).run(eager=True)

        assert stats.failed == 0, stats.errors
        workflow = runtime.repository.get_workflow(ticket.id)
        assert workflow.state == WorkflowState.PR_CREATED
        assert workflow.meta["pr_draft"] is True
        assert workflow.meta["fix_iterations"] == 2
        assert reviewer.calls == 3
        assert [step["intent"] for step in implementer.steps] == ["add", "fix", "fix"]

        pr = runtime.repository.pull_requests_for(ticket.id)[-1]
        assert pr.is_draft is True
        assert "draft" in pr.labels
        assert len(runtime.repository.patches_for(ticket.id)) == 3
