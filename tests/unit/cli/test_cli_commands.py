"""Unit tests for the ticketflow command line."""

import json
import tempfile
from pathlib import Path

import pytest
from typer.testing import CliRunner

from ticketflow.app import app
from ticketflow.core.config import Config
from ticketflow.core.context import RuntimeContext
from ticketflow.workflow.errors import ChecksFailed

runner = CliRunner()

TICKET_YAML = "key: DEMO-1\ntitle: Add greeting\nbody: Say hi.\n"


@pytest.fixture
def env():
    """Isolated config and data directories with one configured project."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config_file = root / "config" / "ticketflow" / "config.toml"
        config_file.parent.mkdir(parents=True)
        config_file.write_text(f'[projects.demo]\nrepo_url = "{root / "remote.git"}"\n')
        (root / "ticket.yaml").write_text(TICKET_YAML)
        yield {
            "root": root,
            "vars": {
                "XDG_CONFIG_HOME": str(root / "config"),
                "XDG_STATE_HOME": str(root / "state"),
                "XDG_CACHE_HOME": str(root / "cache"),
                "TICKETFLOW_DATA_DIR": str(root / "data"),
            },
        }


def invoke(env, *args, input=None):
    return runner.invoke(app, list(args), env=env["vars"], input=input)


def runtime_for(env):
    config = Config(Path(env["vars"]["XDG_CONFIG_HOME"]) / "ticketflow" / "config.toml")
    return RuntimeContext(config=config, data_dir=Path(env["vars"]["TICKETFLOW_DATA_DIR"]))


def ingest(env):
    result = invoke(env, "ingest", str(env["root"] / "ticket.yaml"), "--project", "demo")
    assert result.exit_code == 0, result.output
    return result


class TestInitCommand:
    """Tests for 'ticketflow init'."""

    def test_show_does_not_write(self, env):
        result = invoke(env, "init", "--show")

        assert result.exit_code == 0
        assert "max_validation_retries" in result.output

    def test_existing_config_needs_force(self, env):
        result = invoke(env, "init")

        assert result.exit_code == 1
        assert "Config Exists" in result.output

    def test_force_recreates(self, env):
        result = invoke(env, "init", "--force")

        assert result.exit_code == 0
        config_file = env["root"] / "config" / "ticketflow" / "config.toml"
        assert "[workflow]" in config_file.read_text()
        assert (env["root"] / "state" / "ticketflow").is_dir()

    def test_local_creates_data_dir_in_cwd(self, env):
        with runner.isolated_filesystem(temp_dir=env["root"]) as cwd:
            result = invoke(env, "init", "--force", "--local")

            assert result.exit_code == 0, result.output
            assert (Path(cwd) / ".ticketflow").is_dir()


class TestIngestAndStatus:
    """Tests for ingest, status, stats and cancel."""

    def test_ingest_reports_ticket(self, env):
        result = ingest(env)

        assert "DEMO-1" in result.output
        assert "INGESTED" in result.output

    def test_ingest_unknown_project(self, env):
        result = invoke(env, "ingest", str(env["root"] / "ticket.yaml"), "--project", "nope")

        assert result.exit_code == 1
        assert "ERROR:" in result.output
        assert "Hint:" in result.output

    def test_ingest_missing_file(self, env):
        result = invoke(env, "ingest", str(env["root"] / "missing.yaml"), "-p", "demo")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_status_json(self, env):
        ingest(env)

        result = invoke(env, "status", "DEMO-1", "--json")

        assert result.exit_code == 0
        assert '"current_state": "INGESTED"' in result.output
        assert '"external_key": "DEMO-1"' in result.output

    def test_status_unknown_ticket(self, env):
        result = invoke(env, "status", "NOPE-9")

        assert result.exit_code == 1
        assert "Ticket not found" in result.output

    def test_stats(self, env):
        ingest(env)

        result = invoke(env, "stats")

        assert result.exit_code == 0
        assert "INGESTED: 1" in result.output
        assert "1 pending" in result.output

    def test_cancel_then_retry_refused(self, env):
        ingest(env)

        cancelled = invoke(env, "cancel", "DEMO-1")
        retried = invoke(env, "retry", "DEMO-1")

        assert cancelled.exit_code == 0
        assert "cancelled" in cancelled.output
        assert retried.exit_code == 1
        assert "Hint:" in retried.output

    def test_work_on_empty_queue(self, env):
        result = invoke(env, "work")

        assert result.exit_code == 0
        assert "Processed: 0" in result.output


class TestBundleAndRepair:
    """Tests for bundle and repair."""

    def capture(self, env):
        ingest(env)
        runtime = runtime_for(env)
        ticket = runtime.repository.find_ticket("DEMO-1")
        runtime.machine.fail(ticket.id, "Checks failed: lint", stage="RunChecks")
        path = runtime.collector.capture_failure(ChecksFailed(["lint"]), ticket, "RunChecks")
        return runtime, ticket, path

    def test_bundle_without_failures(self, env):
        ingest(env)

        result = invoke(env, "bundle", "DEMO-1")

        assert result.exit_code == 1
        assert "No failure bundle found" in result.output

    def test_bundle_shows_and_saves(self, env):
        self.capture(env)
        output = env["root"] / "bundle.json"

        result = invoke(env, "bundle", "DEMO-1", "-o", str(output))

        assert result.exit_code == 0
        assert "Repair suggestions" in result.output
        assert json.loads(output.read_text())["failure"]["job"] == "RunChecks"

    def test_repair_queues_attempt(self, env):
        runtime, ticket, path = self.capture(env)

        result = invoke(env, "repair", "DEMO-1", "--yes")

        assert result.exit_code == 0, result.output
        job = runtime.queue.pending()[-1]
        assert job.name == "RepairAttempt"
        assert job.payload == {"ticket_id": ticket.id, "bundle_path": path, "attempt": 1}

    def test_repair_at_cap_requires_force(self, env):
        runtime, ticket, _ = self.capture(env)
        runtime.repository.merge_workflow_meta(ticket.id, {"repair_attempts": 2, "repair_escalated": True})

        refused = invoke(env, "repair", "DEMO-1", "--yes")
        forced = invoke(env, "repair", "DEMO-1", "--yes", "--force")

        assert refused.exit_code == 1
        assert "Maximum repair attempts (2)" in refused.output
        assert forced.exit_code == 0, forced.output
        assert runtime.queue.pending()[-1].payload["attempt"] == 2
        assert runtime.repository.get_workflow(ticket.id).meta["repair_escalated"] is False

    def test_repair_reset(self, env):
        runtime, ticket, _ = self.capture(env)
        runtime.repository.merge_workflow_meta(ticket.id, {"repair_attempts": 2})

        result = invoke(env, "repair", "DEMO-1", "--reset", "--yes")

        assert result.exit_code == 0, result.output
        assert runtime.queue.pending()[-1].payload["attempt"] == 1

    def test_repair_declined_at_prompt(self, env):
        runtime, _, _ = self.capture(env)

        result = invoke(env, "repair", "DEMO-1", input="n\n")

        assert result.exit_code == 1
        assert [job.name for job in runtime.queue.pending()] == ["BuildContext"]
