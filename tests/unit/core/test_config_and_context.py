"""Unit tests for Config and RuntimeContext."""

import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from ticketflow.core.config import Config
from ticketflow.core.context import RuntimeContext


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class TestConfig:
    """Tests for XDG configuration handling."""

    def test_uses_xdg_config_home(self, temp_dir):
        with patch.dict(os.environ, {"XDG_CONFIG_HOME": str(temp_dir)}):
            config = Config()

        assert config.config_file == temp_dir / "ticketflow" / "config.toml"
        assert not config.exists()
        assert config.get("claude.cli_command", "claude") == "claude"

    def test_create_default_and_load(self, temp_dir):
        config_file = temp_dir / "config.toml"
        Config(config_file).create_default()

        config = Config(config_file)

        assert config.get("workflow.max_validation_retries") == 3
        assert config.get("policies.limits.max_files_changed") == 20
        assert config.get("git.branch_prefix") == "ticketflow/"

    def test_create_default_refuses_overwrite(self, temp_dir):
        config = Config(temp_dir / "config.toml")
        config.create_default()

        with pytest.raises(FileExistsError):
            config.create_default()

    def test_invalid_toml_raises(self, temp_dir):
        config_file = temp_dir / "config.toml"
        config_file.write_text("[broken\n")

        with pytest.raises(RuntimeError, match="Failed to load config"):
            Config(config_file)

    def test_policies_merge_overrides_and_security_file(self, temp_dir):
        rules = temp_dir / "security.yaml"
        rules.write_text("rules:\n  - pattern: '**/auth/**'\n    message: Auth\n    severity: high\n")
        config = Config.from_dict(
            {"policies": {"limits": {"max_files_changed": 5}, "security_file": str(rules)}}
        )

        policies = config.policies()

        assert policies["limits"]["max_files_changed"] == 5
        assert policies["limits"]["max_loc_changed"] == 500
        assert policies["security_rules"][0]["pattern"] == "**/auth/**"
        assert "security_file" not in policies

    def test_project_table(self):
        config = Config.from_dict({"projects": {"demo": {"repo_url": "git@example.com:demo.git"}}})

        assert config.project("demo") == {"repo_url": "git@example.com:demo.git"}
        assert config.project("other") == {}

    def test_create_directories(self, temp_dir):
        env = {
            "XDG_CONFIG_HOME": str(temp_dir / "config"),
            "XDG_STATE_HOME": str(temp_dir / "state"),
            "XDG_CACHE_HOME": str(temp_dir / "cache"),
        }
        with patch.dict(os.environ, env):
            dirs = Config().create_directories()

        assert dirs["state"] == temp_dir / "state" / "ticketflow"
        assert all(path.is_dir() for path in dirs.values())


class TestRuntimeContext:
    """Tests for data directory detection and wiring."""

    def test_env_var_wins(self, temp_dir):
        with patch.dict(os.environ, {"TICKETFLOW_DATA_DIR": str(temp_dir / "env")}):
            context = RuntimeContext(config=Config.from_dict({"storage": {"data_dir": "/unused"}}))

        assert context.data_dir == temp_dir / "env"
        assert context.data_dir.is_dir()

    def test_configured_data_dir(self, temp_dir):
        config = Config.from_dict({"storage": {"data_dir": str(temp_dir / "configured")}})
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("TICKETFLOW_DATA_DIR", None)
            context = RuntimeContext(config=config)

        assert context.data_dir == temp_dir / "configured"

    def test_walks_up_to_local_data_dir(self, temp_dir):
        (temp_dir / ".ticketflow").mkdir()
        nested = temp_dir / "a" / "b"
        nested.mkdir(parents=True)
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("TICKETFLOW_DATA_DIR", None)
            context = RuntimeContext(config=Config.from_dict({}), cwd=nested)

        assert context.data_dir == temp_dir / ".ticketflow"

    def test_wiring_shares_one_repository(self, temp_dir):
        context = RuntimeContext(
            config=Config.from_dict({"workflow": {"max_validation_retries": 5, "stage_delay": 0}}),
            data_dir=temp_dir,
        )

        assert context.machine.repository is context.repository
        assert context.repair_engine.machine is context.machine
        assert context.collector.repository is context.repository
        assert context.machine.max_retries == 5
        assert context.machine.stage_delay == 0
        assert context.max_fix_iterations == 2
        assert context.workspace_for(7) == temp_dir / "workspaces" / "7" / "repo"
