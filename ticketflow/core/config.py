"""XDG-compliant configuration management for ticketflow."""

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from ticketflow.workflow.policy import load_policies


class Config:
    """Manages ticketflow configuration following XDG Base Directory spec.

    Attributes:
        config_dir: Path to ~/.config/ticketflow/
        config_file: Path to ~/.config/ticketflow/config.toml
    """

    def __init__(self, config_file: Optional[Path] = None):
        """Initialize config paths using XDG Base Directory specification.

        Args:
            config_file: Explicit config file (default: XDG location)
        """
        # Use XDG_CONFIG_HOME if set, otherwise default to ~/.config
        xdg_config = os.getenv("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
        self.config_dir = Path(xdg_config) / "ticketflow"
        self.config_file = Path(config_file) if config_file else self.config_dir / "config.toml"

        # Load config if exists
        self._config = self._load() if self.config_file.exists() else {}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Build a config from an in-memory mapping (used by tests and embedding code)."""
        config = cls.__new__(cls)
        config.config_dir = Path(".")
        config.config_file = Path("config.toml")
        config._config = data
        return config

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_file.exists()

    def _load(self) -> dict:
        """Load configuration from TOML file."""
        try:
            with open(self.config_file, "rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise RuntimeError(f"Failed to load config: {e}") from e

    def get(self, key: str, default=None):
        """Get configuration value by key (supports dot notation).

        Args:
            key: Configuration key (e.g., 'claude.cli_command')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def policies(self) -> dict[str, Any]:
        """Return the effective policy mapping (defaults + ``[policies]``).

        Raises:
            ValueError: If the configured security policy file is invalid YAML
        """
        overrides = dict(self.get("policies", {}) or {})
        security_file = overrides.pop("security_file", None)
        return load_policies(
            overrides, Path(os.path.expanduser(security_file)) if security_file else None
        )

    def project(self, name: str) -> dict[str, Any]:
        """Return the ``[projects.<name>]`` table, or an empty dict."""
        return dict(self.get("projects", {}).get(name, {}) or {})

    @staticmethod
    def state_dir() -> Path:
        xdg_state = os.getenv("XDG_STATE_HOME", os.path.expanduser("~/.local/state"))
        return Path(xdg_state) / "ticketflow"

    @staticmethod
    def get_default_config() -> str:
        """Return default configuration TOML template."""
        return """# Ticketflow Configuration
# Location: ~/.config/ticketflow/config.toml
# Follows XDG Base Directory Specification

[storage]
# Data directory for records, queue, workspaces and artifacts.
# Defaults to ./.ticketflow when present, else ~/.local/state/ticketflow.
# TICKETFLOW_DATA_DIR overrides this setting.
# data_dir = "~/.local/state/ticketflow"

[providers]
# Capability bindings; a project's own providers table wins over these.
ticket_provider = "local"    # local | none
vcs_provider = "local"       # local | github
embeddings = "lexical"
runner = "local"

[providers.ai]
planner = "claude"
implement = "claude"
review = "claude"

[claude]
# Claude CLI command (override if using custom path)
cli_command = "claude"

# Seconds before a Claude call is abandoned
timeout = 600

# Additional CLI flags (optional)
# cli_flags = ["--model", "sonnet"]

[workflow]
# Orchestration-level restarts of a failed workflow
max_validation_retries = 3

# Review -> fix loops before a draft PR is forced
max_implementation_retries = 2

# Seconds between one stage finishing and the next starting
stage_delay = 5

# Default timeout for workspace commands
command_timeout = 300

[tickets]
# Post the plan summary as a ticket comment
post_plan_comment = true

[git]
branch_prefix = "ticketflow/"

[pr]
# Reviewer pool; names containing "senior" or "security" satisfy those roles
reviewers = []
assignees = []

[policies.limits]
max_plan_steps = 50
max_files_changed = 20
max_loc_changed = 500

[policies.mandatory_checks]
lint = true
typecheck = true
test = true

# [policies.allowed_paths]
# include = ["src/**", "tests/**"]
# exclude = ["**/migrations/**"]

# YAML file with path rules: rules = [{pattern, message, severity}]
# [policies]
# security_file = "~/.config/ticketflow/security.yaml"

# Per-project settings used by `ticketflow ingest --project NAME`
# [projects.example]
# repo_url = "git@github.com:acme/example.git"
# default_branch = "main"
# providers = { vcs_provider = "github" }
"""

    def create_default(self) -> Path:
        """Create default configuration file.

        Returns:
            Path to created config file

        Raises:
            FileExistsError: If config already exists
        """
        if self.config_file.exists():
            raise FileExistsError(
                f"Configuration already exists: {self.config_file}\n"
                "Remove it first or use --force to overwrite"
            )

        # Create config directory
        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        # Write default config
        self.config_file.write_text(self.get_default_config())

        return self.config_file

    def create_directories(self):
        """Create additional XDG directories for ticketflow."""
        self.config_dir.mkdir(parents=True, exist_ok=True)

        # State dir (records, queue, workspaces)
        state_dir = self.state_dir()
        state_dir.mkdir(parents=True, exist_ok=True)

        # Cache dir (retrieval indexes)
        xdg_cache = os.getenv("XDG_CACHE_HOME", os.path.expanduser("~/.cache"))
        cache_dir = Path(xdg_cache) / "ticketflow"
        cache_dir.mkdir(parents=True, exist_ok=True)

        return {
            "config": self.config_dir,
            "state": state_dir,
            "cache": cache_dir,
        }
