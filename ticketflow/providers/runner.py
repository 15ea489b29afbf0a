"""Command execution in a ticket workspace."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import Optional

from ticketflow.workflow.models import CommandResult

logger = logging.getLogger(__name__)

# Variables passed through to commands started with run().
_SAFE_ENV_KEYS = ("PATH", "HOME", "LANG", "LC_ALL", "TERM", "TMPDIR", "VIRTUAL_ENV")

_BLOCKED_PREFIXES = ("sudo", "rm -rf /", "shutdown", "reboot", "mkfs")


class CommandBlocked(Exception):
    """Raised when a command matches the deny list."""


class LocalCommandRunner:
    """Runs commands with subprocess in the workspace directory.

    ``run`` starts the command with a scrubbed environment; ``run_direct``
    inherits the caller's environment for trusted tooling such as formatters.
    """

    def __init__(self, default_timeout: int = 300):
        self.default_timeout = default_timeout

    def run(
        self,
        workspace_path: Path,
        command: str,
        language: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        env = {key: os.environ[key] for key in _SAFE_ENV_KEYS if key in os.environ}
        if language:
            env["TICKETFLOW_LANGUAGE"] = language
        return self._execute(workspace_path, command, timeout, env)

    def run_direct(
        self, workspace_path: Path, command: str, timeout: Optional[int] = None
    ) -> CommandResult:
        return self._execute(workspace_path, command, timeout, None)

    def _execute(
        self,
        workspace_path: Path,
        command: str,
        timeout: Optional[int],
        env: Optional[dict[str, str]],
    ) -> CommandResult:
        stripped = command.strip()
        if any(stripped.startswith(prefix) for prefix in _BLOCKED_PREFIXES):
            raise CommandBlocked(f"Command not allowed: {command}")

        timeout = timeout or self.default_timeout
        logger.debug(f"Running in {workspace_path}: {command}")
        started = time.monotonic()
        try:
            result = subprocess.run(
                shlex.split(command),
                cwd=workspace_path,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                exit_code=124,
                stdout=_text(e.stdout),
                stderr=f"Command timed out after {timeout} seconds",
                duration=time.monotonic() - started,
            )
        except FileNotFoundError as e:
            return CommandResult(exit_code=127, stderr=f"Command not found: {e}")

        return CommandResult(
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=time.monotonic() - started,
        )


def _text(value: Optional[str | bytes]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
