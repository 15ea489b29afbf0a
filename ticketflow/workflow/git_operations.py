"""Git operations wrapper using subprocess for ticket workspaces.

This module provides a GitOperations class that wraps the git subprocess
commands the pipeline needs: preparing a workspace checkout, switching to the
ticket branch, committing the generated changes and pushing them. Operations
are idempotent to support stage retries and resumption.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from ticketflow.workflow.errors import WorkflowError

logger = logging.getLogger(__name__)


class GitError(WorkflowError):
    """Exception raised when git operations fail."""

    pass


class GitOperations:
    """Wrapper for git subprocess commands with proper error handling."""

    def __init__(self, repo_path: Optional[str | Path] = None):
        """Initialize GitOperations.

        Args:
            repo_path: Path to git repository. If None, uses current directory.
        """
        self.repo_path = str(repo_path) if repo_path is not None else None

    def _run_git_command(
        self, args: List[str], check: bool = True, cwd: Optional[str] = None
    ) -> subprocess.CompletedProcess:
        """Run a git command with proper error handling.

        Args:
            args: Git command arguments (e.g., ["git", "status"])
            check: Whether to raise exception on non-zero exit code
            cwd: Directory to run in (default: the repository path)

        Returns:
            CompletedProcess object with command results

        Raises:
            GitError: If command fails and check=True
        """
        try:
            result = subprocess.run(
                args,
                cwd=cwd or self.repo_path,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise GitError(f"Git executable not found: {e}") from e
        except OSError as e:
            raise GitError(f"Unexpected error running git command: {e}") from e

        if check and result.returncode != 0:
            raise GitError(
                f"Git command failed: {' '.join(args)}\n"
                f"Exit code: {result.returncode}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        return result

    def is_repository(self) -> bool:
        """Check whether the repository path is inside a git work tree."""
        if self.repo_path is None or not Path(self.repo_path).is_dir():
            return False
        result = self._run_git_command(
            ["git", "rev-parse", "--is-inside-work-tree"], check=False
        )
        return result.returncode == 0 and result.stdout.strip() == "true"

    def clone(self, repo_url: str, branch: Optional[str] = None) -> None:
        """Clone ``repo_url`` into the repository path.

        This operation is idempotent - an existing checkout is reused and
        fetched instead of cloned again.

        Raises:
            GitError: If cloning fails
        """
        target = Path(self.repo_path)
        if self.is_repository():
            logger.info(f"Reusing existing checkout at {target}")
            if self.has_remote():
                self._run_git_command(["git", "fetch", "origin"], check=False)
            return

        target.parent.mkdir(parents=True, exist_ok=True)
        args = ["git", "clone"]
        if branch:
            args += ["--branch", branch]
        args += [repo_url, str(target)]
        self._run_git_command(args, cwd=str(target.parent))
        logger.info(f"Cloned {repo_url} into {target}")

    def checkout_branch(self, branch_name: str) -> None:
        """Switch to ``branch_name``, creating it from HEAD when missing.

        Raises:
            GitError: If checkout fails
        """
        result = self._run_git_command(
            ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"],
            check=False,
        )
        if result.returncode == 0:
            self._run_git_command(["git", "checkout", branch_name])
        else:
            self._run_git_command(["git", "checkout", "-b", branch_name])

    def current_branch(self) -> str:
        result = self._run_git_command(["git", "rev-parse", "--abbrev-ref", "HEAD"])
        return result.stdout.strip()

    def get_head_commit(self) -> str:
        result = self._run_git_command(["git", "rev-parse", "HEAD"])
        return result.stdout.strip()

    def changed_files(self) -> List[str]:
        """List paths with uncommitted changes (including untracked files)."""
        result = self._run_git_command(["git", "status", "--porcelain"])
        paths = []
        for line in result.stdout.splitlines():
            if len(line) > 3:
                path = line[3:]
                if " -> " in path:
                    path = path.split(" -> ", 1)[1]
                paths.append(path.strip('"'))
        return paths

    def commit_all(self, message: str) -> Optional[str]:
        """Stage and commit every change in the work tree.

        This operation is idempotent - with nothing to commit it returns None.

        Returns:
            SHA of the new commit, or None when the tree was clean

        Raises:
            GitError: If staging or committing fails
        """
        self._run_git_command(["git", "add", "-A"])
        staged = self._run_git_command(["git", "diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            logger.info("Nothing to commit")
            return None
        self._run_git_command(["git", "commit", "-m", message])
        return self.get_head_commit()

    def has_remote(self, remote: str = "origin") -> bool:
        result = self._run_git_command(["git", "remote"], check=False)
        return remote in result.stdout.split()

    def push_branch(self, branch_name: str) -> None:
        """Push branch to remote with upstream tracking.

        This operation is idempotent - if the branch is already pushed and
        up-to-date, it succeeds silently.

        Args:
            branch_name: Name of the branch to push

        Raises:
            GitError: If push fails
        """
        self._run_git_command(["git", "push", "-u", "origin", branch_name])

    def branch_exists_remote(self, branch_name: str) -> bool:
        """Check if a branch exists on remote.

        Args:
            branch_name: Name of the branch to check

        Returns:
            True if branch exists on remote, False otherwise
        """
        result = self._run_git_command(
            ["git", "ls-remote", "--heads", "origin", branch_name], check=False
        )
        return bool(result.stdout.strip())

    def diff_stat(self, base: str = "HEAD") -> dict[str, int]:
        """Count added and deleted lines against ``base`` (tracked files only)."""
        result = self._run_git_command(["git", "diff", "--numstat", base], check=False)
        additions = deletions = 0
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) >= 2 and parts[0].isdigit() and parts[1].isdigit():
                additions += int(parts[0])
                deletions += int(parts[1])
        return {"additions": additions, "deletions": deletions}
