"""Integration tests for GitOperations with real git repositories."""

import shutil
import subprocess

import pytest

from ticketflow.workflow.git_operations import GitError, GitOperations

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@pytest.fixture
def upstream(tmp_path, monkeypatch):
    """Create a temporary git repository with one commit."""
    for key in ("GIT_AUTHOR", "GIT_COMMITTER"):
        monkeypatch.setenv(f"{key}_NAME", "Test User")
        monkeypatch.setenv(f"{key}_EMAIL", "test@example.com")

    repo_path = tmp_path / "upstream"
    repo_path.mkdir()
    subprocess.run(["git", "init"], cwd=repo_path, check=True, capture_output=True)
    (repo_path / "README.md").write_text("# Test Repository\n")
    subprocess.run(["git", "add", "README.md"], cwd=repo_path, check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial commit"], cwd=repo_path, check=True, capture_output=True
    )
    return repo_path


@pytest.fixture
def workspace(tmp_path, upstream):
    """Clone of the upstream repository."""
    ops = GitOperations(tmp_path / "workspaces" / "1" / "repo")
    ops.clone(str(upstream))
    return ops


class TestGitWorkspaceIntegration:
    """Integration tests for workspace checkouts."""

    def test_clone_creates_checkout_with_remote(self, workspace):
        assert workspace.is_repository()
        assert workspace.has_remote()

    def test_clone_is_idempotent(self, workspace, upstream):
        head = workspace.get_head_commit()

        workspace.clone(str(upstream))

        assert workspace.get_head_commit() == head

    def test_clone_failure_raises(self, tmp_path):
        ops = GitOperations(tmp_path / "target")

        with pytest.raises(GitError, match="Git command failed"):
            ops.clone(str(tmp_path / "does-not-exist"))

    def test_checkout_branch_creates_then_switches(self, workspace):
        original = workspace.current_branch()

        workspace.checkout_branch("ticketflow/demo-1")
        workspace.checkout_branch(original)
        workspace.checkout_branch("ticketflow/demo-1")

        assert workspace.current_branch() == "ticketflow/demo-1"

    def test_changed_files_and_diff_stat(self, workspace):
        root = workspace.repo_path
        with open(f"{root}/README.md", "a") as handle:
            handle.write("More text\n")
        with open(f"{root}/new.py", "w") as handle:
            handle.write("x = 1\n")

        assert sorted(workspace.changed_files()) == ["README.md", "new.py"]
        assert workspace.diff_stat() == {"additions": 1, "deletions": 0}

    def test_commit_all_and_push(self, workspace):
        workspace.checkout_branch("ticketflow/demo-1")
        with open(f"{workspace.repo_path}/feature.py", "w") as handle:
            handle.write("def feature():\n    return 1\n")

        sha = workspace.commit_all("[DEMO-1] Add feature")
        workspace.push_branch("ticketflow/demo-1")

        assert sha == workspace.get_head_commit()
        assert workspace.changed_files() == []
        assert workspace.branch_exists_remote("ticketflow/demo-1")

    def test_commit_all_with_clean_tree_returns_none(self, workspace):
        assert workspace.commit_all("nothing") is None

    def test_missing_remote_branch(self, workspace):
        assert workspace.branch_exists_remote("nonexistent") is False
