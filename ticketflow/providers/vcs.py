"""Pull request bindings."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any, Optional

from ticketflow.workflow.errors import ProviderError
from ticketflow.workflow.store import RecordStore

logger = logging.getLogger(__name__)


class LocalVcsProvider:
    """Records pull requests as JSON documents instead of calling a code host.

    Useful for dry runs: the branch is still pushed by the pipeline, only the
    PR itself stays local.
    """

    def __init__(self, root: Path):
        self.store = RecordStore(Path(root))

    def open_pr(
        self,
        title: str,
        body: str,
        base_branch: str,
        head_branch: str,
        is_draft: bool,
        labels: list[str],
        reviewers: list[str],
        assignees: list[str],
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        pr_id = self.store.next_id("pulls")
        record = {
            "id": pr_id,
            "title": title,
            "body": body,
            "base": base_branch,
            "head": head_branch,
            "is_draft": is_draft,
            "labels": labels,
            "reviewers": reviewers,
            "assignees": assignees,
            "metadata": metadata,
        }
        self.store.put("pulls", pr_id, record)
        url = (self.store.root / "pulls" / f"{pr_id}.json").as_uri()
        logger.info(f"Recorded local pull request #{pr_id}: {title}")
        return {"id": str(pr_id), "url": url, "is_draft": is_draft, "labels": labels}


class GitHubCliProvider:
    """Opens pull requests with the GitHub CLI (``gh``)."""

    def __init__(self, repo_path: Optional[Path] = None, cli_command: str = "gh"):
        self.repo_path = repo_path
        self.cli_command = cli_command

    def open_pr(
        self,
        title: str,
        body: str,
        base_branch: str,
        head_branch: str,
        is_draft: bool,
        labels: list[str],
        reviewers: list[str],
        assignees: list[str],
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        repo_path = metadata.get("workspace_path") or self.repo_path
        args = [
            self.cli_command,
            "pr",
            "create",
            "--title",
            title,
            "--body",
            body,
            "--base",
            base_branch,
            "--head",
            head_branch,
        ]
        if is_draft:
            args.append("--draft")
        for label in labels:
            args.extend(["--label", label])
        for reviewer in reviewers:
            args.extend(["--reviewer", reviewer])
        for assignee in assignees:
            args.extend(["--assignee", assignee])

        try:
            result = subprocess.run(
                args, cwd=repo_path, capture_output=True, text=True, check=False, timeout=120
            )
        except FileNotFoundError as e:
            raise ProviderError(f"GitHub CLI not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ProviderError("GitHub CLI timed out after 120 seconds") from e

        if result.returncode != 0:
            raise ProviderError(
                f"gh pr create failed (exit {result.returncode}): {result.stderr.strip()}"
            )

        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        pr_number = url.rstrip("/").rsplit("/", 1)[-1] if url else ""
        logger.info(f"Opened pull request {url}")
        return {"id": pr_number, "url": url, "is_draft": is_draft, "labels": labels}
