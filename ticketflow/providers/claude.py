"""Claude Code CLI bindings for planning, implementing and reviewing.

This module provides the ClaudeProvider class that spawns the Claude CLI as a
subprocess for each AI capability. The provider constructs prompts, manages
subprocess execution with timeouts, and parses the structured JSON answer
out of stdout.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Any

from ticketflow.workflow.errors import ProviderError
from ticketflow.workflow.models import PatchSummary, ReviewResult, Ticket

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class ClaudeProvider:
    """Spawns the Claude CLI as a subprocess for AI capabilities.

    The provider is responsible for:
    - Constructing instruction prompts for each capability
    - Spawning the CLI with the prompt on stdin
    - Enforcing a per-call timeout
    - Parsing the JSON object from the answer
    """

    def __init__(self, cli_command: str = "claude", timeout: int = 600, cli_flags: list[str] | None = None):
        """Initialize the provider.

        Args:
            cli_command: Claude CLI executable
            timeout: Seconds before a call is abandoned
            cli_flags: Extra CLI flags appended to every call
        """
        self.cli_command = cli_command
        self.timeout = timeout
        self.cli_flags = list(cli_flags or [])

    def plan(self, ticket: Ticket, rag_context: list[dict[str, Any]]) -> dict[str, Any]:
        return self._ask(self._plan_prompt(ticket, rag_context), "plan")

    def implement(
        self, step: dict[str, Any], context: dict[str, Any], workspace_path: Path
    ) -> PatchSummary:
        data = self._ask(self._implement_prompt(step, context), "implement", cwd=workspace_path)
        changes = [c for c in data.get("changes", []) if isinstance(c, dict) and c.get("file")]
        return PatchSummary(changes=changes, notes=str(data.get("notes", "")))

    def review(
        self,
        patch_summary: dict[str, Any],
        test_results: dict[str, Any],
        checks_pass: bool,
        policy_violations: list[str],
    ) -> ReviewResult:
        prompt = self._review_prompt(patch_summary, test_results, checks_pass, policy_violations)
        data = self._ask(prompt, "review")
        return ReviewResult(
            status="approved" if data.get("approved") else "needs_changes",
            issues=list(data.get("issues", [])),
            security_issues=list(data.get("security_issues", [])),
            suggestions=list(data.get("suggestions", [])),
            quality_score=int(data.get("quality_score", 0)),
            summary=str(data.get("summary", "")),
        )

    def _ask(self, prompt: str, purpose: str, cwd: Path | None = None) -> dict[str, Any]:
        """Run the CLI and return the parsed JSON answer.

        Raises:
            ProviderError: If the CLI is missing, times out, exits non-zero or
                returns no JSON object
        """
        args = [self.cli_command, "--print", "--dangerously-skip-permissions", *self.cli_flags]
        logger.debug(f"Calling Claude for {purpose}")
        try:
            result = subprocess.run(
                args,
                input=prompt,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ProviderError(f"Claude CLI not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ProviderError(f"Claude {purpose} call timed out after {self.timeout} seconds") from e

        if result.returncode != 0:
            raise ProviderError(
                f"Claude subprocess failed with exit code {result.returncode}: {result.stderr.strip()}"
            )

        try:
            return parse_json_object(result.stdout)
        except ValueError as e:
            raise ProviderError(f"Failed to parse Claude {purpose} output: {e}") from e

    def _plan_prompt(self, ticket: Ticket, rag_context: list[dict[str, Any]]) -> str:
        criteria = "\n".join(f"- {c}" for c in ticket.acceptance_criteria) or "- (none given)"
        context = "\n\n".join(
            f"### {item.get('source', 'context')} (relevance {item.get('relevance', 0):.2f})\n"
            f"{item.get('content', '')}"
            for item in rag_context
        )
        return f"""You are a senior engineer planning the implementation of a ticket.

**Ticket:** {ticket.external_key} - {ticket.title}

{ticket.body}

## Acceptance criteria
{criteria}

## Relevant code
{context}

## Output Requirements

Respond with ONE JSON object:

```json
{{
  "summary": "one paragraph",
  "risk": "low|medium|high",
  "estimated_hours": 2,
  "test_strategy": "how the change will be tested",
  "files_affected": ["path/to/file.py"],
  "dependencies": [],
  "steps": [
    {{
      "id": "step_1",
      "intent": "add|modify|remove|add_test|refactor",
      "targets": [{{"path": "path/to/file.py", "type": "file|function|method", "function": "name"}}],
      "rationale": "why",
      "acceptance": ["observable check"],
      "estimated_minutes": 30,
      "dependencies": [],
      "risk_factors": []
    }}
  ]
}}
```
"""

    def _implement_prompt(self, step: dict[str, Any], context: dict[str, Any]) -> str:
        return f"""You are implementing one step of a plan inside the current repository.

## Step
```json
{json.dumps(step, indent=2, default=str)}
```

## Context
```json
{json.dumps(context, indent=2, default=str)[:20000]}
```

Do not edit files yourself. Respond with ONE JSON object:

```json
{{
  "changes": [
    {{"file": "path/to/file.py", "content": "full new file content"}},
    {{"file": "path/to/other.py", "old": "exact snippet", "new": "replacement"}}
  ],
  "notes": "short explanation"
}}
```

For function or method targets, "content" may hold just the new definition.
"""

    def _review_prompt(
        self,
        patch_summary: dict[str, Any],
        test_results: dict[str, Any],
        checks_pass: bool,
        policy_violations: list[str],
    ) -> str:
        violations = "\n".join(f"- {v}" for v in policy_violations) or "- none"
        return f"""You are reviewing an automated code change.

## Patch
```json
{json.dumps(patch_summary, indent=2, default=str)[:20000]}
```

## Checks (all passed: {str(checks_pass).lower()})
```json
{json.dumps(test_results, indent=2, default=str)}
```

## Policy violations
{violations}

Respond with ONE JSON object:

```json
{{
  "approved": true,
  "quality_score": 0,
  "summary": "short verdict",
  "issues": [{{"file": "path.py", "severity": "low|medium|high|critical", "message": "...", "fixable": true}}],
  "security_issues": [{{"file": "path.py", "severity": "high", "message": "..."}}],
  "suggestions": [{{"message": "..."}}]
}}
```
"""


def parse_json_object(text: str) -> dict[str, Any]:
    """Find and parse the first JSON object in free-form model output.

    Raises:
        ValueError: If no valid JSON object is present
    """
    fenced = _FENCED_JSON.search(text)
    if fenced:
        try:
            return json.loads(fenced.group(1))
        except json.JSONDecodeError:
            pass

    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", text):
        try:
            data, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise ValueError("No JSON object found in output")
