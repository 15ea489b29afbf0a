"""Candidate file extraction from failure bundles."""

from __future__ import annotations

import re
from typing import Any, Iterable

SOURCE_FILE = re.compile(r"(?<![\w/.-])((?:[\w.-]+/)*[\w.-]+\.(?:py|php|js|ts|go))\b")
TEST_FILE = re.compile(
    r"(?<![\w/.-])((?:[\w.-]+/)*[\w.-]*[Tt]est[\w.-]*\.(?:py|php|js|ts|go))\b"
)
WORKSPACE_PATH = re.compile(r"\[WORKSPACE\]/([^\s:\"',)]+)")

TEST_STRATEGIES = {"test_fix"}
EXCEPTION_STRATEGIES = {"type_fix", "import_fix", "syntax_fix"}


def _unique(paths: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for path in paths:
        path = path.strip().removeprefix("./")
        if path and not path.startswith(("[", "/")):
            seen.setdefault(path, None)
    return list(seen)


def files_from_logs(bundle: dict[str, Any]) -> list[str]:
    paths = []
    for log in bundle.get("command_logs") or []:
        paths.extend(SOURCE_FILE.findall(log.get("content") or ""))
    return _unique(paths)


def test_files_from_logs(bundle: dict[str, Any]) -> list[str]:
    paths = []
    for log in bundle.get("command_logs") or []:
        if log.get("type") == "test":
            paths.extend(TEST_FILE.findall(log.get("content") or ""))
    return _unique(paths)


def files_from_exception(bundle: dict[str, Any]) -> list[str]:
    exception = (bundle.get("failure") or {}).get("exception") or {}
    paths = []
    for field in ("file", "message", "trace"):
        paths.extend(WORKSPACE_PATH.findall(exception.get(field) or ""))
    return _unique(paths)


def files_from_last_diff(bundle: dict[str, Any]) -> list[str]:
    diffs = bundle.get("last_diffs") or []
    return _unique(diffs[0].get("files_touched") or []) if diffs else []


def extract_candidate_files(bundle: dict[str, Any], strategy_type: str = "") -> list[str]:
    """Files a repair should look at, most specific source first.

    Test strategies only consider test files named in test logs; exception
    driven strategies start from the exception file and trace. Otherwise the
    order is command logs, exception, then the latest patch.
    """
    if strategy_type in TEST_STRATEGIES:
        return test_files_from_logs(bundle)
    if strategy_type in EXCEPTION_STRATEGIES:
        return _unique(
            files_from_exception(bundle) + files_from_logs(bundle) + files_from_last_diff(bundle)
        )
    return _unique(
        files_from_logs(bundle) + files_from_exception(bundle) + files_from_last_diff(bundle)
    )
