"""Lexical retrieval index used for planning context and failure bundles."""

from __future__ import annotations

import json
import logging
import math
import re
from collections import Counter
from pathlib import Path
from typing import Any, Optional

from ticketflow.workflow.policy import is_path_allowed
from ticketflow.workflow.store import atomic_write_json

logger = logging.getLogger(__name__)

INDEXED_SUFFIXES = {
    ".py", ".js", ".jsx", ".ts", ".tsx", ".go", ".php", ".rb", ".java", ".rs",
    ".md", ".toml", ".yaml", ".yml", ".json", ".cfg", ".ini", ".txt",
}
SKIPPED_DIRS = {".git", "node_modules", "vendor", "__pycache__", ".venv", "venv", "dist", "build"}
CHUNK_LINES = 40
MAX_FILE_BYTES = 200_000

_TOKEN = re.compile(r"[A-Za-z_][A-Za-z0-9_]+")
_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def tokenize(text: str) -> list[str]:
    """Split text into lowercase identifier parts (snake and camel case aware)."""
    tokens = []
    for word in _TOKEN.findall(text):
        parts = [p for chunk in word.split("_") for p in _CAMEL.split(chunk) if p]
        tokens.extend(p.lower() for p in parts if len(p) > 1)
        if len(parts) > 1:
            tokens.append(word.lower())
    return tokens


class LexicalIndexer:
    """Term-frequency index over fixed-size line chunks, one JSON file per project."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _index_path(self, project_id: int) -> Path:
        return self.root / f"project_{project_id}.json"

    def index_repository(
        self,
        repo_path: Path,
        project_id: int,
        allowed_paths: Optional[dict[str, list[str]]] = None,
    ) -> int:
        repo_path = Path(repo_path)
        chunks: list[dict[str, Any]] = []
        for path in sorted(repo_path.rglob("*")):
            relative = path.relative_to(repo_path)
            if not path.is_file() or path.suffix not in INDEXED_SUFFIXES:
                continue
            if any(part in SKIPPED_DIRS for part in relative.parts):
                continue
            if allowed_paths and not is_path_allowed(relative.as_posix(), allowed_paths):
                continue
            if path.stat().st_size > MAX_FILE_BYTES:
                continue
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
            for start in range(0, len(lines), CHUNK_LINES):
                content = "\n".join(lines[start : start + CHUNK_LINES])
                if not content.strip():
                    continue
                chunks.append(
                    {
                        "content": content,
                        "terms": dict(Counter(tokenize(content))),
                        "metadata": {
                            "file_path": relative.as_posix(),
                            "start_line": start + 1,
                            "end_line": min(start + CHUNK_LINES, len(lines)),
                            "project_id": project_id,
                        },
                    }
                )

        atomic_write_json(self._index_path(project_id), {"chunks": chunks})
        logger.info(f"Indexed {len(chunks)} chunks for project {project_id}")
        return len(chunks)

    def search(
        self, query: str, k: int = 10, project_id: Optional[int] = None
    ) -> list[dict[str, Any]]:
        query_terms = Counter(tokenize(query))
        if not query_terms:
            return []

        if project_id is not None:
            paths = [self._index_path(project_id)]
        else:
            paths = sorted(self.root.glob("project_*.json"))

        hits = []
        for path in paths:
            if not path.exists():
                continue
            with open(path, "r", encoding="utf-8") as f:
                chunks = json.load(f).get("chunks", [])
            for chunk in chunks:
                score = _cosine(query_terms, chunk["terms"])
                if score > 0:
                    hits.append(
                        {"content": chunk["content"], "score": round(score, 4), "metadata": chunk["metadata"]}
                    )

        hits.sort(key=lambda hit: hit["score"], reverse=True)
        return hits[:k]

    def clear_project_embeddings(self, project_id: int) -> None:
        path = self._index_path(project_id)
        if path.exists():
            path.unlink()
            logger.info(f"Cleared index for project {project_id}")


def _cosine(a: Counter, b: dict[str, int]) -> float:
    dot = sum(count * b.get(term, 0) for term, count in a.items())
    if dot == 0:
        return 0.0
    norm_a = math.sqrt(sum(v * v for v in a.values()))
    norm_b = math.sqrt(sum(v * v for v in b.values()))
    return dot / (norm_a * norm_b)
