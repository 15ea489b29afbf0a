"""Durable JSON record store.

Each record lives in its own file under ``<root>/<collection>/<id>.json``.
Writes go through a temp file and an atomic rename; read-modify-write cycles
hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar so counters and state
changes are updated in a single step.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock tied to ``path`` for the duration of the block."""
    lock_path = path.with_name(path.name + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def atomic_write_json(path: Path, data: Any) -> None:
    """Write ``data`` as JSON to ``path`` via temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        dir=path.parent,
        delete=False,
        suffix=".json.tmp",
        encoding="utf-8",
    ) as f:
        json.dump(data, f, indent=2, default=str)
        temp_path = f.name

    os.replace(temp_path, path)


class RecordStore:
    """File-backed store of JSON records grouped in collections."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str, record_id: Any) -> Path:
        return self.root / collection / f"{record_id}.json"

    def _read(self, path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def next_id(self, collection: str) -> int:
        """Allocate the next integer id for ``collection``."""
        counter = self.root / collection / "_sequence.json"
        with locked_file(counter):
            current = self._read(counter) or {"last_id": 0}
            current["last_id"] += 1
            atomic_write_json(counter, current)
            return current["last_id"]

    def get(self, collection: str, record_id: Any) -> Optional[dict[str, Any]]:
        return self._read(self._path(collection, record_id))

    def put(self, collection: str, record_id: Any, data: dict[str, Any]) -> None:
        path = self._path(collection, record_id)
        with locked_file(path):
            atomic_write_json(path, data)
        logger.debug(f"Stored {collection}/{record_id}")

    def update(
        self,
        collection: str,
        record_id: Any,
        mutate: Callable[[dict[str, Any]], Optional[dict[str, Any]]],
    ) -> dict[str, Any]:
        """Atomically read, mutate and write back one record.

        Args:
            collection: Collection name
            record_id: Record identifier
            mutate: Callable receiving the current record; it may modify the
                dict in place or return a replacement

        Returns:
            The record as written

        Raises:
            KeyError: If the record does not exist
        """
        path = self._path(collection, record_id)
        with locked_file(path):
            current = self._read(path)
            if current is None:
                raise KeyError(f"{collection}/{record_id} not found")
            result = mutate(current)
            updated = current if result is None else result
            atomic_write_json(path, updated)
        return updated

    def delete(self, collection: str, record_id: Any) -> bool:
        path = self._path(collection, record_id)
        with locked_file(path):
            if not path.exists():
                return False
            path.unlink()
        return True

    def all(self, collection: str) -> list[dict[str, Any]]:
        """Return every record in ``collection`` ordered by numeric id."""
        directory = self.root / collection
        if not directory.is_dir():
            return []
        records = []
        for path in directory.glob("*.json"):
            if path.name.startswith("_"):
                continue
            data = self._read(path)
            if data is not None:
                records.append(data)
        return sorted(records, key=lambda r: _sort_key(r.get("id", r.get("ticket_id"))))

    def where(self, collection: str, **criteria: Any) -> list[dict[str, Any]]:
        return [
            record
            for record in self.all(collection)
            if all(record.get(key) == value for key, value in criteria.items())
        ]

    def latest(self, collection: str, **criteria: Any) -> Optional[dict[str, Any]]:
        records = self.where(collection, **criteria)
        return records[-1] if records else None


def _sort_key(value: Any) -> tuple[int, Any]:
    if isinstance(value, int):
        return (0, value)
    return (1, str(value))
