"""JSON file task store with a persistent id sequence.

File layout::

    {
      "version": 1,
      "sequence": {"counter": 42, "lastId": "T42", "checksum": "..."},
      "tasks": [{"id": "T1", ...}, ...]
    }

Every write goes to a temporary file that replaces the original, so a
crash never leaves a half-written store behind. Writers hold a lock file
next to the store and re-read it first, so several processes sharing one
store draw from a single id sequence.
"""

import hashlib
import json
import os
import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from filelock import FileLock
from loguru import logger

from taskdag.decomposition.models import TaskRecord
from taskdag.store.base import PersistResult, TaskStore
from taskdag.store.memory import InMemoryTaskStore

STORE_VERSION = 1


def _checksum(tasks: list[dict[str, Any]]) -> str:
    payload = json.dumps(tasks, sort_keys=True).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()[:16]


def _max_id(tasks: list[dict[str, Any]]) -> int:
    numbers = [int(m.group(1)) for t in tasks if (m := re.match(r"^T(\d+)$", str(t.get("id"))))]
    return max(numbers, default=0)


class JsonTaskStore(TaskStore):
    """
    Task store backed by a single JSON file.

    Example:
        >>> store = JsonTaskStore(".taskdag/tasks.json")
        >>> store.next_id()
        'T1'
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = FileLock(str(self.path.with_name(self.path.name + ".lock")))
        self._data = self._load()

    # =========================================================================
    # FILE I/O
    # =========================================================================

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {
                "version": STORE_VERSION,
                "sequence": {"counter": 0, "lastId": None, "checksum": _checksum([])},
                "tasks": [],
            }
        with self.path.open(encoding="utf-8") as f:
            data = json.load(f)
        data.setdefault("tasks", [])
        data.setdefault("sequence", {"counter": _max_id(data["tasks"]), "lastId": None})
        return data

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._data["sequence"]["checksum"] = _checksum(self._data["tasks"])

        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".tasks-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the store lock with the in-memory copy refreshed from disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._data = self._load()
            yield

    # =========================================================================
    # STORE INTERFACE
    # =========================================================================

    @property
    def counter(self) -> int:
        return int(self._data["sequence"]["counter"])

    def next_id(self) -> str:
        with self._locked():
            counter = max(self.counter, _max_id(self._data["tasks"])) + 1
            task_id = f"T{counter}"
            self._data["sequence"].update({"counter": counter, "lastId": task_id})
            self._save()
        return task_id

    def persist(self, task: TaskRecord) -> PersistResult:
        return self.persist_many([task])

    def persist_many(self, tasks: list[TaskRecord]) -> PersistResult:
        with self._locked():
            stored = {t.get("id") for t in self._data["tasks"]}
            taken = [task.id for task in tasks if task.id in stored]
            if taken:
                logger.warning(f"Task ids {taken} already exist in {self.path}")
                return "conflict"
            self._data["tasks"].extend(task.to_dict() for task in tasks)
            self._save()
        return "ok"

    def get(self, task_id: str) -> TaskRecord | None:
        self._data = self._load()
        for raw in self._data["tasks"]:
            if raw.get("id") == task_id:
                return TaskRecord.model_validate(raw)
        return None

    def all(self) -> list[TaskRecord]:
        self._data = self._load()
        return [TaskRecord.model_validate(raw) for raw in self._data["tasks"]]

    def snapshot(self) -> InMemoryTaskStore:
        """In-memory copy continuing the same sequence, for dry runs."""
        tasks = self.all()
        return InMemoryTaskStore(counter=self.counter, tasks=tasks)

    # =========================================================================
    # SEQUENCE MAINTENANCE
    # =========================================================================

    def check_sequence(self) -> dict[str, Any]:
        """Report whether the counter is ahead of every stored id."""
        self._data = self._load()
        max_id = _max_id(self._data["tasks"])
        report: dict[str, Any] = {
            "counter": self.counter,
            "maxIdInData": max_id,
            "valid": self.counter >= max_id,
        }
        if not report["valid"]:
            report["issue"] = f"Counter ({self.counter}) is behind max ID (T{max_id})"
        return report

    def repair_sequence(self) -> dict[str, Any]:
        """Move the counter up to the highest stored id if it fell behind."""
        with self._locked():
            old = self.counter
            max_id = _max_id(self._data["tasks"])
            if old >= max_id:
                return {"repaired": False, "counter": old}
            self._data["sequence"].update({"counter": max_id, "lastId": f"T{max_id}"})
            self._save()
        logger.info(f"Sequence repaired: {old} -> {max_id}")
        return {"repaired": True, "oldCounter": old, "newCounter": max_id}
