"""Task store interface."""

from abc import ABC, abstractmethod
from typing import Literal

from taskdag.decomposition.models import TaskRecord

PersistResult = Literal["ok", "conflict"]


class TaskStore(ABC):
    """
    Authoritative source of task ids and sink for accepted tasks.

    The engine never invents ids itself: every id comes from ``next_id``
    so there is a single sequence even with several sessions running.
    """

    @abstractmethod
    def next_id(self) -> str:
        """Allocate the next task id (``T<n>``)."""

    @abstractmethod
    def persist(self, task: TaskRecord) -> PersistResult:
        """Store a task; ``"conflict"`` if its id is already taken."""

    def persist_many(self, tasks: list[TaskRecord]) -> PersistResult:
        """Store a batch of tasks, or none of them if any id is already taken."""
        if any(self.exists(task.id) for task in tasks):
            return "conflict"
        for task in tasks:
            self.persist(task)
        return "ok"

    @abstractmethod
    def get(self, task_id: str) -> TaskRecord | None:
        """Look up a stored task."""

    def exists(self, task_id: str) -> bool:
        return self.get(task_id) is not None

    def depth_of(self, task_id: str) -> int | None:
        """Depth of a stored task in the hierarchy (0 for roots)."""
        task = self.get(task_id)
        if task is None:
            return None
        depth = 0
        seen = {task.id}
        while task.parent_id is not None:
            parent = self.get(task.parent_id)
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            task = parent
            depth += 1
        return depth

    @abstractmethod
    def snapshot(self) -> "TaskStore":
        """Detached copy that continues the same id sequence (for dry runs)."""
