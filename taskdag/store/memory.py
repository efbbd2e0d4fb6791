"""In-memory task store, used for dry runs and tests."""

from loguru import logger

from taskdag.decomposition.models import TaskRecord
from taskdag.store.base import PersistResult, TaskStore


class InMemoryTaskStore(TaskStore):
    """
    Task store kept in a dictionary.

    Example:
        >>> store = InMemoryTaskStore(counter=41)
        >>> store.next_id()
        'T42'
    """

    def __init__(self, counter: int = 0, tasks: list[TaskRecord] | None = None) -> None:
        self.counter = counter
        self.tasks: dict[str, TaskRecord] = {t.id: t for t in tasks or []}

    def next_id(self) -> str:
        self.counter += 1
        return f"T{self.counter}"

    def persist(self, task: TaskRecord) -> PersistResult:
        if task.id in self.tasks:
            logger.warning(f"Task id {task.id} already exists")
            return "conflict"
        self.tasks[task.id] = task
        return "ok"

    def get(self, task_id: str) -> TaskRecord | None:
        return self.tasks.get(task_id)

    def snapshot(self) -> "InMemoryTaskStore":
        return InMemoryTaskStore(counter=self.counter, tasks=list(self.tasks.values()))
