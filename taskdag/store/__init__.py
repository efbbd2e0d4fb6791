"""Task stores: id allocation and persistence of accepted tasks."""

from taskdag.store.base import PersistResult, TaskStore
from taskdag.store.json_store import JsonTaskStore
from taskdag.store.memory import InMemoryTaskStore

__all__ = ["InMemoryTaskStore", "JsonTaskStore", "PersistResult", "TaskStore"]
