"""Unit tests for the task stores."""

import json
from pathlib import Path

import pytest

from taskdag.decomposition.models import GoalType, TaskRecord, TaskSize
from taskdag.store.json_store import JsonTaskStore
from taskdag.store.memory import InMemoryTaskStore


def task(task_id: str, parent_id: str | None = None) -> TaskRecord:
    return TaskRecord(
        id=task_id,
        title=f"Task {task_id}",
        type=GoalType.TASK,
        size=TaskSize.SMALL,
        parent_id=parent_id,
        created_at="2026-01-01T00:00:00Z",
    )


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "store" / "tasks.json"


class TestJsonTaskStore:
    def test_ids_survive_reload(self, store_path: Path) -> None:
        store = JsonTaskStore(store_path)

        assert [store.next_id(), store.next_id()] == ["T1", "T2"]
        assert JsonTaskStore(store_path).next_id() == "T3"

    def test_persist_and_get(self, store_path: Path) -> None:
        store = JsonTaskStore(store_path)
        store.persist(task(store.next_id()))

        reloaded = JsonTaskStore(store_path)

        assert reloaded.get("T1") == task("T1")
        assert reloaded.get("T9") is None
        data = json.loads(store_path.read_text())
        assert data["sequence"]["lastId"] == "T1"
        assert data["tasks"][0]["createdAt"] == "2026-01-01T00:00:00Z"

    def test_no_temporary_files_left(self, store_path: Path) -> None:
        store = JsonTaskStore(store_path)
        store.persist(task(store.next_id()))

        names = [p.name for p in store_path.parent.iterdir() if p.suffix != ".lock"]
        assert names == ["tasks.json"]

    def test_conflict(self, store_path: Path) -> None:
        store = JsonTaskStore(store_path)
        store.persist(task("T1"))

        assert store.persist(task("T1")) == "conflict"
        assert len(store.all()) == 1

    def test_two_stores_share_one_sequence(self, store_path: Path) -> None:
        first = JsonTaskStore(store_path)
        second = JsonTaskStore(store_path)

        assert first.next_id() == "T1"
        assert second.next_id() == "T2"
        assert first.persist(task("T1")) == "ok"
        assert second.persist(task("T2")) == "ok"
        assert first.persist(task("T2")) == "conflict"

        assert [t.id for t in JsonTaskStore(store_path).all()] == ["T1", "T2"]
        assert first.next_id() == "T3"

    def test_persist_many_is_all_or_nothing(self, store_path: Path) -> None:
        store = JsonTaskStore(store_path)
        store.persist(task("T2"))

        assert store.persist_many([task("T1"), task("T2"), task("T3")]) == "conflict"
        assert [t.id for t in JsonTaskStore(store_path).all()] == ["T2"]

        assert store.persist_many([task("T1"), task("T3")]) == "ok"
        assert [t.id for t in store.all()] == ["T2", "T1", "T3"]

    def test_depth_of(self, store_path: Path) -> None:
        store = JsonTaskStore(store_path)
        store.persist(task("T1"))
        store.persist(task("T2", parent_id="T1"))
        store.persist(task("T3", parent_id="T2"))

        assert store.depth_of("T1") == 0
        assert store.depth_of("T3") == 2
        assert store.depth_of("T4") is None

    def test_sequence_check_and_repair(self, store_path: Path) -> None:
        store_path.parent.mkdir(parents=True)
        store_path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "sequence": {"counter": 1, "lastId": "T1"},
                    "tasks": [task(f"T{i}").to_dict() for i in range(1, 4)],
                }
            )
        )
        store = JsonTaskStore(store_path)

        report = store.check_sequence()
        assert report["valid"] is False
        assert report["issue"] == "Counter (1) is behind max ID (T3)"

        assert store.repair_sequence() == {"repaired": True, "oldCounter": 1, "newCounter": 3}
        assert store.check_sequence()["valid"] is True
        assert store.repair_sequence() == {"repaired": False, "counter": 3}

    def test_next_id_skips_stale_counter(self, store_path: Path) -> None:
        store_path.parent.mkdir(parents=True)
        store_path.write_text(
            json.dumps({"sequence": {"counter": 0}, "tasks": [task("T5").to_dict()]})
        )

        assert JsonTaskStore(store_path).next_id() == "T6"

    def test_snapshot_is_detached(self, store_path: Path) -> None:
        store = JsonTaskStore(store_path)
        store.persist(task(store.next_id()))

        snapshot = store.snapshot()
        snapshot.persist(task(snapshot.next_id()))

        assert isinstance(snapshot, InMemoryTaskStore)
        assert snapshot.exists("T2")
        assert not store.exists("T2")
        assert store.counter == 1


class TestInMemoryTaskStore:
    def test_sequence_and_conflict(self, memory_store: InMemoryTaskStore) -> None:
        first = memory_store.next_id()

        assert first == "T1"
        assert memory_store.persist(task(first)) == "ok"
        assert memory_store.persist(task(first)) == "conflict"

    def test_persist_many_is_all_or_nothing(self) -> None:
        store = InMemoryTaskStore(tasks=[task("T2")])

        assert store.persist_many([task("T1"), task("T2"), task("T3")]) == "conflict"
        assert sorted(store.tasks) == ["T2"]

    def test_depth_of_stops_at_cycles(self) -> None:
        store = InMemoryTaskStore(tasks=[task("T1", parent_id="T2"), task("T2", parent_id="T1")])

        assert store.depth_of("T1") == 1
