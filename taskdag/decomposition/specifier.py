"""Task specifier - maps goals of the DAG to schema-compliant task records."""

import re
from datetime import datetime, timezone

from loguru import logger
from pydantic import ValidationError

from taskdag.core.exceptions import SchemaValidationError, StoreConflictError
from taskdag.decomposition.atomicity import size_for_score
from taskdag.decomposition.models import (
    DAG,
    MAX_DESCRIPTION_LENGTH,
    MAX_TITLE_LENGTH,
    GoalNode,
    GoalTree,
    TaskRecord,
)
from taskdag.store.base import TaskStore

_INVISIBLE = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")
ELLIPSIS = "..."


def normalize_title(title: str, max_length: int = MAX_TITLE_LENGTH) -> str:
    """
    Collapse a title to one line and truncate it.

    Example:
        >>> normalize_title("Add\\nlogin endpoint")
        'Add login endpoint'
    """
    text = _INVISIBLE.sub("", title.replace("\\n", " "))
    text = " ".join(text.split())
    if len(text) > max_length:
        text = text[: max_length - len(ELLIPSIS)].rstrip() + ELLIPSIS
    return text


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class TaskSpecifier:
    """
    Turn an accepted goal tree and DAG into task records.

    Container goals come first (pre-order) so every ``parentId`` refers to
    a task that precedes it; executable goals follow in execution order.

    Example:
        >>> specifier = TaskSpecifier(InMemoryTaskStore())
        >>> tasks = specifier.specify(tree, dag)
        >>> tasks[0].id
        'T1'
    """

    def __init__(self, store: TaskStore, max_title_length: int = MAX_TITLE_LENGTH) -> None:
        self.store = store
        self.max_title_length = max_title_length

    def specify(
        self,
        tree: GoalTree,
        dag: DAG,
        parent_id: str | None = None,
        request_hash: str = "",
    ) -> list[TaskRecord]:
        """
        Build task records for every goal.

        Args:
            tree: Accepted goal tree.
            dag: Accepted DAG over the tree's leaves.
            parent_id: Existing task the new root goes under.
            request_hash: Hash of the originating request, kept in ``origin``.

        Returns:
            Task records, containers first.

        Raises:
            SchemaValidationError: If any record fails validation. No
                record is returned in that case.
        """
        containers = tree.containers()
        leaves = [dag.nodes[node_id] for node_id in dag.execution_order]
        ordered = [*containers, *leaves]

        ids = {node.id: self.store.next_id() for node in ordered}
        created_at = _timestamp()

        tasks = []
        for node in ordered:
            parent = tree.parent_of(node.id)
            tasks.append(
                self._record(
                    node,
                    task_id=ids[node.id],
                    parent_id=ids[parent.id] if parent is not None else parent_id,
                    depends=[ids[p] for p in dag.prerequisites(node.id)],
                    created_at=created_at,
                    request_hash=request_hash,
                )
            )

        logger.info(
            f"Specified {len(tasks)} tasks ({len(containers)} containers, {len(leaves)} executable)"
        )
        return tasks

    def _record(
        self,
        node: GoalNode,
        task_id: str,
        parent_id: str | None,
        depends: list[str],
        created_at: str,
        request_hash: str,
    ) -> TaskRecord:
        description = node.description or node.title
        if node.notes:
            description = f"{description}\n\nNotes:\n" + "\n".join(f"- {n}" for n in node.notes)

        acceptance = list(node.acceptance)
        if not node.is_leaf and not acceptance:
            acceptance = [f"All {len(node.children)} child tasks are complete"]

        try:
            return TaskRecord(
                id=task_id,
                title=normalize_title(node.title, self.max_title_length),
                description=description[:MAX_DESCRIPTION_LENGTH],
                type=node.type,
                size=size_for_score(node.atomicity_score),
                parent_id=parent_id,
                depends=depends,
                files=list(node.files),
                acceptance=acceptance,
                labels=["non-atomic"] if node.forced else [],
                created_at=created_at,
                origin={"goalId": node.id, "requestHash": request_hash},
            )
        except ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(p) for p in error["loc"])
            raise SchemaValidationError(
                f"Task for {node.id} failed validation on {field}: {error['msg']}",
                phase="tasks",
                reference=node.id,
            ) from e

    def persist(self, tasks: list[TaskRecord]) -> None:
        """
        Hand accepted tasks to the store as one batch.

        Raises:
            StoreConflictError: If the store already holds one of the ids;
                nothing from the batch is stored in that case.
        """
        if self.store.persist_many(tasks) == "conflict":
            taken = [task.id for task in tasks if self.store.exists(task.id)]
            raise StoreConflictError(
                f"Task store already contains {', '.join(taken)}",
                phase="tasks",
                reference=taken[0] if taken else None,
            )
        logger.info(f"Persisted {len(tasks)} tasks")
