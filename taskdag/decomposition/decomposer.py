"""Goal decomposer - iterative HTN-style expansion of a goal into a tree.

The decomposer keeps every node in an arena indexed by creation order and
processes the tree one level at a time. Expansions of the nodes of one
level are independent, so they run concurrently in an anyio task group;
their results are merged back in creation order, which keeps node ids and
sibling order deterministic.
"""

import math
from typing import Any

import anyio
from loguru import logger

from taskdag.agents.base import AgentInvoker, tier_for
from taskdag.core.exceptions import (
    AtomicityFailure,
    DepthExceededError,
    InvokerFailure,
    SiblingLimitError,
    TaskDagError,
)
from taskdag.decomposition.atomicity import AtomicityScorer
from taskdag.decomposition.methods import GENERIC, ChildSpec, MethodRegistry
from taskdag.decomposition.models import MAX_DEPTH, MAX_SIBLINGS, GoalNode, GoalTree
from taskdag.prompts.templates import goal_payload


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


class GoalDecomposer:
    """
    Expand a goal until every leaf is atomic or the depth limit is reached.

    Example:
        >>> decomposer = GoalDecomposer()
        >>> tree = await decomposer.decompose(root)
        >>> all(leaf.atomicity_score == 100 or leaf.forced for leaf in tree.leaves())
        True
    """

    def __init__(
        self,
        scorer: AtomicityScorer | None = None,
        registry: MethodRegistry | None = None,
        invoker: AgentInvoker | None = None,
        max_depth: int = MAX_DEPTH,
        max_siblings: int = MAX_SIBLINGS,
    ) -> None:
        self.scorer = scorer or AtomicityScorer()
        self.registry = registry or MethodRegistry()
        self.invoker = invoker
        self.max_depth = max_depth
        self.max_siblings = max_siblings

        self._arena: list[GoalNode] = []
        self._links: dict[int, list[int]] = {}
        self._warnings: list[str] = []

    async def decompose(self, goal: GoalNode, depth: int = 0) -> GoalTree:
        """
        Decompose a goal into a goal tree.

        Args:
            goal: Root goal. Its id and order are reassigned.
            depth: Depth of the root (greater than 0 when the work is
                created below an existing parent task).

        Returns:
            GoalTree whose leaves score 100 or are marked ``forced``.

        Raises:
            DepthExceededError: If ``depth`` leaves no room in the hierarchy.
            SiblingLimitError: If children cannot be grouped within limits.
            InvokerFailure: If the agent invoker failed.
        """
        if depth > self.max_depth:
            raise DepthExceededError(
                f"Cannot decompose at depth {depth}; the maximum depth is {self.max_depth}",
                phase="goals",
            )

        self._arena = []
        self._links = {}
        self._warnings = []

        root = self._add(goal.model_copy(update={"depth": depth, "children": []}))
        frontier = [root]
        level = 0

        while frontier:
            to_expand: list[int] = []
            for idx in frontier:
                if self._settle(idx):
                    to_expand.append(idx)

            logger.debug(
                f"Decomposition level {level}: {len(frontier)} goals, {len(to_expand)} to expand"
            )
            expansions = await self._expand_level(to_expand)

            frontier = []
            for idx in to_expand:
                method, specs = expansions[idx]
                frontier.extend(self._attach(idx, method, specs))
            level += 1

        tree = GoalTree(root=self._assemble(), warnings=list(self._warnings))
        logger.info(
            f"Decomposed '{tree.root.title}' into {len(tree.nodes())} goals, "
            f"{len(tree.leaves())} leaves, depth {tree.max_depth}"
        )
        return tree

    # =========================================================================
    # ARENA
    # =========================================================================

    def _add(self, node: GoalNode) -> int:
        idx = len(self._arena)
        node.id = f"G{idx + 1}"
        node.order = idx
        self._arena.append(node)
        self._links[idx] = []
        return idx

    def _assemble(self) -> GoalNode:
        """Link children into their parents, deepest nodes first."""
        for idx in reversed(range(len(self._arena))):
            node = self._arena[idx]
            node.children = [self._arena[c] for c in self._links[idx]]
        return self._arena[0]

    # =========================================================================
    # LEVEL PROCESSING
    # =========================================================================

    def _settle(self, idx: int) -> bool:
        """Score a node and decide whether it needs expansion."""
        node = self._arena[idx]
        report = self.scorer.evaluate(node)
        node.atomicity_score = report.score

        if report.is_atomic:
            return False

        if node.depth >= self.max_depth:
            node.forced = True
            failure = AtomicityFailure(
                f"{node.id} '{node.title}' accepted non-atomic at depth {node.depth} "
                f"(score {report.score}, failed: {', '.join(report.failed_checks)})",
                phase="goals",
                reference=node.id,
            )
            self._warnings.append(failure.message)
            logger.warning(failure.message)
            return False

        return True

    async def _expand_level(self, indices: list[int]) -> dict[int, tuple[str, list[ChildSpec]]]:
        results: dict[int, tuple[str, list[ChildSpec]]] = {}
        errors: dict[int, TaskDagError] = {}

        async def expand_one(idx: int) -> None:
            try:
                results[idx] = await self._expand(self._arena[idx])
            except TaskDagError as e:
                errors[idx] = e

        async with anyio.create_task_group() as tg:
            for idx in indices:
                tg.start_soon(expand_one, idx)

        if errors:
            raise errors[min(errors)]
        return results

    async def _expand(self, goal: GoalNode) -> tuple[str, list[ChildSpec]]:
        method = self.registry.select(goal)
        if method.name == GENERIC.name and self.invoker is not None:
            specs = await self._ask_invoker(goal)
            if specs:
                return "agent", specs
        return self.registry.expand(goal)

    async def _ask_invoker(self, goal: GoalNode) -> list[ChildSpec]:
        """Ask the agent for children; an unusable answer yields ``[]``."""
        try:
            answer = await self.invoker.invoke(
                "goals", goal_payload(goal, self.max_siblings), tier_for("goals")
            )
        except InvokerFailure as e:
            e.reference = e.reference or goal.id
            raise

        specs = self._parse_children(answer)
        if not specs:
            logger.warning(f"Agent returned no usable children for {goal.id}, using generic method")
        return specs

    @staticmethod
    def _parse_children(answer: dict[str, Any]) -> list[ChildSpec]:
        raw = answer.get("children")
        if not isinstance(raw, list):
            return []

        def strings(value: Any) -> list[str]:
            if not isinstance(value, list):
                return []
            return [str(v).strip() for v in value if str(v).strip()]

        specs = []
        for item in raw:
            if not isinstance(item, dict):
                return []
            title = " ".join(str(item.get("title") or "").split())
            if not title:
                return []
            specs.append(
                ChildSpec(
                    title=title,
                    description=str(item.get("description") or ""),
                    files=strings(item.get("files")),
                    acceptance=strings(item.get("acceptance")),
                    inputs=strings(item.get("inputs")),
                    outputs=strings(item.get("outputs")),
                    verification=strings(item.get("verification")),
                )
            )
        return specs

    # =========================================================================
    # MERGE
    # =========================================================================

    def _attach(self, idx: int, method: str, specs: list[ChildSpec]) -> list[int]:
        """Create child nodes for an expanded goal; returns the new frontier."""
        parent = self._arena[idx]
        parent.method = method
        specs = self._inherit_artifacts(parent, specs)

        if len(specs) <= self.max_siblings:
            created = [self._child(idx, spec, method) for spec in specs]
            self._links[idx] = created
            return created

        return self._attach_grouped(idx, method, specs)

    def _attach_grouped(self, idx: int, method: str, specs: list[ChildSpec]) -> list[int]:
        """Balance more than ``max_siblings`` children under synthetic groups."""
        parent = self._arena[idx]
        n_groups = math.ceil(len(specs) / self.max_siblings)

        if n_groups > self.max_siblings:
            raise SiblingLimitError(
                f"{parent.id} has {len(specs)} children; at most "
                f"{self.max_siblings * self.max_siblings} fit under one goal",
                phase="goals",
                reference=parent.id,
            )
        if parent.depth + 2 > self.max_depth:
            raise SiblingLimitError(
                f"{parent.id} has {len(specs)} children and no depth left to group them",
                phase="goals",
                reference=parent.id,
            )

        logger.debug(f"Grouping {len(specs)} children of {parent.id} into {n_groups} groups")

        base, extra = divmod(len(specs), n_groups)
        frontier: list[int] = []
        start = 0
        for k in range(n_groups):
            size = base + (1 if k < extra else 0)
            chunk = specs[start:start + size]
            start += size

            group = self._add(
                GoalNode(
                    id="pending",
                    title=f"{parent.title} (part {k + 1}/{n_groups})",
                    type=parent.type.child_type(),
                    depth=parent.depth + 1,
                    files=_unique([f for spec in chunk for f in spec.files]),
                    acceptance=_unique([a for spec in chunk for a in spec.acceptance]),
                    description=f"Group {k + 1} of {n_groups} of '{parent.title}'.",
                    intent=method,
                    method="group",
                    synthetic=True,
                )
            )
            self._links[idx].append(group)
            group_node = self._arena[group]
            group_node.atomicity_score = self.scorer.score(group_node)
            self._links[group] = [self._child(group, spec, method) for spec in chunk]
            frontier.extend(self._links[group])

        return frontier

    def _child(self, parent_idx: int, spec: ChildSpec, method: str) -> int:
        parent = self._arena[parent_idx]
        return self._add(
            GoalNode(
                id="pending",
                title=spec.title,
                type=parent.type.child_type(),
                depth=parent.depth + 1,
                files=list(spec.files),
                acceptance=list(spec.acceptance),
                description=spec.description,
                intent=spec.intent or method,
                inputs=list(spec.inputs),
                outputs=list(spec.outputs),
                verification=list(spec.verification),
            )
        )

    @staticmethod
    def _inherit_artifacts(parent: GoalNode, specs: list[ChildSpec]) -> list[ChildSpec]:
        """Pass the parent's inputs to entry children and its outputs to exit children.

        Leaves are the only nodes that reach the dependency graph, so the
        artifacts declared on a container have to move down to them.
        """
        if not parent.inputs and not parent.outputs:
            return specs
        produced = {o for spec in specs for o in spec.outputs}
        consumed = {i for spec in specs for i in spec.inputs}
        for spec in specs:
            if not any(i in produced for i in spec.inputs):
                spec.inputs = _unique([*spec.inputs, *parent.inputs])
            if not any(o in consumed for o in spec.outputs):
                spec.outputs = _unique([*spec.outputs, *parent.outputs])
        return specs


async def decompose_goal(goal: GoalNode, depth: int = 0, **kwargs: Any) -> GoalTree:
    """Convenience function to decompose a goal with default components."""
    return await GoalDecomposer(**kwargs).decompose(goal, depth)
