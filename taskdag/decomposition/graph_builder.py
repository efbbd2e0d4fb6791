"""Graph builder - turns executable goals into a validated DAG.

Steps:
1. Run every detector over every ordered pair of goals.
2. Gate candidates by confidence (include, flag, hold for HITL, exclude).
3. Reject cycles with the cycle path; cycles are never repaired here.
4. Drop edges implied by longer paths (transitive reduction).
5. Assign parallel groups, the execution order and the critical path.
"""

from collections import defaultdict
from typing import Any

from loguru import logger

from taskdag.core.exceptions import CycleError
from taskdag.decomposition.detectors import (
    ConfidenceGate,
    DependencyDetector,
    EdgeCandidate,
    GateOutcome,
)
from taskdag.decomposition.models import (
    DAG,
    DependencyEdge,
    EdgeType,
    ExcludedEdge,
    GoalNode,
)


class GraphBuilder:
    """
    Build a DAG over executable goals.

    Example:
        >>> builder = GraphBuilder()
        >>> dag = builder.build(tree.leaves())
        >>> dag.parallel_groups
        [['G3', 'G4'], ['G5'], ['G6']]
    """

    def __init__(
        self,
        detector: DependencyDetector | None = None,
        gate: ConfidenceGate | None = None,
    ) -> None:
        self.detector = detector or DependencyDetector()
        self.gate = gate or ConfidenceGate()

    def build(
        self,
        nodes: list[GoalNode],
        extra_candidates: list[EdgeCandidate] | None = None,
    ) -> DAG:
        """
        Build the dependency graph.

        Args:
            nodes: Executable goals (the leaves of the goal tree).
            extra_candidates: Candidates from other sources, e.g. agent
                suggestions. They pass through the same confidence gate.

        Returns:
            DAG with reduced edges, parallel groups and execution order.

        Raises:
            CycleError: If the included edges contain a cycle.
        """
        ordered = sorted(nodes, key=lambda n: n.order)
        node_map = {n.id: n for n in ordered}
        logger.info(f"Building dependency graph over {len(ordered)} goals")

        candidates = self.detector.detect_all(ordered)
        candidates.extend(extra_candidates or [])

        edges: dict[tuple[str, str, EdgeType], DependencyEdge] = {}
        pending: dict[tuple[str, str, EdgeType], DependencyEdge] = {}
        excluded: list[ExcludedEdge] = []

        for candidate in candidates:
            if candidate.from_ not in node_map or candidate.to not in node_map:
                excluded.append(candidate.excluded("references an unknown goal"))
                continue
            decision = self.gate.decide(candidate)
            if decision.outcome is GateOutcome.EXCLUDE:
                excluded.append(decision.excluded)
            elif decision.outcome is GateOutcome.PENDING:
                pending.setdefault(candidate.key, decision.edge)
            else:
                current = edges.get(candidate.key)
                if current is None or decision.edge.confidence > current.confidence:
                    edges[candidate.key] = decision.edge

        edge_list = sorted(edges.values(), key=lambda e: self._edge_sort_key(e, node_map))

        cycle = find_cycle([n.id for n in ordered], edge_list)
        if cycle:
            logger.error(f"Cycle detected: {' -> '.join([*cycle, cycle[0]])}")
            raise CycleError(cycle)

        reduced = transitive_reduction([n.id for n in ordered], edge_list)
        groups = parallel_groups(ordered, reduced)
        execution_order = [node_id for group in groups for node_id in group]

        dag = DAG(
            nodes=node_map,
            edges=reduced,
            parallel_groups=groups,
            execution_order=execution_order,
            excluded=excluded,
            pending_confirmation=list(pending.values()),
            critical_path=critical_path(execution_order, reduced),
        )

        logger.info(
            f"DAG: {len(reduced)} edges ({len(edge_list) - len(reduced)} redundant dropped), "
            f"{len(groups)} parallel groups, {len(pending)} pending, {len(excluded)} excluded"
        )
        return dag

    @staticmethod
    def _edge_sort_key(edge: DependencyEdge, node_map: dict[str, GoalNode]) -> tuple[Any, ...]:
        return (node_map[edge.from_].order, node_map[edge.to].order, edge.type.value)


# =============================================================================
# GRAPH ALGORITHMS
# =============================================================================


def _adjacency(node_ids: list[str], edges: list[DependencyEdge]) -> dict[str, list[str]]:
    adjacency: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    for edge in edges:
        if edge.to not in adjacency[edge.from_]:
            adjacency[edge.from_].append(edge.to)
    return adjacency


def find_cycle(node_ids: list[str], edges: list[DependencyEdge]) -> list[str] | None:
    """
    Find a cycle using iterative three-colour DFS.

    Nodes are visited in the given order so the reported cycle is
    deterministic. The cycle is returned without repeating its first node.

    Example:
        >>> find_cycle(["A", "B"], [edge("A", "B"), edge("B", "A")])
        ['A', 'B']
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    adjacency = _adjacency(node_ids, edges)
    colors = {node_id: WHITE for node_id in node_ids}

    for start in node_ids:
        if colors[start] != WHITE:
            continue
        path: list[str] = [start]
        stack = [iter(adjacency[start])]
        colors[start] = GRAY

        while stack:
            neighbor = next(stack[-1], None)
            if neighbor is None:
                colors[path.pop()] = BLACK
                stack.pop()
                continue
            if colors[neighbor] == GRAY:
                return path[path.index(neighbor):]
            if colors[neighbor] == WHITE:
                colors[neighbor] = GRAY
                path.append(neighbor)
                stack.append(iter(adjacency[neighbor]))

    return None


def reachability(node_ids: list[str], edges: list[DependencyEdge]) -> dict[str, set[str]]:
    """All-pairs reachability (Floyd-Warshall transitive closure)."""
    reach: dict[str, set[str]] = {node_id: set() for node_id in node_ids}
    for edge in edges:
        reach[edge.from_].add(edge.to)

    for k in node_ids:
        for i in node_ids:
            if k in reach[i]:
                reach[i] |= reach[k]
    return reach


def transitive_reduction(
    node_ids: list[str],
    edges: list[DependencyEdge],
) -> list[DependencyEdge]:
    """
    Drop every edge ``u -> v`` implied by a path ``u -> w -> ... -> v``.

    Parallel edges of different types between the same pair are kept;
    they carry distinct evidence. Reducing a reduced graph is a no-op.
    """
    reach = reachability(node_ids, edges)
    kept = []
    for edge in edges:
        u, v = edge.from_, edge.to
        implied = any(
            w not in (u, v) and w in reach[u] and v in reach[w]
            for w in node_ids
        )
        if implied:
            logger.debug(f"Dropping redundant edge {edge.id}")
        else:
            kept.append(edge)
    return kept


def parallel_groups(nodes: list[GoalNode], edges: list[DependencyEdge]) -> list[list[str]]:
    """
    Group nodes into execution levels (Kahn's algorithm by levels).

    Each group holds the nodes whose prerequisites all sit in earlier
    groups; members are sorted by creation order.
    """
    order = {n.id: n.order for n in nodes}
    indegree: dict[str, int] = {n.id: 0 for n in nodes}
    dependents: dict[str, set[str]] = defaultdict(set)
    for edge in edges:
        if edge.to not in dependents[edge.from_]:
            dependents[edge.from_].add(edge.to)
            indegree[edge.to] += 1

    groups: list[list[str]] = []
    ready = sorted((i for i, d in indegree.items() if d == 0), key=order.__getitem__)
    while ready:
        groups.append(ready)
        following: list[str] = []
        for node_id in ready:
            for dependent in dependents[node_id]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    following.append(dependent)
        ready = sorted(following, key=order.__getitem__)

    if sum(len(g) for g in groups) != len(nodes):
        remaining = [i for i, d in indegree.items() if d > 0]
        raise CycleError(remaining)
    return groups


def critical_path(execution_order: list[str], edges: list[DependencyEdge]) -> list[str]:
    """Longest dependency chain, computed over a topological order."""
    if not execution_order:
        return []

    incoming: dict[str, list[str]] = defaultdict(list)
    for edge in edges:
        incoming[edge.to].append(edge.from_)

    length: dict[str, int] = {}
    previous: dict[str, str | None] = {}
    for node_id in execution_order:
        best, via = 1, None
        for prerequisite in incoming[node_id]:
            if length[prerequisite] + 1 > best:
                best, via = length[prerequisite] + 1, prerequisite
        length[node_id], previous[node_id] = best, via

    end = max(execution_order, key=lambda i: (length[i], -execution_order.index(i)))
    path = [end]
    while previous[path[-1]] is not None:
        path.append(previous[path[-1]])
    return list(reversed(path))


def build_dag(nodes: list[GoalNode], **kwargs: Any) -> DAG:
    """Convenience function to build a DAG with default detectors."""
    return GraphBuilder(**kwargs).build(nodes)
