"""Dependency detectors - five independent signals over pairs of goals.

Every detector looks at an ordered pair ``(a, b)`` and returns either an
``EdgeCandidate`` or ``None``. Candidates are only turned into
``DependencyEdge`` objects after passing the ``ConfidenceGate``, so edges
without evidence or below the confidence floor never reach the graph.

Edges always point from the prerequisite to the dependent goal.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger
from pydantic import ValidationError

from taskdag.decomposition.atomicity import ACTION_VERBS
from taskdag.decomposition.models import (
    DependencyEdge,
    EdgeType,
    ExcludedEdge,
    GoalNode,
)

EXPLICIT_CONFIDENCE = 1.0
DATA_FLOW_CONFIDENCE = 0.9
FILE_CONFLICT_CONFIDENCE = 0.85
API_CONTRACT_CONFIDENCE = 0.8
SEMANTIC_CONFIDENCE = 0.75


@dataclass(frozen=True)
class EdgeCandidate:
    """A proposed dependency before confidence gating."""

    from_: str
    to: str
    type: EdgeType
    evidence: str | None
    confidence: float
    resolution: str | None = None

    @property
    def key(self) -> tuple[str, str, EdgeType]:
        return (self.from_, self.to, self.type)

    def to_edge(self, flagged: bool = False) -> DependencyEdge:
        """Build the edge; raises ``ValidationError`` for invalid evidence."""
        return DependencyEdge(
            from_=self.from_,
            to=self.to,
            type=self.type,
            evidence=self.evidence,
            confidence=self.confidence,
            resolution=self.resolution,
            flagged=flagged,
        )

    def excluded(self, reason: str) -> ExcludedEdge:
        return ExcludedEdge(
            from_=self.from_,
            to=self.to,
            type=self.type,
            evidence=self.evidence,
            confidence=self.confidence,
            reason=reason,
        )


# =============================================================================
# TEXT HELPERS
# =============================================================================

_EXPLICIT = re.compile(r"\b(after|requires?|depends on|once)\b([^.;\n]*)", re.IGNORECASE)
_ENDPOINT = re.compile(
    r"\b(?:GET|POST|PUT|PATCH|DELETE)\s+/[\w/{}:.-]*|(?<![\w.])/api/[\w/{}:.-]+",
    re.IGNORECASE,
)
_INTERFACE_NAME = re.compile(r"\b[A-Z][A-Za-z0-9]*(?:Interface|Protocol|Contract|API|Client)\b")
_CONTRACT_MARKER = re.compile(r"\b(contract|interface|openapi|schema|spec)\b", re.IGNORECASE)
_DEFINING_VERBS = frozenset({"add", "build", "create", "define", "expose", "implement", "design"})

_STOPWORDS = frozenset({
    "the", "and", "for", "with", "from", "into", "that", "this", "new", "all",
    "code", "data", "layer", "changes", "part", "tests",
})


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


def _tokens(text: str) -> set[str]:
    return {
        w for w in re.findall(r"[a-z0-9]+", text.lower())
        if len(w) >= 3 and w not in _STOPWORDS and w not in ACTION_VERBS
    }


def _references(fragment: str, target: GoalNode) -> bool:
    """Whether a text fragment names the target goal by id or title."""
    if re.search(rf"\b{re.escape(target.id)}\b", fragment):
        return True
    title = _normalize(target.title)
    return len(title) >= 4 and title in _normalize(fragment)


def _contracts(node: GoalNode) -> set[str]:
    """Endpoints and interface names mentioned by a goal."""
    endpoints = {" ".join(m.group(0).split()).lower() for m in _ENDPOINT.finditer(node.text)}
    names = {name.lower() for name in _INTERFACE_NAME.findall(node.text)}
    return endpoints | names


def _defines(node: GoalNode) -> bool:
    first = node.title.split()[0].lower() if node.title.split() else ""
    return first in _DEFINING_VERBS or bool(_CONTRACT_MARKER.search(node.title))


# =============================================================================
# DETECTORS
# =============================================================================


def detect_explicit(a: GoalNode, b: GoalNode) -> EdgeCandidate | None:
    """``a`` says it comes after ``b`` (by id or title)."""
    for match in _EXPLICIT.finditer(a.text):
        keyword, fragment = match.group(1), match.group(2)
        if _references(fragment, b):
            return EdgeCandidate(
                from_=b.id,
                to=a.id,
                type=EdgeType.EXPLICIT,
                evidence=f"{a.id} states '{keyword.lower()}{fragment.rstrip()}'",
                confidence=EXPLICIT_CONFIDENCE,
            )
    return None


def detect_data_flow(a: GoalNode, b: GoalNode) -> EdgeCandidate | None:
    """``a`` produces an artifact that ``b`` consumes."""
    consumed = {_normalize(i): i for i in b.inputs}
    shared = [o for o in a.outputs if _normalize(o) in consumed]
    if not shared:
        return None
    return EdgeCandidate(
        from_=a.id,
        to=b.id,
        type=EdgeType.DATA_FLOW,
        evidence=f"{a.id} outputs {', '.join(repr(s) for s in shared)} consumed by {b.id}",
        confidence=DATA_FLOW_CONFIDENCE,
    )


def detect_file_conflict(a: GoalNode, b: GoalNode) -> EdgeCandidate | None:
    """Both goals touch the same file; the earlier one goes first."""
    if a.order >= b.order:
        return None
    shared = [f for f in a.files if f in b.files]
    if not shared:
        return None
    return EdgeCandidate(
        from_=a.id,
        to=b.id,
        type=EdgeType.FILE_CONFLICT,
        evidence=f"{a.id} and {b.id} both modify {', '.join(shared)}",
        confidence=FILE_CONFLICT_CONFIDENCE,
        resolution="serialize",
    )


def detect_api_contract(a: GoalNode, b: GoalNode) -> EdgeCandidate | None:
    """``b`` references an endpoint or interface that ``a`` defines."""
    if not _defines(a):
        return None
    shared = sorted(_contracts(a) & _contracts(b))
    if not shared:
        return None
    if _defines(b) and not _is_provider(a, b):
        return None
    typed = EdgeType.API_CONTRACT if _CONTRACT_MARKER.search(a.text) else EdgeType.DATA_FLOW
    return EdgeCandidate(
        from_=a.id,
        to=b.id,
        type=typed,
        evidence=f"{b.id} references {', '.join(shared)} defined by {a.id}",
        confidence=API_CONTRACT_CONFIDENCE,
    )


def _is_provider(a: GoalNode, b: GoalNode) -> bool:
    """When both goals define a contract, only the contract-marked one provides it."""
    return bool(_CONTRACT_MARKER.search(a.title)) and not _CONTRACT_MARKER.search(b.title)


SEMANTIC_RULES: tuple[tuple[str, re.Pattern[str], re.Pattern[str]], ...] = (
    (
        "schema before query",
        re.compile(r"\bschemas?\b", re.IGNORECASE),
        re.compile(r"\b(query|queries|repository|dao)\b", re.IGNORECASE),
    ),
    (
        "model before migration",
        re.compile(r"\bmodels?\b", re.IGNORECASE),
        re.compile(r"\bmigrations?\b", re.IGNORECASE),
    ),
    (
        "interface before implementation",
        re.compile(r"\b(interface|contract|protocol)\b", re.IGNORECASE),
        re.compile(r"\b(implement|implementation)\b", re.IGNORECASE),
    ),
)

_RULE_WORDS = frozenset({
    "schema", "schemas", "query", "queries", "repository", "dao", "model", "models",
    "migration", "migrations", "interface", "contract", "protocol", "implementation",
})


def detect_semantic(a: GoalNode, b: GoalNode) -> EdgeCandidate | None:
    """Conventional ordering between goals that share a subject."""
    for label, first, second in SEMANTIC_RULES:
        if not (first.search(a.title) and second.search(b.title)):
            continue
        if first.search(b.title) and second.search(a.title):
            continue
        subject = (_tokens(a.title) & _tokens(b.title)) - _RULE_WORDS
        if not subject:
            continue
        return EdgeCandidate(
            from_=a.id,
            to=b.id,
            type=EdgeType.SEMANTIC,
            evidence=f"{label}: '{a.title}' and '{b.title}' share {', '.join(sorted(subject))}",
            confidence=SEMANTIC_CONFIDENCE,
        )
    return None


Detector = Callable[[GoalNode, GoalNode], EdgeCandidate | None]

DETECTORS: dict[EdgeType, Detector] = {
    EdgeType.EXPLICIT: detect_explicit,
    EdgeType.DATA_FLOW: detect_data_flow,
    EdgeType.FILE_CONFLICT: detect_file_conflict,
    EdgeType.API_CONTRACT: detect_api_contract,
    EdgeType.SEMANTIC: detect_semantic,
}


class DependencyDetector:
    """
    Run every detector over an ordered pair of goals.

    Example:
        >>> detector = DependencyDetector()
        >>> [c.type for c in detector.detect(schema_goal, endpoint_goal)]
        [<EdgeType.DATA_FLOW: 'data_flow'>]
    """

    def __init__(self, detectors: dict[EdgeType, Detector] | None = None) -> None:
        self.detectors = detectors if detectors is not None else dict(DETECTORS)

    def detect(self, a: GoalNode, b: GoalNode) -> list[EdgeCandidate]:
        """All candidates for the ordered pair ``(a, b)``."""
        if a.id == b.id:
            return []
        candidates = []
        for detector in self.detectors.values():
            candidate = detector(a, b)
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    def detect_all(self, nodes: list[GoalNode]) -> list[EdgeCandidate]:
        """Candidates over every ordered pair, deduplicated by (from, to, type).

        When two detectors propose the same key the higher confidence wins.
        """
        best: dict[tuple[str, str, EdgeType], EdgeCandidate] = {}
        for a in nodes:
            for b in nodes:
                for candidate in self.detect(a, b):
                    current = best.get(candidate.key)
                    if current is None or candidate.confidence > current.confidence:
                        best[candidate.key] = candidate
        return list(best.values())


# =============================================================================
# CONFIDENCE GATE
# =============================================================================


class GateOutcome(str, Enum):
    INCLUDE = "include"
    FLAG = "flag"
    PENDING = "pending"
    EXCLUDE = "exclude"


@dataclass
class GateDecision:
    """Where a candidate ended up and why."""

    outcome: GateOutcome
    edge: DependencyEdge | None = None
    excluded: ExcludedEdge | None = None


class ConfidenceGate:
    """
    Route candidates by confidence band.

    - ``>= auto_include``: included
    - ``>= review``: included and flagged for challenge review
    - ``>= hitl``: held for human confirmation, not included
    - below ``hitl`` or without evidence: excluded with a reason
    """

    def __init__(
        self,
        auto_include: float = 0.9,
        review: float = 0.7,
        hitl: float = 0.5,
    ) -> None:
        self.auto_include = auto_include
        self.review = review
        self.hitl = hitl

    def decide(self, candidate: EdgeCandidate) -> GateDecision:
        if candidate.confidence < self.hitl:
            return self._exclude(
                candidate, f"confidence {candidate.confidence:.2f} below {self.hitl:.2f}"
            )

        try:
            edge = candidate.to_edge(flagged=candidate.confidence < self.auto_include)
        except ValidationError as e:
            reason = "; ".join(err["msg"] for err in e.errors())
            return self._exclude(candidate, f"invalid candidate: {reason}")

        if candidate.confidence >= self.auto_include:
            outcome = GateOutcome.INCLUDE
        elif candidate.confidence >= self.review:
            outcome = GateOutcome.FLAG
        else:
            outcome = GateOutcome.PENDING

        logger.debug(f"Edge {edge.id} ({edge.confidence:.2f}): {outcome.value}")
        return GateDecision(outcome=outcome, edge=edge)

    @staticmethod
    def _exclude(candidate: EdgeCandidate, reason: str) -> GateDecision:
        logger.warning(
            f"Excluded dependency {candidate.from_}->{candidate.to} ({candidate.type.value}): {reason}"
        )
        return GateDecision(outcome=GateOutcome.EXCLUDE, excluded=candidate.excluded(reason))
