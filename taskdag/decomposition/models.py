"""Pydantic models for goal decomposition and dependency graphs.

This module defines the data structures shared by every phase of the
pipeline: scope assessments, goal trees, dependency edges, the DAG,
adversarial challenge results, and the task records handed to the store.

All models serialize with camelCase aliases (``model_dump(by_alias=True)``)
so phase envelopes match the task store's JSON conventions.
"""

import re
from collections.abc import Iterator
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

MAX_DEPTH = 3
MAX_SIBLINGS = 7
MAX_TITLE_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 2000
MIN_ARGUMENT_LENGTH = 20

TASK_ID_PATTERN = r"^T\d+$"
_ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")


class _Model(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# ENUMS
# =============================================================================


class GoalType(str, Enum):
    """Hierarchy level of a goal (and of the task it becomes)."""

    EPIC = "epic"
    TASK = "task"
    SUBTASK = "subtask"

    def child_type(self) -> "GoalType":
        """Type given to children of a goal of this type."""
        if self is GoalType.EPIC:
            return GoalType.TASK
        return GoalType.SUBTASK


class TaskSize(str, Enum):
    """Relative size of a task, derived from its atomicity score."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class EdgeType(str, Enum):
    """Signal that produced a dependency edge."""

    EXPLICIT = "explicit"
    DATA_FLOW = "data_flow"
    FILE_CONFLICT = "file_conflict"
    API_CONTRACT = "api_contract"
    SEMANTIC = "semantic"


class Severity(str, Enum):
    """Severity of a challenge finding."""

    BLOCKING = "blocking"
    MAJOR = "major"
    MINOR = "minor"
    INFO = "info"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe."""
        return {"info": 0, "minor": 1, "major": 2, "blocking": 3}[self.value]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


class Verdict(str, Enum):
    """Outcome of an adversarial review."""

    VALID = "VALID"
    NEEDS_REVISION = "NEEDS_REVISION"
    REJECTED = "REJECTED"


# =============================================================================
# SCOPE
# =============================================================================


class Ambiguity(_Model):
    """An open question that needs a human decision."""

    model_config = ConfigDict(frozen=True)

    question: str = Field(..., min_length=1)
    severity: Literal["high", "medium", "low"] = "medium"
    options: list[str] = Field(default_factory=list)


class ScopeSignals(_Model):
    """Coarse entity counts extracted from a request."""

    model_config = ConfigDict(frozen=True)

    file_tokens: list[str] = Field(default_factory=list)
    component_keywords: list[str] = Field(default_factory=list)
    reasoning_complexity: Literal["low", "medium", "high"] = "low"
    word_count: int = Field(default=0, ge=0)


class ScopeAssessment(_Model):
    """Classification of a request before decomposition."""

    model_config = ConfigDict(frozen=True)

    request: str
    classification: GoalType
    requires_decomposition: bool
    ambiguities: list[Ambiguity] = Field(default_factory=list)
    signals: ScopeSignals = Field(default_factory=ScopeSignals)
    context: dict[str, Any] = Field(default_factory=dict)


class HITLGate(_Model):
    """A human-in-the-loop decision the pipeline is waiting on."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: Literal["ambiguity", "dependency_confirmation"]
    question: str
    options: list[str] = Field(default_factory=list)
    reference: str | None = None
    severity: str = "medium"


# =============================================================================
# GOALS
# =============================================================================


class GoalNode(_Model):
    """A node of the goal tree.

    Example:
        >>> node = GoalNode(
        ...     id="G1",
        ...     title="Add login endpoint",
        ...     type=GoalType.TASK,
        ...     files=["src/api/login.py"],
        ...     acceptance=["POST /login returns 200 for valid credentials"],
        ... )
        >>> node.is_leaf
        True
    """

    id: str = Field(..., min_length=1, description="Session-local goal id")
    title: str = Field(..., min_length=1)
    type: GoalType = GoalType.TASK
    depth: int = Field(default=0, ge=0, le=MAX_DEPTH)
    atomicity_score: int = Field(default=0, ge=0, le=100)
    files: list[str] = Field(default_factory=list)
    acceptance: list[str] = Field(default_factory=list)
    children: list["GoalNode"] = Field(default_factory=list)

    description: str = ""
    intent: str | None = Field(default=None, description="Role given by the parent method")
    method: str | None = Field(default=None, description="Decomposition method applied")
    inputs: list[str] = Field(default_factory=list, description="Artifacts consumed")
    outputs: list[str] = Field(default_factory=list, description="Artifacts produced")
    order: int = Field(default=0, ge=0, description="Creation order")
    synthetic: bool = False
    forced: bool = False
    external_wait: bool = False
    open_decisions: list[str] = Field(default_factory=list)
    verification: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    @field_validator("children")
    @classmethod
    def validate_children(cls, v: list["GoalNode"]) -> list["GoalNode"]:
        if len(v) > MAX_SIBLINGS:
            raise ValueError(f"a goal may have at most {MAX_SIBLINGS} children, got {len(v)}")
        return v

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def text(self) -> str:
        """Title and description, used by the text-based detectors."""
        if self.description:
            return f"{self.title}. {self.description}"
        return self.title

    def walk(self) -> Iterator["GoalNode"]:
        """Iterate over this node and its descendants in pre-order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def leaves(self) -> list["GoalNode"]:
        return [n for n in self.walk() if n.is_leaf]

    def find(self, node_id: str) -> "GoalNode | None":
        return next((n for n in self.walk() if n.id == node_id), None)

    def summary(self) -> dict[str, Any]:
        """Node fields without the children subtree."""
        data = self.model_dump(by_alias=True, mode="json", exclude={"children"})
        data["children"] = [c.id for c in self.children]
        return data


class GoalTree(_Model):
    """Result of the goals phase."""

    root: GoalNode
    warnings: list[str] = Field(default_factory=list)

    def nodes(self) -> list[GoalNode]:
        return list(self.root.walk())

    def leaves(self) -> list[GoalNode]:
        return self.root.leaves()

    def containers(self) -> list[GoalNode]:
        """Non-leaf goals in pre-order."""
        return [n for n in self.root.walk() if not n.is_leaf]

    def find(self, node_id: str) -> GoalNode | None:
        return self.root.find(node_id)

    def parent_of(self, node_id: str) -> GoalNode | None:
        for node in self.root.walk():
            if any(child.id == node_id for child in node.children):
                return node
        return None

    @property
    def max_depth(self) -> int:
        return max(n.depth for n in self.root.walk())


# =============================================================================
# DEPENDENCIES
# =============================================================================


class DependencyEdge(_Model):
    """A dependency between two goals: ``from_`` must finish before ``to``.

    Edges without concrete evidence are rejected at construction.
    """

    model_config = ConfigDict(frozen=True)

    from_: str = Field(..., alias="from", min_length=1)
    to: str = Field(..., min_length=1)
    type: EdgeType
    evidence: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    resolution: str | None = None
    flagged: bool = False

    @field_validator("evidence", mode="before")
    @classmethod
    def validate_evidence(cls, v: Any) -> str:
        if v is None:
            raise ValueError("evidence is required")
        text = str(v).strip()
        if not text or text.lower() == "assumed":
            raise ValueError("evidence must describe a concrete basis")
        return text

    @model_validator(mode="after")
    def validate_endpoints(self) -> "DependencyEdge":
        if self.from_ == self.to:
            raise ValueError(f"self-dependency on {self.to}")
        return self

    @property
    def key(self) -> tuple[str, str, EdgeType]:
        return (self.from_, self.to, self.type)

    @property
    def id(self) -> str:
        """Stable reference used by challenge findings."""
        return f"{self.from_}->{self.to}:{self.type.value}"


class ExcludedEdge(_Model):
    """A dependency candidate that was considered but not included."""

    model_config = ConfigDict(frozen=True)

    from_: str = Field(..., alias="from")
    to: str
    type: EdgeType
    evidence: str | None = None
    confidence: float = 0.0
    reason: str


class DAG(_Model):
    """Validated dependency graph over executable goals."""

    nodes: dict[str, GoalNode] = Field(default_factory=dict)
    edges: list[DependencyEdge] = Field(default_factory=list)
    parallel_groups: list[list[str]] = Field(default_factory=list)
    execution_order: list[str] = Field(default_factory=list)
    excluded: list[ExcludedEdge] = Field(default_factory=list)
    pending_confirmation: list[DependencyEdge] = Field(default_factory=list)
    critical_path: list[str] = Field(default_factory=list)

    def incoming(self, node_id: str) -> list[DependencyEdge]:
        return [e for e in self.edges if e.to == node_id]

    def outgoing(self, node_id: str) -> list[DependencyEdge]:
        return [e for e in self.edges if e.from_ == node_id]

    def prerequisites(self, node_id: str) -> list[str]:
        """Distinct prerequisite ids of a node, in creation order."""
        ids = {e.from_ for e in self.incoming(node_id)}
        return sorted(ids, key=lambda i: self.nodes[i].order if i in self.nodes else 0)

    def get_edge(self, edge_id: str) -> DependencyEdge | None:
        return next((e for e in self.edges if e.id == edge_id), None)

    @property
    def total_groups(self) -> int:
        return len(self.parallel_groups)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary; nodes are flattened (no subtrees)."""
        return {
            "nodes": {k: v.summary() for k, v in self.nodes.items()},
            "edges": [e.to_dict() for e in self.edges],
            "parallelGroups": self.parallel_groups,
            "executionOrder": self.execution_order,
            "criticalPath": self.critical_path,
            "pendingConfirmation": [e.to_dict() for e in self.pending_confirmation],
            "excluded": [e.to_dict() for e in self.excluded],
        }


# =============================================================================
# CHALLENGE
# =============================================================================


class FindingFix(_Model):
    """Machine-applicable fix attached to a finding."""

    model_config = ConfigDict(frozen=True)

    action: Literal["add_acceptance", "set_title", "drop_edge", "add_note"]
    value: str | None = None


class ChallengeFinding(_Model):
    """A single objection raised by the adversarial review."""

    model_config = ConfigDict(frozen=True)

    severity: Severity
    reference: str = Field(..., min_length=1, description="Node or edge id")
    argument: str = Field(..., min_length=MIN_ARGUMENT_LENGTH)
    suggestion: str | None = None
    fix: FindingFix | None = None

    @model_validator(mode="after")
    def validate_suggestion(self) -> "ChallengeFinding":
        if self.severity.at_least(Severity.MAJOR) and not (self.suggestion or "").strip():
            raise ValueError(f"{self.severity.value} findings require a suggestion")
        return self


class ChallengeResult(_Model):
    """Immutable outcome of one (phase, attempt) review."""

    model_config = ConfigDict(frozen=True)

    verdict: Verdict
    findings: list[ChallengeFinding] = Field(default_factory=list)
    duration_ms: int = Field(default=0, ge=0)
    phase: str = ""
    attempt: int = Field(default=1, ge=1)
    reviewer: str = "unknown"

    def findings_at_least(self, severity: Severity) -> list[ChallengeFinding]:
        return [f for f in self.findings if f.severity.at_least(severity)]

    @property
    def info_only(self) -> bool:
        return all(f.severity is Severity.INFO for f in self.findings)


# =============================================================================
# TASK RECORDS
# =============================================================================


class TaskRecord(_Model):
    """A task record as accepted by the task store."""

    id: str = Field(..., pattern=TASK_ID_PATTERN)
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)
    type: GoalType
    status: Literal["pending"] = "pending"
    priority: Literal["critical", "high", "medium", "low"] = "medium"
    size: TaskSize
    parent_id: str | None = Field(default=None, pattern=TASK_ID_PATTERN)
    depends: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    acceptance: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    created_at: str
    origin: dict[str, str] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title is empty")
        if "\n" in v or "\r" in v or "\\n" in v:
            raise ValueError("title must be a single line")
        if _ZERO_WIDTH.search(v):
            raise ValueError("title contains invisible characters")
        return v

    @field_validator("depends")
    @classmethod
    def validate_depends(cls, v: list[str]) -> list[str]:
        bad = [d for d in v if not re.match(TASK_ID_PATTERN, d)]
        if bad:
            raise ValueError(f"invalid dependency ids: {bad}")
        if len(set(v)) != len(v):
            raise ValueError("duplicate dependency ids")
        return v

    @model_validator(mode="after")
    def validate_self_reference(self) -> "TaskRecord":
        if self.id in self.depends:
            raise ValueError(f"task {self.id} depends on itself")
        if self.parent_id == self.id:
            raise ValueError(f"task {self.id} is its own parent")
        return self
