"""Goal decomposition - turning a request into a DAG of atomic tasks.

This module provides the decomposition pipeline components:
- Scope classification (request -> assessment)
- Goal decomposition (root goal -> tree of atomic leaves)
- Dependency detection (leaves -> gated edge candidates)
- Graph building (candidates -> reduced, layered DAG)
- Adversarial challenge (phase output -> verdict and fixes)
- Task specification (tree + DAG -> task records)
"""

from taskdag.decomposition.models import (
    DAG,
    Ambiguity,
    ChallengeFinding,
    ChallengeResult,
    DependencyEdge,
    EdgeType,
    ExcludedEdge,
    GoalNode,
    GoalTree,
    GoalType,
    HITLGate,
    ScopeAssessment,
    ScopeSignals,
    Severity,
    TaskRecord,
    TaskSize,
    Verdict,
)
from taskdag.decomposition.atomicity import AtomicityReport, AtomicityScorer, size_for_score
from taskdag.decomposition.scope import ScopeClassifier, classify_request
from taskdag.decomposition.methods import DEFAULT_METHODS, DecompositionMethod, MethodRegistry
from taskdag.decomposition.decomposer import GoalDecomposer, decompose_goal
from taskdag.decomposition.detectors import ConfidenceGate, DependencyDetector, EdgeCandidate
from taskdag.decomposition.graph_builder import GraphBuilder, build_dag
from taskdag.decomposition.challenge import (
    AgentChallenger,
    ChallengeValidator,
    Challenger,
    RuleBasedChallenger,
)
from taskdag.decomposition.retry import BackoffPolicy, CircuitBreaker, RetryPolicy
from taskdag.decomposition.specifier import TaskSpecifier, normalize_title

__all__ = [
    "DAG",
    "DEFAULT_METHODS",
    "AgentChallenger",
    "Ambiguity",
    "AtomicityReport",
    "AtomicityScorer",
    "BackoffPolicy",
    "ChallengeFinding",
    "ChallengeResult",
    "ChallengeValidator",
    "Challenger",
    "CircuitBreaker",
    "ConfidenceGate",
    "DecompositionMethod",
    "DependencyDetector",
    "DependencyEdge",
    "EdgeCandidate",
    "EdgeType",
    "ExcludedEdge",
    "GoalDecomposer",
    "GoalNode",
    "GoalTree",
    "GoalType",
    "GraphBuilder",
    "HITLGate",
    "MethodRegistry",
    "RetryPolicy",
    "RuleBasedChallenger",
    "ScopeAssessment",
    "ScopeClassifier",
    "ScopeSignals",
    "Severity",
    "TaskRecord",
    "TaskSize",
    "TaskSpecifier",
    "Verdict",
    "build_dag",
    "classify_request",
    "decompose_goal",
    "normalize_title",
]
