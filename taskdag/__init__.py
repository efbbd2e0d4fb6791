"""
taskdag - Goal decomposition engine.

Turns a free-text work request into a validated, acyclic graph of atomic
tasks: scope -> goals -> dag -> tasks, with an adversarial review of every
phase output.
"""

__version__ = "0.1.0"

from taskdag.core.exceptions import TaskDagError
from taskdag.core.orchestrator import DecompositionOrchestrator, DecompositionResult, decompose

__all__ = [
    "DecompositionOrchestrator",
    "DecompositionResult",
    "TaskDagError",
    "__version__",
    "decompose",
]
