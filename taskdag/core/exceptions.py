"""Exception taxonomy for the decomposition engine.

Every error carries the CLI exit code it maps to, the phase it was raised
in and, where one exists, the goal node or edge it refers to.
"""

from enum import IntEnum
from typing import Any


class ExitCode(IntEnum):
    """Process exit codes of the ``decompose`` command."""

    SUCCESS = 0
    GENERAL_ERROR = 1
    INVALID_INPUT = 2
    VALIDATION_ERROR = 6
    PARENT_NOT_FOUND = 10
    DEPTH_EXCEEDED = 11
    SIBLING_LIMIT = 12
    CIRCULAR_REFERENCE = 14
    HITL_REQUIRED = 30
    CHALLENGE_REJECTED = 31


class TaskDagError(Exception):
    """Base exception for engine errors."""

    exit_code: ExitCode = ExitCode.GENERAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        phase: str | None = None,
        reference: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.reference = reference
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Structured error payload for the output envelope."""
        return {
            "code": int(self.exit_code),
            "name": type(self).__name__,
            "message": self.message,
            "phase": self.phase,
            "reference": self.reference,
            "retryable": self.retryable,
            "details": self.details,
        }


class InputError(TaskDagError):
    """Empty or malformed request."""

    exit_code = ExitCode.INVALID_INPUT


class AmbiguityError(TaskDagError):
    """The request needs a human decision before decomposition can proceed.

    Not a failure: the session is suspended pending human input.
    """

    exit_code = ExitCode.HITL_REQUIRED

    def __init__(
        self,
        message: str,
        gates: list[dict[str, Any]] | None = None,
        phase: str | None = "scope",
    ) -> None:
        super().__init__(message, phase=phase, details={"hitlGates": gates or []})
        self.gates = gates or []


class AtomicityFailure(TaskDagError):
    """A goal was accepted non-atomic at the depth limit.

    Recorded as a warning; never raised out of the pipeline.
    """


class DepthExceededError(TaskDagError):
    """No depth budget is left for decomposition."""

    exit_code = ExitCode.DEPTH_EXCEEDED


class SiblingLimitError(TaskDagError):
    """Children cannot be grouped within the sibling and depth limits."""

    exit_code = ExitCode.SIBLING_LIMIT


class ParentNotFoundError(TaskDagError):
    """The requested parent task does not exist in the store."""

    exit_code = ExitCode.PARENT_NOT_FOUND


class CycleError(TaskDagError):
    """The inferred dependency relation contains a cycle."""

    exit_code = ExitCode.CIRCULAR_REFERENCE
    retryable = True

    def __init__(self, cycle: list[str], phase: str | None = "dag") -> None:
        path = " -> ".join([*cycle, cycle[0]]) if cycle else "<unknown>"
        super().__init__(
            f"Circular dependency detected: {path}",
            phase=phase,
            reference=cycle[0] if cycle else None,
            details={"cycle": list(cycle)},
        )
        self.cycle = list(cycle)


class ChallengeRejection(TaskDagError):
    """The adversarial review rejected a phase output."""

    exit_code = ExitCode.CHALLENGE_REJECTED
    retryable = True


class SchemaValidationError(TaskDagError):
    """A generated task record failed schema validation."""

    exit_code = ExitCode.VALIDATION_ERROR


class InvokerFailure(TaskDagError):
    """The agent invoker failed to return a usable answer."""

    retryable = True


class InvokerTimeout(InvokerFailure):
    """The agent invocation exceeded its timeout."""


class InvokerRateLimited(InvokerFailure):
    """The agent invocation was rate limited."""


class CircuitOpenError(TaskDagError):
    """Too many consecutive failures; the decomposition was aborted."""


class StoreConflictError(TaskDagError):
    """The task store refused a record because its id is already taken."""
