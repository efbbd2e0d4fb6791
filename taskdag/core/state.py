"""Session state, phase envelopes and checkpointing for decomposition runs."""

import hashlib
import json
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taskdag.decomposition.models import ChallengeResult, HITLGate


class Phase(str, Enum):
    """Pipeline phases, in execution order."""

    SCOPE = "scope"
    GOALS = "goals"
    DAG = "dag"
    TASKS = "tasks"

    @classmethod
    def ordered(cls) -> list["Phase"]:
        return [cls.SCOPE, cls.GOALS, cls.DAG, cls.TASKS]

    def includes(self, other: "Phase") -> bool:
        """Whether running up to this phase also runs ``other``."""
        order = Phase.ordered()
        return order.index(other) <= order.index(self)


PAYLOAD_KEYS: dict[Phase, str] = {
    Phase.SCOPE: "assessment",
    Phase.GOALS: "goalTree",
    Phase.DAG: "dag",
    Phase.TASKS: "tasks",
}


class SessionStatus(str, Enum):
    """Lifecycle of a decomposition session."""

    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"


def request_hash(request: str, parent_id: str | None = None) -> str:
    """Stable hash identifying a request (and its parent) across runs."""
    normalized = " ".join(request.split())
    return hashlib.sha256(f"{parent_id or ''}\n{normalized}".encode()).hexdigest()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class DecompositionSession(BaseModel):
    """
    Mutable state of one decomposition run.

    Written only by the orchestrator; every other component receives
    snapshots of prior-phase output.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    request: str
    request_hash: str
    parent_id: str | None = None
    status: SessionStatus = SessionStatus.RUNNING
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    completed_phases: list[Phase] = Field(default_factory=list)
    attempts_per_phase: dict[str, int] = Field(default_factory=dict)
    total_attempts: int = Field(default=0, ge=0)
    consecutive_failures: int = Field(default=0, ge=0)

    outputs: dict[str, Any] = Field(default_factory=dict, description="Per-phase outputs")
    challenges: list[ChallengeResult] = Field(default_factory=list)
    hitl_gates: list[HITLGate] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def start(cls, request: str, parent_id: str | None = None) -> "DecompositionSession":
        return cls(request=request, request_hash=request_hash(request, parent_id), parent_id=parent_id)

    def attempts(self, phase: Phase) -> int:
        return self.attempts_per_phase.get(phase.value, 0)

    def record_attempt(self, phase: Phase) -> int:
        """Count a new attempt of a phase; returns its 1-based number."""
        self.attempts_per_phase[phase.value] = self.attempts(phase) + 1
        self.total_attempts += 1
        self.updated_at = utc_now()
        return self.attempts_per_phase[phase.value]

    def complete(self, phase: Phase, output: dict[str, Any]) -> None:
        if phase not in self.completed_phases:
            self.completed_phases.append(phase)
        self.outputs[phase.value] = output
        self.updated_at = utc_now()

    def is_complete(self, phase: Phase) -> bool:
        return phase in self.completed_phases

    def warn(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)


# =============================================================================
# ENVELOPES
# =============================================================================


def envelope(phase: Phase | str, session: DecompositionSession, **payload: Any) -> dict[str, Any]:
    """
    Wrap a phase payload with the ``_meta`` block.

    Example:
        >>> envelope(Phase.SCOPE, session, assessment={...})["_meta"]["phase"]
        'scope'
    """
    from taskdag import __version__

    meta = {
        "phase": phase.value if isinstance(phase, Phase) else phase,
        "timestamp": utc_now(),
        "requestHash": session.request_hash,
        "version": __version__,
    }
    return {"_meta": meta, **payload}


# =============================================================================
# CHECKPOINTS
# =============================================================================


class SessionCheckpointer:
    """
    Store sessions as JSON so interrupted or suspended runs can resume.

    Checkpoints are keyed by request hash.
    """

    def __init__(self, directory: str | Path | None) -> None:
        self.directory = Path(directory) if directory else None

    @property
    def enabled(self) -> bool:
        return self.directory is not None

    def _path(self, hash_: str) -> Path:
        return self.directory / f"{hash_[:16]}.json"

    def save(self, session: DecompositionSession) -> Path | None:
        if not self.enabled:
            return None
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(session.request_hash)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(session.model_dump(by_alias=True, mode="json"), f, indent=2)
            os.replace(tmp, path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug(f"Checkpointed session {session.id} to {path}")
        return path

    def load(self, hash_: str) -> DecompositionSession | None:
        if not self.enabled:
            return None
        path = self._path(hash_)
        if not path.exists():
            return None
        with path.open(encoding="utf-8") as f:
            session = DecompositionSession.model_validate(json.load(f))
        if session.request_hash != hash_:
            return None
        logger.info(
            f"Resuming session {session.id} after "
            f"{', '.join(p.value for p in session.completed_phases) or 'no phases'}"
        )
        return session

    def discard(self, hash_: str) -> None:
        if not self.enabled:
            return
        path = self._path(hash_)
        if path.exists():
            path.unlink()
            logger.debug(f"Discarded checkpoint {path}")
