"""Unit tests for session state, envelopes and checkpoints."""

from pathlib import Path

import pytest

from taskdag import __version__
from taskdag.core.state import (
    DecompositionSession,
    Phase,
    SessionCheckpointer,
    SessionStatus,
    envelope,
    request_hash,
)


class TestPhase:
    @pytest.mark.parametrize(
        ("stop_after", "phase", "expected"),
        [
            (Phase.TASKS, Phase.SCOPE, True),
            (Phase.GOALS, Phase.GOALS, True),
            (Phase.GOALS, Phase.DAG, False),
            (Phase.SCOPE, Phase.TASKS, False),
        ],
    )
    def test_includes(self, stop_after: Phase, phase: Phase, expected: bool) -> None:
        assert stop_after.includes(phase) is expected


class TestRequestHash:
    def test_whitespace_insensitive(self) -> None:
        assert request_hash("Add  login\nendpoint") == request_hash("Add login endpoint")

    def test_parent_changes_hash(self) -> None:
        assert request_hash("Add login", "T1") != request_hash("Add login")


class TestDecompositionSession:
    def test_record_attempt(self) -> None:
        session = DecompositionSession.start("Add login endpoint")

        assert session.record_attempt(Phase.GOALS) == 1
        assert session.record_attempt(Phase.GOALS) == 2
        assert session.record_attempt(Phase.DAG) == 1
        assert session.total_attempts == 3
        assert session.attempts(Phase.TASKS) == 0

    def test_complete_and_warn(self) -> None:
        session = DecompositionSession.start("Add login endpoint")
        session.complete(Phase.SCOPE, {"classification": "task"})
        session.complete(Phase.SCOPE, {"classification": "epic"})
        session.warn("careful")
        session.warn("careful")

        assert session.completed_phases == [Phase.SCOPE]
        assert session.outputs["scope"] == {"classification": "epic"}
        assert session.is_complete(Phase.SCOPE)
        assert session.warnings == ["careful"]
        assert session.status == SessionStatus.RUNNING


def test_envelope_meta() -> None:
    session = DecompositionSession.start("Fix typo in README")

    output = envelope(Phase.SCOPE, session, assessment={"classification": "subtask"})

    assert output["assessment"] == {"classification": "subtask"}
    assert output["_meta"]["phase"] == "scope"
    assert output["_meta"]["requestHash"] == session.request_hash
    assert output["_meta"]["version"] == __version__
    assert output["_meta"]["timestamp"].endswith("Z")


class TestSessionCheckpointer:
    def test_save_load_discard(self, tmp_path: Path) -> None:
        checkpointer = SessionCheckpointer(tmp_path / "sessions")
        session = DecompositionSession.start("Add login endpoint")
        session.complete(Phase.SCOPE, {"classification": "task"})

        path = checkpointer.save(session)
        loaded = checkpointer.load(session.request_hash)

        assert path == tmp_path / "sessions" / f"{session.request_hash[:16]}.json"
        assert loaded is not None
        assert loaded.id == session.id
        assert loaded.completed_phases == [Phase.SCOPE]

        checkpointer.discard(session.request_hash)
        assert checkpointer.load(session.request_hash) is None

    def test_disabled(self) -> None:
        checkpointer = SessionCheckpointer(None)
        session = DecompositionSession.start("Add login endpoint")

        assert checkpointer.save(session) is None
        assert checkpointer.load(session.request_hash) is None

    def test_hash_prefix_collision_ignored(self, tmp_path: Path) -> None:
        checkpointer = SessionCheckpointer(tmp_path)
        session = DecompositionSession.start("Add login endpoint")
        checkpointer.save(session)

        other = session.request_hash[:16] + "0" * 48

        assert checkpointer.load(other) is None
