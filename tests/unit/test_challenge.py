"""Unit tests for the adversarial challenge validator."""

from typing import Any

import pytest

from taskdag.agents.base import ModelTier
from taskdag.core.exceptions import ChallengeRejection, InvokerFailure, SchemaValidationError
from taskdag.decomposition.challenge import (
    AgentChallenger,
    ChallengeValidator,
    Challenger,
    RuleBasedChallenger,
    apply_fixes,
    verdict_for,
)
from taskdag.decomposition.graph_builder import build_dag
from taskdag.decomposition.models import (
    ChallengeFinding,
    ChallengeResult,
    FindingFix,
    GoalNode,
    GoalTree,
    Severity,
    TaskRecord,
    TaskSize,
    Verdict,
)


def finding(severity: Severity, reference: str = "G2", **kwargs: Any) -> ChallengeFinding:
    if severity in (Severity.MAJOR, Severity.BLOCKING):
        kwargs.setdefault("suggestion", "Split the goal into smaller pieces")
    return ChallengeFinding(
        severity=severity,
        reference=reference,
        argument=f"{reference} has a {severity.value} problem worth fixing",
        **kwargs,
    )


class ScriptedChallenger(Challenger):
    """Challenger returning prepared results in order."""

    name = "scripted"

    def __init__(self, *results: ChallengeResult) -> None:
        self.results = list(results)
        self.calls = 0

    async def challenge(self, output, phase, attempt=1):  # type: ignore[override]
        result = self.results[min(self.calls, len(self.results) - 1)]
        self.calls += 1
        return result


@pytest.fixture
def tree(make_goal: Any) -> GoalTree:
    root = GoalNode(
        id="G1",
        title="Add login endpoint",
        children=[
            make_goal("G2", "Implement login endpoint", 1, files=["src/api/login.py"], depth=1),
            make_goal("G3", "Document login endpoint", 2, depth=1),
        ],
    )
    return GoalTree(root=root)


def good_result(duration_ms: int = 2500) -> ChallengeResult:
    return ChallengeResult(
        verdict=Verdict.VALID,
        findings=[finding(Severity.MINOR), finding(Severity.MINOR, "G3")],
        duration_ms=duration_ms,
        phase="goals",
    )


class TestChallengeValidator:
    """Tests for rubber-stamp detection and verdict handling."""

    @pytest.mark.asyncio
    async def test_fast_empty_review_is_rechallenged(self, tree: GoalTree) -> None:
        """A 500ms review with no findings is a rubber stamp and is repeated."""
        stamp = ChallengeResult(verdict=Verdict.VALID, findings=[], duration_ms=500, phase="goals")
        challenger = ScriptedChallenger(stamp, good_result())
        validator = ChallengeValidator(challenger, min_duration_ms=2000)

        result = await validator.challenge(tree, "goals")

        assert challenger.calls == 2
        assert result.duration_ms == 2500
        assert validator.warnings == []

    @pytest.mark.asyncio
    async def test_persistent_rubber_stamp_rejected(self, tree: GoalTree) -> None:
        stamp = ChallengeResult(verdict=Verdict.VALID, findings=[], duration_ms=500)
        validator = ChallengeValidator(ScriptedChallenger(stamp))

        with pytest.raises(ChallengeRejection) as exc_info:
            await validator.challenge(tree, "goals")

        assert exc_info.value.exit_code == 31
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_fast_but_substantive_review_accepted_with_warning(self, tree: GoalTree) -> None:
        validator = ChallengeValidator(ScriptedChallenger(good_result(duration_ms=100)))

        result = await validator.challenge(tree, "goals")

        assert result.duration_ms == 100
        assert len(validator.warnings) == 1
        assert "re-challenge" in validator.warnings[0]

    @pytest.mark.asyncio
    async def test_info_only_review_accepted_with_warning(self, tree: GoalTree) -> None:
        """Two info findings survive the re-challenge but leave a warning."""
        info_only = ChallengeResult(
            verdict=Verdict.VALID,
            findings=[finding(Severity.INFO), finding(Severity.INFO, "G3")],
            duration_ms=3000,
            phase="goals",
        )
        challenger = ScriptedChallenger(info_only)
        validator = ChallengeValidator(challenger)

        result = await validator.challenge(tree, "goals")

        assert result is info_only
        assert challenger.calls == 2
        assert validator.warnings == [
            "Accepted goals review after re-challenge despite: only info findings"
        ]

    @pytest.mark.parametrize(
        ("findings", "duration", "reason"),
        [
            ([], 3000, "VALID with no findings"),
            ([Severity.INFO, Severity.INFO], 3000, "only info findings"),
            ([Severity.MINOR], 3000, "1 finding(s)"),
            ([Severity.MINOR, Severity.MINOR], 1999, "reviewed in 1999ms"),
        ],
    )
    def test_rubber_stamp_reasons(
        self,
        findings: list[Severity],
        duration: int,
        reason: str,
    ) -> None:
        result = ChallengeResult(
            verdict=Verdict.VALID,
            findings=[finding(s) for s in findings],
            duration_ms=duration,
        )

        found = ChallengeValidator(ScriptedChallenger(result)).rubber_stamp_reason(result)

        assert found is not None
        assert found.startswith(reason)

    def test_untimed_challenger_skips_duration(self) -> None:
        result = ChallengeResult(
            verdict=Verdict.VALID,
            findings=[finding(Severity.MINOR), finding(Severity.MINOR)],
            duration_ms=0,
        )

        assert ChallengeValidator(RuleBasedChallenger()).rubber_stamp_reason(result) is None

    @pytest.mark.asyncio
    async def test_rejected_verdict_raises(self, tree: GoalTree) -> None:
        rejected = ChallengeResult(
            verdict=Verdict.REJECTED,
            findings=[finding(Severity.BLOCKING), finding(Severity.MINOR, "G3")],
            duration_ms=3000,
        )

        with pytest.raises(ChallengeRejection) as exc_info:
            await ChallengeValidator(ScriptedChallenger(rejected)).review(tree, "goals")

        assert exc_info.value.reference == "G2"

    @pytest.mark.asyncio
    async def test_needs_revision_applies_fixes(self, tree: GoalTree) -> None:
        revision = ChallengeResult(
            verdict=Verdict.NEEDS_REVISION,
            findings=[
                finding(
                    Severity.MAJOR,
                    "G3",
                    fix=FindingFix(action="set_title", value="Document login endpoint usage"),
                ),
                finding(Severity.MAJOR, "G2"),
                finding(Severity.MINOR, "G2", suggestion="Minor suggestions are not applied"),
            ],
            duration_ms=3000,
        )

        await ChallengeValidator(ScriptedChallenger(revision)).review(tree, "goals")

        assert tree.find("G3").title == "Document login endpoint usage"
        assert tree.find("G2").notes == ["Split the goal into smaller pieces"]


class TestRuleBasedChallenger:
    """Tests for the deterministic reviewer."""

    @pytest.mark.asyncio
    async def test_goals_review_has_two_findings(self, tree: GoalTree) -> None:
        result = await RuleBasedChallenger().challenge(tree, "goals")

        assert len(result.findings) >= 2
        assert not result.info_only
        assert result.reviewer == "rules"
        assert any(f.reference == "G3" for f in result.findings)

    @pytest.mark.asyncio
    async def test_forced_leaf_needs_revision(self, make_goal: Any) -> None:
        tree = GoalTree(
            root=GoalNode(
                id="G1",
                title="Ship it",
                children=[
                    make_goal("G2", "Do part one", 1, depth=1, forced=True, atomicity_score=67),
                    make_goal("G3", "Do part two", 2, depth=1),
                ],
            )
        )

        result = await ChallengeValidator(RuleBasedChallenger()).review(tree, "goals")

        assert result.verdict == Verdict.NEEDS_REVISION
        assert tree.find("G2").notes == ["Non-atomic: review scope before starting"]

    @pytest.mark.asyncio
    async def test_duplicate_titles_are_retitled(self, make_goal: Any) -> None:
        tree = GoalTree(
            root=GoalNode(
                id="G1",
                title="Ship it",
                children=[
                    make_goal("G2", "Write tests", 1, depth=1, files=["tests/test_a.py"]),
                    make_goal("G3", "Write tests", 2, depth=1, files=["tests/test_b.py"]),
                ],
            )
        )

        await ChallengeValidator(RuleBasedChallenger()).review(tree, "goals")

        assert [leaf.title for leaf in tree.leaves()] == ["Write tests (G2)", "Write tests (G3)"]

    @pytest.mark.asyncio
    async def test_dag_review(self, make_goal: Any) -> None:
        dag = build_dag(
            [
                make_goal("G1", "Create user schema", 0, outputs=["User"]),
                make_goal("G2", "Add login endpoint", 1, inputs=["User"]),
            ]
        )

        result = await RuleBasedChallenger().challenge(dag, "dag")

        assert result.verdict == Verdict.VALID
        assert len(result.findings) >= 2

    @pytest.mark.asyncio
    async def test_tasks_without_acceptance_are_fixed(self) -> None:
        tasks = [
            TaskRecord(
                id="T1",
                title="Add login endpoint",
                type="task",
                size=TaskSize.SMALL,
                created_at="2026-01-01T00:00:00Z",
            ),
        ]

        result = await ChallengeValidator(RuleBasedChallenger()).review(tasks, "tasks")

        assert result.verdict == Verdict.NEEDS_REVISION
        assert tasks[0].acceptance == ["The change is covered by a passing automated test"]


class TestAgentChallenger:
    """Tests for the invoker-backed reviewer."""

    @pytest.mark.asyncio
    async def test_parses_answer(self, tree: GoalTree, mock_invoker: Any) -> None:
        mock_invoker.invoke.return_value = {
            "verdict": "valid",
            "findings": [
                {"severity": "minor", "reference": "G2", "argument": "G2 could name its tests"},
                {"severity": "minor", "reference": "G3", "argument": "G3 has no files listed"},
                {"severity": "major", "reference": "G3", "argument": "too short"},
            ],
        }

        result = await AgentChallenger(mock_invoker).challenge(tree, "goals", attempt=2)

        assert result.verdict == Verdict.VALID
        assert len(result.findings) == 2
        assert result.attempt == 2
        phase, payload, tier = mock_invoker.invoke.await_args.args
        assert phase == "challenge"
        assert payload["phase"] == "goals"
        assert "goalTree" in payload["input"]
        assert tier == ModelTier.CAPABLE

    @pytest.mark.asyncio
    async def test_invalid_verdict(self, tree: GoalTree, mock_invoker: Any) -> None:
        mock_invoker.invoke.return_value = {"verdict": "maybe"}

        with pytest.raises(InvokerFailure):
            await AgentChallenger(mock_invoker).challenge(tree, "goals")


def test_verdict_for() -> None:
    assert verdict_for([finding(Severity.MINOR)]) == Verdict.VALID
    assert verdict_for([finding(Severity.MAJOR)]) == Verdict.NEEDS_REVISION
    assert verdict_for([finding(Severity.BLOCKING), finding(Severity.MAJOR)]) == Verdict.REJECTED


def test_apply_fixes_drops_edges(make_goal: Any) -> None:
    dag = build_dag(
        [
            make_goal("G1", "Create user schema", 0, outputs=["User"]),
            make_goal("G2", "Add login endpoint", 1, inputs=["User"]),
        ]
    )
    edge_id = dag.edges[0].id

    applied = apply_fixes(
        dag, [finding(Severity.MAJOR, edge_id, fix=FindingFix(action="drop_edge"))]
    )

    assert dag.edges == []
    assert dag.parallel_groups == [["G1", "G2"]]
    assert applied == [f"dropped edge {edge_id}"]


def test_apply_fixes_revalidates_tasks() -> None:
    tasks = [
        TaskRecord(
            id="T1",
            title="Add login endpoint",
            type="task",
            size=TaskSize.SMALL,
            created_at="2026-01-01T00:00:00Z",
        ),
    ]
    bad_title = finding(
        Severity.MAJOR, "T1", fix=FindingFix(action="set_title", value="Line one\nline two")
    )

    with pytest.raises(SchemaValidationError):
        apply_fixes(tasks, [bad_title])

