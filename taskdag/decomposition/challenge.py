"""
Adversarial review of phase outputs.

A ``Challenger`` reviews the output of the goals, dag or tasks phase and
returns a ``ChallengeResult``. ``ChallengeValidator`` wraps any challenger
with rubber-stamp detection and the verdict semantics:

- VALID: proceed
- NEEDS_REVISION: apply fixes for findings of severity major or higher
- REJECTED: raise ``ChallengeRejection`` so the phase is rebuilt
"""

import time
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Union

from loguru import logger
from pydantic import ValidationError

from taskdag.agents.base import AgentInvoker, tier_for
from taskdag.core.exceptions import ChallengeRejection, InvokerFailure, SchemaValidationError
from taskdag.decomposition.graph_builder import critical_path, parallel_groups
from taskdag.decomposition.models import (
    DAG,
    ChallengeFinding,
    ChallengeResult,
    FindingFix,
    GoalTree,
    Severity,
    TaskRecord,
    Verdict,
)
from taskdag.prompts.templates import challenge_payload

PhaseOutput = Union[GoalTree, DAG, list[TaskRecord]]

MIN_FINDINGS = 2


def serialize_output(output: PhaseOutput) -> dict[str, Any]:
    """JSON form of a phase output."""
    if isinstance(output, GoalTree):
        return {"goalTree": output.to_dict()}
    if isinstance(output, DAG):
        return {"dag": output.to_dict()}
    return {"tasks": [t.to_dict() for t in output]}


def verdict_for(findings: list[ChallengeFinding]) -> Verdict:
    """Verdict implied by the most severe finding."""
    if any(f.severity is Severity.BLOCKING for f in findings):
        return Verdict.REJECTED
    if any(f.severity is Severity.MAJOR for f in findings):
        return Verdict.NEEDS_REVISION
    return Verdict.VALID


# =============================================================================
# CHALLENGERS
# =============================================================================


class Challenger(ABC):
    """Base class for phase reviewers."""

    name: str = "challenger"
    # Deterministic reviewers finish instantly; the duration criterion
    # only applies to reviewers that actually deliberate.
    timed: bool = True

    @abstractmethod
    async def challenge(
        self,
        output: PhaseOutput,
        phase: str,
        attempt: int = 1,
    ) -> ChallengeResult:
        """
        Review a phase output.

        Args:
            output: GoalTree, DAG or list of TaskRecord.
            phase: Phase name (goals, dag, tasks).
            attempt: Phase attempt number.

        Returns:
            ChallengeResult with at least two findings.
        """


class RuleBasedChallenger(Challenger):
    """
    Deterministic reviewer built from structural rules.

    Always reports at least two findings; when the rules find nothing to
    object to, informational findings describe the weakest spots of the
    output instead.

    Example:
        >>> result = await RuleBasedChallenger().challenge(tree, "goals")
        >>> len(result.findings) >= 2
        True
    """

    name = "rules"
    timed = False

    async def challenge(
        self,
        output: PhaseOutput,
        phase: str,
        attempt: int = 1,
    ) -> ChallengeResult:
        started = time.monotonic()

        if isinstance(output, GoalTree):
            findings = self._review_goals(output)
        elif isinstance(output, DAG):
            findings = self._review_dag(output)
        else:
            findings = self._review_tasks(output)

        return ChallengeResult(
            verdict=verdict_for(findings),
            findings=findings,
            duration_ms=int((time.monotonic() - started) * 1000),
            phase=phase,
            attempt=attempt,
            reviewer=self.name,
        )

    # =========================================================================
    # GOALS
    # =========================================================================

    def _review_goals(self, tree: GoalTree) -> list[ChallengeFinding]:
        findings: list[ChallengeFinding] = []
        leaves = tree.leaves()

        for leaf in leaves:
            if leaf.forced:
                findings.append(
                    ChallengeFinding(
                        severity=Severity.MAJOR,
                        reference=leaf.id,
                        argument=(
                            f"{leaf.id} '{leaf.title}' reached the depth limit with atomicity "
                            f"score {leaf.atomicity_score} and will run as a non-atomic task"
                        ),
                        suggestion="Review the task before execution and split it by hand",
                        fix=FindingFix(
                            action="add_note",
                            value="Non-atomic: review scope before starting",
                        ),
                    )
                )
            elif not leaf.files:
                findings.append(
                    ChallengeFinding(
                        severity=Severity.MINOR,
                        reference=leaf.id,
                        argument=(
                            f"{leaf.id} '{leaf.title}' names no files, so the executing "
                            "agent has to discover its scope"
                        ),
                        suggestion="List the files the goal is expected to touch",
                    )
                )

        counts = Counter(leaf.title.lower() for leaf in leaves)
        for leaf in leaves:
            if counts[leaf.title.lower()] > 1:
                findings.append(
                    ChallengeFinding(
                        severity=Severity.MAJOR,
                        reference=leaf.id,
                        argument=(
                            f"{leaf.id} shares the title '{leaf.title}' with another leaf; "
                            "the resulting tasks cannot be told apart"
                        ),
                        suggestion="Qualify the title with the goal id",
                        fix=FindingFix(action="set_title", value=f"{leaf.title} ({leaf.id})"),
                    )
                )

        for node in tree.containers():
            if len(node.children) == 1:
                findings.append(
                    ChallengeFinding(
                        severity=Severity.MINOR,
                        reference=node.id,
                        argument=(
                            f"{node.id} '{node.title}' has a single child, which adds a "
                            "level without splitting any work"
                        ),
                        suggestion="Merge the child into its parent",
                    )
                )

        widest = max(leaves, key=lambda n: (len(n.files), -n.order))
        return self._pad(
            findings,
            [
                (
                    tree.root.id,
                    f"The tree has {len(leaves)} executable leaves over "
                    f"{tree.max_depth + 1 - tree.root.depth} levels below '{tree.root.title}'",
                ),
                (
                    widest.id,
                    f"{widest.id} is the widest leaf with {len(widest.files)} files "
                    "and is the most likely to hide extra work",
                ),
            ],
        )

    # =========================================================================
    # DAG
    # =========================================================================

    def _review_dag(self, dag: DAG) -> list[ChallengeFinding]:
        findings: list[ChallengeFinding] = []

        for edge in dag.edges:
            if edge.flagged:
                findings.append(
                    ChallengeFinding(
                        severity=Severity.MINOR,
                        reference=edge.id,
                        argument=(
                            f"Edge {edge.id} was inferred at confidence {edge.confidence:.2f} "
                            f"from: {edge.evidence}"
                        ),
                        suggestion="Confirm the ordering or drop the edge",
                    )
                )

        for edge in dag.pending_confirmation:
            findings.append(
                ChallengeFinding(
                    severity=Severity.INFO,
                    reference=edge.id,
                    argument=(
                        f"Edge {edge.id} ({edge.confidence:.2f}) is waiting for human "
                        "confirmation and is not part of the graph yet"
                    ),
                )
            )

        connected = {e.from_ for e in dag.edges} | {e.to for e in dag.edges}
        isolated = [n for n in dag.execution_order if n not in connected]
        if len(dag.nodes) > 1 and isolated:
            findings.append(
                ChallengeFinding(
                    severity=Severity.INFO,
                    reference=isolated[0],
                    argument=(
                        f"{len(isolated)} goal(s) starting with {isolated[0]} have no "
                        "dependencies at all; check that none was missed"
                    ),
                )
            )

        first = dag.execution_order[0] if dag.execution_order else "dag"
        path = dag.critical_path or [first]
        widest = max(dag.parallel_groups, key=len) if dag.parallel_groups else [first]
        return self._pad(
            findings,
            [
                (
                    path[-1],
                    f"The critical path {' -> '.join(path)} has {len(path)} goals and "
                    "bounds the total duration",
                ),
                (
                    widest[0],
                    f"The widest parallel group starting with {widest[0]} holds "
                    f"{len(widest)} goals out of {len(dag.nodes)}",
                ),
            ],
        )

    # =========================================================================
    # TASKS
    # =========================================================================

    def _review_tasks(self, tasks: list[TaskRecord]) -> list[ChallengeFinding]:
        findings: list[ChallengeFinding] = []

        for task in tasks:
            if task.title.endswith("..."):
                findings.append(
                    ChallengeFinding(
                        severity=Severity.MINOR,
                        reference=task.id,
                        argument=f"The title of {task.id} was truncated and lost information",
                        suggestion="Shorten the goal title upstream",
                    )
                )
            if task.size.value == "large":
                findings.append(
                    ChallengeFinding(
                        severity=Severity.MINOR,
                        reference=task.id,
                        argument=f"{task.id} '{task.title}' is sized large and may not fit one session",
                        suggestion="Split the task before starting it",
                    )
                )

        for task in tasks:
            if not task.acceptance:
                findings.append(
                    ChallengeFinding(
                        severity=Severity.MAJOR,
                        reference=task.id,
                        argument=f"{task.id} '{task.title}' has no acceptance criteria to verify",
                        suggestion="Add a testable acceptance criterion",
                        fix=FindingFix(
                            action="add_acceptance",
                            value="The change is covered by a passing automated test",
                        ),
                    )
                )

        if not tasks:
            return findings
        most_deps = max(tasks, key=lambda t: len(t.depends))
        return self._pad(
            findings,
            [
                (
                    tasks[0].id,
                    f"{len(tasks)} task records were generated, starting at {tasks[0].id}",
                ),
                (
                    most_deps.id,
                    f"{most_deps.id} has the most prerequisites ({len(most_deps.depends)}) "
                    "and is the most likely to be blocked",
                ),
            ],
        )

    @staticmethod
    def _pad(
        findings: list[ChallengeFinding],
        notes: list[tuple[str, str]],
    ) -> list[ChallengeFinding]:
        """Add observations until there are enough findings and not only info ones.

        The first note is informational; later notes are minor risks with a
        suggestion to keep an eye on them.
        """
        for i, (reference, argument) in enumerate(notes):
            enough = len(findings) >= MIN_FINDINGS
            if enough and not all(f.severity is Severity.INFO for f in findings):
                break
            if i == 0 and not enough:
                findings.append(
                    ChallengeFinding(severity=Severity.INFO, reference=reference, argument=argument)
                )
            else:
                findings.append(
                    ChallengeFinding(
                        severity=Severity.MINOR,
                        reference=reference,
                        argument=argument,
                        suggestion="Keep an eye on this during execution",
                    )
                )
        return findings


class AgentChallenger(Challenger):
    """Reviewer backed by the agent invoker (capable tier)."""

    name = "agent"

    def __init__(self, invoker: AgentInvoker) -> None:
        self.invoker = invoker

    async def challenge(
        self,
        output: PhaseOutput,
        phase: str,
        attempt: int = 1,
    ) -> ChallengeResult:
        started = time.monotonic()
        answer = await self.invoker.invoke(
            "challenge",
            challenge_payload(serialize_output(output), phase),
            tier_for("challenge"),
        )
        duration_ms = int((time.monotonic() - started) * 1000)

        try:
            verdict = Verdict(str(answer.get("verdict", "")).upper())
        except ValueError as e:
            raise InvokerFailure(
                f"Review answer for '{phase}' has no valid verdict", phase="challenge"
            ) from e

        findings = []
        for raw in answer.get("findings") or []:
            try:
                findings.append(ChallengeFinding.model_validate(raw))
            except ValidationError as e:
                logger.debug(f"Dropping malformed finding: {e.errors()[0]['msg']}")

        return ChallengeResult(
            verdict=verdict,
            findings=findings,
            duration_ms=duration_ms,
            phase=phase,
            attempt=attempt,
            reviewer=self.name,
        )


# =============================================================================
# VALIDATOR
# =============================================================================


class ChallengeValidator:
    """
    Guard a challenger against rubber stamps and apply its verdict.

    Example:
        >>> validator = ChallengeValidator(RuleBasedChallenger())
        >>> result = await validator.review(tree, "goals")
        >>> result.verdict
        <Verdict.VALID: 'VALID'>
    """

    def __init__(self, challenger: Challenger, min_duration_ms: int = 2000) -> None:
        self.challenger = challenger
        self.min_duration_ms = min_duration_ms
        self.warnings: list[str] = []

    def rubber_stamp_reason(self, result: ChallengeResult) -> str | None:
        """Why a result looks like a rubber stamp, or None."""
        if result.verdict is Verdict.VALID and not result.findings:
            return "VALID with no findings"
        if result.findings and result.info_only:
            return "only info findings"
        if len(result.findings) < MIN_FINDINGS:
            return f"{len(result.findings)} finding(s), at least {MIN_FINDINGS} required"
        if self.challenger.timed and result.duration_ms < self.min_duration_ms:
            return f"reviewed in {result.duration_ms}ms"
        return None

    async def challenge(
        self,
        output: PhaseOutput,
        phase: str,
        attempt: int = 1,
    ) -> ChallengeResult:
        """
        Review a phase output, re-challenging a rubber stamp once.

        A second review that still looks like a rubber stamp but carries at
        least two findings (all of them info, or returned faster than
        ``min_duration_ms``) is accepted; the reason is appended to
        ``self.warnings`` and ends up in the session warnings.

        Raises:
            ChallengeRejection: If the second review has fewer than two findings.
        """
        result = await self.challenger.challenge(output, phase, attempt)
        reason = self.rubber_stamp_reason(result)
        if reason is None:
            return result

        logger.warning(f"Rubber-stamp review of {phase} ({reason}), challenging again")
        result = await self.challenger.challenge(output, phase, attempt)
        second = self.rubber_stamp_reason(result)
        if second is None:
            return result

        if len(result.findings) < MIN_FINDINGS:
            raise ChallengeRejection(
                f"Review of {phase} is still a rubber stamp: {second}",
                phase=phase,
                details={"reviewer": self.challenger.name},
            )

        message = f"Accepted {phase} review after re-challenge despite: {second}"
        logger.warning(message)
        self.warnings.append(message)
        return result

    async def review(
        self,
        output: PhaseOutput,
        phase: str,
        attempt: int = 1,
    ) -> ChallengeResult:
        """
        Challenge a phase output and act on the verdict.

        NEEDS_REVISION fixes are applied to ``output`` in place.

        Raises:
            ChallengeRejection: On a REJECTED verdict or a persistent rubber stamp.
        """
        result = await self.challenge(output, phase, attempt)
        logger.info(
            f"Challenge {phase} attempt {attempt}: {result.verdict.value} "
            f"({len(result.findings)} findings)"
        )

        if result.verdict is Verdict.REJECTED:
            blocking = result.findings_at_least(Severity.MAJOR)
            first = blocking[0] if blocking else None
            raise ChallengeRejection(
                f"{phase} output rejected: {first.argument if first else 'no reason given'}",
                phase=phase,
                reference=first.reference if first else None,
                details={"findings": [f.to_dict() for f in result.findings]},
            )

        if result.verdict is Verdict.NEEDS_REVISION:
            applied = apply_fixes(output, result.findings_at_least(Severity.MAJOR))
            for line in applied:
                logger.info(f"Revision: {line}")

        return result


# =============================================================================
# FIXES
# =============================================================================


def apply_fixes(output: PhaseOutput, findings: list[ChallengeFinding]) -> list[str]:
    """
    Apply findings to a phase output in place.

    Findings without a structured fix add their suggestion as a note on
    the referenced node. Unknown references are skipped.

    Returns:
        Human-readable descriptions of the applied changes.
    """
    applied: list[str] = []

    if isinstance(output, DAG):
        dropped = {f.reference for f in findings if f.fix and f.fix.action == "drop_edge"}
        if dropped:
            output.edges = [e for e in output.edges if e.id not in dropped]
            output.parallel_groups = parallel_groups(list(output.nodes.values()), output.edges)
            output.execution_order = [i for group in output.parallel_groups for i in group]
            output.critical_path = critical_path(output.execution_order, output.edges)
            applied.extend(f"dropped edge {ref}" for ref in sorted(dropped))
        targets = dict(output.nodes)
    elif isinstance(output, GoalTree):
        targets = {n.id: n for n in output.nodes()}
    else:
        targets = {t.id: t for t in output}

    for finding in findings:
        target = targets.get(finding.reference)
        if target is None:
            continue
        fix = finding.fix
        if fix is not None and fix.action == "add_acceptance" and fix.value:
            target.acceptance.append(fix.value)
            applied.append(f"{finding.reference}: added acceptance '{fix.value}'")
        elif fix is not None and fix.action == "set_title" and fix.value:
            target.title = fix.value
            applied.append(f"{finding.reference}: retitled '{fix.value}'")
        elif hasattr(target, "notes"):
            note = (fix.value if fix and fix.value else None) or finding.suggestion or finding.argument
            target.notes.append(note)
            applied.append(f"{finding.reference}: noted '{note}'")

    if isinstance(output, list):
        for i, task in enumerate(output):
            try:
                output[i] = TaskRecord.model_validate(task.model_dump())
            except ValidationError as e:
                raise SchemaValidationError(
                    f"Revised task {task.id} is invalid: {e.errors()[0]['msg']}",
                    phase="tasks",
                    reference=task.id,
                ) from e

    return applied
