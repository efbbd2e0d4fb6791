"""Atomicity scoring - the 6-point test for executable goals.

A goal is atomic when one agent can finish it in one sitting without
waiting on anyone and prove the outcome with a command. Each criterion
is worth one sixth of the score; only goals scoring 100 may be leaves.
"""

import re
from dataclasses import dataclass, field

from taskdag.decomposition.models import GoalNode, TaskSize

MAX_ATOMIC_FILES = 3

ACTION_VERBS = frozenset({
    "add", "build", "create", "define", "delete", "deploy", "design", "document",
    "extract", "fix", "implement", "integrate", "migrate", "move", "refactor",
    "remove", "rename", "replace", "update", "upgrade", "write", "configure",
    "test", "validate", "wire", "expose", "register", "split", "merge",
})

_CONJUNCTION = re.compile(r"\b(and|then|also|plus|as well as)\b|&|;", re.IGNORECASE)
_VAGUE_CRITERIA = frozenset({
    "works", "it works", "done", "complete", "completed", "good", "looks good",
    "finished", "ok", "fine", "tbd",
})
_EXTERNAL_WAIT = re.compile(
    r"\b(wait(?:ing)? for|approval|sign[- ]off|blocked (?:on|by)|pending review|"
    r"third[- ]party response|vendor)\b",
    re.IGNORECASE,
)
_HIDDEN_DECISION = re.compile(
    r"\b(decide|choose|pick|evaluate options|investigate|figure out|tbd|"
    r"to be determined|either)\b|\?",
    re.IGNORECASE,
)
_VERIFIABLE = re.compile(
    r"\b(test|tests|pytest|returns?|exit code|passes|pass|lint|command|output|"
    r"exists|schema|status|responds?|raises?|asserts?|equals?|contains?|"
    r"validates?|compiles?|builds?)\b|\d{3}",
    re.IGNORECASE,
)


@dataclass
class AtomicityReport:
    """Outcome of the 6-point test for one goal."""

    checks: dict[str, bool] = field(default_factory=dict)

    @property
    def passed(self) -> int:
        return sum(1 for ok in self.checks.values() if ok)

    @property
    def score(self) -> int:
        if not self.checks:
            return 0
        return round(100 * self.passed / len(self.checks))

    @property
    def failed_checks(self) -> list[str]:
        return [name for name, ok in self.checks.items() if not ok]

    @property
    def is_atomic(self) -> bool:
        return self.score == 100


class AtomicityScorer:
    """
    Evaluate the 6-point atomicity test on goal nodes.

    Criteria:
    - single_file_scope: touches at most three files
    - single_concern: one action, no conjunctions in the title
    - testable_acceptance: at least one concrete acceptance criterion
    - no_external_wait: nothing has to be awaited from outside the team
    - no_hidden_decision: no unresolved choice is buried in the goal
    - verifiable: the outcome can be checked programmatically

    Example:
        >>> scorer = AtomicityScorer()
        >>> scorer.score(node)
        100
    """

    def evaluate(self, node: GoalNode) -> AtomicityReport:
        """Run every criterion and return the detailed report."""
        return AtomicityReport(
            checks={
                "single_file_scope": self._single_file_scope(node),
                "single_concern": self._single_concern(node),
                "testable_acceptance": self._testable_acceptance(node),
                "no_external_wait": self._no_external_wait(node),
                "no_hidden_decision": self._no_hidden_decision(node),
                "verifiable": self._verifiable(node),
            }
        )

    def score(self, node: GoalNode) -> int:
        """Return ``100 * passed / 6`` rounded to an integer."""
        return self.evaluate(node).score

    # =========================================================================
    # CRITERIA
    # =========================================================================

    @staticmethod
    def _single_file_scope(node: GoalNode) -> bool:
        return len(node.files) <= MAX_ATOMIC_FILES

    @staticmethod
    def _single_concern(node: GoalNode) -> bool:
        if _CONJUNCTION.search(node.title):
            return False
        words = {w.lower() for w in re.findall(r"[A-Za-z]+", node.title)}
        return len(words & ACTION_VERBS) <= 1

    @staticmethod
    def _testable_acceptance(node: GoalNode) -> bool:
        concrete = [
            c for c in node.acceptance
            if len(c.strip()) >= 10 and c.strip().lower().rstrip(".") not in _VAGUE_CRITERIA
        ]
        return bool(concrete)

    @staticmethod
    def _no_external_wait(node: GoalNode) -> bool:
        return not node.external_wait and not _EXTERNAL_WAIT.search(node.text)

    @staticmethod
    def _no_hidden_decision(node: GoalNode) -> bool:
        return not node.open_decisions and not _HIDDEN_DECISION.search(node.title)

    @staticmethod
    def _verifiable(node: GoalNode) -> bool:
        if node.verification:
            return True
        return any(_VERIFIABLE.search(c) for c in node.acceptance)


def size_for_score(score: int) -> TaskSize:
    """Map an atomicity score to a task size.

    ``100`` is small, anything at or below ``50`` is large and every
    other score is medium.
    """
    if score >= 100:
        return TaskSize.SMALL
    if score <= 50:
        return TaskSize.LARGE
    return TaskSize.MEDIUM
