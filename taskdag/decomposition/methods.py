"""Decomposition methods - pattern-matched templates for expanding goals.

Each method is a pure function from a goal to an ordered list of child
specifications. The registry picks the highest-priority method whose
pattern matches the goal's title and falls back to the generic
understand -> plan -> implement -> validate method when nothing matches
or when a method cannot fill in its templates.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from taskdag.decomposition.atomicity import ACTION_VERBS, MAX_ATOMIC_FILES
from taskdag.decomposition.models import GoalNode


class TemplateError(ValueError):
    """A method's templates could not be instantiated for a goal."""


@dataclass
class ChildSpec:
    """Blueprint of a child goal produced by a decomposition method."""

    title: str
    description: str = ""
    files: list[str] = field(default_factory=list)
    acceptance: list[str] = field(default_factory=list)
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    verification: list[str] = field(default_factory=list)
    intent: str | None = None


@dataclass(frozen=True)
class DecompositionMethod:
    """A named, prioritized template-instantiation function."""

    name: str
    priority: int
    instantiate: Callable[[GoalNode], list[ChildSpec]]
    pattern: re.Pattern[str] | None = None
    predicate: Callable[[GoalNode], bool] | None = None

    def matches(self, goal: GoalNode) -> bool:
        if self.predicate is not None and not self.predicate(goal):
            return False
        if self.pattern is not None:
            return bool(self.pattern.search(goal.title))
        return self.predicate is not None


# =============================================================================
# HELPERS
# =============================================================================

_LEADING = re.compile(
    r"^\s*(?:please\s+)?(?:(?:" + "|".join(sorted(ACTION_VERBS | {"support", "introduce", "make"}))
    + r")(?:\s+|$))+(?:(?:a|an|the|new)\s+)*",
    re.IGNORECASE,
)


_FILE_PHRASE = re.compile(
    r"\s*(?:\b(?:in|to|for|from|under|inside|within|at|of)\s+)?"
    r"(?:(?:[\w.-]+/)+[\w.-]*|[\w-]+\.[A-Za-z]{1,5}\b)",
)
_DANGLING = re.compile(r"(?:\s*(?:,|\band\b|\bor\b))+\s*$|^\s*(?:,|\band\b)\s*", re.IGNORECASE)


def extract_subject(title: str) -> str:
    """Strip the leading action verb, articles and file references from a title.

    Example:
        >>> extract_subject("Add the login endpoint to src/api/login.py")
        'login endpoint'
    """
    subject = _LEADING.sub("", title)
    subject = _FILE_PHRASE.sub("", subject)
    subject = _DANGLING.sub("", subject)
    return " ".join(subject.split()).strip(" .:;,")


def _require_subject(goal: GoalNode) -> str:
    subject = extract_subject(goal.title)
    if not subject:
        raise TemplateError(f"cannot derive a subject from '{goal.title}'")
    return subject


def _split_files(files: list[str]) -> tuple[list[str], list[str]]:
    """Separate test files from source files."""
    tests = [f for f in files if re.search(r"(^|/)(tests?/|test_)|_test\.|\.test\.|\.spec\.", f)]
    sources = [f for f in files if f not in tests]
    return sources, tests


def _slices(files: list[str], size: int = MAX_ATOMIC_FILES) -> list[list[str]]:
    return [files[i:i + size] for i in range(0, len(files), size)]


# =============================================================================
# METHODS
# =============================================================================


def feature_method(goal: GoalNode) -> list[ChildSpec]:
    """Contract, implementation, tests, docs for a new capability."""
    subject = _require_subject(goal)
    sources, tests = _split_files(goal.files)
    contract = f"{subject} interface"
    implementation = f"{subject} implementation"
    return [
        ChildSpec(
            title=f"Define {subject} interface",
            description=f"Specify inputs, outputs and error cases of the {subject} interface.",
            acceptance=[f"The {subject} interface signature is documented and type checks pass"],
            outputs=[contract],
            verification=["type check"],
        ),
        ChildSpec(
            title=f"Implement {subject}",
            description=f"Implement the {subject} against the defined interface.",
            files=sources,
            acceptance=[f"Unit tests for the {subject} pass"],
            inputs=[contract],
            outputs=[implementation],
            verification=["pytest"],
            intent="implement",
        ),
        ChildSpec(
            title=f"Write tests for {subject}",
            description=f"Cover the {subject} happy path and error cases.",
            files=tests,
            acceptance=[f"New tests for the {subject} pass in CI"],
            inputs=[implementation],
            outputs=[f"{subject} tests"],
            verification=["pytest"],
        ),
        ChildSpec(
            title=f"Document {subject}",
            description=f"Describe usage of the {subject} for maintainers.",
            acceptance=[f"Documentation for the {subject} exists and the docs build passes"],
            inputs=[implementation],
            verification=["docs build"],
        ),
    ]


def bugfix_method(goal: GoalNode) -> list[ChildSpec]:
    """Reproduce, fix, guard against regression."""
    subject = _require_subject(goal)
    sources, tests = _split_files(goal.files)
    reproduction = f"failing test for {subject}"
    return [
        ChildSpec(
            title=f"Reproduce {subject} in a failing test",
            description=f"Capture the faulty behaviour of {subject} in an automated test.",
            files=tests,
            acceptance=[f"A test exists that fails because of the {subject} defect"],
            outputs=[reproduction],
            verification=["pytest"],
        ),
        ChildSpec(
            title=f"Fix {subject}",
            description=f"Change the code so that the reproduction of {subject} passes.",
            files=sources,
            acceptance=[f"The reproduction test for {subject} passes"],
            inputs=[reproduction],
            outputs=[f"fix for {subject}"],
            verification=["pytest"],
            intent="implement",
        ),
        ChildSpec(
            title=f"Verify no regressions from {subject} fix",
            description="Run the full suite to confirm nothing else changed.",
            acceptance=["The full test suite passes with exit code 0"],
            inputs=[f"fix for {subject}"],
            verification=["pytest"],
        ),
    ]


def refactor_method(goal: GoalNode) -> list[ChildSpec]:
    """Pin behaviour, restructure, confirm equivalence."""
    subject = _require_subject(goal)
    sources, tests = _split_files(goal.files)
    baseline = f"{subject} behaviour baseline"
    return [
        ChildSpec(
            title=f"Pin current behaviour of {subject}",
            description=f"Add characterization tests around {subject} before changing it.",
            files=tests,
            acceptance=[f"Characterization tests for {subject} pass on the current code"],
            outputs=[baseline],
            verification=["pytest"],
        ),
        ChildSpec(
            title=f"Refactor {subject}",
            description=f"Restructure {subject} without changing observable behaviour.",
            files=sources,
            acceptance=[f"Characterization tests for {subject} still pass"],
            inputs=[baseline],
            outputs=[f"refactored {subject}"],
            verification=["pytest"],
            intent="implement",
        ),
        ChildSpec(
            title=f"Verify {subject} behaviour is unchanged",
            description="Run the whole suite and lint after the restructuring.",
            acceptance=["The full test suite and lint pass with exit code 0"],
            inputs=[f"refactored {subject}"],
            verification=["pytest", "lint"],
        ),
    ]


def cli_method(goal: GoalNode) -> list[ChildSpec]:
    """Arguments, handler, registration, tests, usage docs for a command."""
    subject = _require_subject(goal)
    sources, tests = _split_files(goal.files)
    arguments = f"{subject} arguments"
    handler = f"{subject} handler"
    return [
        ChildSpec(
            title=f"Define {subject} arguments",
            description=f"Declare options, defaults and exit codes of {subject}.",
            acceptance=[f"`--help` output lists every option of {subject}"],
            outputs=[arguments],
            verification=["cli --help"],
        ),
        ChildSpec(
            title=f"Implement {subject} handler",
            description=f"Implement the behaviour behind {subject}.",
            files=sources,
            acceptance=[f"Invoking {subject} returns exit code 0 on valid input"],
            inputs=[arguments],
            outputs=[handler],
            verification=["cli smoke test"],
            intent="implement",
        ),
        ChildSpec(
            title=f"Register {subject} in the command table",
            description=f"Expose {subject} from the CLI entry point.",
            acceptance=[f"{subject} appears in the top-level command list output"],
            inputs=[handler],
            outputs=[f"{subject} registration"],
            verification=["cli --help"],
        ),
        ChildSpec(
            title=f"Test {subject} exit codes",
            description=f"Cover success and failure paths of {subject}.",
            files=tests,
            acceptance=[f"Tests asserting {subject} exit codes pass"],
            inputs=[f"{subject} registration"],
            verification=["pytest"],
        ),
    ]


def schema_method(goal: GoalNode) -> list[ChildSpec]:
    """Schema, migration, queries, rollback test."""
    subject = _require_subject(goal)
    subject = re.sub(r"\s*\b(schema|migration|table)s?\b", "", subject).strip() or subject
    sources, tests = _split_files(goal.files)
    schema = f"{subject} schema"
    migration = f"{subject} migration"
    return [
        ChildSpec(
            title=f"Define {subject} schema",
            description=f"Describe tables, columns and constraints for {subject}.",
            files=[f for f in sources if re.search(r"schema|model", f)][:MAX_ATOMIC_FILES],
            acceptance=[f"The {subject} schema validates against the schema checker"],
            outputs=[schema],
            verification=["schema check"],
        ),
        ChildSpec(
            title=f"Write {subject} migration",
            description=f"Create the forward and backward migration for {subject}.",
            files=[f for f in sources if re.search(r"migrat", f)][:MAX_ATOMIC_FILES],
            acceptance=[f"The {subject} migration applies and rolls back with exit code 0"],
            inputs=[schema],
            outputs=[migration],
            verification=["migrate up", "migrate down"],
        ),
        ChildSpec(
            title=f"Update {subject} query code",
            description=f"Adapt data access code to the new {subject} schema.",
            files=[f for f in sources if not re.search(r"schema|model|migrat", f)],
            acceptance=[f"Query tests for {subject} pass"],
            inputs=[schema],
            outputs=[f"{subject} queries"],
            verification=["pytest"],
            intent="implement",
        ),
        ChildSpec(
            title=f"Test {subject} migration rollback",
            description=f"Assert the {subject} migration is reversible without data loss.",
            files=tests,
            acceptance=[f"A rollback test for the {subject} migration passes"],
            inputs=[migration],
            verification=["pytest"],
        ),
    ]


def slice_method(goal: GoalNode) -> list[ChildSpec]:
    """Split an over-wide implementation goal into file slices."""
    if len(goal.files) <= MAX_ATOMIC_FILES:
        raise TemplateError(f"'{goal.title}' is not wider than {MAX_ATOMIC_FILES} files")
    subject = extract_subject(goal.title) or goal.title
    parts = _slices(goal.files)
    return [
        ChildSpec(
            title=f"Implement {subject} (part {i}/{len(parts)})",
            description=f"Apply the {subject} changes to {', '.join(part)}.",
            files=part,
            acceptance=[f"Tests covering {', '.join(part)} pass"],
            inputs=list(goal.inputs),
            outputs=[f"{subject} part {i}"],
            verification=["pytest"],
        )
        for i, part in enumerate(parts, start=1)
    ]


_COMPOUND_SPLIT = re.compile(
    r"\s*(;|,?\s+and then\s+|,?\s+after that\s+|,?\s+then\s+|,\s+and\s+|\s+and\s+|,\s+)\s*"
)
_THEN = re.compile(r"\b(then|after that)\b", re.IGNORECASE)


def _clauses(title: str) -> list[tuple[str, bool]]:
    """
    Split a title into clauses that each start with an action verb.

    Returns:
        ``(clause, follows_previous)`` pairs; ``follows_previous`` is set
        only when the clause is joined by "then" or "after that".
    """
    pieces = _COMPOUND_SPLIT.split(title)
    clauses: list[tuple[str, bool]] = []
    sequenced = False
    for i, piece in enumerate(pieces):
        if i % 2:
            sequenced = sequenced or bool(_THEN.search(piece))
            continue
        part = piece.strip(" .")
        if not part:
            continue
        clauses.append((part, sequenced and bool(clauses)))
        sequenced = False

    if len(clauses) < 2:
        return []
    for part, _ in clauses:
        if part.split()[0].lower() not in ACTION_VERBS:
            return []
    return clauses


def compound_method(goal: GoalNode) -> list[ChildSpec]:
    """
    One child per action clause of a compound title.

    Only clauses joined by "then" consume the previous clause's result;
    clauses joined by "and" stay unlinked so the dependency detectors
    decide whether they can run in parallel.
    """
    clauses = _clauses(goal.title)
    if not clauses:
        raise TemplateError(f"'{goal.title}' is not a sequence of actions")
    sources, tests = _split_files(goal.files)
    results = [f"{part} (step {i + 1})" for i, (part, _) in enumerate(clauses)]
    children = []
    for i, (part, follows_previous) in enumerate(clauses):
        subject = extract_subject(part) or part
        mentioned = [f for f in sources + tests if Path(f).stem.lower() in part.lower()]
        feeds_next = i + 1 < len(clauses) and clauses[i + 1][1]
        children.append(
            ChildSpec(
                title=part[0].upper() + part[1:],
                description=f"Step {i + 1} of {len(clauses)}: {part}.",
                files=mentioned,
                acceptance=[f"Tests covering the {subject} change pass"],
                inputs=[results[i - 1]] if follows_previous else list(goal.inputs),
                outputs=[results[i]] if feeds_next else [],
                verification=["pytest"],
            )
        )
    return children


def generic_method(goal: GoalNode) -> list[ChildSpec]:
    """Understand, plan, implement, validate."""
    subject = extract_subject(goal.title) or goal.title
    notes = f"{subject} requirements notes"
    plan = f"{subject} change plan"
    implementation = f"{subject} changes"
    sources, tests = _split_files(goal.files)
    return [
        ChildSpec(
            title=f"Understand {subject} requirements",
            description=f"Collect constraints and acceptance criteria for {subject}.",
            acceptance=[f"A requirements note for {subject} exists in the task notes"],
            outputs=[notes],
            verification=["notes file exists"],
        ),
        ChildSpec(
            title=f"Plan {subject} changes",
            description=f"List the files and steps needed for {subject}.",
            acceptance=[f"The change plan for {subject} lists every affected file"],
            inputs=[notes],
            outputs=[plan],
            verification=["plan file exists"],
        ),
        ChildSpec(
            title=f"Implement {subject}",
            description=goal.description or f"Carry out the planned changes for {subject}.",
            files=sources,
            acceptance=[f"Tests exercising {subject} pass"],
            inputs=[plan],
            outputs=[implementation],
            verification=["pytest"],
            intent="implement",
        ),
        ChildSpec(
            title=f"Validate {subject}",
            description=f"Run the checks that prove {subject} is complete.",
            files=tests,
            acceptance=["The full test suite passes with exit code 0"],
            inputs=[implementation],
            verification=["pytest"],
        ),
    ]


GENERIC = DecompositionMethod(name="generic", priority=0, instantiate=generic_method)


def _is_wide_child(goal: GoalNode) -> bool:
    return goal.depth > 0 and len(goal.files) > MAX_ATOMIC_FILES


DEFAULT_METHODS: tuple[DecompositionMethod, ...] = (
    DecompositionMethod(
        name="slice", priority=100, instantiate=slice_method, predicate=_is_wide_child,
    ),
    DecompositionMethod(
        name="compound",
        priority=95,
        instantiate=compound_method,
        predicate=lambda goal: bool(_clauses(goal.title)),
    ),
    DecompositionMethod(
        name="schema",
        priority=90,
        instantiate=schema_method,
        pattern=re.compile(r"\b(schema|migration|migrate|column|table)s?\b", re.IGNORECASE),
    ),
    DecompositionMethod(
        name="cli",
        priority=80,
        instantiate=cli_method,
        pattern=re.compile(r"\b(cli|command|subcommand)s?\b", re.IGNORECASE),
    ),
    DecompositionMethod(
        name="bugfix",
        priority=70,
        instantiate=bugfix_method,
        pattern=re.compile(
            r"\b(fix|bug|broken|crash|regression|failing|typo)(es|s|ed)?\b", re.IGNORECASE
        ),
    ),
    DecompositionMethod(
        name="refactor",
        priority=60,
        instantiate=refactor_method,
        pattern=re.compile(
            r"\b(refactor|restructure|clean ?up|rename|extract|reorganize|simplify)\b",
            re.IGNORECASE,
        ),
    ),
    DecompositionMethod(
        name="feature",
        priority=50,
        instantiate=feature_method,
        pattern=re.compile(
            r"\b(add|implement|build|create|introduce|support|expose)\b", re.IGNORECASE
        ),
    ),
)


# =============================================================================
# REGISTRY
# =============================================================================


class MethodRegistry:
    """
    Keyed table of decomposition methods.

    Example:
        >>> registry = MethodRegistry()
        >>> method, children = registry.expand(goal)
        >>> method
        'feature'
    """

    def __init__(self, methods: tuple[DecompositionMethod, ...] | None = None) -> None:
        self._methods: dict[str, DecompositionMethod] = {}
        for method in methods if methods is not None else DEFAULT_METHODS:
            self.register(method)

    def register(self, method: DecompositionMethod) -> None:
        """Add or replace a method by name."""
        self._methods[method.name] = method

    @property
    def names(self) -> list[str]:
        return [m.name for m in self._ordered()]

    def _ordered(self) -> list[DecompositionMethod]:
        return sorted(self._methods.values(), key=lambda m: -m.priority)

    def select(self, goal: GoalNode) -> DecompositionMethod:
        """Highest-priority matching method, or the generic method."""
        for method in self._ordered():
            if method.name != GENERIC.name and method.matches(goal):
                return method
        return self._methods.get(GENERIC.name, GENERIC)

    def expand(self, goal: GoalNode) -> tuple[str, list[ChildSpec]]:
        """
        Instantiate the selected method for a goal.

        Returns:
            Tuple of (method name, child specifications).
        """
        method = self.select(goal)
        if method.name != GENERIC.name:
            try:
                children = method.instantiate(goal)
                if children:
                    return method.name, children
                raise TemplateError(f"method {method.name} produced no children")
            except TemplateError as e:
                logger.warning(
                    f"Method '{method.name}' failed for {goal.id} ({e}), using generic method"
                )
        return GENERIC.name, generic_method(goal)
