"""Unit tests for decomposition methods and the method registry."""

import re

import pytest

from taskdag.decomposition.methods import (
    GENERIC,
    ChildSpec,
    DecompositionMethod,
    MethodRegistry,
    TemplateError,
    compound_method,
    extract_subject,
    feature_method,
    slice_method,
)
from taskdag.decomposition.models import GoalNode


def goal(title: str, files: list[str] | None = None, depth: int = 0) -> GoalNode:
    return GoalNode(id="G1", title=title, files=files or [], depth=depth)


class TestExtractSubject:
    """Tests for subject extraction from titles."""

    @pytest.mark.parametrize(
        ("title", "subject"),
        [
            ("Add the login endpoint to src/api/login.py", "login endpoint"),
            ("Add login endpoint to src/api/login.py and tests/test_login.py", "login endpoint"),
            ("Fix crash in parser", "crash in parser"),
            ("Implement a new rate limiter", "rate limiter"),
            ("Refactor cache layer", "cache layer"),
        ],
    )
    def test_extract_subject(self, title: str, subject: str) -> None:
        assert extract_subject(title) == subject

    def test_only_verb_leaves_nothing(self) -> None:
        assert extract_subject("Add") == ""


class TestMethods:
    """Tests for individual template functions."""

    def test_feature_method_splits_tests_from_sources(self) -> None:
        children = feature_method(
            goal("Add login endpoint", ["src/api/login.py", "tests/test_login.py"])
        )

        assert [c.title for c in children] == [
            "Define login endpoint interface",
            "Implement login endpoint",
            "Write tests for login endpoint",
            "Document login endpoint",
        ]
        assert children[1].files == ["src/api/login.py"]
        assert children[2].files == ["tests/test_login.py"]

    def test_feature_method_chains_artifacts(self) -> None:
        children = feature_method(goal("Add login endpoint"))

        assert children[0].outputs[0] in children[1].inputs
        assert children[1].outputs[0] in children[2].inputs

    def test_feature_without_subject_fails(self) -> None:
        with pytest.raises(TemplateError):
            feature_method(goal("Add"))

    def test_slice_method_groups_by_three(self) -> None:
        files = [f"src/handlers/h{i}.py" for i in range(7)]
        children = slice_method(goal("Implement handlers", files, depth=1))

        assert [len(c.files) for c in children] == [3, 3, 1]
        assert children[0].title == "Implement handlers (part 1/3)"

    def test_slice_method_requires_wide_goal(self) -> None:
        with pytest.raises(TemplateError):
            slice_method(goal("Implement handlers", ["a.py"], depth=1))

    def test_compound_and_clauses_are_unlinked(self) -> None:
        children = compound_method(goal("Create user schema and add login endpoint"))

        assert [c.title for c in children] == ["Create user schema", "Add login endpoint"]
        assert children[0].outputs == []
        assert children[1].inputs == []

    def test_compound_then_clauses_are_chained(self) -> None:
        children = compound_method(
            goal("Implement search worker, then add notification emails and update docs")
        )

        assert [c.title for c in children] == [
            "Implement search worker",
            "Add notification emails",
            "Update docs",
        ]
        assert children[0].outputs == ["Implement search worker (step 1)"]
        assert children[1].inputs == ["Implement search worker (step 1)"]
        assert children[1].outputs == []
        assert children[2].inputs == []

    def test_compound_method_rejects_plain_title(self) -> None:
        with pytest.raises(TemplateError):
            compound_method(goal("Add login endpoint"))


class TestMethodRegistry:
    """Tests for MethodRegistry selection and fallback."""

    @pytest.fixture
    def registry(self) -> MethodRegistry:
        return MethodRegistry()

    @pytest.mark.parametrize(
        ("title", "method"),
        [
            ("Add login endpoint", "feature"),
            ("Fix crash in parser", "bugfix"),
            ("Refactor cache layer", "refactor"),
            ("Add export command", "cli"),
            ("Add users table migration", "schema"),
            ("Create user schema and add login endpoint", "compound"),
            ("Improve onboarding", "generic"),
        ],
    )
    def test_select(self, registry: MethodRegistry, title: str, method: str) -> None:
        assert registry.select(goal(title)).name == method

    def test_slice_only_below_root(self, registry: MethodRegistry) -> None:
        files = [f"src/m{i}.py" for i in range(5)]

        assert registry.select(goal("Implement modules", files, depth=1)).name == "slice"
        assert registry.select(goal("Implement modules", files, depth=0)).name == "feature"

    def test_failed_template_falls_back_to_generic(self, registry: MethodRegistry) -> None:
        """A method that cannot fill its templates yields the generic method."""
        name, children = registry.expand(goal("Add"))

        assert name == GENERIC.name
        assert [c.title.split()[0] for c in children] == [
            "Understand",
            "Plan",
            "Implement",
            "Validate",
        ]

    def test_register_custom_method(self, registry: MethodRegistry) -> None:
        def docs_only(node: GoalNode) -> list[ChildSpec]:
            return [ChildSpec(title=f"Write docs for {node.id}")]

        registry.register(
            DecompositionMethod(
                name="docs",
                priority=200,
                instantiate=docs_only,
                pattern=re.compile(r"\bdocs?\b", re.IGNORECASE),
            )
        )

        assert registry.names[0] == "docs"
        name, children = registry.expand(goal("Update docs"))
        assert name == "docs"
        assert children[0].title == "Write docs for G1"
