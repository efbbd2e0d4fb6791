"""Unit tests for the scope classifier."""

import pytest

from taskdag.core.exceptions import ExitCode, InputError
from taskdag.decomposition.models import GoalType
from taskdag.decomposition.scope import ScopeClassifier, classify_request


class TestScopeClassifier:
    """Tests for ScopeClassifier."""

    @pytest.fixture
    def classifier(self) -> ScopeClassifier:
        return ScopeClassifier()

    def test_typo_fix_is_subtask(self, classifier: ScopeClassifier) -> None:
        """A one-line fix needs no decomposition."""
        assessment = classifier.classify("Fix typo in README")

        assert assessment.classification == GoalType.SUBTASK
        assert assessment.requires_decomposition is False
        assert assessment.ambiguities == []

    def test_many_files_and_components_is_epic(self, classifier: ScopeClassifier) -> None:
        """Fifteen files across four components make an epic."""
        files = ", ".join(f"src/module_{i}.py" for i in range(1, 16))
        request = f"Update {files} across the api, database, auth and cache components"

        assessment = classifier.classify(request)

        assert len(assessment.signals.file_tokens) == 15
        assert len(assessment.signals.component_keywords) >= 4
        assert assessment.classification == GoalType.EPIC
        assert assessment.requires_decomposition is True

    def test_medium_request_is_task(self, classifier: ScopeClassifier) -> None:
        """Moderate reasoning with few files is a task."""
        assessment = classifier.classify(
            "Integrate the rate limiter into src/api/server.py and then document it"
        )

        assert assessment.classification == GoalType.TASK
        assert assessment.requires_decomposition is True

    @pytest.mark.parametrize("request_text", ["", "   ", "\n\t"])
    def test_empty_request_rejected(self, classifier: ScopeClassifier, request_text: str) -> None:
        """Empty input is an InputError with exit code 2."""
        with pytest.raises(InputError) as exc_info:
            classifier.classify(request_text)

        assert exc_info.value.exit_code == ExitCode.INVALID_INPUT
        assert exc_info.value.phase == "scope"

    def test_choice_is_ambiguous(self, classifier: ScopeClassifier) -> None:
        """An unresolved either/or choice needs a human decision."""
        assessment = classifier.classify("Store sessions in Redis or Postgres for the api")

        assert assessment.requires_decomposition is False
        questions = [a.question for a in assessment.ambiguities]
        assert any("Redis" in q and "Postgres" in q for q in questions)

    def test_unspecified_set_is_ambiguous(self, classifier: ScopeClassifier) -> None:
        """'Support multiple X' leaves the set open."""
        assessment = classifier.classify("Support multiple payment providers")

        assert assessment.ambiguities
        assert assessment.ambiguities[0].severity == "high"

    def test_vague_request_is_ambiguous(self, classifier: ScopeClassifier) -> None:
        """Open-ended wording produces a medium ambiguity."""
        assessment = classifier.classify("Improve logging, metrics, etc.")

        assert any(a.severity == "medium" for a in assessment.ambiguities)

    def test_context_is_echoed(self, classifier: ScopeClassifier) -> None:
        """Project context is carried in the assessment."""
        context = {"taskCount": 42, "currentPhase": "core"}

        assessment = classifier.classify("Fix typo in README", context)

        assert assessment.context == context
        assert assessment.to_dict()["context"] == context

    def test_whitespace_is_normalized(self, classifier: ScopeClassifier) -> None:
        """The stored request is a single line."""
        assessment = classifier.classify("Fix   typo\n in README")

        assert assessment.request == "Fix typo in README"


class TestSignals:
    """Tests for signal extraction."""

    def test_file_tokens_deduplicated(self) -> None:
        signals = ScopeClassifier().extract_signals(
            "Touch src/app.py and src/app.py, then config/settings.toml"
        )

        assert signals.file_tokens == ["src/app.py", "config/settings.toml"]

    def test_urls_are_not_files(self) -> None:
        signals = ScopeClassifier().extract_signals("See https://example.com/docs/page")

        assert signals.file_tokens == []

    def test_urls_do_not_hide_real_files(self) -> None:
        signals = ScopeClassifier().extract_signals(
            "Update src/api/login.py as described in https://example.com/docs/page "
            "and http://gist.io/x/y.py"
        )

        assert signals.file_tokens == ["src/api/login.py"]

    def test_reasoning_complexity_levels(self) -> None:
        classifier = ScopeClassifier()

        assert classifier.extract_signals("Fix typo").reasoning_complexity == "low"
        assert (
            classifier.extract_signals("Redesign the distributed cache architecture")
            .reasoning_complexity
            == "high"
        )


def test_classify_request_convenience() -> None:
    """The module-level helper uses a default classifier."""
    assert classify_request("Fix typo in README").classification == GoalType.SUBTASK
