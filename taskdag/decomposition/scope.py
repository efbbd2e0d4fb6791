"""Scope classifier - cheap heuristic sizing of a work request.

Classifies a request as epic, task or subtask from coarse entity counts
(file references, component keywords, reasoning complexity) and detects
ambiguities that must be settled by a human before decomposing.
"""

import re
from typing import Any

from loguru import logger

from taskdag.core.exceptions import InputError
from taskdag.decomposition.models import (
    Ambiguity,
    GoalType,
    ScopeAssessment,
    ScopeSignals,
)

EPIC_FILE_THRESHOLD = 10
EPIC_COMPONENT_THRESHOLD = 3
SUBTASK_FILE_LIMIT = 2

FILE_EXTENSIONS = (
    "py", "pyi", "ts", "tsx", "js", "jsx", "mjs", "md", "rst", "txt", "json",
    "yaml", "yml", "toml", "ini", "cfg", "sh", "bash", "go", "rs", "java", "kt",
    "rb", "php", "c", "h", "cpp", "hpp", "cs", "css", "scss", "html", "sql",
    "proto", "graphql", "lock", "env", "xml", "csv",
)

_FILE_TOKEN = re.compile(
    r"(?<![\w/.-])((?:[\w.-]+/)*[\w-]+\.(?:" + "|".join(FILE_EXTENSIONS) + r"))(?![\w])"
    r"|(?<![\w/])((?:[\w.-]+/){1,}[\w.-]+)",
    re.IGNORECASE,
)
_URL = re.compile(r"\b[a-z][a-z0-9+.-]*://\S+", re.IGNORECASE)

COMPONENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "api": ("api", "endpoint", "endpoints", "rest", "graphql", "route", "routes"),
    "cli": ("cli", "command line", "subcommand"),
    "database": ("database", "db", "sql", "postgres", "postgresql", "mysql", "sqlite", "mongo"),
    "schema": ("schema", "schemas", "model", "models", "migration", "migrations"),
    "auth": ("auth", "authentication", "authorization", "login", "oauth", "sso"),
    "ui": ("ui", "frontend", "page", "pages", "component", "dashboard", "view"),
    "cache": ("cache", "caching", "redis"),
    "queue": ("queue", "worker", "workers", "job", "jobs", "scheduler"),
    "storage": ("storage", "upload", "uploads", "s3", "blob"),
    "notifications": ("notification", "notifications", "email", "sms", "webhook", "webhooks"),
    "payments": ("payment", "payments", "billing", "stripe", "invoice"),
    "search": ("search", "index", "indexing"),
    "observability": ("logging", "metrics", "tracing", "monitoring"),
    "deployment": ("deploy", "deployment", "docker", "kubernetes", "ci", "pipeline"),
    "testing": ("tests", "testing", "test suite", "coverage"),
    "docs": ("docs", "documentation", "readme"),
}

_COMPLEX_TERMS = re.compile(
    r"\b(architecture|design|redesign|integrate|integration|migrate|migration|"
    r"refactor|overhaul|rewrite|system|platform|end[- ]to[- ]end|multi[- ]\w+|"
    r"scalable|distributed)\b",
    re.IGNORECASE,
)
_SEQUENCING = re.compile(r"\b(and|then|also|plus|after|before|with)\b", re.IGNORECASE)

_UNSPECIFIED_SET = re.compile(
    r"\b(?:support|add|integrate|handle)\s+(?:multiple|several|various|other|more|"
    r"additional|different)\s+(\w+)",
    re.IGNORECASE,
)
_CHOICE = re.compile(
    r"\b(?:use|using|with|via|on|in)\s+([A-Za-z][\w.+-]*)\s+or\s+([A-Za-z][\w.+-]*)",
    re.IGNORECASE,
)
_VAGUE = re.compile(
    r"\b(etc\.?|and so on|tbd|to be decided|some kind of|something like|maybe|"
    r"possibly|if needed)\b",
    re.IGNORECASE,
)


class ScopeClassifier:
    """
    Classify the complexity of a work request.

    Example:
        >>> classifier = ScopeClassifier()
        >>> assessment = classifier.classify("Fix typo in README")
        >>> assessment.classification
        <GoalType.SUBTASK: 'subtask'>
        >>> assessment.requires_decomposition
        False
    """

    def classify(
        self,
        request: str,
        context: dict[str, Any] | None = None,
    ) -> ScopeAssessment:
        """
        Classify a request.

        Args:
            request: Free-text work request.
            context: Optional project context, e.g. ``{"taskCount": 42,
                "currentPhase": "core"}``. Echoed in the assessment.

        Returns:
            ScopeAssessment with classification, decomposition flag and
            any ambiguities that need a human decision.

        Raises:
            InputError: If the request is empty or whitespace only.
        """
        if request is None or not request.strip():
            raise InputError("Request is empty", phase="scope")

        text = " ".join(request.split())
        signals = self.extract_signals(text)
        ambiguities = self.detect_ambiguities(text)

        n_files = len(signals.file_tokens)
        n_components = len(signals.component_keywords)

        if n_files >= EPIC_FILE_THRESHOLD or n_components >= EPIC_COMPONENT_THRESHOLD:
            classification = GoalType.EPIC
        elif n_files <= SUBTASK_FILE_LIMIT and signals.reasoning_complexity == "low":
            classification = GoalType.SUBTASK
        else:
            classification = GoalType.TASK

        requires_decomposition = classification is not GoalType.SUBTASK and not ambiguities

        logger.info(
            f"Scope: {classification.value} ({n_files} files, {n_components} components, "
            f"{signals.reasoning_complexity} complexity, {len(ambiguities)} ambiguities)"
        )

        return ScopeAssessment(
            request=text,
            classification=classification,
            requires_decomposition=requires_decomposition,
            ambiguities=ambiguities,
            signals=signals,
            context=dict(context or {}),
        )

    # =========================================================================
    # SIGNALS
    # =========================================================================

    def extract_signals(self, text: str) -> ScopeSignals:
        """Extract file tokens, component keywords and complexity."""
        files: list[str] = []
        for match in _FILE_TOKEN.finditer(_URL.sub(" ", text)):
            token = (match.group(1) or match.group(2) or "").rstrip(".,;:")
            if token and token not in files:
                files.append(token)

        lowered = text.lower()
        components = [
            name for name, keywords in COMPONENT_KEYWORDS.items()
            if any(re.search(rf"\b{re.escape(kw)}\b", lowered) for kw in keywords)
        ]

        words = re.findall(r"[A-Za-z0-9_]+", text)
        return ScopeSignals(
            file_tokens=files,
            component_keywords=components,
            reasoning_complexity=self._reasoning_complexity(text, len(words)),
            word_count=len(words),
        )

    @staticmethod
    def _reasoning_complexity(text: str, word_count: int) -> str:
        complex_terms = len(_COMPLEX_TERMS.findall(text))
        sequencing = len(_SEQUENCING.findall(text))

        if complex_terms >= 2 or word_count > 40 or sequencing >= 3:
            return "high"
        if complex_terms == 1 or word_count > 12 or sequencing >= 1:
            return "medium"
        return "low"

    # =========================================================================
    # AMBIGUITY
    # =========================================================================

    def detect_ambiguities(self, text: str) -> list[Ambiguity]:
        """Find places where the request admits several interpretations."""
        ambiguities: list[Ambiguity] = []

        for match in _UNSPECIFIED_SET.finditer(text):
            noun = match.group(1)
            ambiguities.append(
                Ambiguity(
                    question=f"Which {noun} exactly should be covered?",
                    severity="high",
                    options=[f"List the {noun} explicitly", f"Start with a single {noun}"],
                )
            )

        for match in _CHOICE.finditer(text):
            first, second = match.group(1), match.group(2)
            ambiguities.append(
                Ambiguity(
                    question=f"Should the work use {first} or {second}?",
                    severity="high",
                    options=[first, second, "Both"],
                )
            )

        vague = sorted({m.group(1).lower() for m in _VAGUE.finditer(text)})
        if vague:
            ambiguities.append(
                Ambiguity(
                    question=f"The request is open-ended ({', '.join(vague)}); what is in scope?",
                    severity="medium",
                    options=["Narrow the request", "Proceed with the explicit items only"],
                )
            )

        if text.rstrip().endswith("?"):
            ambiguities.append(
                Ambiguity(
                    question="The request is phrased as a question; what outcome is expected?",
                    severity="medium",
                    options=["Investigate and report", "Implement a change"],
                )
            )

        for ambiguity in ambiguities:
            logger.debug(f"Ambiguity detected: {ambiguity.question}")

        return ambiguities


def classify_request(request: str, context: dict[str, Any] | None = None) -> ScopeAssessment:
    """Convenience function to classify a request.

    Args:
        request: Free-text work request.
        context: Optional project context.

    Returns:
        ScopeAssessment for the request.
    """
    return ScopeClassifier().classify(request, context)
