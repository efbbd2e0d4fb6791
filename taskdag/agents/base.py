"""
Agent invoker interface.

The engine treats LLM calls as opaque, fallible, retryable operations: an
invoker runs a named phase against a model tier and returns parsed JSON,
or raises ``InvokerTimeout`` / ``InvokerRateLimited``. Every answer is
validated again by the caller.
"""

import json
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from taskdag.core.exceptions import InvokerFailure


class ModelTier(str, Enum):
    """Budget class of the model used for a phase."""

    FAST = "fast"
    CAPABLE = "capable"


PHASE_TIERS: dict[str, ModelTier] = {
    "scope": ModelTier.FAST,
    "goals": ModelTier.CAPABLE,
    "dag": ModelTier.FAST,
    "tasks": ModelTier.FAST,
    "challenge": ModelTier.CAPABLE,
}


def tier_for(phase: str) -> ModelTier:
    """Model tier used for a phase (fast unless listed otherwise)."""
    return PHASE_TIERS.get(phase, ModelTier.FAST)


class AgentInvoker(ABC):
    """Executes a reasoning task and returns structured JSON."""

    name: str = "invoker"

    @abstractmethod
    async def invoke(
        self,
        phase: str,
        payload: dict[str, Any],
        tier: ModelTier,
    ) -> dict[str, Any]:
        """
        Run a phase prompt and return the parsed JSON answer.

        Args:
            phase: Pipeline phase name (goals, dag, challenge, ...).
            payload: Structured prompt payload.
            tier: Model tier to run against.

        Returns:
            Parsed JSON object.

        Raises:
            InvokerTimeout: If the call exceeded its timeout.
            InvokerRateLimited: If the provider rate limited the call.
            InvokerFailure: If the answer was not a JSON object.
        """


_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def extract_json(text: str, phase: str | None = None) -> dict[str, Any]:
    """
    Extract a JSON object from a model answer.

    Handles bare JSON, fenced code blocks and leading/trailing prose.

    Raises:
        InvokerFailure: If no JSON object can be decoded.
    """
    candidates = [text.strip()]
    fenced = _FENCE.search(text)
    if fenced:
        candidates.insert(0, fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise InvokerFailure("Agent answer is not a JSON object", phase=phase)
