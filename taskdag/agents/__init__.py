"""Agent invokers: the interface, model tiers and the Claude implementation."""

from taskdag.agents.base import PHASE_TIERS, AgentInvoker, ModelTier, extract_json, tier_for
from taskdag.agents.claude import ClaudeInvoker

__all__ = [
    "PHASE_TIERS",
    "AgentInvoker",
    "ClaudeInvoker",
    "ModelTier",
    "extract_json",
    "tier_for",
]
