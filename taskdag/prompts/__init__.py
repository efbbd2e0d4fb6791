"""Prompt templates and payload builders for agent-backed phases."""

from taskdag.prompts.templates import (
    ALL_TEMPLATES,
    SYSTEM_PROMPT,
    PromptTemplate,
    challenge_payload,
    dag_payload,
    get_template,
    goal_payload,
    render_payload,
)

__all__ = [
    "ALL_TEMPLATES",
    "SYSTEM_PROMPT",
    "PromptTemplate",
    "challenge_payload",
    "dag_payload",
    "get_template",
    "goal_payload",
    "render_payload",
]
