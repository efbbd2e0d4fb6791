"""
Prompt templates for agent-backed phases.

Each phase that may consult an agent has one template. Payloads are
plain JSON-serializable dicts built by the ``*_payload`` helpers so the
invoker interface stays independent of the prompt wording.
"""

import json
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from taskdag.decomposition.models import GoalNode

# =============================================================================
# TEMPLATE MODEL
# =============================================================================


class PromptTemplate(BaseModel):
    """A reusable prompt template."""

    model_config = ConfigDict(frozen=True)

    name: str
    template: str
    description: str = ""
    variables: list[str] = Field(default_factory=list)

    def format(self, **kwargs: Any) -> str:
        """Format the template with provided values."""
        return self.template.format(**kwargs)

    def get_missing_variables(self, **kwargs: Any) -> list[str]:
        return [v for v in self.variables if v not in kwargs]


SYSTEM_PROMPT = (
    "You are a planning assistant that decomposes software work into small, "
    "verifiable tasks. Always answer with a single JSON object and nothing else."
)


# =============================================================================
# PHASE TEMPLATES
# =============================================================================


GOALS_PROMPT = PromptTemplate(
    name="goals",
    description="Expand one goal into ordered child goals",
    template="""Break the following goal into at most {max_children} ordered child goals.

Goal:
{payload}

Each child must touch at most 3 files, do exactly one thing, have at least one
testable acceptance criterion and name a command or check that verifies it.

Respond with JSON:
{{"children": [{{"title": "...", "description": "...", "files": ["..."],
  "acceptance": ["..."], "inputs": ["..."], "outputs": ["..."],
  "verification": ["..."]}}]}}""",
    variables=["payload", "max_children"],
)


DAG_PROMPT = PromptTemplate(
    name="dag",
    description="Suggest dependencies the heuristics cannot see",
    template="""These goals will be executed as separate tasks:

{payload}

List only dependencies backed by concrete evidence (a shared artifact, file,
interface or an explicit ordering statement). Never guess.

Respond with JSON:
{{"edges": [{{"from": "G1", "to": "G2", "type": "semantic",
  "evidence": "...", "confidence": 0.0}}]}}""",
    variables=["payload"],
)


CHALLENGE_PROMPT = PromptTemplate(
    name="challenge",
    description="Adversarial review of a phase output",
    template="""You are a sceptical reviewer. Find weaknesses in this {phase} output:

{payload}

Report at least 2 findings. Each finding references a node or edge id, states
an argument of at least 20 characters and, for major or blocking severity,
a concrete suggestion.

Respond with JSON:
{{"verdict": "VALID" | "NEEDS_REVISION" | "REJECTED",
  "findings": [{{"severity": "blocking|major|minor|info", "reference": "G1",
    "argument": "...", "suggestion": "..."}}]}}""",
    variables=["phase", "payload"],
)


ALL_TEMPLATES: dict[str, PromptTemplate] = {
    "goals": GOALS_PROMPT,
    "dag": DAG_PROMPT,
    "challenge": CHALLENGE_PROMPT,
}


def get_template(name: str) -> PromptTemplate | None:
    """Get a template by name."""
    return ALL_TEMPLATES.get(name)


def render_payload(phase: str, payload: dict[str, Any]) -> str:
    """
    Render the prompt text for a phase.

    Phases without a template get the payload as pretty JSON.

    Args:
        phase: Pipeline phase name.
        payload: Structured payload.

    Returns:
        Prompt text.
    """
    body = json.dumps(payload.get("input", payload), indent=2, default=str)
    template = get_template(phase)
    if template is None:
        return body

    values = {k: v for k, v in payload.items() if k != "input"}
    values["payload"] = body
    missing = template.get_missing_variables(**values)
    if missing:
        raise KeyError(f"missing prompt variables for '{phase}': {missing}")
    return template.format(**values)


# =============================================================================
# PAYLOAD BUILDERS
# =============================================================================


def goal_payload(goal: "GoalNode", max_children: int) -> dict[str, Any]:
    """Payload asking for the children of one goal."""
    return {
        "input": {
            "id": goal.id,
            "title": goal.title,
            "description": goal.description,
            "type": goal.type.value,
            "depth": goal.depth,
            "files": goal.files,
            "acceptance": goal.acceptance,
            "inputs": goal.inputs,
        },
        "max_children": max_children,
    }


def dag_payload(nodes: "list[GoalNode]") -> dict[str, Any]:
    """Payload asking for extra dependency candidates between leaves."""
    return {
        "input": [
            {
                "id": n.id,
                "title": n.title,
                "files": n.files,
                "inputs": n.inputs,
                "outputs": n.outputs,
            }
            for n in nodes
        ],
    }


def challenge_payload(output: dict[str, Any], phase: str) -> dict[str, Any]:
    """Payload asking for an adversarial review of a phase output."""
    return {"input": output, "phase": phase}
