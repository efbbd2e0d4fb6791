"""Main CLI entry point using Typer."""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, NoReturn

import anyio
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from taskdag import __version__
from taskdag.core.config import Settings, get_settings
from taskdag.core.exceptions import ExitCode, InputError, TaskDagError
from taskdag.core.state import DecompositionSession, Phase, envelope
from taskdag.decomposition.models import GoalNode

app = typer.Typer(
    name="taskdag",
    help="taskdag - decompose work requests into validated task graphs",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


class OutputFormat(str, Enum):
    """Output formats of the ``decompose`` command."""

    JSON = "json"
    HUMAN = "human"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]taskdag[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    taskdag - goal decomposition engine.

    Turns a free-text request into atomic tasks with explicit, acyclic
    dependencies and parallel execution groups.
    """
    pass


@app.command()
def decompose(
    request: str = typer.Argument(..., help="Work request, or path to a file holding it"),
    phase: Phase = typer.Option(
        Phase.TASKS,
        "--phase",
        help="Stop after this phase (the session can be resumed later)",
    ),
    parent: str | None = typer.Option(
        None,
        "--parent",
        "-p",
        help="Existing task id to decompose under",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Build the tasks without persisting them",
    ),
    no_challenge: bool = typer.Option(
        False,
        "--no-challenge",
        help="Skip the adversarial review of phase outputs",
    ),
    output_format: OutputFormat = typer.Option(
        OutputFormat.JSON,
        "--format",
        "-f",
        help="Output format",
    ),
    store: Path | None = typer.Option(
        None,
        "--store",
        "-s",
        help="Path of the JSON task store",
    ),
    agent: bool = typer.Option(
        False,
        "--agent",
        help="Consult Claude for generic goals, dependencies and reviews",
    ),
    context_file: Path | None = typer.Option(
        None,
        "--context",
        help="JSON file with project context for the scope phase",
    ),
) -> None:
    """
    Decompose a request into tasks.

    Example:
        taskdag decompose "Add a login endpoint to src/api/login.py with tests"
        taskdag decompose ./request.md --phase dag --format human
    """
    request_path = Path(request)
    try:
        is_file = request_path.is_file()
    except OSError:
        is_file = False
    if is_file:
        request = request_path.read_text(encoding="utf-8")

    settings = get_settings()
    if store is not None:
        settings = settings.model_copy(update={"store_path": str(store)})

    try:
        context = _load_context(context_file)
        invoker = _make_invoker(settings) if agent else None
    except TaskDagError as e:
        _fail(e, request, parent, output_format)

    async def execute() -> dict[str, Any]:
        from taskdag.core.orchestrator import DecompositionOrchestrator

        orchestrator = DecompositionOrchestrator(settings=settings, invoker=invoker)
        result = await orchestrator.run(
            request,
            context=context,
            parent_id=parent,
            stop_after=phase,
            challenge=not no_challenge,
            dry_run=dry_run,
        )
        return result.to_envelope()

    try:
        output = anyio.run(execute)
    except TaskDagError as e:
        _fail(e, request, parent, output_format)

    if output_format is OutputFormat.JSON:
        typer.echo(json.dumps(output, indent=2))
    else:
        render_human(output)


# =============================================================================
# HELPERS
# =============================================================================


def _load_context(path: Path | None) -> dict[str, Any] | None:
    if path is None:
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise InputError(f"Cannot read context file {path}: {e}", phase="scope") from e
    if not isinstance(data, dict):
        raise InputError(f"Context file {path} must hold a JSON object", phase="scope")
    return data


def _make_invoker(settings: Settings) -> Any:
    if settings.anthropic_api_key is None and not os.environ.get("ANTHROPIC_API_KEY"):
        raise InputError("--agent requires TASKDAG_ANTHROPIC_API_KEY or ANTHROPIC_API_KEY")

    from taskdag.agents.claude import ClaudeInvoker

    return ClaudeInvoker(settings)


def error_envelope(error: TaskDagError, request: str, parent_id: str | None) -> dict[str, Any]:
    """Envelope for a failed run: ``{"_meta": ..., "error": {...}}``."""
    session = DecompositionSession.start(request, parent_id)
    return envelope(error.phase or "scope", session, error=error.to_dict())


def _fail(
    error: TaskDagError,
    request: str,
    parent_id: str | None,
    output_format: OutputFormat,
) -> NoReturn:
    payload = error_envelope(error, request, parent_id)
    if output_format is OutputFormat.JSON:
        typer.echo(json.dumps(payload, indent=2))
    else:
        render_error(payload["error"])
    raise typer.Exit(code=int(error.exit_code))


# =============================================================================
# HUMAN OUTPUT
# =============================================================================


def render_human(output: dict[str, Any]) -> None:
    """Render a phase envelope with rich panels and tables."""
    meta = output["_meta"]
    console.print(
        Panel(
            f"[bold]Phase:[/bold] {meta['phase']}\n"
            f"[bold]Request hash:[/bold] {meta['requestHash'][:16]}\n"
            f"[bold]Version:[/bold] {meta['version']}",
            title="[bold blue]taskdag[/bold blue]",
            border_style="blue",
        )
    )

    if output.get("assessment"):
        _render_assessment(output["assessment"])
    if output.get("goalTree"):
        _render_goal_tree(output["goalTree"])
    if output.get("dag"):
        _render_dag(output["dag"])
    if "tasks" in output:
        _render_tasks(output["tasks"], output.get("dryRun", False))

    _render_gates(output.get("hitlGates", []))
    for warning in output.get("warnings", []):
        console.print(f"[yellow]warning:[/yellow] {warning}")


def _render_assessment(assessment: dict[str, Any]) -> None:
    signals = assessment.get("signals", {})
    table = Table(title="Scope Assessment", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Classification", assessment["classification"])
    table.add_row("Requires decomposition", str(assessment["requiresDecomposition"]))
    table.add_row("Files", ", ".join(signals.get("fileTokens", [])) or "-")
    table.add_row("Components", ", ".join(signals.get("componentKeywords", [])) or "-")
    table.add_row("Reasoning", signals.get("reasoningComplexity", "-"))
    console.print(table)


def _render_goal_tree(tree: dict[str, Any]) -> None:
    root = GoalNode.model_validate(tree["root"])

    def label(node: GoalNode) -> str:
        marker = "[red]forced[/red] " if node.forced else ""
        return f"[cyan]{node.id}[/cyan] {marker}{node.title} [dim]({node.atomicity_score})[/dim]"

    view = Tree(label(root))
    stack = [(root, view)]
    while stack:
        node, branch = stack.pop()
        for child in node.children:
            stack.append((child, branch.add(label(child))))
    console.print(Panel(view, title="[bold]Goal Tree[/bold]", border_style="cyan"))


def _render_dag(dag: dict[str, Any]) -> None:
    nodes = dag.get("nodes", {})
    table = Table(title="Parallel Groups")
    table.add_column("Group", style="cyan")
    table.add_column("Goals", style="bold")
    for i, group in enumerate(dag.get("parallelGroups", []), start=1):
        titles = [f"{g} {nodes.get(g, {}).get('title', '')}".strip() for g in group]
        table.add_row(str(i), "\n".join(titles))
    console.print(table)

    if dag.get("edges"):
        edges = Table(title="Dependencies")
        edges.add_column("From", style="cyan")
        edges.add_column("To", style="cyan")
        edges.add_column("Type")
        edges.add_column("Confidence")
        edges.add_column("Evidence")
        for edge in dag["edges"]:
            evidence = edge.get("evidence", "")
            edges.add_row(
                edge["from"],
                edge["to"],
                edge["type"],
                f"{edge.get('confidence', 0):.2f}",
                evidence[:60] + "..." if len(evidence) > 60 else evidence,
            )
        console.print(edges)

    if dag.get("criticalPath"):
        console.print(f"[bold]Critical path:[/bold] {' -> '.join(dag['criticalPath'])}")


def _render_tasks(tasks: list[dict[str, Any]], dry_run: bool) -> None:
    title = "Tasks (dry run, not persisted)" if dry_run else "Tasks"
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Type")
    table.add_column("Size")
    table.add_column("Parent")
    table.add_column("Depends")
    for task in tasks:
        deps = ", ".join(task.get("depends", [])) or "-"
        table.add_row(
            task["id"],
            task["title"],
            task["type"],
            task["size"],
            task.get("parentId") or "-",
            deps[:30] + "..." if len(deps) > 30 else deps,
        )
    console.print(table)


def _render_gates(gates: list[dict[str, Any]]) -> None:
    if not gates:
        return
    table = Table(title="Decisions Needed")
    table.add_column("Gate", style="cyan")
    table.add_column("Question", style="bold")
    table.add_column("Options")
    for gate in gates:
        table.add_row(gate["id"], gate["question"], " / ".join(gate.get("options", [])) or "-")
    console.print(table)


def render_error(error: dict[str, Any]) -> None:
    """Render an error payload on stderr."""
    lines = [f"[bold]{error['name']}[/bold] (exit {error['code']})", error["message"]]
    if error.get("phase"):
        lines.append(f"[dim]Phase:[/dim] {error['phase']}")
    if error.get("reference"):
        lines.append(f"[dim]Reference:[/dim] {error['reference']}")
    color = "yellow" if error["code"] == ExitCode.HITL_REQUIRED else "red"
    err_console.print(Panel("\n".join(lines), title="[bold]Decomposition stopped[/bold]", border_style=color))

    gates = error.get("details", {}).get("hitlGates", [])
    for gate in gates:
        options = " / ".join(gate.get("options", []))
        err_console.print(f"  [cyan]{gate['id']}[/cyan] {gate['question']} [dim]{options}[/dim]")


if __name__ == "__main__":
    app()
