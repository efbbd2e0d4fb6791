"""Decomposition orchestrator - sequences the pipeline phases.

scope -> goals -> dag -> tasks, strictly in order. Each phase output is
challenged before the next phase starts; retryable failures are retried
with exponential backoff within the per-phase and per-session budgets.
The orchestrator is the only writer of the ``DecompositionSession``.
"""

import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import anyio
from loguru import logger

from taskdag.agents.base import AgentInvoker, tier_for
from taskdag.core.config import Settings, get_settings
from taskdag.core.exceptions import (
    AmbiguityError,
    DepthExceededError,
    InvokerFailure,
    ParentNotFoundError,
    TaskDagError,
)
from taskdag.core.state import (
    DecompositionSession,
    Phase,
    SessionCheckpointer,
    SessionStatus,
    envelope,
    request_hash,
)
from taskdag.decomposition.challenge import (
    AgentChallenger,
    ChallengeValidator,
    Challenger,
    RuleBasedChallenger,
)
from taskdag.decomposition.decomposer import GoalDecomposer
from taskdag.decomposition.detectors import ConfidenceGate, EdgeCandidate
from taskdag.decomposition.graph_builder import GraphBuilder
from taskdag.decomposition.models import (
    DAG,
    EdgeType,
    GoalNode,
    GoalTree,
    GoalType,
    HITLGate,
    ScopeAssessment,
    TaskRecord,
)
from taskdag.decomposition.retry import CircuitBreaker, RetryPolicy
from taskdag.decomposition.scope import ScopeClassifier
from taskdag.decomposition.specifier import TaskSpecifier
from taskdag.prompts.templates import dag_payload
from taskdag.store.base import TaskStore
from taskdag.store.json_store import JsonTaskStore

T = TypeVar("T")

DEFAULT_ROOT_ACCEPTANCE = "The requested change is in place and the test suite passes"


@dataclass
class DecompositionResult:
    """Outputs of a (possibly partial) decomposition run."""

    session: DecompositionSession
    assessment: ScopeAssessment | None = None
    tree: GoalTree | None = None
    dag: DAG | None = None
    tasks: list[TaskRecord] = field(default_factory=list)
    last_phase: Phase = Phase.SCOPE
    dry_run: bool = False

    @property
    def hitl_gates(self) -> list[HITLGate]:
        return self.session.hitl_gates

    @property
    def warnings(self) -> list[str]:
        return self.session.warnings

    def to_envelope(self) -> dict[str, Any]:
        """Output envelope of the last phase that ran."""
        payload: dict[str, Any]
        if self.last_phase is Phase.SCOPE:
            payload = {"assessment": self.assessment.to_dict() if self.assessment else None}
        elif self.last_phase is Phase.GOALS:
            payload = {"goalTree": self.tree.to_dict() if self.tree else None}
        elif self.last_phase is Phase.DAG:
            payload = {"dag": self.dag.to_dict() if self.dag else None}
        else:
            payload = {
                "tasks": [t.to_dict() for t in self.tasks],
                "dag": self.dag.to_dict() if self.dag else None,
                "dryRun": self.dry_run,
            }
        payload["hitlGates"] = [g.to_dict() for g in self.hitl_gates]
        payload["warnings"] = list(self.warnings)
        return envelope(self.last_phase, self.session, **payload)


class DecompositionOrchestrator:
    """
    Run the decomposition pipeline end to end.

    Example:
        >>> orchestrator = DecompositionOrchestrator()
        >>> result = await orchestrator.run("Add a login endpoint with tests")
        >>> [t.id for t in result.tasks]
        ['T1', 'T2', 'T3', 'T4', 'T5']
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store: TaskStore | None = None,
        invoker: AgentInvoker | None = None,
        challenger: Challenger | None = None,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
        configure_logging: bool = True,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Optional settings override.
            store: Task store; defaults to the JSON store at ``store_path``.
            invoker: Optional agent invoker for goals, dag and challenge.
            challenger: Reviewer; defaults to the agent reviewer when an
                invoker is given, otherwise the rule-based reviewer.
            sleep: Coroutine used for backoff delays.
            configure_logging: Install loguru handlers from settings.
        """
        self.settings = settings or get_settings()
        self.store = store if store is not None else JsonTaskStore(self.settings.store_path)
        self.invoker = invoker
        self.challenger = challenger or (
            AgentChallenger(invoker) if invoker is not None else RuleBasedChallenger()
        )
        self._sleep = sleep

        self.classifier = ScopeClassifier()
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.checkpointer = SessionCheckpointer(self.settings.session_dir)
        self.gate = ConfidenceGate(
            auto_include=self.settings.auto_include_confidence,
            review=self.settings.review_confidence,
            hitl=self.settings.hitl_confidence,
        )
        self.breaker = CircuitBreaker(threshold=self.settings.circuit_breaker_threshold)
        self.validator = ChallengeValidator(
            self.challenger, min_duration_ms=self.settings.min_challenge_duration_ms
        )

        if configure_logging:
            self._configure_logging()

    def _configure_logging(self) -> None:
        """Configure loguru based on settings."""
        logger.remove()

        log_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        )

        logger.add(
            sys.stderr,
            level="DEBUG" if self.settings.debug else self.settings.log_level,
            format=log_format,
            colorize=True,
        )

        if self.settings.log_dir:
            logs_dir = Path(self.settings.log_dir)
            logs_dir.mkdir(parents=True, exist_ok=True)
            logger.add(
                str(logs_dir / "taskdag_{time:YYYY-MM-DD}.log"),
                rotation="1 day",
                retention="7 days",
                level=self.settings.log_level,
                format=log_format,
            )

    # =========================================================================
    # PRIMARY INTERFACE
    # =========================================================================

    async def run(
        self,
        request: str,
        context: dict[str, Any] | None = None,
        parent_id: str | None = None,
        stop_after: Phase | str = Phase.TASKS,
        challenge: bool = True,
        dry_run: bool = False,
    ) -> DecompositionResult:
        """
        Decompose a request into tasks.

        Args:
            request: Free-text work request.
            context: Optional project context for the scope phase.
            parent_id: Existing task to create the work under.
            stop_after: Last phase to run.
            challenge: Run the adversarial review after goals, dag and tasks.
            dry_run: Build everything but persist nothing.

        Returns:
            DecompositionResult up to ``stop_after``.

        Raises:
            TaskDagError: Any pipeline error; ``exit_code`` tells which.
        """
        stop_after = Phase(stop_after)
        session = self._open_session(request, parent_id)
        self.breaker = CircuitBreaker(
            threshold=self.settings.circuit_breaker_threshold,
            failures=session.consecutive_failures,
        )
        self.validator = ChallengeValidator(
            self.challenger, min_duration_ms=self.settings.min_challenge_duration_ms
        )
        result = DecompositionResult(session=session, dry_run=dry_run)

        logger.info(f"Starting decomposition {session.id} (up to {stop_after.value})")

        try:
            await self._run_phases(result, request, context, parent_id, stop_after, challenge)
        except AmbiguityError:
            session.status = SessionStatus.SUSPENDED
            self.checkpointer.save(session)
            raise
        except TaskDagError as e:
            session.status = SessionStatus.FAILED
            logger.error(f"Decomposition failed in {e.phase or 'unknown'} phase: {e.message}")
            self.checkpointer.discard(session.request_hash)
            raise
        except (KeyboardInterrupt, anyio.get_cancelled_exc_class()):
            logger.warning(f"Decomposition {session.id} interrupted; checkpoint kept")
            self.checkpointer.save(session)
            raise

        if stop_after is Phase.TASKS:
            session.status = SessionStatus.COMPLETED
            self.checkpointer.discard(session.request_hash)
        else:
            self.checkpointer.save(session)

        logger.info(
            f"Decomposition {session.id} finished {result.last_phase.value} "
            f"({session.total_attempts} attempts, {len(session.warnings)} warnings)"
        )
        return result

    def _open_session(self, request: str, parent_id: str | None) -> DecompositionSession:
        if request is not None and request.strip():
            resumed = self.checkpointer.load(request_hash(request, parent_id))
            if resumed is not None:
                resumed.status = SessionStatus.RUNNING
                resumed.hitl_gates = []
                return resumed
        return DecompositionSession.start(request or "", parent_id)

    async def _run_phases(
        self,
        result: DecompositionResult,
        request: str,
        context: dict[str, Any] | None,
        parent_id: str | None,
        stop_after: Phase,
        challenge: bool,
    ) -> None:
        session = result.session

        # Scope
        result.assessment = self._scope(session, request, context)
        result.last_phase = Phase.SCOPE
        if not stop_after.includes(Phase.GOALS):
            return

        # Goals
        if session.is_complete(Phase.GOALS):
            result.tree = GoalTree.model_validate(session.outputs[Phase.GOALS.value])
        else:
            root, depth = self._root_goal(result.assessment, parent_id)
            result.tree = await self._run_phase(
                session,
                Phase.GOALS,
                lambda: self._decompose(root, depth),
                challenge,
            )
            for warning in result.tree.warnings:
                session.warn(warning)
            session.complete(Phase.GOALS, result.tree.model_dump(by_alias=True, mode="json"))
        result.last_phase = Phase.GOALS
        if not stop_after.includes(Phase.DAG):
            return

        # Dependencies
        if session.is_complete(Phase.DAG):
            result.dag = DAG.model_validate(session.outputs[Phase.DAG.value])
        else:
            tree = result.tree
            result.dag = await self._run_phase(
                session, Phase.DAG, lambda: self._build_dag(tree), challenge
            )
            session.complete(Phase.DAG, result.dag.model_dump(by_alias=True, mode="json"))
        session.hitl_gates = self._dependency_gates(result.dag)
        result.last_phase = Phase.DAG
        if not stop_after.includes(Phase.TASKS):
            return

        # Tasks
        store = self.store.snapshot() if result.dry_run else self.store
        specifier = TaskSpecifier(store, max_title_length=self.settings.max_title_length)
        tree, dag = result.tree, result.dag
        result.tasks = await self._run_phase(
            session,
            Phase.TASKS,
            lambda: self._specify(specifier, tree, dag, parent_id, session.request_hash),
            challenge,
        )
        if result.dry_run:
            logger.info(f"Dry run: {len(result.tasks)} tasks not persisted")
        else:
            specifier.persist(result.tasks)
        session.complete(Phase.TASKS, {"tasks": [t.id for t in result.tasks]})
        result.last_phase = Phase.TASKS

    # =========================================================================
    # PHASES
    # =========================================================================

    def _scope(
        self,
        session: DecompositionSession,
        request: str,
        context: dict[str, Any] | None,
    ) -> ScopeAssessment:
        if session.is_complete(Phase.SCOPE):
            return ScopeAssessment.model_validate(session.outputs[Phase.SCOPE.value])

        assessment = self.classifier.classify(request, context)
        if assessment.ambiguities:
            session.hitl_gates = [
                HITLGate(
                    id=f"H{i}",
                    kind="ambiguity",
                    question=a.question,
                    options=a.options,
                    severity=a.severity,
                )
                for i, a in enumerate(assessment.ambiguities, start=1)
            ]
            session.outputs[Phase.SCOPE.value] = assessment.to_dict()
            raise AmbiguityError(
                f"Request needs {len(session.hitl_gates)} decision(s) before decomposition",
                gates=[g.to_dict() for g in session.hitl_gates],
            )

        session.complete(Phase.SCOPE, assessment.to_dict())
        return assessment

    def _root_goal(
        self,
        assessment: ScopeAssessment,
        parent_id: str | None,
    ) -> tuple[GoalNode, int]:
        depth = 0
        goal_type = assessment.classification
        if parent_id is not None:
            parent = self.store.get(parent_id)
            if parent is None:
                raise ParentNotFoundError(
                    f"Parent task {parent_id} not found", phase="goals", reference=parent_id
                )
            depth = (self.store.depth_of(parent_id) or 0) + 1
            goal_type = parent.type.child_type()
            if depth > self.settings.max_depth:
                raise DepthExceededError(
                    f"Parent {parent_id} is at the maximum depth {self.settings.max_depth}",
                    phase="goals",
                    reference=parent_id,
                )

        root = GoalNode(
            id="G1",
            title=assessment.request,
            type=goal_type if goal_type is not None else GoalType.TASK,
            depth=depth,
            files=list(assessment.signals.file_tokens),
            acceptance=[DEFAULT_ROOT_ACCEPTANCE],
        )
        return root, depth

    async def _decompose(self, root: GoalNode, depth: int) -> GoalTree:
        decomposer = GoalDecomposer(
            invoker=self.invoker,
            max_depth=self.settings.max_depth,
            max_siblings=self.settings.max_siblings,
        )
        return await decomposer.decompose(root, depth)

    async def _build_dag(self, tree: GoalTree) -> DAG:
        leaves = tree.leaves()
        extra = await self._suggested_edges(leaves) if self.invoker is not None else []
        return GraphBuilder(gate=self.gate).build(leaves, extra_candidates=extra)

    async def _suggested_edges(self, leaves: list[GoalNode]) -> list[EdgeCandidate]:
        """Dependency candidates proposed by the agent (fast tier)."""
        if len(leaves) < 2:
            return []
        answer = await self.invoker.invoke("dag", dag_payload(leaves), tier_for("dag"))
        raw_edges = answer.get("edges")
        if not isinstance(raw_edges, list):
            raise InvokerFailure("Dependency answer has no edge list", phase="dag")

        candidates = []
        for raw in raw_edges:
            if not isinstance(raw, dict):
                continue
            try:
                candidates.append(
                    EdgeCandidate(
                        from_=str(raw["from"]),
                        to=str(raw["to"]),
                        type=EdgeType(raw.get("type", "semantic")),
                        evidence=raw.get("evidence"),
                        confidence=float(raw.get("confidence", 0.0)),
                    )
                )
            except (KeyError, ValueError, TypeError) as e:
                logger.debug(f"Ignoring malformed edge suggestion {raw}: {e}")
        logger.debug(f"Agent suggested {len(candidates)} dependency candidates")
        return candidates

    async def _specify(
        self,
        specifier: TaskSpecifier,
        tree: GoalTree,
        dag: DAG,
        parent_id: str | None,
        hash_: str,
    ) -> list[TaskRecord]:
        return specifier.specify(tree, dag, parent_id=parent_id, request_hash=hash_)

    @staticmethod
    def _dependency_gates(dag: DAG) -> list[HITLGate]:
        return [
            HITLGate(
                id=f"D{i}",
                kind="dependency_confirmation",
                question=f"Should {edge.to} wait for {edge.from_}? ({edge.evidence})",
                options=["confirm", "reject"],
                reference=edge.id,
                severity="low",
            )
            for i, edge in enumerate(dag.pending_confirmation, start=1)
        ]

    # =========================================================================
    # RETRY PROTOCOL
    # =========================================================================

    async def _run_phase(
        self,
        session: DecompositionSession,
        phase: Phase,
        build: Callable[[], Awaitable[T]],
        challenge: bool,
    ) -> T:
        """
        Build and challenge a phase output, retrying retryable failures.

        The breaker counts failures across phases; only a phase that
        passes on its first attempt resets it, so a run that keeps
        recovering on retries still trips it.

        Raises:
            TaskDagError: The last failure when the budget is exhausted,
                or ``CircuitOpenError`` when the breaker trips.
        """
        while True:
            attempt = session.record_attempt(phase)
            logger.info(f"Phase {phase.value} attempt {attempt}")

            try:
                output = await build()
                if challenge:
                    review = await self.validator.review(output, phase.value, attempt)
                    session.challenges.append(review)
            except TaskDagError as e:
                if not e.retryable:
                    raise
                e.phase = e.phase or phase.value

                self.breaker.record_failure(phase.value)
                session.consecutive_failures = self.breaker.failures

                if not self.retry_policy.allows(session.attempts(phase), session.total_attempts):
                    logger.error(
                        f"Phase {phase.value} exhausted its retries after {attempt} attempts"
                    )
                    raise

                delay = self.retry_policy.backoff.delay(attempt)
                logger.warning(
                    f"Phase {phase.value} attempt {attempt} failed ({e.message}); "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                continue

            if attempt == 1:
                self.breaker.record_success()
                session.consecutive_failures = 0
            for warning in self.validator.warnings:
                session.warn(warning)
            self.validator.warnings.clear()
            return output


async def decompose(request: str, **kwargs: Any) -> DecompositionResult:
    """Convenience function to run the whole pipeline with default settings."""
    run_keys = {"context", "parent_id", "stop_after", "challenge", "dry_run"}
    run_kwargs = {k: v for k, v in kwargs.items() if k in run_keys}
    init_kwargs = {k: v for k, v in kwargs.items() if k not in run_keys}
    return await DecompositionOrchestrator(**init_kwargs).run(request, **run_kwargs)
