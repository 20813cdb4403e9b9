"""Session coordinator: the per-request state machine.

    Created -> IntentAnalyzed -> ContextAssembled -> ChainsBuilt
            -> SolutionsGenerated -> Selected -> Sealed

Any stage may end the session in Failed. Stages run strictly in order; a
stage may complete with a degraded result (heuristic intent, partial chains)
but is never skipped. A Result Cache hit still passes through ChainsBuilt and
SolutionsGenerated, taking both from the cache instead of computing them.

Every collaborator is passed in explicitly; ``build_coordinator`` wires the
default set from configuration.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from loguru import logger

from reasonflow.config import Config, get_config
from reasonflow.models.oracle import OpenAIOracle, SemanticOracle
from reasonflow.models.persistent_store import PersistentStore, SQLiteStore
from reasonflow.reasoning.context_assembler import ContextAssembler
from reasonflow.reasoning.evaluation import Evaluator, assess_quality
from reasonflow.reasoning.inference import InferenceEngine
from reasonflow.reasoning.intent import IntentAnalyzer
from reasonflow.reasoning.learning import LearningLoop
from reasonflow.reasoning.memory_store import MemoryStore
from reasonflow.reasoning.reasoning_types import (
    ApproachType,
    Outcome,
    ReasoningSession,
    SessionState,
)
from reasonflow.reasoning.result_cache import CachedResult, ResultCache, fingerprint
from reasonflow.reasoning.strategies import DecayConfig, StrategyRegistry
from reasonflow.reasoning.synthesis import SolutionSynthesizer
from reasonflow.utils.cancellation import CancellationToken
from reasonflow.utils.errors import (
    ConfigException,
    NoInferenceAvailable,
    OracleUnavailable,
    PipelineFailure,
    SessionNotFoundError,
)
from reasonflow.utils.logging import get_logger, log_context
from reasonflow.utils.metrics import PipelineMetrics
from reasonflow.utils.task_queue import BackgroundTaskQueue, QueueState


def _new_session_id() -> str:
    return f"ses-{uuid.uuid4().hex[:12]}"


class SessionCoordinator:
    """Sequences the pipeline for each incoming request.

    Usage:
        coordinator = build_coordinator()
        await coordinator.start()
        session = await coordinator.process("fix the failing login test")
        coordinator.record_outcome(session.id, Outcome(success=True))
        await coordinator.stop()

    """

    def __init__(
        self,
        *,
        memory: MemoryStore,
        analyzer: IntentAnalyzer,
        assembler: ContextAssembler,
        engine: InferenceEngine,
        synthesizer: SolutionSynthesizer,
        evaluator: Evaluator,
        cache: ResultCache,
        learning: LearningLoop,
        queue: BackgroundTaskQueue,
        metrics: PipelineMetrics | None = None,
        config: Config | None = None,
        store: PersistentStore | None = None,
    ) -> None:
        self.memory = memory
        self.analyzer = analyzer
        self.assembler = assembler
        self.engine = engine
        self.synthesizer = synthesizer
        self.evaluator = evaluator
        self.cache = cache
        self.learning = learning
        self.queue = queue
        self.metrics = metrics or PipelineMetrics()
        self.config = config or get_config()
        self.store = store
        self.approaches = self._approaches_from_config()
        self._history: OrderedDict[str, ReasoningSession] = OrderedDict()

    def _approaches_from_config(self) -> tuple[ApproachType, ...]:
        try:
            return tuple(ApproachType(name) for name in self.config.inference.approaches)
        except ValueError as e:
            raise ConfigException(f"Unknown inference approach: {e}") from e

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted state (if any) and start the background queue."""
        if self.store is not None:
            items = await self.memory.load()
            strategies = await self.learning.registry.load(self.store)
            logger.info(f"Restored {items} memory items and {strategies} strategies")
        self.queue.start()

    async def drain(self) -> None:
        """Wait until every queued learning job has finished."""
        await self.queue.drain()

    async def stop(self) -> None:
        """Drain and stop the queue, then flush state to the persistent store."""
        await self.queue.stop(drain=True)
        if self.store is not None:
            written = await self.memory.flush()
            saved = await self.learning.registry.save(self.store)
            logger.info(f"Flushed {written} memory documents and {saved} strategies")

    # ------------------------------------------------------------------
    # Session API
    # ------------------------------------------------------------------

    async def process(
        self, request_text: str, token: CancellationToken | None = None
    ) -> ReasoningSession:
        """Run one request through the pipeline.

        Args:
            request_text: Raw user request.
            token: Cancellation signal and deadline. Defaults to a token with
                the configured session timeout.

        Returns:
            The sealed session.

        Raises:
            NoInferenceAvailable: Every inference approach failed.
            NoViableSolution: No candidate reached the evaluator.
            SessionCancelled: The token fired or its deadline passed.

        """
        if self.queue.state == QueueState.IDLE:
            self.queue.start()
        token = token or CancellationToken(timeout=self.config.session.default_timeout_seconds)
        session = ReasoningSession(id=_new_session_id(), input_text=request_text)
        self.metrics.increment("sessions.started")

        with log_context(session_id=session.id):
            try:
                await self._run(session, token)
            except PipelineFailure as e:
                if isinstance(e, NoInferenceAvailable):
                    session.approach_failures = dict(e.details.get("failures", {}))
                session.fail(f"{e.kind}: {e.message}")
                e.session = session
                self._remember(session)
                self.metrics.increment(f"sessions.failed.{e.kind}")
                logger.warning(
                    f"Session failed after {session.last_completed_stage.value}: {e.message}"
                )
                raise
            except asyncio.CancelledError:
                if not session.terminal:
                    session.fail("task cancelled")
                self._remember(session)
                self.metrics.increment("sessions.failed.task_cancelled")
                raise
            except Exception as e:
                if not session.terminal:
                    session.fail(f"internal_error: {type(e).__name__}: {e}")
                self._remember(session)
                self.metrics.increment("sessions.failed.internal_error")
                logger.exception(
                    f"Session failed after {session.last_completed_stage.value}: {e}"
                )
                raise

            self._remember(session)
            self.metrics.increment("sessions.sealed")
            if session.cache_hit:
                self.metrics.increment("sessions.cache_hits")
            self.metrics.record_histogram("session.confidence", session.confidence)
            self.learning.observe(session)
            logger.info(
                f"Session sealed in {session.duration_ms:.1f}ms "
                f"confidence={session.confidence:.3f} cache_hit={session.cache_hit}"
            )
        return session

    def record_outcome(self, session_id: str, outcome: Outcome) -> None:
        """Feed the result of acting on a session's answer to the learner.

        Raises:
            SessionNotFoundError: If ``session_id`` is not in the history.

        """
        session = self._history.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if self.learning.learn(session, outcome):
            self.metrics.increment("outcomes.recorded")
        else:
            self.metrics.increment("outcomes.ignored")

    def get_session(self, session_id: str) -> ReasoningSession:
        session = self._history.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get_stats(self) -> dict[str, Any]:
        """Point-in-time snapshot of every component's counters."""
        states: dict[str, int] = {}
        for session in self._history.values():
            states[session.state.value] = states.get(session.state.value, 0) + 1
        return {
            "sessions": {
                "history": len(self._history),
                "history_limit": self.config.session.history_size,
                "by_state": states,
            },
            "metrics": self.metrics.snapshot(),
            "intent": {
                "oracle_calls": self.analyzer.oracle_calls,
                "fallbacks": self.analyzer.fallbacks,
            },
            "inference": {"tasks_spawned": self.engine.tasks_spawned},
            "synthesis": {"discarded": self.synthesizer.discarded},
            "cache": self.cache.to_dict(),
            "memory": self.memory.stats(),
            "learning": self.learning.stats(),
            "strategies": self.learning.registry.stats(),
            "queue": {
                "state": self.queue.state.value,
                "pending": self.queue.pending,
                **self.queue.stats.to_dict(),
            },
        }

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    @contextmanager
    def _stage(self, session: ReasoningSession, state: SessionState) -> Generator[None, None, None]:
        with log_context(stage=state.value), self.metrics.span(state.value, session.id):
            yield

    async def _run(self, session: ReasoningSession, token: CancellationToken) -> None:
        with self._stage(session, SessionState.INTENT_ANALYZED):
            token.raise_if_cancelled()
            snapshot = await token.guard(self.memory.snapshot())
            session.intent = await self.analyzer.analyze(session.input_text, snapshot, token)
        session.advance(SessionState.INTENT_ANALYZED)
        intent = session.intent

        with self._stage(session, SessionState.CONTEXT_ASSEMBLED):
            session.context = await self.assembler.assemble(intent, token)
        session.advance(SessionState.CONTEXT_ASSEMBLED)
        context = session.context

        key = fingerprint(intent, context, self.approaches)
        cached = await token.guard(self.cache.get(key))

        with self._stage(session, SessionState.CHAINS_BUILT):
            if cached is not None:
                chains = cached.chains
                session.approach_failures = dict(cached.failures)
                session.cache_hit = True
            else:
                built = await self.engine.build_chains(intent, context, self.approaches, token)
                chains = built.chains
                session.approach_failures = dict(built.failures)
            session.chains = {c.id: c for c in chains}
        session.advance(SessionState.CHAINS_BUILT)

        with self._stage(session, SessionState.SOLUTIONS_GENERATED):
            token.raise_if_cancelled()
            if cached is not None:
                solutions = list(cached.solutions)
            else:
                solutions = self.synthesizer.generate(
                    chains, context, intent, explore=self.learning.should_explore()
                )
            session.solutions = {s.id: s for s in solutions}
        session.advance(SessionState.SOLUTIONS_GENERATED)

        with self._stage(session, SessionState.SELECTED):
            token.raise_if_cancelled()
            selection = self.evaluator.select(solutions)
            session.scores = selection.scores
            session.selected_solution_id = selection.selected.id
            session.confidence = selection.confidence
        session.advance(SessionState.SELECTED)

        with self._stage(session, SessionState.SEALED):
            token.raise_if_cancelled()
            session.quality = assess_quality(
                intent, chains, solutions, selection, session.duration_ms
            )
            behind = set(selection.selected.chain_ids)
            reflections = [self.engine.reflect(c) for c in chains if c.id in behind]
            session.insights = self.learning.extract_insights(session, reflections)
            session.seal()

        # Only sealed sessions populate the cache
        if cached is None:
            await self.cache.put(
                key,
                CachedResult(
                    chains=tuple(chains),
                    solutions=tuple(solutions),
                    failures=tuple(sorted(session.approach_failures.items())),
                ),
            )

    def _remember(self, session: ReasoningSession) -> None:
        self._history[session.id] = session
        while len(self._history) > self.config.session.history_size:
            self._history.popitem(last=False)


def build_coordinator(
    config: Config | None = None,
    oracle: SemanticOracle | None = None,
    store: PersistentStore | None = None,
    *,
    configure_logging: bool = False,
) -> SessionCoordinator:
    """Wire a coordinator and its collaborators from configuration.

    Args:
        config: Configuration; defaults to the global one.
        oracle: Semantic oracle. When None, an ``OpenAIOracle`` is created if
            an API key is available, otherwise intent analysis is heuristic.
        store: Persistent store. When None and persistence is enabled, a
            ``SQLiteStore`` is opened at the configured path.
        configure_logging: Install the structured loguru sinks.

    """
    config = config or get_config()
    if configure_logging:
        get_logger("reasonflow")

    if oracle is None:
        try:
            oracle = OpenAIOracle(config.oracle)
        except OracleUnavailable as e:
            logger.info(f"Oracle disabled ({e}); intent analysis will be heuristic")
    if store is None and config.persistence.enabled:
        store = SQLiteStore(config.persistence.db_path or None)

    memory = MemoryStore(config.memory, store=store)
    registry = StrategyRegistry(
        decay_config=DecayConfig(
            decay_rate=config.learning.decay_rate,
            threshold_days=config.learning.decay_threshold_days,
        )
    )
    queue = BackgroundTaskQueue(name="learning")
    return SessionCoordinator(
        memory=memory,
        analyzer=IntentAnalyzer(oracle, timeout=config.oracle.timeout_seconds),
        assembler=ContextAssembler(memory, config.context),
        engine=InferenceEngine(approach_timeout=config.inference.approach_timeout_seconds),
        synthesizer=SolutionSynthesizer(registry, config.synthesis),
        evaluator=Evaluator.from_config(config.evaluation),
        cache=ResultCache(config.cache),
        learning=LearningLoop(memory, registry, queue, config.learning),
        queue=queue,
        metrics=PipelineMetrics(),
        config=config,
        store=store,
    )
