"""Learning loop: fold finished sessions and outcomes back into long-lived state.

Nothing here runs on the response path. ``observe`` and ``learn`` only
enqueue jobs on the background queue; the jobs update strategy statistics,
the user model and memory, and schedule memory maintenance.

The learner moves through three phases. Each phase bounds the learning rate
and the exploration rate:

- exploration: few outcomes seen yet, learn fast and try more strategies
- exploitation: the usual regime, favor strategies that work
- consolidation: a long streak of success, change slowly
"""

from __future__ import annotations

import random
from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from loguru import logger

from reasonflow.config import LearningConfig
from reasonflow.reasoning.inference import ChainReflection
from reasonflow.reasoning.memory_store import MemoryStore
from reasonflow.reasoning.reasoning_types import (
    LearningOutcome,
    LearningOutcomeType,
    LearningPhase,
    Outcome,
    ReasoningSession,
    ReasoningSolution,
    SessionState,
    clamp01,
)
from reasonflow.reasoning.strategies import StrategyRegistry
from reasonflow.utils.task_queue import BackgroundTaskQueue

# (min learning rate, max learning rate, min exploration, max exploration)
PHASE_BOUNDS: dict[LearningPhase, tuple[float, float, float, float]] = {
    LearningPhase.EXPLORATION: (0.15, 0.3, 0.4, 1.0),
    LearningPhase.EXPLOITATION: (0.01, 0.08, 0.0, 0.2),
    LearningPhase.CONSOLIDATION: (0.01, 0.05, 0.0, 0.1),
}

EXPLORATION_OUTCOMES = 10
CONSOLIDATION_OUTCOMES = 50
CONSOLIDATION_SUCCESS_RATE = 0.8

EXPERTISE_TARGETS = {"beginner": 0.2, "intermediate": 0.5, "expert": 0.85}

STYLE_FEEDBACK: dict[str, tuple[str, ...]] = {
    "concise": ("shorter", "too long", "concise", "brief", "tl;dr", "less detail"),
    "detailed": ("more detail", "too short", "explain more", "elaborate", "step by step"),
}


def style_from_feedback(feedback: str | None) -> str | None:
    """Response style requested by free-text feedback, if any."""
    if not feedback:
        return None
    lowered = feedback.lower()
    for style, phrases in STYLE_FEEDBACK.items():
        if any(p in lowered for p in phrases):
            return style
    return None


class LearningLoop:
    """Background learner over strategies, user model and memory.

    Args:
        memory: Shared memory store to write interactions into.
        registry: Strategy statistics to update.
        queue: Background queue the jobs run on.
        config: Rates, decay and pruning thresholds.
        rng: Random source for exploration decisions.
        clock: Time source, injectable for tests.

    """

    def __init__(
        self,
        memory: MemoryStore,
        registry: StrategyRegistry,
        queue: BackgroundTaskQueue,
        config: LearningConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.memory = memory
        self.registry = registry
        self.queue = queue
        self.config = config or LearningConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self.phase = LearningPhase.EXPLORATION
        self.learning_rate = self.config.learning_rate
        self.exploration_rate = self.config.exploration_rate
        self._recent: deque[bool] = deque(maxlen=20)
        self.outcomes_seen = 0
        self.writes_committed = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def should_explore(self) -> bool:
        """Whether the next session should add exploratory strategies."""
        return self.enabled and self._rng.random() < self.exploration_rate

    # ------------------------------------------------------------------
    # Enqueueing
    # ------------------------------------------------------------------

    def observe(self, session: ReasoningSession) -> bool:
        """Queue usage bookkeeping for a sealed session.

        Returns:
            True if a job was queued.

        """
        if not self.enabled or session.state != SessionState.SEALED:
            return False
        return self.queue.submit(lambda: self._apply_observation(session))

    def learn(self, session: ReasoningSession, outcome: Outcome) -> bool:
        """Queue the updates driven by an outcome for ``session``.

        Failed and cancelled sessions never produce writes.

        Returns:
            True if a job was queued.

        """
        if not self.enabled:
            return False
        if session.state != SessionState.SEALED or session.selected_solution is None:
            logger.debug(f"Ignoring outcome for {session.state.value} session {session.id}")
            return False
        return self.queue.submit(lambda: self._apply_outcome(session, outcome))

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def _apply_observation(self, session: ReasoningSession) -> None:
        selected = session.selected_solution
        if selected is not None:
            now = self._clock()
            for strategy_id in self._strategies_behind(session, selected):
                self.registry.record_usage(strategy_id, when=now)
        if session.context is not None:
            await self.memory.touch(f.id for f in session.context.fragments)
        self.writes_committed += 1

    async def _apply_outcome(self, session: ReasoningSession, outcome: Outcome) -> None:
        selected = session.selected_solution
        intent = session.intent
        if selected is None or intent is None:
            return
        now = self._clock()
        self._update_rates(outcome.success)
        goal = intent.primary_goal.split(":", 1)[0]

        for strategy_id in self._strategies_behind(session, selected):
            self.registry.record_outcome(
                strategy_id,
                success=outcome.success,
                reward=outcome.reward,
                learning_rate=self.learning_rate,
                when=now,
            )

        await self.memory.store_interaction(
            session.input_text,
            selected.description,
            domain=intent.domain,
            goal=goal,
            quality=outcome.reward,
            session_id=session.id,
        )

        user = await self.memory.user_model()
        target = EXPERTISE_TARGETS.get(intent.user_expertise, user.expertise)
        await self.memory.update_user_model(
            expertise=user.expertise + self.learning_rate * (target - user.expertise),
            preferred_style=style_from_feedback(outcome.feedback),
            goals=[goal],
        )
        await self.memory.learn_from_interaction(
            intent.domain,
            f"{selected.approach.value}:{selected.strategy_type.value}",
            outcome.success,
        )

        self.registry.apply_decay(now)
        self.registry.prune(self.config.min_strategy_effectiveness)

        if self.memory.needs_maintenance():
            await self.memory.maintain()

        self.writes_committed += 1
        logger.debug(
            f"Learned from {session.id}: success={outcome.success} "
            f"phase={self.phase.value} lr={self.learning_rate:.3f}"
        )

    @staticmethod
    def _strategies_behind(
        session: ReasoningSession, solution: ReasoningSolution
    ) -> list[str]:
        """Registered strategy ids that produced ``solution``.

        A synthesized solution credits the strategies of the candidates it
        was built from.
        """
        if not solution.synthesized:
            return [solution.strategy_id]
        ids: list[str] = []
        for entry in solution.provenance:
            for source_id in entry.sources:
                source = session.solutions.get(source_id)
                if source is not None and not source.synthesized:
                    ids.append(source.strategy_id)
        return list(dict.fromkeys(ids))

    # ------------------------------------------------------------------
    # Phase and rates
    # ------------------------------------------------------------------

    def _update_rates(self, success: bool) -> None:
        self.outcomes_seen += 1
        self._recent.append(success)
        if success:
            self.learning_rate = max(0.01, self.learning_rate * 0.9)
        else:
            self.learning_rate = min(0.3, self.learning_rate * 1.1)
        self._set_phase(self._next_phase())

    def _next_phase(self) -> LearningPhase:
        if self.outcomes_seen < EXPLORATION_OUTCOMES:
            return LearningPhase.EXPLORATION
        recent_rate = sum(self._recent) / len(self._recent)
        if (
            self.outcomes_seen >= CONSOLIDATION_OUTCOMES
            and recent_rate >= CONSOLIDATION_SUCCESS_RATE
        ):
            return LearningPhase.CONSOLIDATION
        return LearningPhase.EXPLOITATION

    def _set_phase(self, phase: LearningPhase) -> None:
        if phase == self.phase:
            return
        lr_min, lr_max, er_min, er_max = PHASE_BOUNDS[phase]
        self.learning_rate = max(lr_min, min(lr_max, self.learning_rate))
        self.exploration_rate = max(er_min, min(er_max, self.exploration_rate))
        logger.info(f"Learning phase {self.phase.value} -> {phase.value}")
        self.phase = phase

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    def extract_insights(
        self, session: ReasoningSession, reflections: Iterable[ChainReflection] = ()
    ) -> tuple[LearningOutcome, ...]:
        """Lessons from a session about to be sealed. Pure; writes nothing.

        Args:
            session: Session with a selected solution.
            reflections: Critiques of the chains. Gaps and biases found in the
                chains behind the selected solution become one more
                metacognitive insight.

        """
        selected = session.selected_solution
        intent = session.intent
        if selected is None or intent is None:
            return ()
        agreeing = sum(1 for c in session.chains.values() if c.approach == selected.approach)
        insights = [
            LearningOutcome(
                type=LearningOutcomeType.PATTERN,
                description=(
                    f"{selected.approach.value} reasoning suited a "
                    f"{intent.complexity.value} {intent.domain} request"
                ),
                confidence=session.confidence,
                generalizability=clamp01(0.3 + 0.2 * agreeing),
                transfer_potential=0.5 if intent.domain == "general" else 0.4,
            )
        ]
        if selected.synthesized:
            operation = selected.provenance[0].operation
            insights.append(
                LearningOutcome(
                    type=LearningOutcomeType.SKILL,
                    description=f"{operation} produced the winning solution",
                    confidence=selected.confidence,
                    generalizability=0.6,
                    transfer_potential=0.7,
                )
            )
        if session.approach_failures:
            failed = ", ".join(sorted(session.approach_failures))
            insights.append(
                LearningOutcome(
                    type=LearningOutcomeType.ADAPTATION,
                    description=f"completed without {failed}",
                    confidence=0.6,
                    generalizability=0.4,
                    transfer_potential=0.3,
                )
            )
        if session.confidence < 0.4:
            insights.append(
                LearningOutcome(
                    type=LearningOutcomeType.METACOGNITIVE,
                    description="candidates scored too close to call; ask a clarifying question",
                    confidence=1.0 - session.confidence,
                    generalizability=0.5,
                    transfer_potential=0.5,
                )
            )
        behind = set(selected.chain_ids)
        flawed = [r for r in reflections if r.chain_id in behind and (r.gaps or r.biases)]
        if flawed:
            issues = list(dict.fromkeys(i for r in flawed for i in (*r.gaps, *r.biases)))
            fixes = list(dict.fromkeys(f for r in flawed for f in r.improvements))
            description = f"selected reasoning had {'; '.join(issues)}"
            if fixes:
                description += f"; next time {fixes[0]}"
            insights.append(
                LearningOutcome(
                    type=LearningOutcomeType.METACOGNITIVE,
                    description=description,
                    confidence=clamp01(1.0 - min(r.quality for r in flawed)),
                    generalizability=0.4,
                    transfer_potential=0.4,
                )
            )
        return tuple(insights)

    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "phase": self.phase.value,
            "learning_rate": round(self.learning_rate, 4),
            "exploration_rate": round(self.exploration_rate, 4),
            "outcomes_seen": self.outcomes_seen,
            "writes_committed": self.writes_committed,
        }
