"""Tests for reasonflow/reasoning/inference.py."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from reasonflow.reasoning.context_assembler import derive_constraints
from reasonflow.reasoning.inference import (
    ApproachNotApplicable,
    InferenceEngine,
    classify_goal,
)
from reasonflow.reasoning.reasoning_types import (
    ApproachType,
    ComplexityTier,
    Conclusion,
    ContextFragment,
    ContextSource,
    InferenceChain,
    InferenceStep,
    Premise,
    PremiseType,
    ReasoningContext,
    SemanticIntent,
)
from reasonflow.utils.cancellation import CancellationToken
from reasonflow.utils.errors import NoInferenceAvailable, SessionCancelled

NOW = datetime(2025, 3, 14, 12, 0, 0)


def _fragment(
    id: str, source: ContextSource, content: str, relevance: float = 0.7
) -> ContextFragment:
    return ContextFragment(id, source, content, "testing", relevance, NOW)


def _chain(approach: ApproachType, premise_conf: float = 0.8) -> InferenceChain:
    return InferenceChain.create(
        id=f"{approach.value}-fixed",
        approach=approach,
        goal="fix login",
        premises=(Premise("login broke", PremiseType.FACT, premise_conf, "request"),),
        steps=(InferenceStep(0, ("login broke",), "rule", "restore the fixture", 0.7),),
        conclusions=(Conclusion("restore the fixture", 0.7, "probable"),),
        evidence=("request",),
        evidence_score=0.6,
        consistency_score=0.8,
    )


def _builder(chain: InferenceChain) -> Callable[..., object]:
    async def build(intent: SemanticIntent, context: ReasoningContext) -> InferenceChain:
        await asyncio.sleep(0)
        return chain

    return build


async def _not_applicable(intent: SemanticIntent, context: ReasoningContext) -> InferenceChain:
    raise ApproachNotApplicable("nothing to work with")


async def _never_finishes(intent: SemanticIntent, context: ReasoningContext) -> InferenceChain:
    await asyncio.sleep(10)
    raise AssertionError("unreachable")


# =============================================================================
# Goal classification
# =============================================================================


class TestClassifyGoal:
    def test_prefix_wins(self, make_intent: Callable[..., SemanticIntent]) -> None:
        assert classify_goal(make_intent(goal="refactor: fix the failing login test")) == "refactor"

    def test_keywords_when_no_prefix(self, make_intent: Callable[..., SemanticIntent]) -> None:
        intent = make_intent(goal="make the query faster, it is slow", keywords=())
        assert classify_goal(intent) == "optimize"

    def test_fallback(self, make_intent: Callable[..., SemanticIntent]) -> None:
        assert classify_goal(make_intent(goal="hello there", keywords=())) == "assist"


# =============================================================================
# Default builders
# =============================================================================


class TestDefaultBuilders:
    """Chains built from intent and context alone."""

    @pytest.mark.asyncio
    async def test_deductive_without_context(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        chain = await InferenceEngine().build_deductive(make_intent(), ReasoningContext())

        assert chain.approach == ApproachType.DEDUCTIVE
        assert chain.logical_validity
        assert chain.soundness > 0
        assert chain.steps[-1].rule == "conjunction"
        assert chain.evidence == ("request",)
        assert chain.abstraction_level == 3

    @pytest.mark.asyncio
    async def test_deductive_uses_project_facts(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        intent = make_intent(ambiguities=("which login?",))
        context = ReasoningContext(
            fragments=(
                _fragment("project_state", ContextSource.PROJECT_STATE, "ci: github", 0.9),
            ),
            constraints=derive_constraints(intent),
        )
        chain = await InferenceEngine().build_deductive(intent, context)

        assert "project_state:project_state" in chain.evidence
        assert any(p.type == PremiseType.ASSUMPTION for p in chain.premises)
        assert chain.consistency_score < 1.0

    @pytest.mark.asyncio
    async def test_inductive_needs_observations(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        with pytest.raises(ApproachNotApplicable):
            await InferenceEngine().build_inductive(make_intent(), ReasoningContext())

    @pytest.mark.asyncio
    async def test_inductive_generalizes_recurring_words(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        context = ReasoningContext(
            fragments=(
                _fragment("e1", ContextSource.EPISODIC, "login test failed -> reset fixture"),
                _fragment("e2", ContextSource.EPISODIC, "login test flaky -> reset fixture"),
            )
        )
        chain = await InferenceEngine().build_inductive(make_intent(), context)

        assert chain.approach == ApproachType.INDUCTIVE
        assert chain.steps[-1].rule == "generalization"
        assert chain.conclusions[0].certainty == "tentative"
        assert set(chain.evidence) == {"episodic:e1", "episodic:e2"}

    @pytest.mark.asyncio
    async def test_analogical_stock_analogy(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        chain = await InferenceEngine().build_analogical(make_intent(), ReasoningContext())
        assert chain.evidence == ("analogy:medical diagnosis",)
        assert len(chain.steps) == 4

    @pytest.mark.asyncio
    async def test_analogical_prefers_remembered_episode(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        context = ReasoningContext(
            fragments=(
                _fragment(
                    "e1", ContextSource.EPISODIC, "fix failing login test -> pin the clock", 0.8
                ),
            )
        )
        chain = await InferenceEngine().build_analogical(make_intent(), context)
        assert chain.evidence == ("episodic:e1",)
        assert chain.evidence_score == 0.5

    @pytest.mark.asyncio
    async def test_creative_generates_divergent_steps(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        chain = await InferenceEngine().build_creative(make_intent(), ReasoningContext())

        assert chain.approach == ApproachType.CREATIVE
        assert 1 <= len(chain.steps) <= 4
        assert all(s.rule.startswith("divergent_") for s in chain.steps)
        assert chain.creativity == pytest.approx(0.8)
        assert chain.conclusions[0].certainty == "speculative"

    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    @given(
        goal=st.text(min_size=0, max_size=80),
        confidence=st.floats(min_value=0.0, max_value=1.0),
        ambiguities=st.lists(st.text(max_size=20), max_size=3),
    )
    def test_deductive_scores_stay_in_range(
        self, goal: str, confidence: float, ambiguities: list[str]
    ) -> None:
        intent = SemanticIntent(
            primary_goal=goal,
            domain="general",
            complexity=ComplexityTier.MODERATE,
            confidence=confidence,
            ambiguities=tuple(ambiguities),
        )
        chain = asyncio.run(InferenceEngine().build_deductive(intent, ReasoningContext()))

        assert 0.0 <= chain.confidence <= 1.0
        assert 0.0 <= chain.soundness <= 1.0
        if not chain.logical_validity:
            assert chain.soundness == 0.0


# =============================================================================
# Concurrent construction
# =============================================================================


class TestBuildChains:
    """Per-approach tasks, failure isolation and cancellation."""

    @pytest.mark.asyncio
    async def test_default_approaches_on_empty_context(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        engine = InferenceEngine()
        result = await engine.build_chains(make_intent(), ReasoningContext())

        approaches = {c.approach for c in result.chains}
        assert approaches == {
            ApproachType.DEDUCTIVE,
            ApproachType.ANALOGICAL,
            ApproachType.CREATIVE,
        }
        assert set(result.failures) == {"inductive"}
        assert result.failures["inductive"].startswith("ApproachNotApplicable")
        assert engine.tasks_spawned == 4

    @pytest.mark.asyncio
    async def test_subset_of_approaches(self, make_intent: Callable[..., SemanticIntent]) -> None:
        engine = InferenceEngine()
        result = await engine.build_chains(
            make_intent(),
            ReasoningContext(),
            approaches=[ApproachType.DEDUCTIVE, ApproachType.DEDUCTIVE],
        )
        assert [c.approach for c in result.chains] == [ApproachType.DEDUCTIVE]
        assert engine.tasks_spawned == 1

    @pytest.mark.asyncio
    async def test_timeout_isolated_to_one_approach(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        engine = InferenceEngine(
            approach_timeout=0.05,
            builders={
                ApproachType.DEDUCTIVE: _builder(_chain(ApproachType.DEDUCTIVE)),
                ApproachType.CREATIVE: _never_finishes,
            },
        )
        result = await engine.build_chains(
            make_intent(),
            ReasoningContext(),
            approaches=[ApproachType.DEDUCTIVE, ApproachType.CREATIVE],
        )

        assert [c.id for c in result.chains] == ["deductive-fixed"]
        assert result.failures["creative"] == "timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_builder_exception_isolated(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        async def explode(intent: SemanticIntent, context: ReasoningContext) -> InferenceChain:
            raise RuntimeError("builder bug")

        engine = InferenceEngine(
            builders={
                ApproachType.DEDUCTIVE: explode,
                ApproachType.ANALOGICAL: _builder(_chain(ApproachType.ANALOGICAL)),
            }
        )
        result = await engine.build_chains(
            make_intent(),
            ReasoningContext(),
            approaches=[ApproachType.DEDUCTIVE, ApproachType.ANALOGICAL],
        )
        assert len(result.chains) == 1
        assert result.failures["deductive"] == "RuntimeError: builder bug"

    @pytest.mark.asyncio
    async def test_all_fail_raises(self, make_intent: Callable[..., SemanticIntent]) -> None:
        engine = InferenceEngine(builders={a: _not_applicable for a in ApproachType})

        with pytest.raises(NoInferenceAvailable) as exc_info:
            await engine.build_chains(make_intent(), ReasoningContext())

        failures = exc_info.value.details["failures"]
        assert set(failures) == {a.value for a in ApproachType}
        assert exc_info.value.to_dict()["kind"] == "no_inference_available"

    @pytest.mark.asyncio
    async def test_register_replaces_builder(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        engine = InferenceEngine()
        engine.register(ApproachType.INDUCTIVE, _builder(_chain(ApproachType.INDUCTIVE)))
        result = await engine.build_chains(
            make_intent(), ReasoningContext(), approaches=[ApproachType.INDUCTIVE]
        )
        assert result.chains[0].id == "inductive-fixed"

    @pytest.mark.asyncio
    async def test_cancellation_cancels_in_flight_tasks(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        cancelled: list[str] = []

        async def slow(intent: SemanticIntent, context: ReasoningContext) -> InferenceChain:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append("slow")
                raise
            raise AssertionError("unreachable")

        engine = InferenceEngine(approach_timeout=5.0, builders={ApproachType.DEDUCTIVE: slow})
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        with pytest.raises(SessionCancelled):
            await engine.build_chains(
                make_intent(), ReasoningContext(), approaches=[ApproachType.DEDUCTIVE], token=token
            )
        await asyncio.sleep(0.05)
        assert cancelled == ["slow"]

    @pytest.mark.asyncio
    async def test_already_cancelled_spawns_nothing(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        engine = InferenceEngine()
        token = CancellationToken()
        token.cancel()
        with pytest.raises(SessionCancelled):
            await engine.build_chains(make_intent(), ReasoningContext(), token=token)
        assert engine.tasks_spawned == 0


# =============================================================================
# Meta-reasoning
# =============================================================================


class TestReflect:
    """Gap and bias detection."""

    def test_single_source_chain_flags_confirmation_bias(self) -> None:
        chain = InferenceChain.create(
            id="c1",
            approach=ApproachType.DEDUCTIVE,
            goal="fix login",
            premises=(
                Premise("a", PremiseType.FACT, 0.8, "request"),
                Premise("b", PremiseType.FACT, 0.3, "request"),
            ),
            steps=(InferenceStep(0, ("a",), "rule", "c", 0.7),),
            conclusions=(),
            evidence=(),
            evidence_score=0.2,
            consistency_score=0.5,
        )
        reflection = InferenceEngine().reflect(chain)

        assert "chain reaches no conclusion" in reflection.gaps
        assert "1 weakly supported premise(s)" in reflection.gaps
        assert "no supporting evidence" in reflection.gaps
        assert any(b.startswith("confirmation") for b in reflection.biases)
        assert reflection.quality < chain.confidence

    def test_sound_chain_has_no_gaps(self) -> None:
        reflection = InferenceEngine().reflect(_chain(ApproachType.DEDUCTIVE))
        assert reflection.gaps == ()
        assert reflection.quality == pytest.approx(_chain(ApproachType.DEDUCTIVE).confidence)

    def test_thin_induction_flags_overgeneralization(self) -> None:
        reflection = InferenceEngine().reflect(_chain(ApproachType.INDUCTIVE))
        assert any(b.startswith("overgeneralization") for b in reflection.biases)


class TestOptimize:
    """Redundancy removal."""

    def test_drops_duplicate_steps_and_premises(self) -> None:
        premise = Premise("login broke", PremiseType.FACT, 0.8, "request")
        chain = InferenceChain.create(
            id="c1",
            approach=ApproachType.DEDUCTIVE,
            goal="fix login",
            premises=(premise, premise),
            steps=(
                InferenceStep(0, ("login broke",), "rule", "Restore the fixture", 0.7),
                InferenceStep(1, ("login broke",), "rule", "restore  the fixture", 0.7),
                InferenceStep(2, ("x",), "rule", "rerun the suite", 0.6),
            ),
            conclusions=(Conclusion("rerun the suite", 0.6, "probable", (0, 1, 2)),),
            evidence=("request",),
            evidence_score=0.6,
            consistency_score=0.8,
        )
        optimized = InferenceEngine().optimize(chain)

        assert optimized.id == chain.id
        assert len(optimized.premises) == 1
        assert [s.index for s in optimized.steps] == [0, 1]
        assert optimized.conclusions[0].supporting_steps == (0, 1)

    def test_clean_chain_returned_unchanged(self) -> None:
        chain = _chain(ApproachType.DEDUCTIVE)
        assert InferenceEngine().optimize(chain) is chain
