"""Tests for reasonflow/reasoning/synthesis.py."""

from __future__ import annotations

import math
from collections.abc import Callable

import pytest

from reasonflow.config import SynthesisConfig
from reasonflow.reasoning.reasoning_types import (
    ApproachType,
    ComplexityTier,
    Conclusion,
    Constraint,
    InferenceChain,
    InferenceStep,
    Premise,
    PremiseType,
    ProvenanceEntry,
    ReasoningContext,
    ReasoningSolution,
    RiskTier,
    SemanticIntent,
    StrategyType,
)
from reasonflow.reasoning.strategies import StrategyRecord, StrategyRegistry
from reasonflow.reasoning.synthesis import SolutionSynthesizer


def _chain(
    id: str,
    approach: ApproachType,
    *,
    conf: float = 0.8,
    evidence_score: float = 0.6,
    creativity: float = 0.2,
    abstraction_level: int = 2,
    assumptions: int = 0,
) -> InferenceChain:
    premises = (Premise("login broke", PremiseType.FACT, conf, "request"),) + tuple(
        Premise(f"assume {i}", PremiseType.ASSUMPTION, conf, "ambiguity")
        for i in range(assumptions)
    )
    return InferenceChain.create(
        id=id,
        approach=approach,
        goal="fix login",
        premises=premises,
        steps=(InferenceStep(0, ("login broke",), "rule", f"{id} restore the fixture", conf),),
        conclusions=(Conclusion(f"{id} restore the fixture", conf, "probable"),),
        evidence=("request",),
        evidence_score=evidence_score,
        consistency_score=0.8,
        creativity=creativity,
        abstraction_level=abstraction_level,
    )


def _solution(
    id: str,
    approach: ApproachType = ApproachType.DEDUCTIVE,
    *,
    confidence: float = 0.7,
    steps: tuple[str, ...] = ("reproduce", "fix"),
    chain_ids: tuple[str, ...] | None = None,
    **kwargs: object,
) -> ReasoningSolution:
    return ReasoningSolution(
        id=id,
        description=f"solution {id}",
        approach=approach,
        strategy_id="s",
        strategy_type=StrategyType.ANALYTICAL,
        steps=steps,
        confidence=confidence,
        creativity_score=kwargs.pop("creativity_score", 0.3),  # type: ignore[arg-type]
        chain_ids=chain_ids or (f"chain-{id}",),
        provenance=(ProvenanceEntry("chain", chain_ids or (f"chain-{id}",)),),
        **kwargs,  # type: ignore[arg-type]
    )


def _perfect() -> StrategyRecord:
    return StrategyRecord(
        id="perfect",
        type=StrategyType.ANALYTICAL,
        description="Perfect strategy",
        steps=["do it"],
        effectiveness=1.0,
        success_rate=1.0,
        default_effectiveness=1.0,
        default_success_rate=1.0,
    )


@pytest.fixture
def simple_intent(make_intent: Callable[..., SemanticIntent]) -> SemanticIntent:
    return make_intent(complexity=ComplexityTier.SIMPLE)


# =============================================================================
# Base candidates
# =============================================================================


class TestBaseCandidates:
    """One candidate per chain and selected strategy."""

    def test_candidate_fields(self, simple_intent: SemanticIntent) -> None:
        chain = _chain("c1", ApproachType.DEDUCTIVE)
        synthesizer = SolutionSynthesizer(StrategyRegistry([_perfect()]))

        [solution] = synthesizer.generate([chain], ReasoningContext(), simple_intent)

        assert solution.strategy_id == "perfect"
        assert solution.description == "Perfect strategy: c1 restore the fixture"
        assert solution.steps == ("do it", "c1 restore the fixture")
        assert solution.confidence == pytest.approx(chain.confidence)
        assert solution.creativity_score == pytest.approx(0.6 * 0.2 + 0.4 * 0.3)
        assert solution.risk == RiskTier.LOW
        assert solution.pros == (
            "follows logically from stated principles",
            "grounded in project context",
        )
        assert solution.cons == ()
        assert solution.implementation_minutes == 10
        assert solution.chain_ids == ("c1",)
        assert solution.provenance[0].operation == "chain"
        assert not solution.synthesized

    def test_strategy_score_scales_confidence(self, simple_intent: SemanticIntent) -> None:
        weak = StrategyRecord(
            id="weak",
            type=StrategyType.HEURISTIC,
            description="Weak",
            steps=["try"],
            effectiveness=0.0,
            success_rate=0.0,
            default_effectiveness=0.0,
            default_success_rate=0.0,
        )
        chain = _chain("c1", ApproachType.DEDUCTIVE)
        [solution] = SolutionSynthesizer(StrategyRegistry([weak])).generate(
            [chain], ReasoningContext(), simple_intent
        )
        assert solution.confidence == pytest.approx(chain.confidence * 0.7)

    def test_direct_fallback_without_strategies(self, simple_intent: SemanticIntent) -> None:
        chain = _chain("c1", ApproachType.INDUCTIVE)
        [solution] = SolutionSynthesizer(StrategyRegistry([])).generate(
            [chain], ReasoningContext(), simple_intent
        )

        assert solution.strategy_id == "direct"
        assert solution.strategy_type == StrategyType.HEURISTIC
        assert solution.description == "c1 restore the fixture"
        assert "repeats what worked before" in solution.pros

    def test_creative_candidates_are_high_risk(self, simple_intent: SemanticIntent) -> None:
        chain = _chain("c1", ApproachType.CREATIVE, creativity=0.8, evidence_score=0.25)
        [solution] = SolutionSynthesizer(StrategyRegistry([_perfect()])).generate(
            [chain], ReasoningContext(), simple_intent
        )

        assert solution.risk == RiskTier.HIGH
        assert "explores an unconventional option" in solution.pros
        assert "unproven in this project" in solution.cons
        assert "weak supporting evidence" in solution.cons

    def test_assumptions_raise_risk(self, simple_intent: SemanticIntent) -> None:
        chain = _chain("c1", ApproachType.DEDUCTIVE, assumptions=2)
        [solution] = SolutionSynthesizer(StrategyRegistry([_perfect()])).generate(
            [chain], ReasoningContext(), simple_intent
        )
        assert solution.assumptions == ("assume 0", "assume 1")
        assert solution.risk == RiskTier.MEDIUM
        assert "relies on 2 assumption(s)" in solution.cons

    def test_strategies_per_chain_follow_complexity(
        self, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        chain = _chain("c1", ApproachType.DEDUCTIVE)
        synthesizer = SolutionSynthesizer(StrategyRegistry(), SynthesisConfig(max_synthesized=0))

        moderate = synthesizer.generate(
            [chain], ReasoningContext(), make_intent(complexity=ComplexityTier.MODERATE)
        )
        assert [s.strategy_id for s in moderate] == [
            "systematic_enumeration",
            "analytical_decomposition",
        ]
        assert all(s.implementation_minutes == 10 * len(s.steps) for s in moderate)


# =============================================================================
# Candidate set
# =============================================================================


class TestGenerate:
    """Synthesis and confidence filtering over the whole set."""

    def test_synthesizes_across_chains(self, simple_intent: SemanticIntent) -> None:
        chains = [
            _chain("deduce", ApproachType.DEDUCTIVE, abstraction_level=3),
            _chain("analog", ApproachType.ANALOGICAL, creativity=0.55),
        ]
        candidates = SolutionSynthesizer(StrategyRegistry()).generate(
            chains, ReasoningContext(), simple_intent
        )

        base = [c for c in candidates if not c.synthesized]
        made = {c.strategy_id for c in candidates if c.synthesized}
        assert len(base) == 2
        assert {"analogical_extension", "temporal_sequencing"} <= made
        assert candidates[: len(base)] == base

    def test_single_candidate_is_not_synthesized(self, simple_intent: SemanticIntent) -> None:
        candidates = SolutionSynthesizer(StrategyRegistry([_perfect()])).generate(
            [_chain("c1", ApproachType.DEDUCTIVE)], ReasoningContext(), simple_intent
        )
        assert len(candidates) == 1

    def test_max_synthesized_cap(self, simple_intent: SemanticIntent) -> None:
        chains = [
            _chain("deduce", ApproachType.DEDUCTIVE),
            _chain("analog", ApproachType.ANALOGICAL),
        ]
        config = SynthesisConfig(max_synthesized=1)
        candidates = SolutionSynthesizer(StrategyRegistry(), config).generate(
            chains, ReasoningContext(), simple_intent
        )
        assert sum(1 for c in candidates if c.synthesized) == 1

    def test_low_confidence_discarded(self, simple_intent: SemanticIntent) -> None:
        synthesizer = SolutionSynthesizer(
            StrategyRegistry([_perfect()]), SynthesisConfig(min_confidence=0.95)
        )
        candidates = synthesizer.generate(
            [_chain("c1", ApproachType.DEDUCTIVE)], ReasoningContext(), simple_intent
        )
        assert candidates == []
        assert synthesizer.discarded == 1

    def test_empty_chains(self, simple_intent: SemanticIntent) -> None:
        synthesizer = SolutionSynthesizer(StrategyRegistry())
        assert synthesizer.generate([], ReasoningContext(), simple_intent) == []


# =============================================================================
# Synthesis operations
# =============================================================================


class TestConceptualMerge:
    def test_merges_similar_candidates_from_different_chains(self) -> None:
        steps = ("reset the login fixture", "rerun the suite")
        a = _solution("a", confidence=0.8, steps=steps)
        b = _solution("b", confidence=0.6, steps=steps)
        synthesizer = SolutionSynthesizer(StrategyRegistry())

        [merged] = synthesizer.conceptual_merge([a, b])

        assert merged.strategy_id == "conceptual_merge"
        assert merged.confidence == pytest.approx(0.7 * 1.05)
        assert merged.chain_ids == ("chain-a", "chain-b")
        assert merged.provenance[0].sources == ("a", "b")
        assert merged.pros[0] == "supported by several lines of reasoning"
        assert merged.synthesized

    def test_same_chain_candidates_not_merged(self) -> None:
        steps = ("reset the login fixture", "rerun the suite")
        a = _solution("a", steps=steps, chain_ids=("c1",))
        b = _solution("b", steps=steps, chain_ids=("c1",))
        assert SolutionSynthesizer(StrategyRegistry()).conceptual_merge([a, b]) == []

    def test_dissimilar_candidates_not_merged(self) -> None:
        a = _solution("a", steps=("reset the login fixture",))
        b = _solution("b", steps=("migrate the database schema",))
        config = SynthesisConfig(merge_similarity=0.9)
        assert SolutionSynthesizer(StrategyRegistry(), config).conceptual_merge([a, b]) == []


class TestHierarchicalCombination:
    def test_pairs_abstract_with_concrete(self) -> None:
        abstract = _solution("plan", confidence=0.81, abstraction_level=3)
        concrete = _solution("code", confidence=0.64, abstraction_level=1)

        combined = SolutionSynthesizer(StrategyRegistry()).hierarchical_combination(
            [abstract, concrete]
        )

        assert combined is not None
        assert combined.confidence == pytest.approx(math.sqrt(0.81 * 0.64))
        assert combined.abstraction_level == 2
        assert combined.description == "solution plan, carried out as: solution code"

    def test_requires_both_levels(self) -> None:
        ranked = [_solution("a", abstraction_level=3), _solution("b", abstraction_level=2)]
        assert SolutionSynthesizer(StrategyRegistry()).hierarchical_combination(ranked) is None


class TestAnalogicalExtension:
    def test_applies_pattern_to_host(self) -> None:
        analog = _solution("analog", ApproachType.ANALOGICAL, confidence=0.8)
        host = _solution("host", ApproachType.DEDUCTIVE, confidence=0.6)

        extended = SolutionSynthesizer(StrategyRegistry()).analogical_extension([analog, host])

        assert extended is not None
        assert extended.confidence == pytest.approx(0.57)
        assert "the analogy holds for this project" in extended.assumptions
        assert extended.chain_ids == ("chain-analog", "chain-host")

    def test_needs_an_analogical_candidate(self) -> None:
        ranked = [_solution("a"), _solution("b")]
        assert SolutionSynthesizer(StrategyRegistry()).analogical_extension(ranked) is None


class TestRelaxConstraints:
    def test_drops_low_importance_constraints(self) -> None:
        best = _solution("best", confidence=0.8, risk=RiskTier.LOW)
        context = ReasoningContext(
            constraints=(
                Constraint("preserve_behavior", "keep behavior", 0.9),
                Constraint("match_style", "match the style", 0.3),
            )
        )

        relaxed = SolutionSynthesizer(StrategyRegistry()).relax_constraints(best, context)

        assert relaxed is not None
        assert relaxed.strategy_id == "constraint_relaxation"
        assert relaxed.confidence == pytest.approx(0.72)
        assert relaxed.risk == RiskTier.MEDIUM
        assert "ignores: match_style" in relaxed.cons

    def test_high_risk_stays_high(self) -> None:
        best = _solution("best", risk=RiskTier.HIGH)
        context = ReasoningContext(constraints=(Constraint("x", "x", 0.1),))
        relaxed = SolutionSynthesizer(StrategyRegistry()).relax_constraints(best, context)
        assert relaxed is not None
        assert relaxed.risk == RiskTier.HIGH

    def test_nothing_to_relax(self) -> None:
        context = ReasoningContext(constraints=(Constraint("x", "x", 0.9),))
        synthesizer = SolutionSynthesizer(StrategyRegistry())
        assert synthesizer.relax_constraints(_solution("best"), context) is None


class TestTemporalSequence:
    def test_stages_two_approaches(self) -> None:
        first = _solution("first", ApproachType.DEDUCTIVE, confidence=0.8)
        second = _solution("second", ApproachType.CREATIVE, confidence=0.6)

        sequenced = SolutionSynthesizer(StrategyRegistry()).temporal_sequence([first, second])

        assert sequenced is not None
        assert sequenced.strategy_id == "temporal_sequencing"
        assert sequenced.steps == (
            "Stage 1: reproduce",
            "Stage 1: fix",
            "Stage 2: reproduce",
            "Stage 2: fix",
        )
        assert sequenced.confidence == pytest.approx(0.7 * 0.95)

    def test_same_approach_only(self) -> None:
        ranked = [_solution("a"), _solution("b")]
        assert SolutionSynthesizer(StrategyRegistry()).temporal_sequence(ranked) is None
