"""Solution synthesis: chains to candidate solutions.

Every chain is turned into one or more candidates, one per strategy the
registry selects for it. When at least two base candidates exist, new
candidates are synthesized across them:

- conceptual merge: cluster similar candidates and merge each cluster
- hierarchical combination: an abstract plan executed through a concrete one
- analogical extension: an analogy's pattern applied with another candidate's specifics
- constraint relaxation: the best candidate with low-importance constraints dropped
- temporal sequencing: two candidates chained into staged execution

Each candidate records how it was made in its provenance trail. Candidates
below the minimum confidence are discarded before evaluation.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Sequence

from loguru import logger

from reasonflow.config import SynthesisConfig
from reasonflow.reasoning.reasoning_types import (
    ApproachType,
    ComplexityTier,
    InferenceChain,
    PremiseType,
    ProvenanceEntry,
    ReasoningContext,
    ReasoningSolution,
    RiskTier,
    SemanticIntent,
    StrategyType,
    clamp01,
)
from reasonflow.reasoning.strategies import StrategyRecord, StrategyRegistry
from reasonflow.utils.scoring import jaccard, tokenize

STRATEGIES_PER_CHAIN: dict[ComplexityTier, int] = {
    ComplexityTier.SIMPLE: 1,
    ComplexityTier.MODERATE: 2,
    ComplexityTier.COMPLEX: 3,
    ComplexityTier.EXPERT: 3,
}

MINUTES_PER_STEP: dict[ComplexityTier, int] = {
    ComplexityTier.SIMPLE: 5,
    ComplexityTier.MODERATE: 10,
    ComplexityTier.COMPLEX: 20,
    ComplexityTier.EXPERT: 30,
}

TYPE_CREATIVITY: dict[StrategyType, float] = {
    StrategyType.CREATIVE: 0.8,
    StrategyType.HYBRID: 0.6,
    StrategyType.HEURISTIC: 0.4,
    StrategyType.ANALYTICAL: 0.3,
    StrategyType.SYSTEMATIC: 0.2,
}

RISK_ORDER = (RiskTier.LOW, RiskTier.MEDIUM, RiskTier.HIGH)


def _solution_id() -> str:
    return f"sol-{uuid.uuid4().hex[:10]}"


def _words(solution: ReasoningSolution) -> set[str]:
    return tokenize(" ".join([solution.description, *solution.steps]))


def _dedupe(items: Sequence[str], limit: int | None = None) -> tuple[str, ...]:
    unique = tuple(dict.fromkeys(items))
    return unique[:limit] if limit else unique


def _raise_risk(risk: RiskTier) -> RiskTier:
    return RISK_ORDER[min(len(RISK_ORDER) - 1, RISK_ORDER.index(risk) + 1)]


class SolutionSynthesizer:
    """Generates base and synthesized candidate solutions.

    Args:
        registry: Strategy records to select from.
        config: Confidence threshold and synthesis limits.

    """

    def __init__(
        self, registry: StrategyRegistry, config: SynthesisConfig | None = None
    ) -> None:
        self.registry = registry
        self.config = config or SynthesisConfig()
        self.discarded = 0

    def generate(
        self,
        chains: Sequence[InferenceChain],
        context: ReasoningContext,
        intent: SemanticIntent,
        *,
        explore: bool = False,
    ) -> list[ReasoningSolution]:
        """Produce the candidate set for the evaluator.

        Returns:
            Base candidates followed by synthesized ones, all at or above the
            minimum confidence. May be empty.

        """
        limit = STRATEGIES_PER_CHAIN[intent.complexity]
        base: list[ReasoningSolution] = []
        for chain in chains:
            strategies = self.registry.select(
                chain.approach, intent.complexity, intent.domain, limit=limit, explore=explore
            )
            if not strategies:
                base.append(self._from_chain(chain, None, intent))
                continue
            base.extend(self._from_chain(chain, s, intent) for s in strategies)

        synthesized: list[ReasoningSolution] = []
        if len(base) >= 2:
            synthesized = self._synthesize(base, context)

        candidates = base + synthesized[: self.config.max_synthesized]
        kept = [c for c in candidates if c.confidence >= self.config.min_confidence]
        dropped = len(candidates) - len(kept)
        if dropped:
            self.discarded += dropped
            logger.debug(
                f"Discarded {dropped} candidate(s) below confidence {self.config.min_confidence}"
            )
        return kept

    # ------------------------------------------------------------------
    # Base candidates
    # ------------------------------------------------------------------

    def _from_chain(
        self,
        chain: InferenceChain,
        strategy: StrategyRecord | None,
        intent: SemanticIntent,
    ) -> ReasoningSolution:
        conclusion = chain.conclusions[0].statement if chain.conclusions else chain.goal
        if strategy is None:
            strategy_id, strategy_type = "direct", StrategyType.HEURISTIC
            strategy_steps: list[str] = []
            strategy_score, description = 0.5, conclusion
        else:
            strategy_id, strategy_type = strategy.id, strategy.type
            strategy_steps = strategy.steps
            strategy_score = strategy.score
            description = f"{strategy.description}: {conclusion}"

        chain_steps = [s.output for s in chain.steps[-2:]]
        steps = _dedupe([*strategy_steps, *chain_steps])
        assumptions = _dedupe(
            [p.statement for p in chain.premises if p.type == PremiseType.ASSUMPTION]
        )

        pros: list[str] = []
        cons: list[str] = []
        if chain.logical_validity and chain.approach == ApproachType.DEDUCTIVE:
            pros.append("follows logically from stated principles")
        if chain.evidence_score >= 0.5:
            pros.append("grounded in project context")
        if chain.approach == ApproachType.INDUCTIVE:
            pros.append("repeats what worked before")
        if chain.approach == ApproachType.ANALOGICAL:
            pros.append("borrows a proven solution shape")
        if chain.creativity >= 0.6:
            pros.append("explores an unconventional option")
        if assumptions:
            cons.append(f"relies on {len(assumptions)} assumption(s)")
        if chain.evidence_score < 0.4:
            cons.append("weak supporting evidence")
        if chain.approach == ApproachType.CREATIVE:
            cons.append("unproven in this project")

        confidence = clamp01(chain.confidence * (0.7 + 0.3 * strategy_score))
        if confidence >= 0.65 and len(assumptions) <= 1:
            risk = RiskTier.LOW
        elif confidence < 0.4 or chain.approach == ApproachType.CREATIVE:
            risk = RiskTier.HIGH
        else:
            risk = RiskTier.MEDIUM

        return ReasoningSolution(
            id=_solution_id(),
            description=description,
            approach=chain.approach,
            strategy_id=strategy_id,
            strategy_type=strategy_type,
            steps=steps,
            confidence=confidence,
            creativity_score=clamp01(0.6 * chain.creativity + 0.4 * TYPE_CREATIVITY[strategy_type]),
            risk=risk,
            assumptions=assumptions,
            pros=tuple(pros),
            cons=tuple(cons),
            implementation_minutes=max(5, len(steps) * MINUTES_PER_STEP[intent.complexity]),
            abstraction_level=chain.abstraction_level,
            chain_ids=(chain.id,),
            provenance=(ProvenanceEntry("chain", (chain.id,), f"strategy {strategy_id}"),),
        )

    # ------------------------------------------------------------------
    # Cross-candidate synthesis
    # ------------------------------------------------------------------

    def _synthesize(
        self, base: list[ReasoningSolution], context: ReasoningContext
    ) -> list[ReasoningSolution]:
        ranked = sorted(base, key=lambda s: (-s.confidence, s.id))
        results: list[ReasoningSolution] = []
        results.extend(self.conceptual_merge(ranked))
        if (combined := self.hierarchical_combination(ranked)) is not None:
            results.append(combined)
        if (extended := self.analogical_extension(ranked)) is not None:
            results.append(extended)
        if (relaxed := self.relax_constraints(ranked[0], context)) is not None:
            results.append(relaxed)
        if (sequenced := self.temporal_sequence(ranked)) is not None:
            results.append(sequenced)
        return results

    def conceptual_merge(self, ranked: list[ReasoningSolution]) -> list[ReasoningSolution]:
        """Greedily cluster similar candidates from different chains and merge each cluster."""
        clusters: list[list[ReasoningSolution]] = []
        for candidate in ranked:
            words = _words(candidate)
            for cluster in clusters:
                seed = cluster[0]
                if (
                    candidate.chain_ids != seed.chain_ids
                    and jaccard(words, _words(seed)) >= self.config.merge_similarity
                ):
                    cluster.append(candidate)
                    break
            else:
                clusters.append([candidate])

        merged = []
        for cluster in clusters:
            if len(cluster) < 2:
                continue
            ids = tuple(c.id for c in cluster)
            seed = cluster[0]
            mean_conf = sum(c.confidence for c in cluster) / len(cluster)
            merged.append(
                ReasoningSolution(
                    id=_solution_id(),
                    description=f"Merged approach: {seed.description}",
                    approach=seed.approach,
                    strategy_id="conceptual_merge",
                    strategy_type=StrategyType.HYBRID,
                    steps=_dedupe([s for c in cluster for s in c.steps], limit=8),
                    # Agreement between independent chains earns a small bonus
                    confidence=clamp01(mean_conf * 1.05),
                    creativity_score=max(c.creativity_score for c in cluster),
                    risk=min((c.risk for c in cluster), key=RISK_ORDER.index),
                    assumptions=_dedupe([a for c in cluster for a in c.assumptions]),
                    pros=_dedupe(
                        ["supported by several lines of reasoning"]
                        + [p for c in cluster for p in c.pros]
                    ),
                    cons=_dedupe([x for c in cluster for x in c.cons]),
                    implementation_minutes=max(c.implementation_minutes for c in cluster),
                    abstraction_level=seed.abstraction_level,
                    chain_ids=_dedupe([cid for c in cluster for cid in c.chain_ids]),
                    provenance=(ProvenanceEntry("conceptual_merge", ids),),
                )
            )
        return merged

    def hierarchical_combination(
        self, ranked: list[ReasoningSolution]
    ) -> ReasoningSolution | None:
        """Pair the best abstract candidate with the best concrete one."""
        abstract = next((s for s in ranked if s.abstraction_level >= 3), None)
        concrete = next(
            (
                s
                for s in ranked
                if s.abstraction_level <= 1
                and (abstract is None or s.chain_ids != abstract.chain_ids)
            ),
            None,
        )
        if abstract is None or concrete is None:
            return None
        return ReasoningSolution(
            id=_solution_id(),
            description=f"{abstract.description}, carried out as: {concrete.description}",
            approach=abstract.approach,
            strategy_id="hierarchical_combination",
            strategy_type=StrategyType.HYBRID,
            steps=_dedupe([*abstract.steps[:2], *concrete.steps], limit=8),
            confidence=clamp01(math.sqrt(abstract.confidence * concrete.confidence)),
            creativity_score=clamp01((abstract.creativity_score + concrete.creativity_score) / 2),
            risk=max(abstract.risk, concrete.risk, key=RISK_ORDER.index),
            assumptions=_dedupe([*abstract.assumptions, *concrete.assumptions]),
            pros=("plan and execution are both specified",),
            cons=_dedupe([*abstract.cons, *concrete.cons]),
            implementation_minutes=abstract.implementation_minutes // 2
            + concrete.implementation_minutes,
            abstraction_level=2,
            chain_ids=_dedupe([*abstract.chain_ids, *concrete.chain_ids]),
            provenance=(ProvenanceEntry("hierarchical_combination", (abstract.id, concrete.id)),),
        )

    def analogical_extension(self, ranked: list[ReasoningSolution]) -> ReasoningSolution | None:
        """Apply an analogical candidate's pattern using another candidate's specifics."""
        analog = next((s for s in ranked if s.approach == ApproachType.ANALOGICAL), None)
        if analog is None:
            return None
        host = next(
            (s for s in ranked if s.approach != ApproachType.ANALOGICAL), None
        )
        if host is None:
            return None
        return ReasoningSolution(
            id=_solution_id(),
            description=f"Apply the pattern from '{analog.description[:60]}' "
            f"to: {host.description}",
            approach=ApproachType.ANALOGICAL,
            strategy_id="analogical_extension",
            strategy_type=StrategyType.HEURISTIC,
            steps=_dedupe([*analog.steps[:2], *host.steps[-2:]]),
            confidence=clamp01(min(analog.confidence, host.confidence) * 0.95),
            creativity_score=clamp01(max(analog.creativity_score, host.creativity_score) + 0.1),
            risk=host.risk,
            assumptions=_dedupe([*host.assumptions, "the analogy holds for this project"]),
            pros=("transfers a known pattern to concrete specifics",),
            cons=_dedupe([*host.cons, "analogy may break down at the edges"]),
            implementation_minutes=host.implementation_minutes,
            abstraction_level=host.abstraction_level,
            chain_ids=_dedupe([*analog.chain_ids, *host.chain_ids]),
            provenance=(ProvenanceEntry("analogical_extension", (analog.id, host.id)),),
        )

    def relax_constraints(
        self, best: ReasoningSolution, context: ReasoningContext
    ) -> ReasoningSolution | None:
        """Variant of ``best`` that drops constraints with importance below 0.5."""
        relaxable = [c for c in context.constraints if c.importance < 0.5]
        if not relaxable:
            return None
        names = ", ".join(c.name for c in relaxable)
        return ReasoningSolution(
            id=_solution_id(),
            description=f"{best.description} (relaxing: {names})",
            approach=best.approach,
            strategy_id="constraint_relaxation",
            strategy_type=StrategyType.CREATIVE,
            steps=best.steps,
            confidence=clamp01(best.confidence * 0.9),
            creativity_score=clamp01(best.creativity_score + 0.15),
            risk=_raise_risk(best.risk),
            assumptions=best.assumptions,
            pros=_dedupe([*best.pros, "fewer constraints leave room for a simpler solution"]),
            cons=_dedupe([*best.cons, f"ignores: {names}"]),
            implementation_minutes=max(5, int(best.implementation_minutes * 0.8)),
            abstraction_level=best.abstraction_level,
            chain_ids=best.chain_ids,
            provenance=(
                ProvenanceEntry(
                    "constraint_relaxation", (best.id,), f"dropped {len(relaxable)} constraint(s)"
                ),
            ),
        )

    def temporal_sequence(self, ranked: list[ReasoningSolution]) -> ReasoningSolution | None:
        """Chain the two best candidates from different approaches into stages."""
        first = ranked[0]
        second = next((s for s in ranked[1:] if s.approach != first.approach), None)
        if second is None:
            return None
        steps = [f"Stage 1: {s}" for s in first.steps[:3]] + [
            f"Stage 2: {s}" for s in second.steps[:3]
        ]
        return ReasoningSolution(
            id=_solution_id(),
            description=f"First {first.description}; then {second.description}",
            approach=first.approach,
            strategy_id="temporal_sequencing",
            strategy_type=StrategyType.SYSTEMATIC,
            steps=tuple(steps),
            confidence=clamp01((first.confidence + second.confidence) / 2 * 0.95),
            creativity_score=clamp01((first.creativity_score + second.creativity_score) / 2),
            risk=min(first.risk, second.risk, key=RISK_ORDER.index),
            assumptions=_dedupe([*first.assumptions, *second.assumptions]),
            pros=("staged delivery allows checking between stages",),
            cons=("takes longer than either stage alone",),
            implementation_minutes=first.implementation_minutes + second.implementation_minutes,
            abstraction_level=2,
            chain_ids=_dedupe([*first.chain_ids, *second.chain_ids]),
            provenance=(ProvenanceEntry("temporal_sequencing", (first.id, second.id)),),
        )
