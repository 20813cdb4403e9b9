"""Candidate evaluation and selection.

Every candidate is scored on four criteria in [0, 1]:

- feasibility: risk tier discounted by the number of assumptions
- effectiveness: solution confidence plus a bonus for a fully specified plan
- efficiency: ``1 / (1 + minutes / 60)``
- innovation: the candidate's creativity score

The weighted sum of the criteria is the score. The winner's confidence is
``score_top * (0.5 + 0.5 * min(1, spread / spread_saturation))`` so a narrow
lead over the runner-up signals ambiguity.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from loguru import logger

from reasonflow.config import EvaluationConfig, RubricWeights
from reasonflow.reasoning.reasoning_types import (
    InferenceChain,
    QualityReport,
    ReasoningSolution,
    RiskTier,
    SemanticIntent,
    clamp01,
)
from reasonflow.utils.errors import NoViableSolution

CRITERIA = ("feasibility", "effectiveness", "efficiency", "innovation")

RISK_FEASIBILITY: dict[RiskTier, float] = {
    RiskTier.LOW: 0.9,
    RiskTier.MEDIUM: 0.65,
    RiskTier.HIGH: 0.35,
}


def criteria_vector(solution: ReasoningSolution) -> np.ndarray:
    """Per-criterion scores in rubric order."""
    feasibility = RISK_FEASIBILITY[solution.risk] * (
        1.0 - 0.05 * min(len(solution.assumptions), 6)
    )
    effectiveness = 0.7 * solution.confidence + 0.3 * min(1.0, len(solution.steps) / 5)
    efficiency = 1.0 / (1.0 + solution.implementation_minutes / 60)
    innovation = solution.creativity_score
    return np.clip(np.array([feasibility, effectiveness, efficiency, innovation]), 0.0, 1.0)


def aggregate_confidence(
    top_score: float, runner_up: float | None, spread_saturation: float = 0.2
) -> float:
    """Session confidence from the winner's score and its lead.

    A single candidate counts as full spread.
    """
    if runner_up is None:
        spread_factor = 1.0
    else:
        spread = max(0.0, top_score - runner_up)
        spread_factor = min(1.0, spread / spread_saturation) if spread_saturation > 0 else 1.0
    return clamp01(top_score * (0.5 + 0.5 * spread_factor))


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of ranking a candidate set."""

    selected: ReasoningSolution
    scores: dict[str, float]
    criteria: dict[str, dict[str, float]]
    ranking: tuple[str, ...]
    confidence: float
    spread: float = field(default=1.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected": self.selected.id,
            "ranking": list(self.ranking),
            "scores": {k: round(v, 4) for k, v in self.scores.items()},
            "confidence": round(self.confidence, 4),
            "spread": round(self.spread, 4),
        }


class Evaluator:
    """Scores, ranks and selects candidate solutions.

    Args:
        weights: Rubric weights; normalized to sum to 1.
        spread_saturation: Lead over the runner-up at which confidence is
            no longer discounted.

    """

    def __init__(
        self, weights: RubricWeights | None = None, spread_saturation: float = 0.2
    ) -> None:
        self.weights = weights or RubricWeights()
        self.spread_saturation = spread_saturation
        self._weight_vector = np.array(self.weights.normalized())

    @classmethod
    def from_config(cls, config: EvaluationConfig) -> Evaluator:
        return cls(config.weights(), config.spread_saturation)

    def score(self, solution: ReasoningSolution) -> float:
        return clamp01(float(np.dot(self._weight_vector, criteria_vector(solution))))

    def select(self, solutions: Sequence[ReasoningSolution]) -> SelectionResult:
        """Rank ``solutions`` and pick the winner.

        Ties are broken by higher confidence, then shorter implementation
        time, then solution id.

        Raises:
            NoViableSolution: If ``solutions`` is empty.

        """
        if not solutions:
            raise NoViableSolution("No candidate solution met the minimum confidence")

        vectors = {s.id: criteria_vector(s) for s in solutions}
        scores = {
            s.id: clamp01(float(np.dot(self._weight_vector, vectors[s.id]))) for s in solutions
        }
        ranked = sorted(
            solutions,
            key=lambda s: (-scores[s.id], -s.confidence, s.implementation_minutes, s.id),
        )
        top = ranked[0]
        runner_up = scores[ranked[1].id] if len(ranked) > 1 else None
        confidence = aggregate_confidence(scores[top.id], runner_up, self.spread_saturation)
        spread = 1.0 if runner_up is None else scores[top.id] - runner_up

        logger.debug(
            f"Selected {top.id} ({top.strategy_id}) score={scores[top.id]:.3f} "
            f"spread={spread:.3f} confidence={confidence:.3f} of {len(ranked)} candidates"
        )
        return SelectionResult(
            selected=top,
            scores=scores,
            criteria={
                sid: dict(zip(CRITERIA, (float(v) for v in vec), strict=True))
                for sid, vec in vectors.items()
            },
            ranking=tuple(s.id for s in ranked),
            confidence=confidence,
            spread=spread,
        )


def assess_quality(
    intent: SemanticIntent,
    chains: Sequence[InferenceChain],
    solutions: Sequence[ReasoningSolution],
    selection: SelectionResult,
    elapsed_ms: float,
) -> QualityReport:
    """Post-hoc quality report for a finished session.

    Dimensions below 0.5 are listed as improvement areas.
    """
    selected = selection.selected
    dimensions = {
        "logical_coherence": (
            sum(c.soundness for c in chains) / len(chains) if chains else 0.0
        ),
        "creativity": selected.creativity_score,
        "completeness": min(1.0, len(selected.steps) / 5) * (1.0 - 0.1 * len(intent.ambiguities)),
        "efficiency": 1.0 / (1.0 + elapsed_ms / 5000),
        "accuracy": selection.confidence,
        "originality": (
            sum(s.creativity_score for s in solutions) / len(solutions) if solutions else 0.0
        ),
    }
    dimensions = {name: clamp01(value) for name, value in dimensions.items()}
    return QualityReport(
        **dimensions,
        overall=sum(dimensions.values()) / len(dimensions),
        improvement_areas=tuple(name for name, value in dimensions.items() if value < 0.5),
    )
