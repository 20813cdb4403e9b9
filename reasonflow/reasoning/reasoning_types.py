"""Reasoning types and data structures.

All enums, value objects and the session aggregate used across the pipeline.
Stage outputs are frozen dataclasses; the session holds them in id-keyed
arenas rather than pointing at each other.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from reasonflow.utils.errors import InvalidTransition

# =============================================================================
# Enums
# =============================================================================


class ApproachType(str, Enum):
    """Inference approaches the engine can run."""

    DEDUCTIVE = "deductive"
    INDUCTIVE = "inductive"
    ANALOGICAL = "analogical"
    CREATIVE = "creative"


class StrategyType(str, Enum):
    """Families of solution strategies."""

    ANALYTICAL = "analytical"
    CREATIVE = "creative"
    HEURISTIC = "heuristic"
    SYSTEMATIC = "systematic"
    HYBRID = "hybrid"


class LearningOutcomeType(str, Enum):
    """What kind of lesson a session taught."""

    PATTERN = "pattern"
    SKILL = "skill"
    ADAPTATION = "adaptation"
    METACOGNITIVE = "metacognitive"


class ComplexityTier(str, Enum):
    """Request complexity tiers."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXPERT = "expert"


class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PremiseType(str, Enum):
    """Epistemic status of a premise."""

    FACT = "fact"
    ASSUMPTION = "assumption"
    OBSERVATION = "observation"
    RULE = "rule"


class IntentSource(str, Enum):
    """Which analyzer produced an intent."""

    ORACLE = "oracle"
    HEURISTIC = "heuristic"


class ContextSource(str, Enum):
    """Memory sub-store a context fragment came from."""

    PROJECT_STATE = "project_state"
    CONVERSATION = "conversation"
    USER_MODEL = "user_model"
    DOMAIN_KNOWLEDGE = "domain_knowledge"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    WORKING = "working"


class SessionState(str, Enum):
    """Session coordinator states, in pipeline order."""

    CREATED = "created"
    INTENT_ANALYZED = "intent_analyzed"
    CONTEXT_ASSEMBLED = "context_assembled"
    CHAINS_BUILT = "chains_built"
    SOLUTIONS_GENERATED = "solutions_generated"
    SELECTED = "selected"
    SEALED = "sealed"
    FAILED = "failed"


class LearningPhase(str, Enum):
    """Phase of the adaptive learner."""

    EXPLORATION = "exploration"
    EXPLOITATION = "exploitation"
    CONSOLIDATION = "consolidation"


PIPELINE_ORDER: tuple[SessionState, ...] = (
    SessionState.CREATED,
    SessionState.INTENT_ANALYZED,
    SessionState.CONTEXT_ASSEMBLED,
    SessionState.CHAINS_BUILT,
    SessionState.SOLUTIONS_GENERATED,
    SessionState.SELECTED,
    SessionState.SEALED,
)

# Each non-terminal state may advance one step or fail.
VALID_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    state: frozenset({PIPELINE_ORDER[i + 1], SessionState.FAILED})
    for i, state in enumerate(PIPELINE_ORDER[:-1])
}
VALID_TRANSITIONS[SessionState.SEALED] = frozenset()
VALID_TRANSITIONS[SessionState.FAILED] = frozenset()


def clamp01(value: float) -> float:
    """Clamp to [0, 1], mapping NaN to 0."""
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


# =============================================================================
# Intent and context
# =============================================================================


@dataclass(frozen=True)
class SemanticIntent:
    """Structured reading of a user request."""

    primary_goal: str
    domain: str
    complexity: ComplexityTier
    urgency: Urgency = Urgency.NORMAL
    emotional_tone: str = "neutral"
    secondary_goals: tuple[str, ...] = ()
    ambiguities: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    user_expertise: str = "intermediate"
    response_style: str = "balanced"
    source: IntentSource = IntentSource.HEURISTIC
    confidence: float = 0.5

    def normalized(self) -> dict[str, Any]:
        """Canonical form used for fingerprinting."""
        return {
            "goal": " ".join(self.primary_goal.lower().split()),
            "domain": self.domain.lower(),
            "complexity": self.complexity.value,
            "urgency": self.urgency.value,
            "secondary": sorted(" ".join(g.lower().split()) for g in self.secondary_goals),
            "keywords": sorted({k.lower() for k in self.keywords}),
            "ambiguities": sorted(" ".join(a.lower().split()) for a in self.ambiguities),
            "expertise": self.user_expertise,
            "style": self.response_style,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary_goal": self.primary_goal,
            "secondary_goals": list(self.secondary_goals),
            "domain": self.domain,
            "complexity": self.complexity.value,
            "urgency": self.urgency.value,
            "emotional_tone": self.emotional_tone,
            "ambiguities": list(self.ambiguities),
            "user_expertise": self.user_expertise,
            "response_style": self.response_style,
            "source": self.source.value,
            "confidence": round(self.confidence, 3),
        }


@dataclass(frozen=True)
class ContextFragment:
    """One weighted piece of memory pulled into a context."""

    id: str
    source: ContextSource
    content: str
    domain: str
    relevance: float
    timestamp: datetime
    importance: float = 0.5

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode())


@dataclass(frozen=True)
class Constraint:
    """A requirement the solution should respect."""

    name: str
    description: str
    importance: float


@dataclass(frozen=True)
class ReasoningContext:
    """Materialized, weighted view of memory for one session."""

    fragments: tuple[ContextFragment, ...] = ()
    source_weights: Mapping[str, float] = field(default_factory=dict)
    constraints: tuple[Constraint, ...] = ()
    user_expertise: str = "intermediate"
    preferred_style: str = "balanced"

    def by_source(self, source: ContextSource) -> tuple[ContextFragment, ...]:
        return tuple(f for f in self.fragments if f.source == source)

    @property
    def fragment_ids(self) -> tuple[str, ...]:
        return tuple(sorted(f.id for f in self.fragments))

    @property
    def total_bytes(self) -> int:
        return sum(f.size_bytes for f in self.fragments)

    def text(self) -> str:
        return "\n".join(f.content for f in self.fragments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fragments": len(self.fragments),
            "total_bytes": self.total_bytes,
            "sources": sorted({f.source.value for f in self.fragments}),
            "constraints": [c.name for c in self.constraints],
        }


# =============================================================================
# Inference chains
# =============================================================================


@dataclass(frozen=True)
class Premise:
    statement: str
    type: PremiseType
    confidence: float
    provenance: str


@dataclass(frozen=True)
class InferenceStep:
    """One derivation: inputs combined by a named rule into an output."""

    index: int
    inputs: tuple[str, ...]
    rule: str
    output: str
    confidence: float
    valid: bool = True


@dataclass(frozen=True)
class Conclusion:
    statement: str
    confidence: float
    certainty: str
    supporting_steps: tuple[int, ...] = ()


def chain_soundness(
    logical_validity: bool,
    premises: tuple[Premise, ...],
    steps: tuple[InferenceStep, ...],
) -> float:
    """Soundness of a chain.

    Zero for an invalid chain, otherwise the mean of premise confidence and
    step confidence.
    """
    if not logical_validity or not premises or not steps:
        return 0.0
    premise_conf = sum(p.confidence for p in premises) / len(premises)
    step_conf = sum(s.confidence for s in steps) / len(steps)
    return clamp01((premise_conf + step_conf) / 2)


def chain_confidence(logical: float, evidence: float, consistency: float) -> float:
    """``0.4*logical + 0.3*evidence + 0.3*consistency``, clamped to [0, 1]."""
    return clamp01(0.4 * logical + 0.3 * evidence + 0.3 * consistency)


@dataclass(frozen=True)
class InferenceChain:
    """One self-contained line of reasoning under a single approach.

    Use ``InferenceChain.create`` so soundness and confidence are derived
    from the parts rather than supplied.
    """

    id: str
    approach: ApproachType
    goal: str
    premises: tuple[Premise, ...]
    steps: tuple[InferenceStep, ...]
    conclusions: tuple[Conclusion, ...]
    evidence: tuple[str, ...]
    logical_validity: bool
    logical_score: float
    evidence_score: float
    consistency_score: float
    soundness: float
    confidence: float
    creativity: float = 0.0
    abstraction_level: int = 2

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"chain confidence out of range: {self.confidence}")
        if not self.logical_validity and self.soundness != 0.0:
            raise ValueError("invalid chain must have zero soundness")

    @classmethod
    def create(
        cls,
        *,
        id: str,
        approach: ApproachType,
        goal: str,
        premises: tuple[Premise, ...],
        steps: tuple[InferenceStep, ...],
        conclusions: tuple[Conclusion, ...],
        evidence: tuple[str, ...],
        evidence_score: float,
        consistency_score: float,
        creativity: float = 0.0,
        abstraction_level: int = 2,
    ) -> InferenceChain:
        validity = bool(steps) and all(s.valid for s in steps)
        soundness = chain_soundness(validity, premises, steps)
        return cls(
            id=id,
            approach=approach,
            goal=goal,
            premises=premises,
            steps=steps,
            conclusions=conclusions,
            evidence=evidence,
            logical_validity=validity,
            logical_score=soundness,
            evidence_score=clamp01(evidence_score),
            consistency_score=clamp01(consistency_score),
            soundness=soundness,
            confidence=chain_confidence(soundness, evidence_score, consistency_score),
            creativity=clamp01(creativity),
            abstraction_level=abstraction_level,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "approach": self.approach.value,
            "premises": len(self.premises),
            "steps": len(self.steps),
            "conclusions": [c.statement for c in self.conclusions],
            "logical_validity": self.logical_validity,
            "soundness": round(self.soundness, 3),
            "confidence": round(self.confidence, 3),
        }


# =============================================================================
# Solutions
# =============================================================================


@dataclass(frozen=True)
class ProvenanceEntry:
    """How a solution came to be."""

    operation: str
    sources: tuple[str, ...]
    note: str = ""


@dataclass(frozen=True)
class ReasoningSolution:
    """A concrete, scored candidate answer. Immutable once built."""

    id: str
    description: str
    approach: ApproachType
    strategy_id: str
    strategy_type: StrategyType
    steps: tuple[str, ...]
    confidence: float
    creativity_score: float
    risk: RiskTier = RiskTier.MEDIUM
    assumptions: tuple[str, ...] = ()
    pros: tuple[str, ...] = ()
    cons: tuple[str, ...] = ()
    implementation_minutes: int = 30
    abstraction_level: int = 2
    chain_ids: tuple[str, ...] = ()
    provenance: tuple[ProvenanceEntry, ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"solution confidence out of range: {self.confidence}")
        if not 0.0 <= self.creativity_score <= 1.0:
            raise ValueError(f"creativity out of range: {self.creativity_score}")

    @property
    def synthesized(self) -> bool:
        return any(p.operation != "chain" for p in self.provenance)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "approach": self.approach.value,
            "strategy": self.strategy_id,
            "steps": list(self.steps),
            "assumptions": list(self.assumptions),
            "pros": list(self.pros),
            "cons": list(self.cons),
            "risk": self.risk.value,
            "confidence": round(self.confidence, 3),
            "creativity": round(self.creativity_score, 3),
            "implementation_minutes": self.implementation_minutes,
            "provenance": [p.operation for p in self.provenance],
        }


# =============================================================================
# Quality, learning and outcomes
# =============================================================================


@dataclass(frozen=True)
class QualityReport:
    """Post-hoc quality assessment of a finished session."""

    logical_coherence: float
    creativity: float
    completeness: float
    efficiency: float
    accuracy: float
    originality: float
    overall: float
    improvement_areas: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "logical_coherence": round(self.logical_coherence, 3),
            "creativity": round(self.creativity, 3),
            "completeness": round(self.completeness, 3),
            "efficiency": round(self.efficiency, 3),
            "accuracy": round(self.accuracy, 3),
            "originality": round(self.originality, 3),
            "overall": round(self.overall, 3),
            "improvement_areas": list(self.improvement_areas),
        }


@dataclass(frozen=True)
class LearningOutcome:
    type: LearningOutcomeType
    description: str
    confidence: float
    generalizability: float
    transfer_potential: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "confidence": round(self.confidence, 3),
            "generalizability": round(self.generalizability, 3),
            "transfer_potential": round(self.transfer_potential, 3),
        }


@dataclass(frozen=True)
class Outcome:
    """Caller-reported result of acting on a session's answer."""

    success: bool
    feedback: str | None = None
    rating: float | None = None

    def __post_init__(self) -> None:
        if self.rating is not None and not 0.0 <= self.rating <= 1.0:
            raise ValueError(f"rating must be in [0, 1], got {self.rating}")

    @property
    def reward(self) -> float:
        """Scalar reward in [0, 1] for statistics updates."""
        if self.rating is not None:
            return self.rating
        return 1.0 if self.success else 0.0


# =============================================================================
# Session aggregate
# =============================================================================


@dataclass
class ReasoningSession:
    """Complete record of processing one request.

    Chains and solutions live in id-keyed arenas. Once sealed, attribute
    assignment raises and the arenas become read-only views.
    """

    id: str
    input_text: str
    state: SessionState = SessionState.CREATED
    last_completed_stage: SessionState = SessionState.CREATED
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    intent: SemanticIntent | None = None
    context: ReasoningContext | None = None
    chains: Mapping[str, InferenceChain] = field(default_factory=dict)
    solutions: Mapping[str, ReasoningSolution] = field(default_factory=dict)
    scores: Mapping[str, float] = field(default_factory=dict)
    selected_solution_id: str | None = None
    confidence: float = 0.0
    quality: QualityReport | None = None
    insights: tuple[LearningOutcome, ...] = ()
    approach_failures: Mapping[str, str] = field(default_factory=dict)
    cache_hit: bool = False
    failure: str | None = None
    _sealed: bool = field(default=False, init=False, repr=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_sealed", False):
            raise AttributeError(f"session {self.id} is sealed; cannot set {name}")
        super().__setattr__(name, value)

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def terminal(self) -> bool:
        return self.state in (SessionState.SEALED, SessionState.FAILED)

    @property
    def selected_solution(self) -> ReasoningSolution | None:
        if self.selected_solution_id is None:
            return None
        return self.solutions.get(self.selected_solution_id)

    def advance(self, target: SessionState) -> None:
        """Move to ``target``.

        Raises:
            InvalidTransition: If ``target`` is not the next pipeline stage
                (or FAILED) from the current state.

        """
        if target not in VALID_TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, target)
        self.state = target
        self.updated_at = datetime.now()
        if target != SessionState.FAILED:
            self.last_completed_stage = target

    def fail(self, reason: str) -> None:
        """Move to FAILED and freeze the session."""
        if self.state == SessionState.FAILED:
            return
        self.advance(SessionState.FAILED)
        self.failure = reason
        self.completed_at = datetime.now()
        self._freeze()

    def seal(self) -> None:
        """Move to SEALED and freeze the session."""
        self.advance(SessionState.SEALED)
        self.completed_at = datetime.now()
        self._freeze()

    def _freeze(self) -> None:
        self.chains = MappingProxyType(dict(self.chains))
        self.solutions = MappingProxyType(dict(self.solutions))
        self.scores = MappingProxyType(dict(self.scores))
        self.approach_failures = MappingProxyType(dict(self.approach_failures))
        self._sealed = True

    @property
    def duration_ms(self) -> float:
        end = self.completed_at or datetime.now()
        return (end - self.created_at).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        selected = self.selected_solution
        return {
            "session_id": self.id,
            "state": self.state.value,
            "last_completed_stage": self.last_completed_stage.value,
            "intent": self.intent.to_dict() if self.intent else None,
            "context": self.context.to_dict() if self.context else None,
            "chains": [c.to_dict() for c in self.chains.values()],
            "solutions": len(self.solutions),
            "selected_solution": selected.to_dict() if selected else None,
            "confidence": round(self.confidence, 3),
            "quality": self.quality.to_dict() if self.quality else None,
            "insights": [i.to_dict() for i in self.insights],
            "approach_failures": dict(self.approach_failures),
            "cache_hit": self.cache_hit,
            "failure": self.failure,
            "duration_ms": round(self.duration_ms, 1),
        }
