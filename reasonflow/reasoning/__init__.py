"""ReasonFlow reasoning pipeline - stages, shared state and the coordinator."""

from .reasoning_types import (
    ApproachType,
    ComplexityTier,
    InferenceChain,
    LearningOutcome,
    LearningOutcomeType,
    Outcome,
    ReasoningContext,
    ReasoningSession,
    ReasoningSolution,
    SemanticIntent,
    SessionState,
    StrategyType,
)

__all__ = [
    "ApproachType",
    "ComplexityTier",
    "InferenceChain",
    "LearningOutcome",
    "LearningOutcomeType",
    "Outcome",
    "ReasoningContext",
    "ReasoningSession",
    "ReasoningSolution",
    "SemanticIntent",
    "SessionState",
    "StrategyType",
]
