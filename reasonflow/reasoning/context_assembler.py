"""Context assembly: pull the memory relevant to an intent into a bounded view."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from datetime import datetime

from reasonflow.config import ContextConfig
from reasonflow.reasoning.memory_store import MemoryCandidate, MemoryStore
from reasonflow.reasoning.reasoning_types import (
    ComplexityTier,
    Constraint,
    ContextFragment,
    ContextSource,
    ReasoningContext,
    SemanticIntent,
    Urgency,
    clamp01,
)
from reasonflow.utils.cancellation import CancellationToken
from reasonflow.utils.scoring import word_overlap

# How much each memory sub-store is trusted before recency and domain match
SOURCE_WEIGHTS: dict[ContextSource, float] = {
    ContextSource.PROJECT_STATE: 1.0,
    ContextSource.WORKING: 0.95,
    ContextSource.USER_MODEL: 0.9,
    ContextSource.CONVERSATION: 0.8,
    ContextSource.DOMAIN_KNOWLEDGE: 0.75,
    ContextSource.EPISODIC: 0.7,
    ContextSource.SEMANTIC: 0.6,
}

NEUTRAL_DOMAINS = frozenset({"general", "project", "user"})


def domain_match(fragment_domain: str, intent_domain: str) -> float:
    """1.0 on exact match, 0.6 when either side is generic, else 0.3."""
    if fragment_domain == intent_domain:
        return 1.0
    if fragment_domain in NEUTRAL_DOMAINS or intent_domain in NEUTRAL_DOMAINS:
        return 0.6
    return 0.3


def derive_constraints(intent: SemanticIntent) -> tuple[Constraint, ...]:
    """Constraints implied by the intent, most important first."""
    constraints = [
        Constraint("preserve_behavior", "Do not break existing behavior", 0.7),
    ]
    if intent.urgency == Urgency.HIGH:
        constraints.append(Constraint("fast_resolution", "Prefer the quickest safe fix", 0.9))
    elif intent.urgency == Urgency.LOW:
        constraints.append(Constraint("thoroughness", "Favor completeness over speed", 0.4))
    if intent.complexity in (ComplexityTier.COMPLEX, ComplexityTier.EXPERT):
        constraints.append(
            Constraint("incremental_delivery", "Deliver in verifiable increments", 0.6)
        )
    if intent.ambiguities:
        constraints.append(
            Constraint("state_assumptions", "Make assumptions about unclear points explicit", 0.45)
        )
    if intent.user_expertise == "beginner":
        constraints.append(Constraint("explain_steps", "Explain each step", 0.5))
    elif intent.user_expertise == "expert":
        constraints.append(Constraint("concise_output", "Skip basic explanations", 0.3))
    if intent.response_style != "balanced":
        constraints.append(
            Constraint("match_style", f"Answer in a {intent.response_style} style", 0.25)
        )
    return tuple(sorted(constraints, key=lambda c: -c.importance))


class ContextAssembler:
    """Scores memory candidates against an intent and keeps the relevant ones.

    ``relevance = source_weight * 0.5 ** (age / half_life) * domain_match
    * (0.5 + 0.5 * max(importance, keyword_overlap))``
    """

    def __init__(
        self,
        memory: MemoryStore,
        config: ContextConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.memory = memory
        self.config = config or ContextConfig()
        self._clock = clock

    def score(self, candidate: MemoryCandidate, intent: SemanticIntent, now: datetime) -> float:
        age_hours = max(0.0, (now - candidate.timestamp).total_seconds() / 3600)
        recency = 0.5 ** (age_hours / self.config.half_life_hours)
        reference = " ".join([intent.primary_goal, *intent.keywords])
        salience = max(candidate.importance, word_overlap(candidate.content, reference))
        return clamp01(
            SOURCE_WEIGHTS[candidate.source]
            * recency
            * domain_match(candidate.domain, intent.domain)
            * (0.5 + 0.5 * salience)
        )

    async def assemble(
        self, intent: SemanticIntent, token: CancellationToken | None = None
    ) -> ReasoningContext:
        """Build the session's context.

        Raises:
            SessionCancelled: If the token fires while reading memory.

        """
        token = token or CancellationToken()
        candidates = await token.guard(self.memory.candidates())
        now = self._clock()

        scored = [(self.score(c, intent, now), c) for c in candidates]
        scored = [pair for pair in scored if pair[0] >= self.config.relevance_threshold]
        scored.sort(key=lambda pair: (-pair[0], -pair[1].timestamp.timestamp(), pair[1].id))

        fragments: list[ContextFragment] = []
        total_bytes = 0
        for relevance, c in scored:
            if len(fragments) >= self.config.max_fragments:
                break
            size = len(c.content.encode())
            if total_bytes + size > self.config.max_bytes:
                continue
            total_bytes += size
            fragments.append(
                ContextFragment(
                    id=c.id,
                    source=c.source,
                    content=c.content,
                    domain=c.domain,
                    relevance=relevance,
                    timestamp=c.timestamp,
                    importance=c.importance,
                )
            )

        by_source: defaultdict[str, list[float]] = defaultdict(list)
        for f in fragments:
            by_source[f.source.value].append(f.relevance)
        weights = {src: sum(vals) / len(vals) for src, vals in by_source.items()}

        return ReasoningContext(
            fragments=tuple(fragments),
            source_weights=weights,
            constraints=derive_constraints(intent),
            user_expertise=intent.user_expertise,
            preferred_style=intent.response_style,
        )
