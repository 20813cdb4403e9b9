"""Data-driven solution strategies.

A strategy is a record, not code: an applicability condition, ordered steps,
and running effectiveness/success statistics. The synthesizer asks the
registry for applicable strategies; the learning loop feeds outcomes back.
Adding a strategy means registering a record; selection never changes.

Statistics decay toward each strategy's defaults after a period of disuse,
so stale preferences fade when the user's work changes.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from reasonflow.models.persistent_store import PersistentStore
from reasonflow.reasoning.reasoning_types import ApproachType, ComplexityTier, StrategyType

_NAMESPACE = "strategies"

COMPLEXITY_ORDER: tuple[ComplexityTier, ...] = (
    ComplexityTier.SIMPLE,
    ComplexityTier.MODERATE,
    ComplexityTier.COMPLEX,
    ComplexityTier.EXPERT,
)

DEFAULT_DECAY_RATE = 0.99  # Per-day factor (1.0 = no decay)
DEFAULT_DECAY_THRESHOLD_DAYS = 7


@dataclass
class DecayConfig:
    """Time-based decay of learned statistics toward defaults.

    Attributes:
        decay_rate: Factor applied per idle day beyond the threshold.
        threshold_days: Days of disuse before decay starts.
        enabled: Whether decay is active.

    Example:
        With decay_rate=0.99 and threshold_days=7, an effectiveness of 0.95
        (default 0.8) idle for 30 days becomes 0.8 + 0.15 * 0.99**23 = 0.919.

    """

    decay_rate: float = DEFAULT_DECAY_RATE
    threshold_days: int = DEFAULT_DECAY_THRESHOLD_DAYS
    enabled: bool = True

    def factor(self, days_idle: float) -> float:
        """Fraction of the learned offset that survives ``days_idle``."""
        if not self.enabled or days_idle <= self.threshold_days:
            return 1.0
        return float(self.decay_rate ** (days_idle - self.threshold_days))


class ApplicabilityCondition(BaseModel):
    """When a strategy may be used. Empty collections mean "any"."""

    approaches: set[ApproachType] = Field(default_factory=set)
    domains: set[str] = Field(default_factory=set)
    min_complexity: ComplexityTier = ComplexityTier.SIMPLE
    max_complexity: ComplexityTier = ComplexityTier.EXPERT

    def matches(self, approach: ApproachType, complexity: ComplexityTier, domain: str) -> bool:
        if self.approaches and approach not in self.approaches:
            return False
        if self.domains and domain not in self.domains:
            return False
        rank = COMPLEXITY_ORDER.index(complexity)
        return (
            COMPLEXITY_ORDER.index(self.min_complexity)
            <= rank
            <= COMPLEXITY_ORDER.index(self.max_complexity)
        )


class StrategyRecord(BaseModel):
    """One registered strategy and its running statistics."""

    id: str = Field(min_length=1, max_length=80)
    type: StrategyType
    description: str
    steps: list[str] = Field(min_length=1)
    applicability: ApplicabilityCondition = Field(default_factory=ApplicabilityCondition)
    effectiveness: float = Field(ge=0.0, le=1.0)
    success_rate: float = Field(ge=0.0, le=1.0)
    default_effectiveness: float = Field(ge=0.0, le=1.0)
    default_success_rate: float = Field(ge=0.0, le=1.0)
    usage_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    builtin: bool = False
    last_used: datetime | None = None
    last_updated: datetime = Field(default_factory=datetime.now)

    @property
    def score(self) -> float:
        """Selection score: weighted effectiveness and success rate."""
        return 0.6 * self.effectiveness + 0.4 * self.success_rate


def _strategy(
    id: str,
    type: StrategyType,
    description: str,
    steps: list[str],
    effectiveness: float,
    success_rate: float,
    **applicability: Any,
) -> StrategyRecord:
    return StrategyRecord(
        id=id,
        type=type,
        description=description,
        steps=steps,
        applicability=ApplicabilityCondition(**applicability),
        effectiveness=effectiveness,
        success_rate=success_rate,
        default_effectiveness=effectiveness,
        default_success_rate=success_rate,
        builtin=True,
    )


def default_strategies() -> list[StrategyRecord]:
    """The built-in strategy set."""
    return [
        _strategy(
            "analytical_decomposition",
            StrategyType.ANALYTICAL,
            "Break the problem into parts and solve them in dependency order",
            [
                "Break the problem into independent parts",
                "Check each part against the constraints",
                "Solve the parts in dependency order",
                "Integrate the parts and verify the whole",
            ],
            0.8,
            0.75,
            approaches={ApproachType.DEDUCTIVE, ApproachType.INDUCTIVE},
        ),
        _strategy(
            "systematic_enumeration",
            StrategyType.SYSTEMATIC,
            "Enumerate candidate causes or options and eliminate them one by one",
            [
                "List every plausible candidate",
                "Order candidates by likelihood and cost to check",
                "Eliminate candidates with targeted checks",
                "Apply the surviving candidate",
            ],
            0.85,
            0.8,
            approaches={ApproachType.DEDUCTIVE, ApproachType.INDUCTIVE},
            max_complexity=ComplexityTier.COMPLEX,
        ),
        _strategy(
            "creative_brainstorming",
            StrategyType.CREATIVE,
            "Generate unconventional options and keep the feasible ones",
            [
                "Generate options without judging them",
                "Combine promising options",
                "Filter for feasibility",
                "Prototype the best option",
            ],
            0.7,
            0.6,
            approaches={ApproachType.CREATIVE, ApproachType.ANALOGICAL},
        ),
        _strategy(
            "analogical_reasoning",
            StrategyType.HEURISTIC,
            "Reuse the solution shape of a similar solved problem",
            [
                "Identify the similar solved problem",
                "Map its solution onto this problem",
                "Adapt where the problems differ",
            ],
            0.75,
            0.7,
            approaches={ApproachType.ANALOGICAL, ApproachType.INDUCTIVE},
        ),
        _strategy(
            "quick_fix",
            StrategyType.HEURISTIC,
            "Apply the most direct change that satisfies the goal",
            [
                "Locate the smallest change that meets the goal",
                "Apply it",
                "Confirm nothing else regressed",
            ],
            0.65,
            0.7,
            max_complexity=ComplexityTier.MODERATE,
        ),
        _strategy(
            "hybrid_synthesis",
            StrategyType.HYBRID,
            "Combine a structured plan with exploratory alternatives",
            [
                "Draft a structured baseline plan",
                "Explore one alternative per risky step",
                "Merge the alternatives that beat the baseline",
                "Verify the merged plan end to end",
            ],
            0.72,
            0.65,
            min_complexity=ComplexityTier.COMPLEX,
        ),
    ]


class StrategyRegistry:
    """Registry of strategy records with selection and statistics updates.

    Mutating methods contain no awaits, so they are atomic with respect to
    other coroutines on the event loop.

    Usage:
        registry = StrategyRegistry()
        picks = registry.select(ApproachType.DEDUCTIVE, ComplexityTier.MODERATE, "backend")
        registry.record_outcome(picks[0].id, success=True, reward=0.9, learning_rate=0.1)

    """

    def __init__(
        self,
        strategies: Iterable[StrategyRecord] | None = None,
        decay_config: DecayConfig | None = None,
    ) -> None:
        self.decay_config = decay_config or DecayConfig()
        self._strategies: dict[str, StrategyRecord] = {}
        for record in default_strategies() if strategies is None else strategies:
            self.register(record)

    def register(self, record: StrategyRecord) -> None:
        """Add or replace a strategy."""
        self._strategies[record.id] = record

    def get(self, strategy_id: str) -> StrategyRecord | None:
        return self._strategies.get(strategy_id)

    def all(self) -> list[StrategyRecord]:
        return sorted(self._strategies.values(), key=lambda s: s.id)

    def __len__(self) -> int:
        return len(self._strategies)

    def applicable(
        self, approach: ApproachType, complexity: ComplexityTier, domain: str
    ) -> list[StrategyRecord]:
        return [
            s
            for s in self._strategies.values()
            if s.applicability.matches(approach, complexity, domain)
        ]

    def select(
        self,
        approach: ApproachType,
        complexity: ComplexityTier,
        domain: str,
        limit: int = 1,
        explore: bool = False,
    ) -> list[StrategyRecord]:
        """Pick strategies for one chain.

        Highest-scoring first, preferring one strategy per type before
        repeating a type. With ``explore``, the least-used applicable strategy
        is appended if it was not already picked.

        Returns:
            Between 0 and ``limit`` (+1 when exploring) strategies.

        """
        ranked = sorted(
            self.applicable(approach, complexity, domain), key=lambda s: (-s.score, s.id)
        )
        picked: list[StrategyRecord] = []
        seen_types: set[StrategyType] = set()
        for record in ranked:
            if len(picked) >= limit:
                break
            if record.type not in seen_types:
                picked.append(record)
                seen_types.add(record.type)
        for record in ranked:
            if len(picked) >= limit:
                break
            if record not in picked:
                picked.append(record)

        if explore and ranked:
            least_used = min(ranked, key=lambda s: (s.usage_count, s.id))
            if least_used not in picked:
                picked.append(least_used)
        return picked

    def record_usage(self, strategy_id: str, when: datetime | None = None) -> None:
        record = self._strategies.get(strategy_id)
        if record is None:
            return
        record.usage_count += 1
        record.last_used = when or datetime.now()

    def record_outcome(
        self,
        strategy_id: str,
        *,
        success: bool,
        reward: float,
        learning_rate: float,
        when: datetime | None = None,
    ) -> StrategyRecord | None:
        """Fold one outcome into a strategy's statistics (EMA).

        Returns:
            The updated record, or None if the strategy is unknown.

        """
        record = self._strategies.get(strategy_id)
        if record is None:
            logger.debug(f"Outcome for unknown strategy {strategy_id} ignored")
            return None
        lr = max(0.0, min(1.0, learning_rate))
        record.success_rate = (1 - lr) * record.success_rate + lr * (1.0 if success else 0.0)
        record.effectiveness = (1 - lr) * record.effectiveness + lr * max(0.0, min(1.0, reward))
        if success:
            record.success_count += 1
        record.last_updated = when or datetime.now()
        return record

    def apply_decay(self, now: datetime | None = None) -> int:
        """Decay idle strategies toward their defaults.

        Returns:
            Number of strategies whose statistics moved.

        """
        now = now or datetime.now()
        moved = 0
        for record in self._strategies.values():
            days = (now - record.last_updated).total_seconds() / 86400
            factor = self.decay_config.factor(days)
            if factor >= 1.0:
                continue
            record.effectiveness = record.default_effectiveness + factor * (
                record.effectiveness - record.default_effectiveness
            )
            record.success_rate = record.default_success_rate + factor * (
                record.success_rate - record.default_success_rate
            )
            moved += 1
        return moved

    def prune(self, min_effectiveness: float, min_usage: int = 5) -> list[str]:
        """Remove learned (non-builtin) strategies that keep underperforming."""
        removed = [
            s.id
            for s in self._strategies.values()
            if not s.builtin and s.usage_count >= min_usage and s.effectiveness < min_effectiveness
        ]
        for strategy_id in removed:
            del self._strategies[strategy_id]
        if removed:
            logger.info(f"Pruned ineffective strategies: {removed}")
        return removed

    def stats(self) -> dict[str, Any]:
        return {
            s.id: {
                "type": s.type.value,
                "effectiveness": round(s.effectiveness, 3),
                "success_rate": round(s.success_rate, 3),
                "usage_count": s.usage_count,
            }
            for s in self.all()
        }

    async def load(self, store: PersistentStore) -> int:
        """Overlay persisted records onto the registry."""
        loaded = 0
        for key, data in (await store.load_all(_NAMESPACE)).items():
            try:
                self.register(StrategyRecord.model_validate(data))
                loaded += 1
            except ValidationError as e:
                logger.warning(f"Skipping invalid persisted strategy {key}: {e}")
        return loaded

    async def save(self, store: PersistentStore) -> int:
        for record in self.all():
            await store.put(_NAMESPACE, record.id, record.model_dump(mode="json"))
        return len(self._strategies)
