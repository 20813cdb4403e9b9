"""pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from datetime import datetime, timedelta

import pytest

from reasonflow.config import (
    CacheConfig,
    Config,
    ContextConfig,
    LearningConfig,
    MemoryConfig,
    SynthesisConfig,
    reload_config,
)
from reasonflow.reasoning.context_assembler import ContextAssembler
from reasonflow.reasoning.coordinator import SessionCoordinator
from reasonflow.reasoning.evaluation import Evaluator
from reasonflow.reasoning.inference import InferenceEngine
from reasonflow.reasoning.intent import IntentAnalyzer
from reasonflow.reasoning.learning import LearningLoop
from reasonflow.reasoning.memory_store import MemoryStore
from reasonflow.reasoning.reasoning_types import (
    ComplexityTier,
    SemanticIntent,
)
from reasonflow.reasoning.result_cache import ResultCache
from reasonflow.reasoning.strategies import StrategyRegistry
from reasonflow.reasoning.synthesis import SolutionSynthesizer
from reasonflow.utils.complexity import clear_complexity_cache
from reasonflow.utils.task_queue import BackgroundTaskQueue

FIXED_NOW = datetime(2025, 3, 14, 12, 0, 0)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests independent of the developer's environment."""
    for key in ("OPENAI_API_KEY", "REASONFLOW_PERSISTENCE_ENABLED", "REASONFLOW_DB_PATH"):
        monkeypatch.delenv(key, raising=False)
    reload_config()
    clear_complexity_cache()


# =============================================================================
# Oracles
# =============================================================================


class FakeOracle:
    """Oracle returning a canned reply and recording prompts."""

    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.prompts: list[str] = []

    async def analyze(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.reply


class SlowOracle:
    """Oracle that never answers in time."""

    def __init__(self, delay: float = 10.0) -> None:
        self.delay = delay
        self.calls = 0

    async def analyze(self, prompt: str) -> str:
        self.calls += 1
        await asyncio.sleep(self.delay)
        return "{}"


class BrokenOracle:
    """Oracle whose transport always fails."""

    async def analyze(self, prompt: str) -> str:
        raise ConnectionError("oracle endpoint unreachable")


@pytest.fixture
def fake_oracle_reply() -> str:
    return (
        '{"primary_goal": "fix the failing login test", "secondary_goals": ["keep CI green"], '
        '"domain": "testing", "complexity": "moderate", "urgency": "high", '
        '"emotional_tone": "frustrated", "ambiguities": [], '
        '"keywords": ["login", "test", "failing"], "confidence": 0.9}'
    )


# =============================================================================
# Clocks
# =============================================================================


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Manually advanced monotonic clock in seconds."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def memory(clock: FakeClock) -> MemoryStore:
    return MemoryStore(MemoryConfig(), clock=clock)


@pytest.fixture
def make_intent() -> Callable[..., SemanticIntent]:
    def _make(
        goal: str = "debug: fix the failing login test",
        domain: str = "testing",
        complexity: ComplexityTier = ComplexityTier.MODERATE,
        **kwargs: object,
    ) -> SemanticIntent:
        kwargs.setdefault("keywords", ("login", "failing", "test"))
        return SemanticIntent(primary_goal=goal, domain=domain, complexity=complexity, **kwargs)

    return _make


def build_test_coordinator(
    *,
    oracle: object | None = None,
    engine: InferenceEngine | None = None,
    oracle_timeout: float = 1.0,
    config: Config | None = None,
    clock: Callable[[], datetime] | None = None,
) -> SessionCoordinator:
    """Coordinator wired with in-memory parts and deterministic exploration."""
    config = config or Config(
        memory=MemoryConfig(),
        context=ContextConfig(),
        cache=CacheConfig(),
        synthesis=SynthesisConfig(),
        learning=LearningConfig(exploration_rate=0.0),
    )
    memory = MemoryStore(config.memory, clock=clock or datetime.now)
    registry = StrategyRegistry()
    queue = BackgroundTaskQueue(name="learning-test")
    return SessionCoordinator(
        memory=memory,
        analyzer=IntentAnalyzer(oracle, timeout=oracle_timeout),  # type: ignore[arg-type]
        assembler=ContextAssembler(memory, config.context),
        engine=engine or InferenceEngine(approach_timeout=2.0),
        synthesizer=SolutionSynthesizer(registry, config.synthesis),
        evaluator=Evaluator.from_config(config.evaluation),
        cache=ResultCache(config.cache),
        learning=LearningLoop(
            memory, registry, queue, config.learning, rng=random.Random(7)
        ),
        queue=queue,
        config=config,
    )


@pytest.fixture
def coordinator_factory() -> Callable[..., SessionCoordinator]:
    return build_test_coordinator
