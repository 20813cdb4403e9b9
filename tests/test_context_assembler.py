"""Tests for reasonflow/reasoning/context_assembler.py."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from reasonflow.config import ContextConfig
from reasonflow.reasoning.context_assembler import (
    SOURCE_WEIGHTS,
    ContextAssembler,
    derive_constraints,
    domain_match,
)
from reasonflow.reasoning.memory_store import MemoryCandidate, MemoryStore
from reasonflow.reasoning.reasoning_types import (
    ComplexityTier,
    ContextSource,
    SemanticIntent,
    Urgency,
)
from reasonflow.utils.cancellation import CancellationToken
from reasonflow.utils.errors import SessionCancelled
from tests.conftest import FakeClock


class TestDomainMatch:
    @pytest.mark.parametrize(
        ("fragment", "intent", "expected"),
        [
            ("testing", "testing", 1.0),
            ("general", "testing", 0.6),
            ("testing", "general", 0.6),
            ("project", "database", 0.6),
            ("frontend", "database", 0.3),
        ],
    )
    def test_values(self, fragment: str, intent: str, expected: float) -> None:
        assert domain_match(fragment, intent) == expected


class TestDeriveConstraints:
    """Constraints implied by an intent."""

    def test_always_preserves_behavior(self, make_intent: Callable[..., SemanticIntent]) -> None:
        names = [c.name for c in derive_constraints(make_intent())]
        assert names == ["preserve_behavior"]

    def test_sorted_by_importance(self, make_intent: Callable[..., SemanticIntent]) -> None:
        intent = make_intent(
            urgency=Urgency.HIGH,
            complexity=ComplexityTier.EXPERT,
            ambiguities=("unclear target",),
            user_expertise="beginner",
            response_style="concise",
        )
        constraints = derive_constraints(intent)
        names = [c.name for c in constraints]

        assert names[0] == "fast_resolution"
        assert set(names) == {
            "fast_resolution",
            "preserve_behavior",
            "incremental_delivery",
            "explain_steps",
            "state_assumptions",
            "match_style",
        }
        importances = [c.importance for c in constraints]
        assert importances == sorted(importances, reverse=True)

    def test_low_urgency(self, make_intent: Callable[..., SemanticIntent]) -> None:
        names = {c.name for c in derive_constraints(make_intent(urgency=Urgency.LOW))}
        assert "thoroughness" in names


class TestScore:
    """Relevance formula."""

    def test_fresh_matching_candidate(
        self,
        memory: MemoryStore,
        clock: FakeClock,
        make_intent: Callable[..., SemanticIntent],
    ) -> None:
        assembler = ContextAssembler(memory, ContextConfig(), clock=clock)
        candidate = MemoryCandidate(
            "k1", ContextSource.DOMAIN_KNOWLEDGE, "unrelated words", "testing", clock(), 0.6
        )
        expected = SOURCE_WEIGHTS[ContextSource.DOMAIN_KNOWLEDGE] * 1.0 * 1.0 * 0.8
        assert assembler.score(candidate, make_intent(), clock()) == pytest.approx(expected)

    def test_halves_after_one_half_life(
        self,
        memory: MemoryStore,
        clock: FakeClock,
        make_intent: Callable[..., SemanticIntent],
    ) -> None:
        config = ContextConfig(half_life_hours=24.0)
        assembler = ContextAssembler(memory, config, clock=clock)
        candidate = MemoryCandidate(
            "k1", ContextSource.SEMANTIC, "unrelated", "testing", clock(), 0.6
        )
        fresh = assembler.score(candidate, make_intent(), clock())
        clock.advance(hours=24)
        assert assembler.score(candidate, make_intent(), clock()) == pytest.approx(fresh / 2)

    def test_keyword_overlap_lifts_unimportant_items(
        self,
        memory: MemoryStore,
        clock: FakeClock,
        make_intent: Callable[..., SemanticIntent],
    ) -> None:
        assembler = ContextAssembler(memory, ContextConfig(), clock=clock)
        intent = make_intent()
        on_topic = MemoryCandidate(
            "a", ContextSource.EPISODIC, "debug fix failing login test", "testing", clock(), 0.1
        )
        off_topic = MemoryCandidate(
            "b", ContextSource.EPISODIC, "tune the css grid", "testing", clock(), 0.1
        )
        assert assembler.score(on_topic, intent, clock()) > assembler.score(
            off_topic, intent, clock()
        )


class TestAssemble:
    """End-to-end assembly from memory."""

    @pytest.mark.asyncio
    async def test_empty_memory(
        self,
        memory: MemoryStore,
        clock: FakeClock,
        make_intent: Callable[..., SemanticIntent],
    ) -> None:
        context = await ContextAssembler(memory, clock=clock).assemble(make_intent())
        assert context.fragments == ()
        assert context.source_weights == {}
        assert [c.name for c in context.constraints] == ["preserve_behavior"]

    @pytest.mark.asyncio
    async def test_filters_irrelevant_and_stale(
        self,
        memory: MemoryStore,
        clock: FakeClock,
        make_intent: Callable[..., SemanticIntent],
    ) -> None:
        stale = await memory.add_knowledge("old css trick", domain="frontend", importance=0.1)
        clock.advance(days=20)
        fresh = await memory.add_knowledge(
            "login test fixture resets the session", domain="testing"
        )

        context = await ContextAssembler(memory, clock=clock).assemble(make_intent())

        ids = {f.id for f in context.fragments}
        assert fresh in ids
        assert stale not in ids
        assert set(context.source_weights) == {"domain_knowledge"}

    @pytest.mark.asyncio
    async def test_ordered_by_relevance(
        self,
        memory: MemoryStore,
        clock: FakeClock,
        make_intent: Callable[..., SemanticIntent],
    ) -> None:
        await memory.add_knowledge("general tip", domain="general", importance=0.5)
        await memory.add_knowledge("login fixture detail", domain="testing", importance=0.9)
        await memory.update_project_state({"framework": "pytest"})

        context = await ContextAssembler(memory, clock=clock).assemble(make_intent())

        relevances = [f.relevance for f in context.fragments]
        assert relevances == sorted(relevances, reverse=True)
        assert context.fragments[0].content == "login fixture detail"
        assert ContextSource.PROJECT_STATE in {f.source for f in context.fragments}

    @pytest.mark.asyncio
    async def test_respects_fragment_and_byte_bounds(
        self,
        memory: MemoryStore,
        clock: FakeClock,
        make_intent: Callable[..., SemanticIntent],
    ) -> None:
        for i in range(10):
            await memory.add_knowledge(f"testing fact {i} " + "x" * 40, domain="testing")

        few = await ContextAssembler(
            memory, ContextConfig(max_fragments=3), clock=clock
        ).assemble(make_intent())
        assert len(few.fragments) == 3

        small = await ContextAssembler(
            memory, ContextConfig(max_bytes=120), clock=clock
        ).assemble(make_intent())
        assert small.total_bytes <= 120
        assert len(small.fragments) == 2

    @pytest.mark.asyncio
    async def test_deterministic_fragment_ids(
        self,
        memory: MemoryStore,
        clock: FakeClock,
        make_intent: Callable[..., SemanticIntent],
    ) -> None:
        for i in range(5):
            await memory.add_knowledge(f"fact {i}", domain="testing")
        assembler = ContextAssembler(memory, clock=clock)

        first = await assembler.assemble(make_intent())
        second = await assembler.assemble(make_intent())
        assert first.fragment_ids == second.fragment_ids
        assert [f.id for f in first.fragments] == [f.id for f in second.fragments]

    @pytest.mark.asyncio
    async def test_cancelled_token(
        self, memory: MemoryStore, make_intent: Callable[..., SemanticIntent]
    ) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(SessionCancelled):
            await ContextAssembler(memory).assemble(make_intent(), token)
