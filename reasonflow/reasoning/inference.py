"""Inference engine: concurrent construction of reasoning chains.

Each enabled approach runs as its own asyncio task under a per-approach
timeout. Approaches are independent: one failing or timing out leaves the
others untouched, and only when every approach fails does the engine raise
``NoInferenceAvailable``.

Builders are pluggable. The defaults work purely from the intent and the
assembled context:

- deductive:  principles -> premises -> stepwise derivation -> validity check
- inductive:  observations -> recurring patterns -> hypothesis -> generalization
- analogical: analogous context -> structural mapping -> application
- creative:   divergent ideas -> combination -> novelty/feasibility filter
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from loguru import logger

from reasonflow.reasoning.intent import GOAL_KEYWORDS
from reasonflow.reasoning.reasoning_types import (
    ApproachType,
    Conclusion,
    ContextSource,
    InferenceChain,
    InferenceStep,
    Premise,
    PremiseType,
    ReasoningContext,
    SemanticIntent,
    clamp01,
)
from reasonflow.utils.cancellation import CancellationToken
from reasonflow.utils.errors import NoInferenceAvailable, ReasonFlowError
from reasonflow.utils.scoring import jaccard, specificity, tokenize, word_overlap

ApproachBuilder = Callable[[SemanticIntent, ReasoningContext], Awaitable[InferenceChain]]

DEFAULT_APPROACHES: tuple[ApproachType, ...] = (
    ApproachType.DEDUCTIVE,
    ApproachType.INDUCTIVE,
    ApproachType.ANALOGICAL,
    ApproachType.CREATIVE,
)


class ApproachNotApplicable(ReasonFlowError):
    """Raised by a builder when its inputs cannot support a chain."""

    pass


# =============================================================================
# Knowledge tables
# =============================================================================

PRINCIPLES: dict[str, tuple[str, ...]] = {
    "debug": (
        "A reproducible failure has a specific cause that can be isolated",
        "The most recent change touching the failing path is the first suspect",
    ),
    "implement": (
        "New behavior should be added behind existing interfaces",
        "Each added capability needs a test that exercises it",
    ),
    "refactor": (
        "A refactor must preserve observable behavior",
        "Small reversible steps keep a refactor safe",
    ),
    "optimize": (
        "Optimization starts from a measured bottleneck",
        "The dominant cost term decides where effort pays off",
    ),
    "explain": (
        "An explanation builds from concepts the reader already knows",
    ),
    "test": (
        "A test should fail for exactly one reason",
        "Flaky tests usually depend on time, ordering or shared state",
    ),
    "deploy": (
        "A release should be reversible",
        "Changes reach production through the same pipeline every time",
    ),
    "design": (
        "A design is judged by how well it absorbs likely change",
        "Boundaries belong where rates of change differ",
    ),
    "review": (
        "Review effort goes to the riskiest change first",
    ),
    "assist": (
        "A request is satisfied by addressing its stated goal directly",
    ),
}

ANALOGIES: dict[str, tuple[str, tuple[str, ...]]] = {
    "debug": (
        "medical diagnosis",
        (
            "collect symptoms",
            "form differential hypotheses",
            "run the cheapest discriminating test",
        ),
    ),
    "optimize": (
        "traffic engineering",
        ("find the congested junction", "widen or bypass it", "re-measure the whole route"),
    ),
    "refactor": (
        "renovating an occupied house",
        ("keep utilities running", "work room by room", "inspect after each room"),
    ),
    "design": (
        "city zoning",
        ("separate incompatible uses", "define shared infrastructure", "plan for growth"),
    ),
    "test": (
        "scientific experiment",
        ("fix every variable but one", "state the expected result", "repeat to rule out noise"),
    ),
    "deploy": (
        "aircraft pre-flight checklist",
        ("verify each system in order", "hold on any failed check", "keep a go-around plan"),
    ),
}
DEFAULT_ANALOGY = (
    "craft apprenticeship",
    ("study a worked example", "reproduce it on the new problem", "adjust where they differ"),
)

CREATIVE_OPERATORS: tuple[tuple[str, str], ...] = (
    ("invert", "Invert the problem: make {x} impossible to get wrong instead of fixing it"),
    ("automate", "Automate {x} so it never needs manual attention"),
    ("eliminate", "Remove the need for {x} altogether"),
    ("reuse", "Reuse an existing mechanism to handle {x}"),
    ("defer", "Defer {x} to a later, cheaper stage"),
    ("split", "Split {x} into independent parts handled separately"),
)


def classify_goal(intent: SemanticIntent) -> str:
    """Goal category of an intent, from its goal text and keywords."""
    text = " ".join([intent.primary_goal.lower(), *intent.keywords])
    prefix = intent.primary_goal.split(":", 1)[0].strip().lower()
    if prefix in PRINCIPLES:
        return prefix
    best, best_hits = "assist", 0
    for kind, words in GOAL_KEYWORDS.items():
        hits = sum(1 for w in words if w in text)
        if hits > best_hits:
            best, best_hits = kind, hits
    return best


def _chain_id(approach: ApproachType) -> str:
    return f"{approach.value}-{uuid.uuid4().hex[:8]}"


def _subject(intent: SemanticIntent) -> str:
    goal = intent.primary_goal.split(":", 1)[-1].strip()
    return goal[:120] or "the request"


# =============================================================================
# Reflection
# =============================================================================


@dataclass(frozen=True)
class ChainReflection:
    """Meta-level critique of a chain."""

    chain_id: str
    gaps: tuple[str, ...]
    biases: tuple[str, ...]
    improvements: tuple[str, ...]
    quality: float


@dataclass(frozen=True)
class ChainBuildResult:
    """Chains that were built plus the reason each failed approach failed."""

    chains: tuple[InferenceChain, ...]
    failures: dict[str, str] = field(default_factory=dict)


# =============================================================================
# Engine
# =============================================================================


class InferenceEngine:
    """Runs one chain-building task per enabled approach.

    Args:
        approach_timeout: Per-approach time budget in seconds.
        builders: Overrides for the default approach builders.

    """

    def __init__(
        self,
        approach_timeout: float = 5.0,
        builders: dict[ApproachType, ApproachBuilder] | None = None,
    ) -> None:
        self.approach_timeout = approach_timeout
        self._builders: dict[ApproachType, ApproachBuilder] = {
            ApproachType.DEDUCTIVE: self.build_deductive,
            ApproachType.INDUCTIVE: self.build_inductive,
            ApproachType.ANALOGICAL: self.build_analogical,
            ApproachType.CREATIVE: self.build_creative,
        }
        self._builders.update(builders or {})
        self.tasks_spawned = 0

    def register(self, approach: ApproachType, builder: ApproachBuilder) -> None:
        """Replace the builder for ``approach``."""
        self._builders[approach] = builder

    async def build_chains(
        self,
        intent: SemanticIntent,
        context: ReasoningContext,
        approaches: Iterable[ApproachType] | None = None,
        token: CancellationToken | None = None,
    ) -> ChainBuildResult:
        """Build chains for every enabled approach concurrently.

        Raises:
            NoInferenceAvailable: If every approach failed.
            SessionCancelled: If the token fires; in-flight tasks are cancelled.

        """
        token = token or CancellationToken()
        token.raise_if_cancelled()
        enabled = tuple(dict.fromkeys(approaches or DEFAULT_APPROACHES))
        failures: dict[str, str] = {}

        runnable = []
        for approach in enabled:
            if approach in self._builders:
                runnable.append(approach)
            else:
                failures[approach.value] = "no builder registered"

        timeout = token.bound(self.approach_timeout)
        tasks = [
            asyncio.create_task(
                asyncio.wait_for(self._builders[a](intent, context), timeout=timeout),
                name=f"inference-{a.value}",
            )
            for a in runnable
        ]
        self.tasks_spawned += len(tasks)

        try:
            results = await token.guard(asyncio.gather(*tasks, return_exceptions=True))
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        # Approach timeouts clamped to the deadline count as cancellation
        token.raise_if_cancelled()

        chains: list[InferenceChain] = []
        for approach, result in zip(runnable, results, strict=True):
            if isinstance(result, InferenceChain):
                chains.append(self.optimize(result))
            elif isinstance(result, TimeoutError):
                failures[approach.value] = f"timed out after {timeout:.2f}s"
            elif isinstance(result, BaseException):
                failures[approach.value] = f"{type(result).__name__}: {result}"

        for name, reason in failures.items():
            logger.warning(f"Inference approach {name} failed: {reason}")

        if not chains:
            raise NoInferenceAvailable(
                "All inference approaches failed",
                details={"failures": failures, "context": context.to_dict()},
            )
        return ChainBuildResult(chains=tuple(chains), failures=failures)

    # ------------------------------------------------------------------
    # Deductive
    # ------------------------------------------------------------------

    async def build_deductive(
        self, intent: SemanticIntent, context: ReasoningContext
    ) -> InferenceChain:
        goal_kind = classify_goal(intent)

        # Principle identification
        rules = [
            Premise(text, PremiseType.RULE, 0.8, f"principle:{goal_kind}")
            for text in PRINCIPLES.get(goal_kind, PRINCIPLES["assist"])
        ]
        rules += [
            Premise(c.description, PremiseType.RULE, clamp01(0.5 + c.importance / 2), "constraint")
            for c in context.constraints[:2]
        ]
        await asyncio.sleep(0)

        # Premise construction
        fact_sources = (
            ContextSource.PROJECT_STATE,
            ContextSource.DOMAIN_KNOWLEDGE,
            ContextSource.WORKING,
        )
        facts = [
            Premise(f.content, PremiseType.FACT, f.relevance, f"{f.source.value}:{f.id}")
            for f in context.fragments
            if f.source in fact_sources
        ][:4]
        if not facts:
            facts = [
                Premise(
                    f"The request asks to {_subject(intent)}",
                    PremiseType.OBSERVATION,
                    clamp01(0.4 + intent.confidence / 2),
                    "request",
                )
            ]
        assumptions = [
            Premise(f"Assume {a}", PremiseType.ASSUMPTION, 0.4, "ambiguity")
            for a in intent.ambiguities[:2]
        ]
        premises = tuple(rules + facts + assumptions)
        await asyncio.sleep(0)

        # Stepwise derivation
        steps: list[InferenceStep] = []
        for i, rule in enumerate(rules):
            fact = facts[i % len(facts)]
            conf = clamp01(min(rule.confidence, fact.confidence) * 0.9 + 0.1)
            steps.append(
                InferenceStep(
                    index=i,
                    inputs=(rule.statement, fact.statement),
                    rule="modus_ponens",
                    output=f"Given that {fact.statement[:80].rstrip('.')}, "
                    f"{rule.statement[0].lower()}{rule.statement[1:]}",
                    confidence=conf,
                    valid=conf >= 0.2,
                )
            )
        if len(steps) > 1:
            steps.append(
                InferenceStep(
                    index=len(steps),
                    inputs=tuple(s.output for s in steps),
                    rule="conjunction",
                    output=f"Address {_subject(intent)} by applying each derived requirement",
                    confidence=clamp01(min(s.confidence for s in steps)),
                    valid=all(s.valid for s in steps),
                )
            )
        await asyncio.sleep(0)

        # Validity check
        final = steps[-1]
        conclusions = (
            Conclusion(
                statement=final.output,
                confidence=final.confidence,
                certainty="probable" if final.confidence >= 0.6 else "possible",
                supporting_steps=tuple(s.index for s in steps),
            ),
        )
        fact_conf = [p.confidence for p in facts]
        observed_only = facts[0].type == PremiseType.OBSERVATION
        evidence = 0.3 if observed_only else sum(fact_conf) / len(fact_conf)
        consistency = 1.0 - 0.5 * (len(assumptions) / len(premises))

        return InferenceChain.create(
            id=_chain_id(ApproachType.DEDUCTIVE),
            approach=ApproachType.DEDUCTIVE,
            goal=intent.primary_goal,
            premises=premises,
            steps=tuple(steps),
            conclusions=conclusions,
            evidence=tuple(p.provenance for p in facts),
            evidence_score=evidence,
            consistency_score=consistency,
            creativity=0.2,
            abstraction_level=3,
        )

    # ------------------------------------------------------------------
    # Inductive
    # ------------------------------------------------------------------

    async def build_inductive(
        self, intent: SemanticIntent, context: ReasoningContext
    ) -> InferenceChain:
        # Observation collection
        observations = [
            f
            for f in context.fragments
            if f.source
            in (ContextSource.EPISODIC, ContextSource.CONVERSATION, ContextSource.SEMANTIC)
        ]
        if not observations:
            raise ApproachNotApplicable("no past observations to generalize from")
        await asyncio.sleep(0)

        # Pattern recognition
        counts: Counter[str] = Counter()
        for obs in observations:
            counts.update(tokenize(obs.content) - {"user", "assistant"})
        goal_words = tokenize(intent.primary_goal) | set(intent.keywords)
        patterns = [w for w, n in counts.most_common(20) if n >= 2 or w in goal_words][:3]
        if not patterns:
            raise ApproachNotApplicable("observations share no recurring pattern")
        await asyncio.sleep(0)

        premises = tuple(
            Premise(
                o.content[:200], PremiseType.OBSERVATION, o.relevance, f"{o.source.value}:{o.id}"
            )
            for o in observations[:5]
        )
        support = len(observations)

        # Hypothesis generation and generalization
        steps: list[InferenceStep] = []
        for i, word in enumerate(patterns):
            backing = [p.statement for p in premises if word in p.statement.lower()] or [
                premises[0].statement
            ]
            freq = counts[word] / max(1, support)
            steps.append(
                InferenceStep(
                    index=i,
                    inputs=tuple(backing[:3]),
                    rule="enumerative_induction",
                    output=f"Past work on this project repeatedly involved '{word}'",
                    confidence=clamp01(0.35 + 0.5 * min(1.0, freq)),
                )
            )
        generalization_conf = clamp01(0.3 + 0.1 * min(support, 5))
        steps.append(
            InferenceStep(
                index=len(steps),
                inputs=tuple(s.output for s in steps),
                rule="generalization",
                output=f"Solutions for {_subject(intent)} should follow what worked for "
                f"{', '.join(patterns)}",
                confidence=generalization_conf,
            )
        )

        conclusions = (
            Conclusion(
                statement=steps[-1].output,
                confidence=generalization_conf,
                certainty="likely" if support >= 3 else "tentative",
                supporting_steps=tuple(s.index for s in steps),
            ),
        )
        overlap = word_overlap(" ".join(p.statement for p in premises), intent.primary_goal)
        return InferenceChain.create(
            id=_chain_id(ApproachType.INDUCTIVE),
            approach=ApproachType.INDUCTIVE,
            goal=intent.primary_goal,
            premises=premises,
            steps=tuple(steps),
            conclusions=conclusions,
            evidence=tuple(p.provenance for p in premises),
            evidence_score=clamp01(0.2 + 0.15 * min(support, 5)),
            consistency_score=clamp01(0.5 + 0.5 * overlap),
            creativity=0.3,
            abstraction_level=2,
        )

    # ------------------------------------------------------------------
    # Analogical
    # ------------------------------------------------------------------

    async def build_analogical(
        self, intent: SemanticIntent, context: ReasoningContext
    ) -> InferenceChain:
        goal_kind = classify_goal(intent)
        goal_words = tokenize(intent.primary_goal)

        # Analogous-context retrieval: a past episode from elsewhere, else a stock analogy
        remembered = [
            f
            for f in context.fragments
            if f.source == ContextSource.EPISODIC
            and jaccard(tokenize(f.content), goal_words) > 0.1
        ]
        if remembered:
            source = max(remembered, key=lambda f: f.relevance)
            domain_name = f"earlier episode ({source.domain})"
            pattern = tuple(
                part.strip() for part in source.content.split("->") if part.strip()
            )[:3] or (source.content[:80],)
            source_conf = source.relevance
            provenance = f"episodic:{source.id}"
        else:
            domain_name, pattern = ANALOGIES.get(goal_kind, DEFAULT_ANALOGY)
            source_conf = 0.6
            provenance = f"analogy:{domain_name}"
        await asyncio.sleep(0)

        premises = (
            Premise(
                f"In {domain_name}, the approach is: {'; '.join(pattern)}",
                PremiseType.OBSERVATION,
                source_conf,
                provenance,
            ),
            Premise(
                f"The current problem is to {_subject(intent)}",
                PremiseType.FACT,
                clamp01(0.5 + intent.confidence / 2),
                "request",
            ),
        )

        # Structural mapping
        steps = [
            InferenceStep(
                index=i,
                inputs=(premises[0].statement, premises[1].statement),
                rule="structural_mapping",
                output=f"Map '{element}' onto the current problem",
                confidence=clamp01(source_conf * 0.9),
            )
            for i, element in enumerate(pattern)
        ]
        await asyncio.sleep(0)

        # Application
        steps.append(
            InferenceStep(
                index=len(steps),
                inputs=tuple(s.output for s in steps),
                rule="analogical_transfer",
                output=f"Handle {_subject(intent)} the way {domain_name} does: "
                f"{' then '.join(pattern)}",
                confidence=clamp01(source_conf * 0.85),
            )
        )
        conclusions = (
            Conclusion(
                statement=steps[-1].output,
                confidence=steps[-1].confidence,
                certainty="plausible",
                supporting_steps=tuple(s.index for s in steps),
            ),
        )
        return InferenceChain.create(
            id=_chain_id(ApproachType.ANALOGICAL),
            approach=ApproachType.ANALOGICAL,
            goal=intent.primary_goal,
            premises=premises,
            steps=tuple(steps),
            conclusions=conclusions,
            evidence=(provenance,),
            evidence_score=0.5 if remembered else 0.35,
            consistency_score=0.7,
            creativity=0.55,
            abstraction_level=2,
        )

    # ------------------------------------------------------------------
    # Creative
    # ------------------------------------------------------------------

    async def build_creative(
        self, intent: SemanticIntent, context: ReasoningContext
    ) -> InferenceChain:
        subject_words = [w for w in intent.keywords if len(w) > 3][:3] or [_subject(intent)[:40]]
        known = context.text()

        # Divergent idea generation
        ideas: list[tuple[str, str]] = []
        for word in subject_words:
            for name, template in CREATIVE_OPERATORS:
                ideas.append((name, template.format(x=word)))
        await asyncio.sleep(0)

        # Combination
        combined = [
            ("combine", f"{a[1]}, and {b[1][0].lower()}{b[1][1:]}")
            for a, b in zip(ideas[::3], ideas[1::3], strict=False)
        ][:3]
        ideas.extend(combined)
        await asyncio.sleep(0)

        # Novelty / feasibility filtering
        scored = []
        for name, text in ideas:
            novelty = 1.0 - word_overlap(text, known) if known else 0.8
            feasibility = clamp01(0.3 + specificity(text) * 0.7)
            if novelty * feasibility >= 0.15:
                scored.append((novelty * feasibility, novelty, feasibility, name, text))
        if not scored:
            raise ApproachNotApplicable("no idea passed the novelty/feasibility filter")
        scored.sort(key=lambda row: (-row[0], row[4]))
        kept = scored[:4]

        premises = (
            Premise(
                f"The goal is to {_subject(intent)}", PremiseType.FACT, 0.7, "request"
            ),
            Premise(
                "Unconventional options can outperform the obvious fix",
                PremiseType.ASSUMPTION,
                0.5,
                "creative_heuristic",
            ),
        )
        steps = tuple(
            InferenceStep(
                index=i,
                inputs=(premises[0].statement,),
                rule=f"divergent_{name}",
                output=text,
                confidence=clamp01(feasibility),
            )
            for i, (_, _, feasibility, name, text) in enumerate(kept)
        )
        creativity = sum(row[1] for row in kept) / len(kept)
        conclusions = (
            Conclusion(
                statement=kept[0][4],
                confidence=clamp01(kept[0][0]),
                certainty="speculative",
                supporting_steps=(0,),
            ),
        )
        return InferenceChain.create(
            id=_chain_id(ApproachType.CREATIVE),
            approach=ApproachType.CREATIVE,
            goal=intent.primary_goal,
            premises=premises,
            steps=steps,
            conclusions=conclusions,
            evidence=(),
            evidence_score=0.25,
            consistency_score=clamp01(0.4 + 0.4 * (1 - creativity)),
            creativity=creativity,
            abstraction_level=1,
        )

    # ------------------------------------------------------------------
    # Meta-reasoning
    # ------------------------------------------------------------------

    def reflect(self, chain: InferenceChain) -> ChainReflection:
        """Find gaps and likely biases in a chain and suggest fixes."""
        gaps: list[str] = []
        biases: list[str] = []
        improvements: list[str] = []

        if not chain.conclusions:
            gaps.append("chain reaches no conclusion")
            improvements.append("derive an explicit conclusion from the final step")
        weak = [p for p in chain.premises if p.confidence < 0.4]
        if weak:
            gaps.append(f"{len(weak)} weakly supported premise(s)")
            improvements.append("verify or replace low-confidence premises")
        if not chain.logical_validity:
            gaps.append("one or more invalid inference steps")
            improvements.append("repair or drop invalid steps")
        if not chain.evidence:
            gaps.append("no supporting evidence")
            improvements.append("gather evidence from project state or past episodes")

        sources = {p.provenance.split(":", 1)[0] for p in chain.premises}
        if len(chain.premises) > 1 and len(sources) == 1:
            biases.append("confirmation: all premises come from one source")
        if chain.approach == ApproachType.INDUCTIVE and len(chain.premises) < 3:
            biases.append("overgeneralization: pattern drawn from few observations")
        if chain.evidence and all(e.startswith("conversation") for e in chain.evidence):
            biases.append("availability: evidence is only recent conversation")
        assumptions = sum(1 for p in chain.premises if p.type == PremiseType.ASSUMPTION)
        if assumptions > len(chain.premises) / 2:
            biases.append("speculation: more assumptions than facts")
        if biases:
            improvements.append("seek a premise from an independent source")

        quality = clamp01(chain.confidence - 0.1 * len(gaps) - 0.05 * len(biases))
        return ChainReflection(
            chain_id=chain.id,
            gaps=tuple(gaps),
            biases=tuple(biases),
            improvements=tuple(dict.fromkeys(improvements)),
            quality=quality,
        )

    def optimize(self, chain: InferenceChain) -> InferenceChain:
        """Drop duplicate premises and redundant steps, then rescore."""
        premises = tuple({p.statement: p for p in chain.premises}.values())
        seen: set[str] = set()
        kept: list[InferenceStep] = []
        for step in chain.steps:
            key = " ".join(step.output.lower().split())
            if key in seen:
                continue
            seen.add(key)
            kept.append(step)
        if len(kept) == len(chain.steps) and len(premises) == len(chain.premises):
            return chain
        remap = {s.index: i for i, s in enumerate(kept)}
        steps = tuple(
            InferenceStep(
                index=remap[s.index],
                inputs=s.inputs,
                rule=s.rule,
                output=s.output,
                confidence=s.confidence,
                valid=s.valid,
            )
            for s in kept
        )
        conclusions = tuple(
            Conclusion(
                statement=c.statement,
                confidence=c.confidence,
                certainty=c.certainty,
                supporting_steps=tuple(remap[i] for i in c.supporting_steps if i in remap),
            )
            for c in chain.conclusions
        )
        return InferenceChain.create(
            id=chain.id,
            approach=chain.approach,
            goal=chain.goal,
            premises=premises,
            steps=steps,
            conclusions=conclusions,
            evidence=chain.evidence,
            evidence_score=chain.evidence_score,
            consistency_score=chain.consistency_score,
            creativity=chain.creativity,
            abstraction_level=chain.abstraction_level,
        )
