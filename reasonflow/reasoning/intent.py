"""Intent analysis: raw request text to ``SemanticIntent``.

The oracle is asked once for a structured JSON reading of the request. A
local keyword classifier always runs first and provides the baseline; when
the oracle times out, errors, or replies with something unparseable, that
baseline is returned as a low-confidence intent and the session carries on.
"""

from __future__ import annotations

import asyncio
import re
from typing import Literal

import orjson
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from reasonflow.models.oracle import SemanticOracle
from reasonflow.reasoning.memory_store import MemorySnapshot
from reasonflow.reasoning.reasoning_types import (
    ComplexityTier,
    IntentSource,
    SemanticIntent,
    Urgency,
)
from reasonflow.utils.cancellation import CancellationToken
from reasonflow.utils.complexity import detect_complexity
from reasonflow.utils.errors import OracleUnavailable, SessionCancelled
from reasonflow.utils.scoring import tokenize

# =============================================================================
# Heuristic tables
# =============================================================================

GOAL_KEYWORDS: dict[str, tuple[str, ...]] = {
    "debug": ("fix", "bug", "error", "fails", "failing", "broken", "crash", "exception", "debug"),
    "implement": ("add", "implement", "create", "build", "write", "support", "new feature"),
    "refactor": ("refactor", "clean up", "restructure", "simplify", "rename", "extract"),
    "optimize": ("optimize", "faster", "slow", "performance", "latency", "memory usage", "speed"),
    "explain": ("explain", "why", "what is", "how does", "understand", "meaning"),
    "test": ("test", "coverage", "unit test", "assert", "flaky"),
    "deploy": ("deploy", "release", "ship", "rollout", "publish", "ci", "pipeline"),
    "design": ("design", "architecture", "approach", "plan", "structure", "trade-off"),
    "review": ("review", "check", "audit", "critique", "evaluate"),
}

DOMAIN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "frontend": ("react", "css", "html", "ui", "component", "browser", "frontend"),
    "backend": ("api", "endpoint", "server", "service", "backend", "handler", "request"),
    "database": ("sql", "database", "query", "schema", "migration", "index", "table"),
    "devops": ("docker", "kubernetes", "deploy", "ci", "pipeline", "terraform", "cluster"),
    "testing": ("test", "pytest", "mock", "fixture", "coverage", "assert"),
    "security": ("auth", "token", "password", "encrypt", "vulnerability", "permission"),
    "data": ("dataframe", "pandas", "csv", "etl", "dataset", "numpy", "analysis"),
}

URGENCY_KEYWORDS: dict[Urgency, tuple[str, ...]] = {
    Urgency.HIGH: ("urgent", "asap", "immediately", "production down", "outage", "critical", "now"),
    Urgency.LOW: ("whenever", "no rush", "eventually", "someday", "curious"),
}

TONE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "frustrated": ("still", "again", "annoying", "frustrat", "keeps", "nothing works", "ugh"),
    "anxious": ("worried", "afraid", "scared", "risky", "nervous"),
    "curious": ("wonder", "curious", "interesting", "how come"),
    "confident": ("obviously", "simply", "just need", "straightforward"),
}

EXPERTISE_MARKERS = {
    "expert": ("idempotent", "invariant", "amortized", "backpressure", "linearizable", "p99"),
    "beginner": ("i'm new", "beginner", "first time", "what does", "tutorial", "step by step"),
}

VAGUE_REFERENCES = re.compile(
    r"^\s*(it|this|that|they|those)\b|\b(somehow|something|stuff|thing)\b"
)


class OracleIntentReply(BaseModel):
    """Shape the oracle is asked to return."""

    primary_goal: str = Field(min_length=1, max_length=500)
    secondary_goals: list[str] = Field(default_factory=list, max_length=10)
    domain: str = Field(default="general", max_length=50)
    complexity: Literal["simple", "moderate", "complex", "expert"] | None = None
    urgency: Literal["low", "normal", "high"] | None = None
    emotional_tone: str | None = Field(default=None, max_length=50)
    ambiguities: list[str] = Field(default_factory=list, max_length=10)
    keywords: list[str] = Field(default_factory=list, max_length=20)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


def build_prompt(text: str, snapshot: MemorySnapshot | None) -> str:
    """Render the structured analysis prompt."""
    context_lines = []
    if snapshot is not None:
        if snapshot.project_summary:
            context_lines.append(snapshot.project_summary)
        if snapshot.recent_turns:
            context_lines.append("Recent turns: " + " | ".join(snapshot.recent_turns[-3:]))
        if snapshot.current_topic:
            context_lines.append(
                f"Conversation topic: {snapshot.current_topic} ({snapshot.flow_pattern})"
            )
        context_lines.append(f"User expertise: {snapshot.user_expertise}")
    context = "\n".join(context_lines) or "(none)"
    return (
        "Analyze the request below. Return JSON with keys: primary_goal, "
        "secondary_goals (list), domain, complexity (simple|moderate|complex|expert), "
        "urgency (low|normal|high), emotional_tone, ambiguities (list), keywords (list), "
        "confidence (0-1).\n\n"
        f"Context:\n{context}\n\nRequest:\n{text}"
    )


def parse_reply(reply: str) -> OracleIntentReply:
    """Extract and validate the JSON object in an oracle reply.

    Raises:
        OracleUnavailable: If the reply holds no valid JSON object.

    """
    start, end = reply.find("{"), reply.rfind("}")
    if start == -1 or end <= start:
        raise OracleUnavailable("Oracle reply contained no JSON object")
    try:
        return OracleIntentReply.model_validate(orjson.loads(reply[start : end + 1]))
    except (orjson.JSONDecodeError, ValidationError) as e:
        raise OracleUnavailable(f"Oracle reply failed validation: {e}") from e


def _matches(text: str, words: tuple[str, ...]) -> int:
    return sum(1 for w in words if re.search(rf"\b{re.escape(w)}", text))


def _best(table: dict[str, tuple[str, ...]], text: str) -> tuple[str | None, int]:
    scored = [(name, _matches(text, words)) for name, words in table.items()]
    scored.sort(key=lambda pair: -pair[1])
    name, hits = scored[0]
    return (name, hits) if hits else (None, 0)


class IntentAnalyzer:
    """Turns raw text into a ``SemanticIntent``.

    Args:
        oracle: External NLU service. None runs the heuristic only.
        timeout: Upper bound on the oracle call, in seconds.

    """

    def __init__(self, oracle: SemanticOracle | None = None, timeout: float = 8.0) -> None:
        self.oracle = oracle
        self.timeout = timeout
        self.oracle_calls = 0
        self.fallbacks = 0

    async def analyze(
        self,
        text: str,
        snapshot: MemorySnapshot | None = None,
        token: CancellationToken | None = None,
    ) -> SemanticIntent:
        """Analyze ``text``. Never fails except on cancellation.

        Raises:
            SessionCancelled: If the token fires during the oracle call.

        """
        token = token or CancellationToken()
        token.raise_if_cancelled()
        baseline = self.heuristic(text, snapshot)
        if self.oracle is None:
            return baseline

        self.oracle_calls += 1
        try:
            reply = await token.guard(
                asyncio.wait_for(
                    self.oracle.analyze(build_prompt(text, snapshot)),
                    timeout=self.timeout,
                )
            )
            parsed = parse_reply(reply)
        except SessionCancelled:
            raise
        except TimeoutError:
            self.fallbacks += 1
            logger.warning(f"Oracle timed out after {self.timeout}s; using heuristic intent")
            return baseline
        except Exception as e:
            # Any oracle failure degrades to the heuristic reading
            self.fallbacks += 1
            logger.warning(f"Oracle unavailable ({type(e).__name__}: {e}); using heuristic intent")
            return baseline

        return self._merge(baseline, parsed)

    @staticmethod
    def _merge(baseline: SemanticIntent, reply: OracleIntentReply) -> SemanticIntent:
        return SemanticIntent(
            primary_goal=reply.primary_goal.strip(),
            secondary_goals=tuple(reply.secondary_goals) or baseline.secondary_goals,
            domain=reply.domain.lower().strip() or baseline.domain,
            complexity=(
                ComplexityTier(reply.complexity) if reply.complexity else baseline.complexity
            ),
            urgency=Urgency(reply.urgency) if reply.urgency else baseline.urgency,
            emotional_tone=reply.emotional_tone or baseline.emotional_tone,
            ambiguities=tuple(reply.ambiguities),
            keywords=tuple(dict.fromkeys([*reply.keywords, *baseline.keywords]))[:20],
            user_expertise=baseline.user_expertise,
            response_style=baseline.response_style,
            source=IntentSource.ORACLE,
            confidence=reply.confidence,
        )

    def heuristic(self, text: str, snapshot: MemorySnapshot | None = None) -> SemanticIntent:
        """Keyword-table classification. Always returns a usable intent."""
        lowered = " ".join(text.lower().split())

        goals = sorted(
            ((name, _matches(lowered, words)) for name, words in GOAL_KEYWORDS.items()),
            key=lambda pair: -pair[1],
        )
        matched_goals = [name for name, hits in goals if hits]
        goal_kind = matched_goals[0] if matched_goals else "assist"

        domain, domain_hits = _best(DOMAIN_KEYWORDS, lowered)
        if domain is None and snapshot is not None and snapshot.technical_focus:
            domain = snapshot.technical_focus[-1]
        domain = domain or "general"

        urgency = Urgency.NORMAL
        for level, words in URGENCY_KEYWORDS.items():
            if _matches(lowered, words):
                urgency = level
                break

        tone, _ = _best(TONE_KEYWORDS, lowered)

        ambiguities: list[str] = []
        if VAGUE_REFERENCES.search(lowered):
            ambiguities.append("request refers to something not named explicitly")
        if len(lowered.split()) < 4:
            ambiguities.append("request is very short")
        if re.search(r"\bor\b", lowered) and "?" in text:
            ambiguities.append("request offers alternatives without a preference")
        if not matched_goals:
            ambiguities.append("goal could not be classified")

        expertise = snapshot.user_expertise if snapshot else "intermediate"
        for level, markers in EXPERTISE_MARKERS.items():
            if _matches(lowered, markers):
                expertise = level
                break

        complexity = detect_complexity(text)
        keywords = tuple(sorted(tokenize(text), key=lambda w: (-len(w), w))[:12])

        confidence = 0.2 + 0.1 * min(len(matched_goals), 2) + (0.1 if domain_hits else 0.0)
        confidence -= 0.05 * len(ambiguities)

        return SemanticIntent(
            primary_goal=f"{goal_kind}: {text.strip()[:200]}",
            secondary_goals=tuple(matched_goals[1:3]),
            domain=domain,
            complexity=ComplexityTier(complexity.tier),
            urgency=urgency,
            emotional_tone=tone or "neutral",
            ambiguities=tuple(ambiguities),
            keywords=keywords,
            user_expertise=expertise,
            response_style=snapshot.preferred_style if snapshot else "balanced",
            source=IntentSource.HEURISTIC,
            confidence=max(0.1, min(0.45, confidence)),
        )
