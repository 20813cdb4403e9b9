"""Complexity detection for incoming requests.

Maps free text onto a complexity tier, which drives how many strategies the
synthesizer applies per chain and which constraints the context carries.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Literal

_complexity_cache: OrderedDict[str, ComplexityResult] = OrderedDict()
_COMPLEXITY_CACHE_MAX_SIZE = 256

ComplexityTier = Literal["simple", "moderate", "complex", "expert"]

MULTI_STEP_PATTERNS = [
    r"\bthen\b",
    r"\bafter\b.*\bbefore\b",
    r"\bfirst\b.*\b(then|next|finally)\b",
    r"\bdepends on\b",
    r"\bbecause\b",
    r"\bso that\b",
    r"\bwithout breaking\b",
]

TECHNICAL_PATTERNS = [
    r"\b(api|database|schema|migration|cache|queue|thread|async|concurren\w*)\b",
    r"\b(deploy\w*|pipeline|kubernetes|docker|cluster|latency|throughput)\b",
    r"\b(algorithm|complexity|optimi[sz]\w*|refactor\w*|architecture)\b",
    r"\b(security|auth\w*|encrypt\w*|vulnerab\w*)\b",
]

SCOPE_PATTERNS = [
    r"\b(entire|whole|all|every|across)\b",
    r"\b(system|codebase|project|service|services|modules)\b",
    r"\b(design|redesign|migrate|rewrite)\b",
]

CONSTRAINT_PATTERNS = [
    r"\bmust\b|\bcannot\b|\bshould not\b|\bwithout\b",
    r"\bbackwards?.compatib\w*\b",
    r"\bzero.downtime\b|\bin production\b",
    r"\b(budget|deadline|limit\w*)\b",
]

COMPARISON_PATTERNS = [
    r"\b(compare|versus|vs\.?|trade-?offs?|pros and cons|alternatives?)\b",
    r"\b(evaluate|assess|analy[sz]e|critique)\b",
]


@dataclass(frozen=True, slots=True)
class ComplexityResult:
    """Result of complexity analysis for a request."""

    score: float
    tier: ComplexityTier
    signals: tuple[str, ...]
    word_count: int
    cached: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "score": self.score,
            "tier": self.tier,
            "signals": list(self.signals),
            "word_count": self.word_count,
            "cached": self.cached,
        }


def clear_complexity_cache() -> int:
    """Clear the complexity cache. Returns number of items cleared."""
    count = len(_complexity_cache)
    _complexity_cache.clear()
    return count


def _count(patterns: list[str], text: str) -> int:
    return sum(1 for p in patterns if re.search(p, text))


def tier_for_score(score: float) -> ComplexityTier:
    """Bucket a complexity score into a tier."""
    if score >= 0.75:
        return "expert"
    if score >= 0.45:
        return "complex"
    if score >= 0.2:
        return "moderate"
    return "simple"


def detect_complexity(text: str, *, use_cache: bool = True) -> ComplexityResult:
    """Detect request complexity.

    Looks at length, multi-step phrasing, technical vocabulary, scope,
    explicit constraints and comparison requests.

    Args:
        text: Raw request text.
        use_cache: Whether to use cached results (default True).

    Returns:
        ComplexityResult with score, tier and signals.

    Example:
        >>> detect_complexity("list files").tier
        'simple'

    """
    normalized = " ".join(text.lower().split())

    if use_cache and normalized in _complexity_cache:
        _complexity_cache.move_to_end(normalized)
        hit = _complexity_cache[normalized]
        return ComplexityResult(
            score=hit.score,
            tier=hit.tier,
            signals=hit.signals,
            word_count=hit.word_count,
            cached=True,
        )

    word_count = len(normalized.split())
    score = 0.0
    signals: list[str] = []

    if word_count > 80:
        score += 0.25
        signals.append("long_request")
    elif word_count > 30:
        score += 0.1
        signals.append("medium_request")

    if (n := _count(MULTI_STEP_PATTERNS, normalized)) >= 2:
        score += 0.2
        signals.append("multi_step")
    elif n == 1:
        score += 0.1
        signals.append("some_sequencing")

    if (n := _count(TECHNICAL_PATTERNS, normalized)) >= 2:
        score += 0.25
        signals.append("technical")
    elif n == 1:
        score += 0.1
        signals.append("some_technical")

    if _count(SCOPE_PATTERNS, normalized) >= 2:
        score += 0.15
        signals.append("wide_scope")

    if _count(CONSTRAINT_PATTERNS, normalized) >= 1:
        score += 0.15
        signals.append("constrained")

    if _count(COMPARISON_PATTERNS, normalized) >= 1:
        score += 0.15
        signals.append("comparison")

    score = min(1.0, score)
    tier = tier_for_score(score)

    result = ComplexityResult(
        score=round(score, 3),
        tier=tier,
        signals=tuple(signals),
        word_count=word_count,
    )

    if use_cache:
        if len(_complexity_cache) >= _COMPLEXITY_CACHE_MAX_SIZE:
            _complexity_cache.popitem(last=False)
        _complexity_cache[normalized] = result

    return result
