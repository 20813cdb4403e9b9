"""Lexical scoring helpers shared by the reasoning stages.

Everything here is a cheap word-level heuristic: overlap with a reference
text, concreteness of a statement, and set similarity between candidates.
"""

from __future__ import annotations

import re

STOPWORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "to", "of", "and", "in",
        "for", "on", "with", "it", "this", "that", "be", "by", "as", "at", "or",
        "i", "we", "you", "my", "our", "me", "how", "what", "can", "do", "should",
    }
)  # fmt: skip

# Phrases indicating uncertainty/vagueness
VAGUE_PHRASES = frozenset(
    [
        "something",
        "somehow",
        "maybe",
        "probably",
        "not sure",
        "might be",
        "could be",
        "perhaps",
        "kind of",
        "whatever",
    ]
)

_WORD_RE = re.compile(r"[a-z0-9_]+")


def tokenize(text: str) -> set[str]:
    """Lower-cased content words of ``text`` with stopwords removed."""
    return {w for w in _WORD_RE.findall(text.lower()) if w not in STOPWORDS and len(w) > 1}


def word_overlap(text: str, reference: str) -> float:
    """Fraction of the reference's content words that appear in ``text``.

    Args:
        text: Candidate text.
        reference: Text whose vocabulary is being covered.

    Returns:
        Overlap score between 0.0 and 1.0. An empty reference scores 0.0.

    """
    reference_words = tokenize(reference)
    if not reference_words:
        return 0.0
    return min(1.0, len(reference_words & tokenize(text)) / len(reference_words))


def jaccard(a: set[str], b: set[str]) -> float:
    """Jaccard similarity of two word sets."""
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def specificity(text: str) -> float:
    """Score how concrete a statement is.

    Args:
        text: Statement to score.

    Returns:
        Specificity between 0.0 and 1.0.

    """
    score = 0.5
    lowered = text.lower()

    score -= 0.15 * sum(1 for phrase in VAGUE_PHRASES if phrase in lowered)

    if re.search(r"\b\d+(?:\.\d+)?\b", text):
        score += 0.2
    if re.search(r"`[^`]+`|\b\w+\(\)|\b\w+\.\w+\b", text):
        score += 0.15
    if re.search(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b", text):
        score += 0.1

    return max(0.0, min(1.0, score))

