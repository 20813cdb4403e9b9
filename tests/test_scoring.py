"""Tests for reasonflow/utils/scoring.py lexical heuristics."""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from reasonflow.utils.scoring import (
    jaccard,
    specificity,
    tokenize,
    word_overlap,
)


class TestTokenize:
    """Tests for content-word extraction."""

    def test_lowercases_and_drops_stopwords(self) -> None:
        assert tokenize("Fix the Login test for our API") == {"fix", "login", "test", "api"}

    def test_drops_single_characters(self) -> None:
        assert tokenize("a b c retry") == {"retry"}

    def test_keeps_identifiers(self) -> None:
        assert "user_id" in tokenize("look up user_id in the cache")


class TestWordOverlap:
    """Tests for reference coverage."""

    def test_full_coverage(self) -> None:
        assert word_overlap("fix the login test now", "login test") == 1.0

    def test_partial_coverage(self) -> None:
        assert word_overlap("login flow", "login test") == 0.5

    def test_no_overlap(self) -> None:
        assert word_overlap("apple banana", "dog elephant") == 0.0

    def test_empty_reference(self) -> None:
        """Only stopwords in the reference scores zero."""
        assert word_overlap("some thought", "the a an") == 0.0


class TestJaccard:
    """Tests for set similarity."""

    def test_identical(self) -> None:
        assert jaccard({"a", "b"}, {"a", "b"}) == 1.0

    def test_both_empty(self) -> None:
        assert jaccard(set(), set()) == 1.0

    def test_disjoint(self) -> None:
        assert jaccard({"a"}, {"b"}) == 0.0

    def test_half(self) -> None:
        assert jaccard({"a", "b"}, {"b", "c"}) == 1 / 3

    @given(st.sets(st.text(max_size=3)), st.sets(st.text(max_size=3)))
    def test_symmetric_and_bounded(self, a: set[str], b: set[str]) -> None:
        assert jaccard(a, b) == jaccard(b, a)
        assert 0.0 <= jaccard(a, b) <= 1.0


class TestSpecificity:
    """Tests for concreteness scoring."""

    def test_vague_phrases_penalized(self) -> None:
        vague = "Maybe something could somehow work"
        specific = "The retry loop processes 1000 items per second"
        assert specificity(vague) < specificity(specific)

    def test_numbers_rewarded(self) -> None:
        assert specificity("the limit is 42 requests") > specificity("the limit is many requests")

    def test_code_references_rewarded(self) -> None:
        assert specificity("call `flush()` first") > specificity("call the flush first")

    @given(st.text(max_size=200))
    def test_score_bounded(self, text: str) -> None:
        assert 0.0 <= specificity(text) <= 1.0

