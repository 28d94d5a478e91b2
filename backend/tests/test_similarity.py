"""Tests for pattern similarity scoring."""

import pytest

from spendsense.engine.similarity import (
    SimilarityScorer,
    SimilarityWeights,
    edit_ratio,
    similarity,
    token_jaccard,
)

PAIRS = [
    ("netflix", "netflix inc"),
    ("whole foods", "foods whole"),
    ("starbucks store", "starbucks"),
    ("city of austin water utility", "city of austin water utility bill"),
    ("amazon prime", "hulu"),
]


class TestSimilarity:
    """Test the hybrid token / edit-distance score."""

    @pytest.mark.parametrize("pattern", ["netflix", "whole foods", "a", "trader joe's"])
    def test_reflexive(self, pattern):
        """A pattern is always fully similar to itself."""
        assert similarity(pattern, pattern) == 1.0

    @pytest.mark.parametrize("a,b", PAIRS)
    def test_symmetric(self, a, b):
        """Argument order should not matter."""
        assert similarity(a, b) == similarity(b, a)

    @pytest.mark.parametrize("a,b", PAIRS)
    def test_bounded(self, a, b):
        """Scores stay within [0, 1]."""
        assert 0.0 <= similarity(a, b) <= 1.0

    def test_empty_against_pattern(self):
        """An empty pattern matches nothing."""
        assert similarity("", "netflix") == 0.0
        assert similarity("netflix", "") == 0.0

    def test_unrelated_patterns_score_low(self):
        """Patterns with no shared tokens score below the default threshold."""
        assert similarity("amazon prime", "hulu") < 0.5

    def test_reordered_tokens_get_full_token_overlap(self):
        """Word order does not change token overlap."""
        assert token_jaccard("whole foods", "foods whole") == 1.0
        assert similarity("whole foods", "foods whole") > 0.6

    def test_one_changed_character(self):
        """Edit ratio catches near-identical strings."""
        assert edit_ratio("starbucks", "starbuck") == pytest.approx(1 - 1 / 9)

    def test_token_weight_dominates(self):
        """Token overlap carries the larger default weight."""
        weights = SimilarityWeights()
        assert weights.token_weight == 0.6
        assert weights.edit_weight == 0.4

    def test_custom_weights(self):
        """Pure token weighting ignores edit distance."""
        token_only = SimilarityWeights(token_weight=1.0, edit_weight=0.0)
        assert similarity("whole foods", "foods whole", token_only) == 1.0

    def test_stable_across_calls(self):
        """Repeated calls return identical floats."""
        scores = {similarity("netflix", "netflix inc") for _ in range(10)}
        assert len(scores) == 1


class TestSimilarityScorer:
    """Test the reusable comparator."""

    def test_call_matches_function(self):
        scorer = SimilarityScorer()
        assert scorer("netflix", "netflix inc") == similarity("netflix", "netflix inc")

    def test_matcher(self):
        """The matcher applies the threshold inclusively."""
        matches = SimilarityScorer().matcher(1.0)
        assert matches("netflix", "netflix")
        assert not matches("netflix", "netflix inc")
