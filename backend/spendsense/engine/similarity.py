"""
Similarity scoring between canonical patterns.

The score blends token-set overlap (robust to reordered words in POS
descriptors) with a normalized Levenshtein ratio (catches single-character
differences such as a leaked store number).
"""

from dataclasses import dataclass
from typing import Callable

from rapidfuzz.distance import Levenshtein

DEFAULT_TOKEN_WEIGHT = 0.6
DEFAULT_EDIT_WEIGHT = 0.4


@dataclass(frozen=True)
class SimilarityWeights:
    token_weight: float = DEFAULT_TOKEN_WEIGHT
    edit_weight: float = DEFAULT_EDIT_WEIGHT


def token_jaccard(a: str, b: str) -> float:
    """Jaccard overlap of whitespace-split token sets."""
    tokens_a = set(a.split())
    tokens_b = set(b.split())
    if not tokens_a and not tokens_b:
        return 1.0
    union = tokens_a | tokens_b
    return len(tokens_a & tokens_b) / len(union)


def edit_ratio(a: str, b: str) -> float:
    """Levenshtein similarity normalized to [0, 1]."""
    return Levenshtein.normalized_similarity(a, b)


def similarity(a: str, b: str, weights: SimilarityWeights = SimilarityWeights()) -> float:
    """Symmetric, reflexive similarity in [0, 1]."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    total = weights.token_weight + weights.edit_weight
    if total <= 0:
        return 0.0

    score = (
        weights.token_weight * token_jaccard(a, b)
        + weights.edit_weight * edit_ratio(a, b)
    ) / total
    return min(1.0, max(0.0, score))


class SimilarityScorer:
    """Reusable comparator bound to a set of weights."""

    def __init__(self, weights: SimilarityWeights = SimilarityWeights()):
        self.weights = weights

    def __call__(self, a: str, b: str) -> float:
        return similarity(a, b, self.weights)

    def matcher(self, threshold: float) -> Callable[[str, str], bool]:
        """Return a predicate that is true when two patterns score at or above ``threshold``."""
        def matches(a: str, b: str) -> bool:
            return self(a, b) >= threshold
        return matches
