"""
Greedy single-linkage clustering of canonical patterns into merchant clusters.

Patterns are visited most-frequent first so the most common spelling becomes
the representative. Each pattern joins the first existing cluster whose
representative scores at or above the threshold, otherwise it starts a new
cluster. Ties are broken by insertion order, so the same input always gives
the same clusters.
"""

from collections import Counter
from dataclasses import dataclass, field
import logging
import math
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from spendsense.engine.normalizer import display_name
from spendsense.engine.similarity import SimilarityScorer
from spendsense.exceptions import InvalidThresholdError

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.85
MAPPING_CONFIDENCE_STEP = 0.02


@dataclass(frozen=True)
class ClusteringConfig:
    similarity_weight: float = 0.6
    share_weight: float = 0.25
    size_weight: float = 0.15
    size_saturation: int = 5


@dataclass
class ClusterMember:
    pattern: str
    occurrences: int
    similarity: float


@dataclass
class MerchantCluster:
    representative: str
    display_name: str
    members: List[ClusterMember] = field(default_factory=list)
    confidence: float = 0.0

    @property
    def patterns(self) -> List[str]:
        return [m.pattern for m in self.members]

    @property
    def occurrences(self) -> int:
        return sum(m.occurrences for m in self.members)

    @property
    def average_similarity(self) -> float:
        if not self.members:
            return 0.0
        return sum(m.similarity for m in self.members) / len(self.members)


def validate_threshold(threshold) -> float:
    """Return ``threshold`` as a float, rejecting anything outside (0, 1]."""
    if isinstance(threshold, bool):
        raise InvalidThresholdError(threshold)
    try:
        value = float(threshold)
    except (TypeError, ValueError):
        raise InvalidThresholdError(threshold)
    if math.isnan(value) or value <= 0.0 or value > 1.0:
        raise InvalidThresholdError(threshold)
    return value


def _count_patterns(patterns: Union[Mapping[str, int], Iterable[str]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    if isinstance(patterns, Mapping):
        items = patterns.items()
    else:
        items = Counter(p for p in patterns if isinstance(p, str)).items()

    for pattern, count in items:
        if not isinstance(pattern, str) or not pattern:
            continue
        counts[pattern] = counts.get(pattern, 0) + max(int(count), 1)
    return counts


def cluster_confidence(
    cluster: MerchantCluster,
    total_occurrences: int,
    config: ClusteringConfig = ClusteringConfig(),
) -> float:
    """Larger, tighter clusters with a dominant representative score higher."""
    if not cluster.members:
        return 0.0

    representative_count = cluster.members[0].occurrences
    share = representative_count / total_occurrences if total_occurrences else 0.0

    size = len(cluster.members)
    if config.size_saturation > 1:
        size_bonus = min(1.0, (size - 1) / (config.size_saturation - 1))
    else:
        size_bonus = 1.0

    weight_total = config.similarity_weight + config.share_weight + config.size_weight
    if weight_total <= 0:
        return 0.0

    score = (
        config.similarity_weight * cluster.average_similarity
        + config.share_weight * share
        + config.size_weight * size_bonus
    ) / weight_total
    return round(min(1.0, max(0.0, score)), 4)


def mapping_confidence(similarity_score: float, member_count: int = 1) -> float:
    """Confidence of a single pattern-to-group edge, nudged up by cluster size."""
    confidence = similarity_score
    if member_count > 1:
        confidence = min(1.0, confidence + (member_count - 1) * MAPPING_CONFIDENCE_STEP)
    return round(confidence, 2)


def cluster_patterns(
    patterns: Union[Mapping[str, int], Iterable[str]],
    threshold: float = DEFAULT_THRESHOLD,
    scorer: Optional[SimilarityScorer] = None,
    config: ClusteringConfig = ClusteringConfig(),
) -> List[MerchantCluster]:
    """
    Partition canonical patterns into merchant clusters.

    ``patterns`` is either a mapping of pattern -> occurrence count or an
    iterable of patterns (repeats are counted). Empty patterns are skipped.
    """
    threshold = validate_threshold(threshold)
    scorer = scorer or SimilarityScorer()

    counts = _count_patterns(patterns)
    # sorted() is stable: equal counts keep insertion order
    ordered = sorted(counts.items(), key=lambda item: -item[1])

    clusters: List[MerchantCluster] = []
    for pattern, count in ordered:
        for cluster in clusters:
            score = scorer(pattern, cluster.representative)
            if score >= threshold:
                cluster.members.append(ClusterMember(pattern, count, score))
                break
        else:
            clusters.append(MerchantCluster(
                representative=pattern,
                display_name=display_name(pattern),
                members=[ClusterMember(pattern, count, 1.0)],
            ))

    total = sum(counts.values())
    for cluster in clusters:
        cluster.confidence = cluster_confidence(cluster, total, config)

    logger.debug("Clustered %d patterns into %d clusters at threshold %.2f",
                 len(counts), len(clusters), threshold)
    return clusters


def rank_candidates(
    pattern: str,
    candidates: Sequence[Tuple[str, str]],
    threshold: float = DEFAULT_THRESHOLD,
    scorer: Optional[SimilarityScorer] = None,
) -> List[Tuple[str, float]]:
    """
    Score ``pattern`` against ``(key, representative)`` candidates.

    Returns ``(key, score)`` pairs at or above the threshold, best first;
    equal scores keep the candidates' original order.
    """
    threshold = validate_threshold(threshold)
    scorer = scorer or SimilarityScorer()
    if not pattern:
        return []

    scored = []
    for key, representative in candidates:
        if not representative:
            continue
        score = scorer(pattern, representative)
        if score >= threshold:
            scored.append((key, score))
    return sorted(scored, key=lambda item: -item[1])
