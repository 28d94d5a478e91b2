"""
Merchant intelligence engine: pure normalization, scoring, clustering and
recurrence detection. Nothing in this package touches the database.
"""

from spendsense.engine.normalizer import NormalizerConfig, normalize, display_name
from spendsense.engine.similarity import SimilarityScorer, SimilarityWeights, similarity
from spendsense.engine.clustering import (
    ClusteringConfig,
    MerchantCluster,
    cluster_patterns,
    rank_candidates,
    validate_threshold,
)
from spendsense.engine.recurrence import (
    DetectorConfig,
    DetectedPattern,
    TransactionPoint,
    detect,
)

__all__ = [
    'NormalizerConfig',
    'normalize',
    'display_name',
    'SimilarityScorer',
    'SimilarityWeights',
    'similarity',
    'ClusteringConfig',
    'MerchantCluster',
    'cluster_patterns',
    'rank_candidates',
    'validate_threshold',
    'DetectorConfig',
    'DetectedPattern',
    'TransactionPoint',
    'detect',
]
