"""Build engine configuration objects from application settings."""

from spendsense.config import Settings, settings as app_settings
from spendsense.engine.clustering import ClusteringConfig
from spendsense.engine.normalizer import NormalizerConfig
from spendsense.engine.recurrence import DetectorConfig
from spendsense.engine.similarity import SimilarityScorer, SimilarityWeights


def normalizer_config(settings: Settings = app_settings) -> NormalizerConfig:
    return NormalizerConfig(max_length=settings.normalizer_max_length)


def similarity_scorer(settings: Settings = app_settings) -> SimilarityScorer:
    return SimilarityScorer(SimilarityWeights(
        token_weight=settings.similarity_token_weight,
        edit_weight=settings.similarity_edit_weight,
    ))


def clustering_config(settings: Settings = app_settings) -> ClusteringConfig:
    return ClusteringConfig(
        similarity_weight=settings.cluster_similarity_weight,
        share_weight=settings.cluster_share_weight,
        size_weight=settings.cluster_size_weight,
        size_saturation=settings.cluster_size_saturation,
    )


def detector_config(settings: Settings = app_settings) -> DetectorConfig:
    return DetectorConfig(
        lookback_months=settings.recurrence_lookback_months,
        min_occurrences=settings.recurrence_min_occurrences,
        amount_cv_ceiling=settings.recurrence_amount_cv_ceiling,
        confidence_floor=settings.recurrence_confidence_floor,
        evidence_saturation=settings.recurrence_evidence_saturation,
        regularity_weight=settings.recurrence_regularity_weight,
        amount_weight=settings.recurrence_amount_weight,
        evidence_weight=settings.recurrence_evidence_weight,
    )
