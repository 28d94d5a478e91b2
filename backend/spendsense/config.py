"""
Application configuration using Pydantic settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_name: str = "SpendSense"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./data/db.sqlite"
    store_timeout_seconds: float = 10.0

    # Merchant normalization / similarity
    normalizer_max_length: int = 64
    similarity_token_weight: float = 0.6
    similarity_edit_weight: float = 0.4

    # Merchant clustering
    merchant_similarity_threshold: float = 0.85
    cluster_similarity_weight: float = 0.6
    cluster_share_weight: float = 0.25
    cluster_size_weight: float = 0.15
    cluster_size_saturation: int = 5

    # Recurrence detection
    recurrence_lookback_months: int = 24
    recurrence_min_occurrences: int = 3
    recurrence_amount_cv_ceiling: float = 0.15
    recurrence_confidence_floor: float = 0.5
    recurrence_evidence_saturation: int = 6
    recurrence_regularity_weight: float = 0.4
    recurrence_amount_weight: float = 0.35
    recurrence_evidence_weight: float = 0.25

    # Recurrence reconciliation
    recurrence_band_overlap_min: float = 0.5
    recurrence_stale_decay: float = 0.9

    # Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    frontend_url: str = "http://localhost:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


# Global settings instance
settings = Settings()
