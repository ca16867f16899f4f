"""
Engine configuration using Pydantic Settings.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LearnerSettings(BaseSettings):
    """Parameters for learning affinities from interaction history."""

    model_config = SettingsConfigDict(env_prefix="LEARNER_")

    min_interactions_for_learning: int = Field(default=5, ge=1)
    max_interaction_history: int = Field(
        default=1000,
        ge=1,
        description="Per-user interaction cap; older rows are pruned on insert",
    )
    commit_confidence_threshold: float = Field(default=0.3, ge=0.0, le=1.0)

    # Affinity ranking
    significance_threshold: int = Field(
        default=3,
        ge=1,
        description="Interactions needed before an item's positive ratio is taken at face value",
    )
    top_items_limit: int = Field(default=10, ge=1)
    trend_margin: float = Field(default=0.2, ge=0.0, lt=1.0)

    # Emerging topics
    emerging_window_hours: float = Field(default=48.0, gt=0)
    emerging_min_count: int = Field(default=2, ge=1)
    max_emerging_topics: int = Field(default=5, ge=1)

    # Source signals
    preferred_source_min_ratio: float = Field(default=0.7, ge=0.0, le=1.0)
    max_preferred_recommendations: int = Field(default=5, ge=1)
    decline_negative_ratio: float = Field(default=0.6, ge=0.0, le=1.0)
    decline_min_interactions: int = Field(default=2, ge=1)
    max_declining_sources: int = Field(default=5, ge=1)

    # Activity stats
    activity_window_days: int = Field(default=7, ge=1)

    category_learning_enabled: bool = True
    source_learning_enabled: bool = True
    topic_learning_enabled: bool = True


class QuerySettings(BaseSettings):
    """Parameters for turning preferences into an embedding query."""

    model_config = SettingsConfigDict(env_prefix="QUERY_")

    topic_weight: float = Field(default=0.7, ge=0.0)
    source_weight: float = Field(default=0.3, ge=0.0)
    fallback_topics: list[str] = Field(
        default=["general news", "current events", "breaking news"],
    )
    max_query_length: int = Field(default=500, ge=10)
    cache_ttl_seconds: float = Field(default=300.0, gt=0)

    @field_validator("fallback_topics")
    @classmethod
    def validate_fallback_topics(cls, v: list[str]) -> list[str]:
        topics = [t.strip() for t in v if t and t.strip()]
        if not topics:
            raise ValueError("At least one fallback topic is required")
        return topics


class SearchSettings(BaseSettings):
    """Parameters for retrieval and preference-aware re-ranking."""

    model_config = SettingsConfigDict(env_prefix="SEARCH_")

    relevance_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    fallback_relevance_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    max_results: int = Field(default=15, ge=1)
    candidate_pool_size: int = Field(
        default=50,
        ge=1,
        description="Number of nearest neighbours requested from the vector index",
    )
    fallback_enabled: bool = True

    enable_category_boost: bool = True
    category_boost_factor: float = Field(default=1.2, ge=1.0)
    enable_source_boost: bool = True
    source_boost_factor: float = Field(default=1.1, ge=1.0)
    enable_recency_boost: bool = True
    recency_boost_max: float = Field(default=0.2, ge=0.0)
    recency_half_life_days: float = Field(
        default=2.0,
        gt=0,
        description="Days for the recency bonus to halve",
    )

    similar_candidate_multiplier: int = Field(default=4, ge=1)

    trending_keywords_enabled: bool = True
    trending_keyword_min_articles: int = Field(
        default=3,
        ge=1,
        description="Articles a content keyword must appear in to trend",
    )
    trending_keyword_min_length: int = Field(default=4, ge=1)


class EmbeddingSettings(BaseSettings):
    """Embedding backend selection."""

    model_config = SettingsConfigDict(env_prefix="EMBEDDING_")

    backend: Literal["hash", "local", "openai"] = "hash"
    model: str = "all-MiniLM-L6-v2"
    openai_model: str = "text-embedding-3-small"
    dimension: int = Field(default=384, ge=8)


class Settings(BaseSettings):
    """Main engine settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "SmartKhabar Personalization"
    app_version: str = "0.1.0"
    debug: bool = Field(default=False)
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./smartkhabar.db",
        description="Async database URL (SQLAlchemy format)",
    )

    openai_api_key: str | None = Field(default=None)

    # Deadline applied to every embedding, vector index and store call
    external_call_timeout_seconds: float = Field(default=5.0, gt=0)

    learner: LearnerSettings = Field(default_factory=LearnerSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
