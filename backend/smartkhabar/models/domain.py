"""
Domain models for the SmartKhabar personalization engine.
These are the core records, independent of database/API representation.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values are taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def source_key(source: str) -> str:
    """Sources are matched case-insensitively everywhere."""
    return source.strip().casefold()


def _dedupe(values, key=None) -> tuple[str, ...]:
    seen: dict[Any, str] = {}
    for value in values or ():
        k = key(value) if key and isinstance(value, str) else value
        if k not in seen:
            seen[k] = value
    return tuple(seen.values())


def _without_sources(values, removed) -> tuple[str, ...]:
    keys = {source_key(s) for s in removed}
    return tuple(v for v in values if source_key(v) not in keys)


# =============================================================================
# Enums
# =============================================================================

class InteractionAction(str, Enum):
    """What a user did with an article in the feed."""
    READ_MORE = "read_more"
    LIKE = "like"
    HIDE = "hide"
    SHARE = "share"

    @property
    def is_positive(self) -> bool:
        return self in POSITIVE_ACTIONS

    @property
    def is_negative(self) -> bool:
        return self in NEGATIVE_ACTIONS


POSITIVE_ACTIONS = frozenset(
    {InteractionAction.READ_MORE, InteractionAction.LIKE, InteractionAction.SHARE}
)
NEGATIVE_ACTIONS = frozenset({InteractionAction.HIDE})


class Tone(str, Enum):
    """Summary tone requested by the user."""
    FORMAL = "formal"
    CASUAL = "casual"
    FUN = "fun"


class Trend(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


class SearchStage(str, Enum):
    """Which stage of the search state machine produced the results."""
    PRIMARY = "primary"
    FALLBACK = "fallback"


# =============================================================================
# Interactions
# =============================================================================

class Interaction(BaseModel):
    """A single recorded user interaction. Immutable once written."""
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    article_id: str = Field(min_length=1)
    action: InteractionAction
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class ArticleMetadata(BaseModel):
    """Article fields joined onto an interaction at query time. All optional."""
    model_config = ConfigDict(frozen=True)

    source: Optional[str] = None
    category: Optional[str] = None
    tags: tuple[str, ...] = ()

    @field_validator("tags", mode="before")
    @classmethod
    def drop_empty_tags(cls, v: Any) -> tuple[str, ...]:
        if v is None:
            return ()
        return tuple(t for t in v if isinstance(t, str) and t.strip())


class InteractionRecord(BaseModel):
    """An interaction as read back from the store, with article metadata."""
    model_config = ConfigDict(frozen=True)

    interaction: Interaction
    article: Optional[ArticleMetadata] = None

    @property
    def action(self) -> InteractionAction:
        return self.interaction.action

    @property
    def timestamp(self) -> datetime:
        return self.interaction.timestamp

    @property
    def source(self) -> Optional[str]:
        return self.article.source if self.article else None

    @property
    def category(self) -> Optional[str]:
        return self.article.category if self.article else None

    @property
    def tags(self) -> tuple[str, ...]:
        return self.article.tags if self.article else ()


# =============================================================================
# Preferences
# =============================================================================

class UserPreferences(BaseModel):
    """
    A user's preference profile.

    Collections are de-duplicated tuples, so a profile is a value: every
    mutation helper returns a new profile. A source is never both
    preferred and excluded.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    topics: tuple[str, ...] = ()
    tone: Tone = Tone.CASUAL
    reading_time: int = Field(default=5, ge=1, le=15)  # minutes
    preferred_sources: tuple[str, ...] = ()
    excluded_sources: tuple[str, ...] = ()
    last_updated: datetime = Field(default_factory=utcnow)

    @field_validator("topics", mode="before")
    @classmethod
    def dedupe(cls, v: Any) -> tuple[str, ...]:
        return _dedupe(v)

    @field_validator("preferred_sources", "excluded_sources", mode="before")
    @classmethod
    def dedupe_sources(cls, v: Any) -> tuple[str, ...]:
        return _dedupe(v, key=source_key)

    @field_validator("last_updated")
    @classmethod
    def normalize_last_updated(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @model_validator(mode="after")
    def check_sources_disjoint(self) -> "UserPreferences":
        excluded = {source_key(s) for s in self.excluded_sources}
        overlap = {s for s in self.preferred_sources if source_key(s) in excluded}
        if overlap:
            raise ValueError(
                f"Sources cannot be both preferred and excluded: {sorted(overlap)}"
            )
        return self

    def with_changes(self, **changes: Any) -> "UserPreferences":
        """Return a validated copy with the given fields replaced."""
        data = self.model_dump()
        data.update(changes)
        return UserPreferences.model_validate(data)

    def with_topics(self, topics) -> "UserPreferences":
        return self.with_changes(topics=_dedupe(topics), last_updated=utcnow())

    def add_preferred_source(self, source: str) -> "UserPreferences":
        """Prefer a source, removing it from the excluded list."""
        return self.with_changes(
            preferred_sources=(*self.preferred_sources, source),
            excluded_sources=_without_sources(self.excluded_sources, [source]),
            last_updated=utcnow(),
        )

    def add_excluded_source(self, source: str) -> "UserPreferences":
        """Exclude a source, removing it from the preferred list."""
        return self.with_changes(
            excluded_sources=(*self.excluded_sources, source),
            preferred_sources=_without_sources(self.preferred_sources, [source]),
            last_updated=utcnow(),
        )


# =============================================================================
# Learning
# =============================================================================

class AffinityStats(BaseModel):
    """Engagement statistics for one category or source."""
    item: str
    total_interactions: int
    positive_interactions: int
    negative_interactions: int
    positive_ratio: float
    negative_ratio: float
    last_interaction: datetime
    trend: Trend = Trend.STABLE
    recent_negative_ratio: float = 0.0


class RecommendedPreferenceUpdates(BaseModel):
    """Partial profile suggested by the learner."""
    topics: Optional[list[str]] = None
    preferred_sources: Optional[list[str]] = None
    excluded_sources: Optional[list[str]] = None


class LearningInsights(BaseModel):
    user_id: str
    total_interactions: int = 0
    learning_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    top_categories: list[AffinityStats] = Field(default_factory=list)
    top_sources: list[AffinityStats] = Field(default_factory=list)
    emerging_topics: list[str] = Field(default_factory=list)
    declining_sources: list[str] = Field(default_factory=list)
    recommended_preference_updates: RecommendedPreferenceUpdates = Field(
        default_factory=RecommendedPreferenceUpdates
    )
    last_analyzed: datetime = Field(default_factory=utcnow)


class PreferenceChange(BaseModel):
    """One proposed field change, with the evidence behind it."""
    field: str
    old_value: Any
    new_value: Any
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)


class PreferenceUpdateResult(BaseModel):
    updated_preferences: UserPreferences
    changes: list[PreferenceChange] = Field(default_factory=list)
    learning_insights: LearningInsights


class ActionCount(BaseModel):
    action: str
    count: int


class UserInteractionStats(BaseModel):
    """Lightweight activity summary for display."""
    total_interactions: int = 0
    recent_interactions: int = 0
    top_actions: list[ActionCount] = Field(default_factory=list)
    activity_trend: Trend = Trend.STABLE


# =============================================================================
# Chunks & Search
# =============================================================================

class ChunkMetadata(BaseModel):
    source: Optional[str] = None
    category: Optional[str] = None
    published_at: Optional[datetime] = None
    chunk_index: int = 0
    word_count: int = 0

    @field_validator("published_at")
    @classmethod
    def normalize_published_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class TextChunk(BaseModel):
    """A unit of embedded article text held by the vector index."""
    id: str
    article_id: str
    content: str
    embedding: list[float]
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class DateRange(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def normalize_bounds(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class SearchFilters(BaseModel):
    """Metadata filters understood by the vector index."""
    min_relevance_score: Optional[float] = None
    sources: Optional[list[str]] = None
    categories: Optional[list[str]] = None
    date_range: Optional[DateRange] = None


class VectorMatch(BaseModel):
    chunk: TextChunk
    relevance_score: float


class VectorSearchMetrics(BaseModel):
    search_time_ms: float = 0.0
    candidates_scanned: int = 0


class VectorSearchResponse(BaseModel):
    results: list[VectorMatch] = Field(default_factory=list)
    metrics: VectorSearchMetrics = Field(default_factory=VectorSearchMetrics)


class WeightedTopic(BaseModel):
    topic: str
    weight: float = 1.0


class PreferenceQuery(BaseModel):
    """A preference profile rendered as query text plus its embedding."""
    query_text: str
    query_embedding: list[float]
    weighted_topics: list[WeightedTopic] = Field(default_factory=list)
    fallback_used: bool = False
    processing_time_ms: float = 0.0


class ScoredResult(BaseModel):
    """A retrieved chunk with its personalized score breakdown."""
    chunk: TextChunk
    base_relevance_score: float
    category_boost: float = 1.0
    source_boost: float = 1.0
    recency_boost: float = 1.0
    final_score: float
    matched_preferences: list[str] = Field(default_factory=list)


class CategoryCount(BaseModel):
    category: str
    count: int


class SourceCount(BaseModel):
    source: str
    count: int


class SearchMetrics(BaseModel):
    query_processing_time_ms: float = 0.0
    vector_search_time_ms: float = 0.0
    scoring_time_ms: float = 0.0
    total_time_ms: float = 0.0
    results_found: int = 0
    results_after_filtering: int = 0
    fallback_used: bool = False
    stage: SearchStage = SearchStage.PRIMARY
    average_relevance_score: float = 0.0
    top_categories: list[CategoryCount] = Field(default_factory=list)
    top_sources: list[SourceCount] = Field(default_factory=list)


class SearchResponse(BaseModel):
    results: list[ScoredResult] = Field(default_factory=list)
    metrics: SearchMetrics = Field(default_factory=SearchMetrics)


class SimilarArticlesMetrics(BaseModel):
    vector_search_time_ms: float = 0.0
    results_found: int = 0


class SimilarArticlesResponse(BaseModel):
    results: list[VectorMatch] = Field(default_factory=list)
    metrics: SimilarArticlesMetrics = Field(default_factory=SimilarArticlesMetrics)


class TrendingTopic(BaseModel):
    topic: str
    score: float
    article_count: int


class FeedResponse(BaseModel):
    """A ranked feed plus the user's activity summary."""
    user_id: str
    results: list[ScoredResult] = Field(default_factory=list)
    metrics: SearchMetrics = Field(default_factory=SearchMetrics)
    interaction_stats: UserInteractionStats = Field(default_factory=UserInteractionStats)
