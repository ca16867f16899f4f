"""
Semantic search - preference-aware retrieval and re-ranking.

Search runs as a two-stage state machine:

    PRIMARY:  personalized query, preferred sources, relevance >= 0.3
        │
        ├── results ──────────────────────────────┐
        │                                         ▼
        └── empty ──► FALLBACK: generic query,   SCORE ──► SORT ──► TRUNCATE
                      any source, relevance >= 0.1 ┘

The fallback runs at most once and only after the primary stage came back
empty. Every retrieved chunk is then re-scored:

    final = base_relevance × category_boost × source_boost × recency_boost

Each boost is >= 1.0, and missing metadata leaves a boost at exactly 1.0.
"""
import math
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

import structlog

from smartkhabar.config import SearchSettings, get_settings
from smartkhabar.core.errors import OperationTimeoutError, SearchError, with_deadline
from smartkhabar.models.domain import (
    AffinityStats,
    CategoryCount,
    DateRange,
    ScoredResult,
    SearchFilters,
    SearchMetrics,
    SearchResponse,
    SearchStage,
    SimilarArticlesMetrics,
    SimilarArticlesResponse,
    SourceCount,
    TrendingTopic,
    UserPreferences,
    VectorMatch,
    VectorSearchResponse,
    WeightedTopic,
    to_naive_utc,
    utcnow,
)
from smartkhabar.services.query_converter import PreferenceQueryConverter
from smartkhabar.services.vector_index import VectorIndex

logger = structlog.get_logger(__name__)

TOP_BREAKDOWN_LIMIT = 5
WORD_SPLIT_RE = re.compile(r"\W+")


@dataclass
class _TrendingArticle:
    category: Optional[str]
    published_at: datetime
    words: set[str] = field(default_factory=set)


class SemanticSearchService:
    """
    Retrieves chunks for a preference profile and ranks them.

    The vector index supplies base relevance; this service owns filtering,
    boosting, ordering, and the fallback retry.
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        query_converter: PreferenceQueryConverter,
        settings: Optional[SearchSettings] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.vector_index = vector_index
        self.query_converter = query_converter
        self.settings = settings or get_settings().search
        self.timeout = timeout if timeout is not None else get_settings().external_call_timeout_seconds
        self._clock = clock

    # =========================================================================
    # Preference search
    # =========================================================================

    async def search_by_preferences(
        self,
        preferences: UserPreferences,
        additional_filters: Optional[SearchFilters] = None,
        topic_stats: Optional[Sequence[AffinityStats]] = None,
        timeout: Optional[float] = None,
    ) -> SearchResponse:
        """
        Personalized search over the chunk corpus.

        Args:
            preferences: The user's profile
            additional_filters: Caller filters, merged over the defaults
            topic_stats: Category affinities used to weight topics
            timeout: Deadline applied to each external call

        Returns:
            SearchResponse with at most `max_results` results, sorted by
            final score descending
        """
        start = time.perf_counter()
        user_id = preferences.user_id

        # Stage 1: primary
        stage = SearchStage.PRIMARY
        query = await self.query_converter.convert_preferences_to_query(
            preferences, topic_stats=topic_stats, timeout=timeout
        )
        query_time_ms = query.processing_time_ms
        weighted_topics = query.weighted_topics

        filters = self._build_filters(preferences, additional_filters)
        vector_start = time.perf_counter()
        response = await self._vector_search(query.query_embedding, filters, user_id, timeout)
        vector_time_ms = (time.perf_counter() - vector_start) * 1000
        candidates = self._drop_excluded(response.results, preferences.excluded_sources)

        # Stage 2: fallback, only once the primary stage is known to be empty
        if not candidates and self.settings.fallback_enabled:
            stage = SearchStage.FALLBACK
            logger.info("Primary search empty, running fallback", user_id=user_id)

            fallback_query = await self.query_converter.generate_fallback_query(timeout=timeout)
            query_time_ms += fallback_query.processing_time_ms
            fallback_filters = filters.model_copy(
                update={
                    "sources": None,
                    "min_relevance_score": self.settings.fallback_relevance_threshold,
                }
            )
            vector_start = time.perf_counter()
            response = await self._vector_search(
                fallback_query.query_embedding, fallback_filters, user_id, timeout
            )
            vector_time_ms += (time.perf_counter() - vector_start) * 1000
            candidates = self._drop_excluded(response.results, preferences.excluded_sources)

        scoring_start = time.perf_counter()
        now = to_naive_utc(self._clock())
        scored = [self._score(match, preferences, weighted_topics, now) for match in candidates]
        scored.sort(key=self._sort_key)
        results = scored[: self.settings.max_results]
        scoring_time_ms = (time.perf_counter() - scoring_start) * 1000

        metrics = SearchMetrics(
            query_processing_time_ms=query_time_ms,
            vector_search_time_ms=vector_time_ms,
            scoring_time_ms=scoring_time_ms,
            total_time_ms=(time.perf_counter() - start) * 1000,
            results_found=len(response.results),
            results_after_filtering=len(candidates),
            fallback_used=stage == SearchStage.FALLBACK or query.fallback_used,
            stage=stage,
            average_relevance_score=(
                sum(r.base_relevance_score for r in results) / len(results) if results else 0.0
            ),
            top_categories=[
                CategoryCount(category=name, count=count)
                for name, count in self._top_counts(r.chunk.metadata.category for r in results)
            ],
            top_sources=[
                SourceCount(source=name, count=count)
                for name, count in self._top_counts(r.chunk.metadata.source for r in results)
            ],
        )

        logger.debug(
            "Preference search complete",
            user_id=user_id,
            stage=stage.value,
            results=len(results),
            total_time_ms=round(metrics.total_time_ms, 2),
        )
        return SearchResponse(results=results, metrics=metrics)

    def _build_filters(
        self,
        preferences: UserPreferences,
        additional_filters: Optional[SearchFilters],
    ) -> SearchFilters:
        excluded = {s.lower() for s in preferences.excluded_sources}
        sources = [s for s in preferences.preferred_sources if s.lower() not in excluded]

        base: dict[str, Any] = {"min_relevance_score": self.settings.relevance_threshold}
        if sources:
            base["sources"] = sources
        if additional_filters is not None:
            base.update(additional_filters.model_dump(exclude_none=True))
        return SearchFilters(**base)

    @staticmethod
    def _drop_excluded(matches: list[VectorMatch], excluded_sources: Iterable[str]) -> list[VectorMatch]:
        excluded = {s.lower() for s in excluded_sources}
        if not excluded:
            return list(matches)
        return [
            m for m in matches
            if not m.chunk.metadata.source or m.chunk.metadata.source.lower() not in excluded
        ]

    # =========================================================================
    # Scoring
    # =========================================================================

    def _score(
        self,
        match: VectorMatch,
        preferences: UserPreferences,
        weighted_topics: Sequence[WeightedTopic],
        now: datetime,
    ) -> ScoredResult:
        metadata = match.chunk.metadata
        matched: list[str] = []

        category_boost = 1.0
        if self.settings.enable_category_boost and metadata.category:
            weights = {wt.topic.lower(): wt.weight for wt in weighted_topics}
            weight = weights.get(metadata.category.lower())
            if weight is not None:
                category_boost = 1 + (self.settings.category_boost_factor - 1) * weight
                matched.append(f"category:{metadata.category}")

        source_boost = 1.0
        if self.settings.enable_source_boost and metadata.source:
            preferred = {s.lower() for s in preferences.preferred_sources}
            if metadata.source.lower() in preferred:
                source_boost = self.settings.source_boost_factor
                matched.append(f"source:{metadata.source}")

        recency_boost = 1.0
        if self.settings.enable_recency_boost and metadata.published_at is not None:
            recency_boost = self.compute_recency_boost(metadata.published_at, now)

        base = match.relevance_score
        return ScoredResult(
            chunk=match.chunk,
            base_relevance_score=base,
            category_boost=category_boost,
            source_boost=source_boost,
            recency_boost=recency_boost,
            final_score=base * category_boost * source_boost * recency_boost,
            matched_preferences=matched,
        )

    def compute_recency_boost(self, published_at: datetime, now: Optional[datetime] = None) -> float:
        """
        Recency multiplier with exponential decay.

        Uses half-life model: the bonus above 1.0 halves every
        `recency_half_life_days`.
        - Published now: 1.2
        - Published 2 days ago: 1.1
        - Published 4 days ago: 1.05
        Future dates count as published now.
        """
        now = to_naive_utc(now or self._clock())
        age_days = (now - to_naive_utc(published_at)).total_seconds() / 86400
        decay_rate = math.log(2) / self.settings.recency_half_life_days
        return 1 + self.settings.recency_boost_max * math.exp(-decay_rate * max(0, age_days))

    @staticmethod
    def _sort_key(result: ScoredResult) -> tuple[float, float, str]:
        published_at = result.chunk.metadata.published_at
        recency = published_at.timestamp() if published_at is not None else float("-inf")
        return (-result.final_score, -recency, result.chunk.id)

    @staticmethod
    def _top_counts(values: Iterable[Optional[str]]) -> list[tuple[str, int]]:
        counts = Counter(v for v in values if v)
        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return ranked[:TOP_BREAKDOWN_LIMIT]

    # =========================================================================
    # Similar articles
    # =========================================================================

    async def find_similar_articles(
        self,
        article_id: str,
        limit: int = 5,
        exclude_categories: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
    ) -> SimilarArticlesResponse:
        """
        Articles closest to a reference article, one match per article.

        The reference article itself is never returned. An unknown article
        yields an empty response.
        """
        start = time.perf_counter()
        chunks = await self._index_call(
            self.vector_index.get_article_chunks(article_id),
            "get_article_chunks",
            timeout,
        )
        if not chunks:
            logger.debug("No chunks for reference article", article_id=article_id)
            return SimilarArticlesResponse()

        reference = min(chunks, key=lambda c: c.metadata.chunk_index)
        pool_size = limit * self.settings.similar_candidate_multiplier + len(chunks)
        response = await self._vector_search(reference.embedding, None, None, timeout, limit=pool_size)

        excluded_categories = {c.lower() for c in exclude_categories or ()}
        best: dict[str, VectorMatch] = {}
        for match in response.results:
            chunk = match.chunk
            if chunk.article_id == article_id:
                continue
            if chunk.metadata.category and chunk.metadata.category.lower() in excluded_categories:
                continue
            current = best.get(chunk.article_id)
            if current is None or match.relevance_score > current.relevance_score:
                best[chunk.article_id] = match

        results = sorted(best.values(), key=lambda m: (-m.relevance_score, m.chunk.id))[:limit]
        return SimilarArticlesResponse(
            results=results,
            metrics=SimilarArticlesMetrics(
                vector_search_time_ms=(time.perf_counter() - start) * 1000,
                results_found=len(results),
            ),
        )

    # =========================================================================
    # Trending
    # =========================================================================

    async def get_trending_topics(
        self,
        window_hours: float = 24,
        limit: int = 10,
        timeout: Optional[float] = None,
    ) -> list[TrendingTopic]:
        """
        Categories and content keywords with the most fresh coverage in the
        trailing window.

        Each article counts once per topic, weighted by freshness that halves
        every half-window. Scores are shares of all articles in the window.
        A keyword trends once it appears in `trending_keyword_min_articles`
        articles; keywords that repeat a category name are folded into it.
        """
        now = to_naive_utc(self._clock())
        filters = SearchFilters(
            date_range=DateRange(start=now - timedelta(hours=window_hours), end=now)
        )
        chunks = await self._index_call(self.vector_index.scan(filters), "scan_chunks", timeout)

        # Chunks of one article share metadata; their words are pooled
        articles: dict[str, _TrendingArticle] = {}
        for chunk in chunks:
            if chunk.metadata.published_at is None:
                continue
            article = articles.get(chunk.article_id)
            if article is None:
                article = articles[chunk.article_id] = _TrendingArticle(
                    chunk.metadata.category, chunk.metadata.published_at
                )
            if self.settings.trending_keywords_enabled:
                article.words.update(self._keywords(chunk.content))

        if not articles:
            return []

        half_window = window_hours / 2
        freshness: dict[str, float] = {}
        counts: Counter[str] = Counter()
        keyword_freshness: dict[str, float] = {}
        keyword_counts: Counter[str] = Counter()
        for article in articles.values():
            age_hours = max(0.0, (now - article.published_at).total_seconds() / 3600)
            weight = 0.5 ** (age_hours / half_window)
            if article.category:
                freshness[article.category] = freshness.get(article.category, 0.0) + weight
                counts[article.category] += 1
            for word in article.words:
                keyword_freshness[word] = keyword_freshness.get(word, 0.0) + weight
                keyword_counts[word] += 1

        total_articles = len(articles)
        trending = [
            TrendingTopic(
                topic=category,
                score=freshness[category] / total_articles,
                article_count=count,
            )
            for category, count in counts.items()
        ]

        category_names = {c.casefold() for c in counts}
        trending.extend(
            TrendingTopic(
                topic=word,
                score=keyword_freshness[word] / total_articles,
                article_count=count,
            )
            for word, count in keyword_counts.items()
            if count >= self.settings.trending_keyword_min_articles
            and word not in category_names
        )

        trending.sort(key=lambda t: (-t.score, -t.article_count, t.topic))
        return trending[:limit]

    def _keywords(self, content: str) -> set[str]:
        min_length = self.settings.trending_keyword_min_length
        return {w for w in WORD_SPLIT_RE.split(content.lower()) if len(w) >= min_length}

    # =========================================================================
    # Configuration & index access
    # =========================================================================

    def get_config(self) -> SearchSettings:
        return self.settings.model_copy()

    def update_config(self, **changes: Any) -> SearchSettings:
        self.settings = type(self.settings)(**{**self.settings.model_dump(), **changes})
        return self.settings

    async def _vector_search(
        self,
        embedding: Sequence[float],
        filters: Optional[SearchFilters],
        user_id: Optional[str],
        timeout: Optional[float],
        limit: Optional[int] = None,
    ) -> VectorSearchResponse:
        return await self._index_call(
            self.vector_index.search(
                embedding,
                filters=filters,
                limit=limit or self.settings.candidate_pool_size,
            ),
            "vector_search",
            timeout,
            user_id=user_id,
        )

    async def _index_call(
        self,
        awaitable: Awaitable[Any],
        operation: str,
        timeout: Optional[float],
        user_id: Optional[str] = None,
    ) -> Any:
        try:
            return await with_deadline(
                awaitable,
                timeout if timeout is not None else self.timeout,
                operation,
                user_id=user_id,
            )
        except (OperationTimeoutError, SearchError):
            raise
        except Exception as e:
            raise SearchError(
                f"Vector index call failed: {e}",
                operation=operation,
                user_id=user_id,
            ) from e
