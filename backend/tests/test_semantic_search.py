"""
Tests for preference search, similar articles and trending topics.
"""

import asyncio
from datetime import timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import NOW, make_chunk
from smartkhabar.config import QuerySettings, SearchSettings
from smartkhabar.core.errors import SearchError
from smartkhabar.models.domain import SearchFilters, SearchStage, UserPreferences
from smartkhabar.services.query_converter import PreferenceQueryConverter
from smartkhabar.services.semantic_search import SemanticSearchService

TECH_TEXT = "technology software startups technology"
WORLD_TEXT = "breaking news world news"


def service_with(vector_index, embedder, clock, **settings):
    converter = PreferenceQueryConverter(embedder, settings=QuerySettings(), timeout=1.0)
    return SemanticSearchService(
        vector_index,
        converter,
        settings=SearchSettings(**settings),
        timeout=1.0,
        clock=clock,
    )


class TestSearchByPreferences:
    """Tests for the primary stage and scoring."""

    def test_technology_beats_sports(self, search_service, vector_index):
        vector_index.add_chunks([
            make_chunk("tech-1", "tech", TECH_TEXT, source="techcrunch", category="technology",
                       published_at=NOW - timedelta(days=1)),
            make_chunk("sport-1", "sport", "sports football technology", source="espn", category="sports",
                       published_at=NOW - timedelta(hours=1)),
        ])
        prefs = UserPreferences(user_id="u1", topics=("technology",))

        response = asyncio.run(search_service.search_by_preferences(prefs))

        assert [r.chunk.id for r in response.results] == ["tech-1", "sport-1"]
        top = response.results[0]
        assert top.category_boost == pytest.approx(1.2)
        assert "category:technology" in top.matched_preferences
        assert response.results[1].category_boost == 1.0
        assert response.metrics.stage == SearchStage.PRIMARY
        assert response.metrics.fallback_used is False

    def test_results_bounded_and_sorted(self, search_service, vector_index):
        vector_index.add_chunks([
            make_chunk(f"c{i:02d}", f"a{i}", "technology software", category="technology",
                       published_at=NOW - timedelta(hours=i))
            for i in range(20)
        ])
        prefs = UserPreferences(user_id="u1", topics=("technology",))

        response = asyncio.run(search_service.search_by_preferences(prefs))

        scores = [r.final_score for r in response.results]
        assert len(response.results) == 15
        assert scores == sorted(scores, reverse=True)
        assert response.results[0].chunk.id == "c00"
        assert response.metrics.results_found == 20

    def test_final_score_is_product_of_boosts(self, search_service, vector_index):
        vector_index.add_chunks([
            make_chunk("c1", "a1", TECH_TEXT, source="wired", category="Technology",
                       published_at=NOW - timedelta(days=2)),
        ])
        prefs = UserPreferences(user_id="u1", topics=("technology",), preferred_sources=("wired",))

        result = asyncio.run(search_service.search_by_preferences(prefs)).results[0]

        assert result.source_boost == pytest.approx(1.1)
        assert result.recency_boost == pytest.approx(1.1)
        assert result.final_score == pytest.approx(
            result.base_relevance_score * result.category_boost * result.source_boost * result.recency_boost
        )
        assert result.matched_preferences == ["category:Technology", "source:wired"]

    def test_timezone_aware_publish_dates(self, search_service, vector_index):
        published = (NOW - timedelta(days=2)).replace(tzinfo=timezone.utc)
        vector_index.add_chunks([
            make_chunk("c1", "a1", TECH_TEXT, category="technology", published_at=published),
        ])
        prefs = UserPreferences(user_id="u1", topics=("technology",))

        result = asyncio.run(search_service.search_by_preferences(prefs)).results[0]

        assert result.chunk.metadata.published_at == NOW - timedelta(days=2)
        assert result.recency_boost == pytest.approx(1.1)

    def test_missing_metadata_is_neutral(self, search_service, vector_index):
        vector_index.add_chunks([make_chunk("bare", "a1", TECH_TEXT)])
        prefs = UserPreferences(user_id="u1", topics=("technology",))

        result = asyncio.run(search_service.search_by_preferences(prefs)).results[0]

        assert result.category_boost == 1.0
        assert result.source_boost == 1.0
        assert result.recency_boost == 1.0
        assert result.final_score == pytest.approx(result.base_relevance_score)
        assert result.matched_preferences == []

    def test_ties_broken_by_date_then_id(self, vector_index, embedder, clock):
        service = service_with(vector_index, embedder, clock, enable_recency_boost=False)
        vector_index.add_chunks([
            make_chunk("c-none", "a1", "technology software"),
            make_chunk("c-old", "a2", "technology software", published_at=NOW - timedelta(days=5)),
            make_chunk("c-new", "a3", "technology software", published_at=NOW - timedelta(hours=1)),
            make_chunk("c-new-b", "a4", "technology software", published_at=NOW - timedelta(hours=1)),
        ])
        prefs = UserPreferences(user_id="u1", topics=("technology",))

        response = asyncio.run(service.search_by_preferences(prefs))

        assert [r.chunk.id for r in response.results] == ["c-new", "c-new-b", "c-old", "c-none"]

    def test_preferred_sources_restrict_primary_stage(self, search_service, vector_index):
        vector_index.add_chunks([
            make_chunk("tc", "a1", TECH_TEXT, source="techcrunch"),
            make_chunk("wd", "a2", TECH_TEXT, source="wired"),
        ])
        prefs = UserPreferences(user_id="u1", topics=("technology",), preferred_sources=("wired",))

        response = asyncio.run(search_service.search_by_preferences(prefs))

        assert [r.chunk.id for r in response.results] == ["wd"]

    def test_additional_filters_override_defaults(self, search_service, vector_index):
        vector_index.add_chunks([
            make_chunk("tc", "a1", TECH_TEXT, source="techcrunch"),
            make_chunk("wd", "a2", TECH_TEXT, source="wired"),
        ])
        prefs = UserPreferences(user_id="u1", topics=("technology",), preferred_sources=("wired",))
        filters = SearchFilters(sources=["techcrunch", "wired"])

        response = asyncio.run(search_service.search_by_preferences(prefs, additional_filters=filters))

        assert [r.chunk.id for r in response.results] == ["wd", "tc"]
        assert response.results[0].source_boost == pytest.approx(1.1)
        assert response.results[1].source_boost == 1.0

    def test_excluded_sources_are_dropped(self, search_service, vector_index):
        vector_index.add_chunks([
            make_chunk("tc", "a1", TECH_TEXT, source="TechCrunch"),
            make_chunk("wd", "a2", TECH_TEXT, source="wired"),
        ])
        prefs = UserPreferences(user_id="u1", topics=("technology",), excluded_sources=("techcrunch",))

        response = asyncio.run(search_service.search_by_preferences(prefs))

        assert [r.chunk.id for r in response.results] == ["wd"]

    def test_metrics_breakdown(self, search_service, vector_index):
        vector_index.add_chunks([
            make_chunk("c1", "a1", TECH_TEXT, source="wired", category="technology"),
            make_chunk("c2", "a2", TECH_TEXT, source="wired", category="technology"),
            make_chunk("c3", "a3", "technology ai", source="verge", category="science"),
        ])
        prefs = UserPreferences(user_id="u1", topics=("technology",))

        metrics = asyncio.run(search_service.search_by_preferences(prefs)).metrics

        assert [(c.category, c.count) for c in metrics.top_categories] == [("technology", 2), ("science", 1)]
        assert [(s.source, s.count) for s in metrics.top_sources] == [("wired", 2), ("verge", 1)]
        assert metrics.average_relevance_score > 0
        assert metrics.results_after_filtering == 3

    def test_index_failure_raises_search_error(self, search_service, vector_index):
        vector_index.search = AsyncMock(side_effect=RuntimeError("index offline"))
        prefs = UserPreferences(user_id="u1", topics=("technology",))

        with pytest.raises(SearchError) as exc_info:
            asyncio.run(search_service.search_by_preferences(prefs))

        assert exc_info.value.operation == "vector_search"
        assert exc_info.value.user_id == "u1"


class TestFallbackStage:
    """Tests for the single fallback retry."""

    def test_fallback_runs_after_empty_primary(self, search_service, vector_index, embedder):
        vector_index.add_chunks([
            make_chunk("tech", "a1", TECH_TEXT, source="techcrunch"),
            make_chunk("world", "a2", WORLD_TEXT, source="reuters"),
        ])
        vector_index.search = AsyncMock(wraps=vector_index.search)
        prefs = UserPreferences(user_id="u1", topics=("quantum",))

        response = asyncio.run(search_service.search_by_preferences(prefs))

        assert vector_index.search.await_count == 2
        assert embedder.calls == ["quantum quantum", "general news current events breaking news"]
        assert response.metrics.stage == SearchStage.FALLBACK
        assert response.metrics.fallback_used is True
        assert [r.chunk.id for r in response.results] == ["world"]

    def test_no_fallback_when_primary_has_results(self, search_service, vector_index, embedder):
        vector_index.add_chunks([make_chunk("tech", "a1", TECH_TEXT)])
        vector_index.search = AsyncMock(wraps=vector_index.search)
        prefs = UserPreferences(user_id="u1", topics=("technology",))

        asyncio.run(search_service.search_by_preferences(prefs))

        assert vector_index.search.await_count == 1
        assert len(embedder.calls) == 1

    def test_fallback_ignores_preferred_sources(self, search_service, vector_index):
        vector_index.add_chunks([make_chunk("world", "a2", WORLD_TEXT, source="reuters")])
        prefs = UserPreferences(user_id="u1", topics=("quantum",), preferred_sources=("techcrunch",))

        response = asyncio.run(search_service.search_by_preferences(prefs))

        assert [r.chunk.id for r in response.results] == ["world"]

    def test_fallback_still_drops_excluded_sources(self, search_service, vector_index):
        vector_index.add_chunks([make_chunk("world", "a2", WORLD_TEXT, source="reuters")])
        prefs = UserPreferences(user_id="u1", topics=("quantum",), excluded_sources=("reuters",))

        response = asyncio.run(search_service.search_by_preferences(prefs))

        assert response.results == []
        assert response.metrics.stage == SearchStage.FALLBACK

    def test_fallback_disabled(self, vector_index, embedder, clock):
        service = service_with(vector_index, embedder, clock, fallback_enabled=False)
        vector_index.add_chunks([make_chunk("world", "a2", WORLD_TEXT)])
        prefs = UserPreferences(user_id="u1", topics=("quantum",))

        response = asyncio.run(service.search_by_preferences(prefs))

        assert response.results == []
        assert response.metrics.stage == SearchStage.PRIMARY
        assert len(embedder.calls) == 1


class TestRecencyBoost:
    def test_decay_curve(self, search_service):
        assert search_service.compute_recency_boost(NOW, NOW) == pytest.approx(1.2)
        assert search_service.compute_recency_boost(NOW - timedelta(days=2), NOW) == pytest.approx(1.1)
        assert search_service.compute_recency_boost(NOW - timedelta(days=4), NOW) == pytest.approx(1.05)

    def test_future_dates_clamped(self, search_service):
        assert search_service.compute_recency_boost(NOW + timedelta(days=1), NOW) == pytest.approx(1.2)

    def test_mixed_timezone_awareness(self, search_service):
        aware = (NOW - timedelta(days=2)).replace(tzinfo=timezone.utc)

        assert search_service.compute_recency_boost(aware, NOW) == pytest.approx(1.1)
        assert search_service.compute_recency_boost(NOW, aware) == pytest.approx(1.2)


class TestFindSimilarArticles:
    """Tests for article-to-article similarity."""

    @pytest.fixture
    def corpus(self, vector_index):
        vector_index.add_chunks([
            make_chunk("a1-1", "a1", "football", chunk_index=1),
            make_chunk("a1-0", "a1", "technology software startups", chunk_index=0),
            make_chunk("a2-0", "a2", "technology software", category="technology"),
            make_chunk("a2-1", "a2", "technology startups", category="technology", chunk_index=1),
            make_chunk("a3-0", "a3", "sports football league", category="sports"),
            make_chunk("a4-0", "a4", "technology ai", category="science"),
        ])

    def test_reference_article_never_returned(self, search_service, corpus):
        response = asyncio.run(search_service.find_similar_articles("a1"))

        article_ids = [m.chunk.article_id for m in response.results]
        assert "a1" not in article_ids
        assert article_ids[:2] == ["a2", "a4"]
        assert len(article_ids) == len(set(article_ids))
        assert response.metrics.results_found == len(response.results)

    def test_limit_and_excluded_categories(self, search_service, corpus):
        response = asyncio.run(
            search_service.find_similar_articles("a1", limit=5, exclude_categories=["SPORTS"])
        )

        assert [m.chunk.article_id for m in response.results] == ["a2", "a4"]

        limited = asyncio.run(search_service.find_similar_articles("a1", limit=1))
        assert [m.chunk.article_id for m in limited.results] == ["a2"]

    def test_unknown_article_is_empty(self, search_service, vector_index):
        vector_index.search = AsyncMock(wraps=vector_index.search)

        response = asyncio.run(search_service.find_similar_articles("missing"))

        assert response.results == []
        vector_index.search.assert_not_awaited()


class TestTrendingTopics:
    """Tests for trending topic detection."""

    @pytest.fixture
    def corpus(self, vector_index):
        vector_index.add_chunks([
            make_chunk("t1-0", "t1", "technology", category="technology", published_at=NOW - timedelta(hours=1)),
            make_chunk("t1-1", "t1", "software", category="technology", published_at=NOW - timedelta(hours=1),
                       chunk_index=1),
            make_chunk("t2-0", "t2", "technology", category="technology", published_at=NOW - timedelta(hours=2)),
            make_chunk("s1-0", "s1", "sports", category="sports", published_at=NOW - timedelta(hours=20)),
            make_chunk("s2-0", "s2", "sports", category="sports", published_at=NOW - timedelta(hours=22)),
            make_chunk("old-0", "old", "technology", category="technology", published_at=NOW - timedelta(hours=48)),
            make_chunk("misc-0", "misc", "news", published_at=NOW - timedelta(hours=3)),
        ])

    def test_fresher_topic_ranks_first(self, search_service, corpus):
        trending = asyncio.run(search_service.get_trending_topics(window_hours=24))

        assert [(t.topic, t.article_count) for t in trending] == [("technology", 2), ("sports", 2)]
        assert trending[0].score > trending[1].score
        assert trending[0].score == pytest.approx((0.5 ** (1 / 12) + 0.5 ** (2 / 12)) / 5)

    def test_limit(self, search_service, corpus):
        trending = asyncio.run(search_service.get_trending_topics(window_hours=24, limit=1))

        assert [t.topic for t in trending] == ["technology"]

    def test_empty_window(self, search_service, vector_index):
        assert asyncio.run(search_service.get_trending_topics()) == []

    def test_keywords_shared_by_articles_trend(self, search_service, vector_index):
        vector_index.add_chunks([
            make_chunk("e1", "e1", "election results politics", category="politics",
                       published_at=NOW - timedelta(hours=1)),
            make_chunk("e2", "e2", "election turnout world", category="world",
                       published_at=NOW - timedelta(hours=2)),
            make_chunk("e3", "e3", "Election debate recap", published_at=NOW - timedelta(hours=3)),
            make_chunk("f1", "f1", "football league", category="sports",
                       published_at=NOW - timedelta(hours=4)),
        ])

        trending = asyncio.run(search_service.get_trending_topics(window_hours=24))

        assert trending[0].topic == "election"
        assert trending[0].article_count == 3
        assert trending[0].score == pytest.approx(
            (0.5 ** (1 / 12) + 0.5 ** (2 / 12) + 0.5 ** (3 / 12)) / 4
        )
        assert {t.topic for t in trending[1:]} == {"politics", "world", "sports"}

    def test_keyword_matching_a_category_is_folded(self, search_service, vector_index):
        vector_index.add_chunks([
            make_chunk(f"p{i}", f"p{i}", "politics", category="Politics",
                       published_at=NOW - timedelta(hours=i))
            for i in range(1, 4)
        ])

        trending = asyncio.run(search_service.get_trending_topics(window_hours=24))

        assert [(t.topic, t.article_count) for t in trending] == [("Politics", 3)]

    def test_keywords_can_be_disabled(self, vector_index, embedder, clock):
        service = service_with(vector_index, embedder, clock, trending_keywords_enabled=False)
        vector_index.add_chunks([
            make_chunk(f"e{i}", f"e{i}", "election coverage", published_at=NOW - timedelta(hours=i))
            for i in range(1, 4)
        ])

        assert asyncio.run(service.get_trending_topics(window_hours=24)) == []
