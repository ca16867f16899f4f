"""
Personalization engine facade.

Wires stores, embedder, vector index and the services together, and exposes
every engine operation from one object.
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

import structlog

from smartkhabar.config import Settings, get_settings
from smartkhabar.core.logging import configure_logging
from smartkhabar.models.database import Database
from smartkhabar.models.domain import (
    FeedResponse,
    Interaction,
    LearningInsights,
    PreferenceUpdateResult,
    SearchFilters,
    SearchResponse,
    SimilarArticlesResponse,
    TrendingTopic,
    UserInteractionStats,
    UserPreferences,
    utcnow,
)
from smartkhabar.services.cache import TTLCache
from smartkhabar.services.embeddings import Embedder, EmbeddingService
from smartkhabar.services.interaction_learner import InteractionLearner
from smartkhabar.services.preferences import PreferenceManager
from smartkhabar.services.query_converter import PreferenceQueryConverter
from smartkhabar.services.semantic_search import SemanticSearchService
from smartkhabar.services.vector_index import InMemoryVectorIndex, VectorIndex
from smartkhabar.stores.base import InteractionStore, PreferenceStore
from smartkhabar.stores.sql import SQLInteractionStore, SQLPreferenceStore

logger = structlog.get_logger(__name__)


class PersonalizationEngine:
    """
    Learning and personalized retrieval behind one interface.

    Learning never writes preferences on its own; `apply_learning` is the
    only path from learned signals to the stored profile.
    """

    def __init__(
        self,
        interaction_store: InteractionStore,
        preference_store: PreferenceStore,
        embedder: Embedder,
        vector_index: VectorIndex,
        settings: Optional[Settings] = None,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        timeout = self.settings.external_call_timeout_seconds

        self.learner = InteractionLearner(
            interaction_store,
            settings=self.settings.learner,
            timeout=timeout,
            clock=clock,
        )
        self.preferences = PreferenceManager(preference_store, timeout=timeout)
        self.query_converter = PreferenceQueryConverter(
            embedder,
            settings=self.settings.query,
            cache=cache,
            timeout=timeout,
        )
        self.search = SemanticSearchService(
            vector_index,
            self.query_converter,
            settings=self.settings.search,
            timeout=timeout,
            clock=clock,
        )
        self._database: Optional[Database] = None

    @classmethod
    async def from_settings(
        cls,
        settings: Optional[Settings] = None,
        vector_index: Optional[VectorIndex] = None,
        embedder: Optional[Embedder] = None,
    ) -> "PersonalizationEngine":
        """
        Build an engine on the configured database and embedding backend.

        Creates tables if needed. Call `close()` on shutdown.
        """
        settings = settings or get_settings()
        configure_logging(settings.log_level)

        logger.info("Initializing database", url=settings.database_url)
        database = Database(settings.database_url, echo=settings.debug)
        await database.create_tables()

        if embedder is None:
            embedder = EmbeddingService(settings.embedding, openai_api_key=settings.openai_api_key)
            await embedder.initialize()

        engine = cls(
            interaction_store=SQLInteractionStore(database),
            preference_store=SQLPreferenceStore(database),
            embedder=embedder,
            vector_index=vector_index or InMemoryVectorIndex(),
            settings=settings,
            cache=TTLCache(ttl_seconds=settings.query.cache_ttl_seconds),
        )
        engine._database = database
        logger.info(
            "Personalization engine ready",
            embedding_backend=settings.embedding.backend,
            environment=settings.environment,
        )
        return engine

    async def close(self):
        if self._database is not None:
            await self._database.dispose()
            self._database = None

    # =========================================================================
    # Learning
    # =========================================================================

    async def track_interaction(self, interaction: Interaction) -> None:
        await self.learner.track_interaction(interaction)

    async def analyze_interactions(
        self,
        user_id: str,
        window_size: Optional[int] = None,
    ) -> LearningInsights:
        preferences = await self.preferences.get_preferences(user_id)
        return await self.learner.analyze_interactions(
            user_id, window_size=window_size, current_topics=preferences.topics
        )

    async def update_preferences_from_interactions(
        self,
        user_id: str,
        current_preferences: Optional[UserPreferences] = None,
    ) -> PreferenceUpdateResult:
        """Propose learned changes without persisting them."""
        if current_preferences is None:
            current_preferences = await self.preferences.get_preferences(user_id)
        return await self.learner.update_preferences_from_interactions(user_id, current_preferences)

    async def apply_learning(self, user_id: str) -> PreferenceUpdateResult:
        """Propose learned changes and persist them."""
        return await self.preferences.apply_learning(user_id, self.learner)

    async def get_user_interaction_stats(self, user_id: str) -> UserInteractionStats:
        return await self.learner.get_user_interaction_stats(user_id)

    async def reset_user_learning(self, user_id: str) -> int:
        return await self.learner.reset_user_learning(user_id)

    # =========================================================================
    # Preferences
    # =========================================================================

    async def get_preferences(self, user_id: str) -> UserPreferences:
        return await self.preferences.get_preferences(user_id)

    async def update_preferences(self, user_id: str, **changes: Any) -> UserPreferences:
        return await self.preferences.update_preferences(user_id, **changes)

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def search_by_preferences(
        self,
        preferences: UserPreferences,
        additional_filters: Optional[SearchFilters] = None,
    ) -> SearchResponse:
        return await self.search.search_by_preferences(preferences, additional_filters)

    async def find_similar_articles(
        self,
        article_id: str,
        limit: int = 5,
        exclude_categories: Optional[Sequence[str]] = None,
    ) -> SimilarArticlesResponse:
        return await self.search.find_similar_articles(
            article_id, limit=limit, exclude_categories=exclude_categories
        )

    async def get_trending_topics(self, window_hours: float = 24, limit: int = 10) -> list[TrendingTopic]:
        return await self.search.get_trending_topics(window_hours=window_hours, limit=limit)

    async def build_feed(
        self,
        user_id: str,
        additional_filters: Optional[SearchFilters] = None,
    ) -> FeedResponse:
        """
        Ranked feed for a user plus their activity summary.

        Search and stats read different stores, so they run concurrently.
        """
        preferences = await self.preferences.get_preferences(user_id)
        search_response, stats = await asyncio.gather(
            self.search.search_by_preferences(preferences, additional_filters),
            self.learner.get_user_interaction_stats(user_id),
        )
        return FeedResponse(
            user_id=user_id,
            results=search_response.results,
            metrics=search_response.metrics,
            interaction_stats=stats,
        )
