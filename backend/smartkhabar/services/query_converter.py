"""
Preference-to-query conversion.

A profile becomes weighted query text: topics are repeated in proportion to
their weight, preferred sources are appended with a lower weight, and the
text is embedded. Tone and reading time shape summaries, not retrieval, so
they never reach the query.
"""
import asyncio
import time
from typing import Any, Mapping, Optional, Sequence, Union

import structlog

from smartkhabar.config import QuerySettings, get_settings
from smartkhabar.core.errors import ConversionError, OperationTimeoutError, with_deadline
from smartkhabar.models.domain import (
    AffinityStats,
    PreferenceQuery,
    Tone,
    UserPreferences,
    WeightedTopic,
)
from smartkhabar.services.cache import TTLCache
from smartkhabar.services.embeddings import Embedder

logger = structlog.get_logger(__name__)

MIN_TOPIC_WEIGHT = 0.1
MAX_TOPIC_WEIGHT = 2.0
DEFAULT_READING_TIME = 5


class PreferenceQueryConverter:
    """Turns user preferences into embedding queries."""

    def __init__(
        self,
        embedder: Embedder,
        settings: Optional[QuerySettings] = None,
        cache: Optional[TTLCache] = None,
        timeout: Optional[float] = None,
    ):
        self.embedder = embedder
        self.settings = settings or get_settings().query
        self.cache = cache
        self.timeout = timeout if timeout is not None else get_settings().external_call_timeout_seconds

    async def convert_preferences_to_query(
        self,
        preferences: Union[UserPreferences, Mapping[str, Any]],
        topic_stats: Optional[Sequence[AffinityStats]] = None,
        timeout: Optional[float] = None,
    ) -> PreferenceQuery:
        """
        Build and embed the query for a preference profile.

        Args:
            preferences: The profile (raw mappings are sanitized first)
            topic_stats: Category affinities from the learner; when given,
                topics the user engages with positively weigh more
            timeout: Deadline for the embedding call

        Returns:
            PreferenceQuery; `fallback_used` is set when the profile has
            no usable topics
        """
        start = time.perf_counter()
        _, sanitized, issues = self.validate_preferences(preferences)
        if issues:
            logger.debug("Preferences sanitized", user_id=sanitized.user_id, issues=issues)

        if not sanitized.topics:
            query = await self.generate_fallback_query(timeout=timeout)
            return query.model_copy(
                update={"processing_time_ms": (time.perf_counter() - start) * 1000}
            )

        if topic_stats:
            weights = self.calculate_topic_weights(sanitized.topics, topic_stats)
        else:
            weights = {topic: 1.0 for topic in sanitized.topics}
        weighted_topics = [WeightedTopic(topic=t, weight=w) for t, w in weights.items()]

        query_text = self._build_query_text(weighted_topics, sanitized.preferred_sources)
        embedding = await self._embed(query_text, sanitized.user_id, timeout)

        return PreferenceQuery(
            query_text=query_text,
            query_embedding=embedding,
            weighted_topics=weighted_topics,
            fallback_used=False,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )

    async def generate_fallback_query(self, timeout: Optional[float] = None) -> PreferenceQuery:
        """Generic news query used when a profile retrieves nothing."""
        start = time.perf_counter()
        topics = self.settings.fallback_topics
        query_text = " ".join(topics)
        embedding = await self._embed(query_text, None, timeout)

        return PreferenceQuery(
            query_text=query_text,
            query_embedding=embedding,
            weighted_topics=[WeightedTopic(topic=t, weight=1.0) for t in topics],
            fallback_used=True,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )

    async def convert_batch_preferences_to_queries(
        self,
        preferences_list: Sequence[Union[UserPreferences, Mapping[str, Any]]],
        timeout: Optional[float] = None,
    ) -> list[PreferenceQuery]:
        """Convert several profiles concurrently. Results keep input order."""
        return list(
            await asyncio.gather(
                *(self.convert_preferences_to_query(p, timeout=timeout) for p in preferences_list)
            )
        )

    def validate_preferences(
        self,
        preferences: Union[UserPreferences, Mapping[str, Any]],
    ) -> tuple[bool, UserPreferences, list[str]]:
        """
        Sanitize a profile for query building.

        Topics and sources are trimmed and lowercased; empty entries are
        dropped. An invalid tone or reading time is reset to its default.
        A source named on both sides stays excluded.

        Returns:
            (is_valid, sanitized_preferences, issues); is_valid is False
            when anything had to be corrected
        """
        if isinstance(preferences, UserPreferences):
            raw = preferences.model_dump()
        else:
            raw = dict(preferences)

        user_id = str(raw.get("user_id") or "").strip()
        if not user_id:
            raise ConversionError("Preferences have no user_id", operation="validate_preferences")

        issues: list[str] = []

        topics = self._clean_terms(raw.get("topics"), "topics", issues)
        preferred = self._clean_terms(raw.get("preferred_sources"), "preferred_sources", issues)
        excluded = self._clean_terms(raw.get("excluded_sources"), "excluded_sources", issues)

        overlap = [s for s in preferred if s in excluded]
        if overlap:
            issues.append(f"sources both preferred and excluded: {', '.join(overlap)}")
            preferred = [s for s in preferred if s not in excluded]

        tone = raw.get("tone", Tone.CASUAL)
        try:
            tone = Tone(tone)
        except ValueError:
            issues.append(f"invalid tone {tone!r}, using {Tone.CASUAL.value}")
            tone = Tone.CASUAL

        reading_time = raw.get("reading_time", DEFAULT_READING_TIME)
        if isinstance(reading_time, bool) or not isinstance(reading_time, int) or not 1 <= reading_time <= 15:
            issues.append(f"invalid reading_time {reading_time!r}, using {DEFAULT_READING_TIME}")
            reading_time = DEFAULT_READING_TIME

        data = {
            "user_id": user_id,
            "topics": topics,
            "tone": tone,
            "reading_time": reading_time,
            "preferred_sources": preferred,
            "excluded_sources": excluded,
        }
        if raw.get("last_updated") is not None:
            data["last_updated"] = raw["last_updated"]

        return not issues, UserPreferences(**data), issues

    def calculate_topic_weights(
        self,
        topics: Sequence[str],
        topic_stats: Sequence[AffinityStats],
    ) -> dict[str, float]:
        """
        Map each topic's positive ratio onto [0.1, 2.0].

        Topics without interaction history keep the neutral weight 1.0.
        """
        stats_by_item = {s.item.lower(): s for s in topic_stats}
        weights = {}
        for topic in topics:
            stats = stats_by_item.get(topic.lower())
            if stats is None:
                weights[topic] = 1.0
            else:
                weights[topic] = MIN_TOPIC_WEIGHT + stats.positive_ratio * (MAX_TOPIC_WEIGHT - MIN_TOPIC_WEIGHT)
        return weights

    def get_config(self) -> QuerySettings:
        return self.settings.model_copy()

    def update_config(self, **changes: Any) -> QuerySettings:
        self.settings = type(self.settings)(**{**self.settings.model_dump(), **changes})
        return self.settings

    def _build_query_text(
        self,
        weighted_topics: Sequence[WeightedTopic],
        preferred_sources: Sequence[str],
    ) -> str:
        terms: list[str] = []
        for wt in weighted_topics:
            repeats = max(1, round(wt.weight * self.settings.topic_weight * 3))
            terms.extend([wt.topic] * repeats)

        source_repeats = round(self.settings.source_weight * 2)
        for source in preferred_sources:
            terms.extend([source] * source_repeats)

        return self._truncate(" ".join(terms), self.settings.max_query_length)

    @staticmethod
    def _truncate(text: str, max_length: int) -> str:
        """Cut text to max_length without splitting a word."""
        if len(text) <= max_length:
            return text
        cut = text[:max_length]
        if text[max_length] != " " and " " in cut:
            cut = cut.rsplit(" ", 1)[0]
        return cut.rstrip()

    @staticmethod
    def _clean_terms(values: Any, field: str, issues: list[str]) -> list[str]:
        cleaned: list[str] = []
        dropped = 0
        for value in values or ():
            if not isinstance(value, str) or not value.strip():
                dropped += 1
                continue
            term = value.strip().lower()
            if term not in cleaned:
                cleaned.append(term)
        if dropped:
            issues.append(f"dropped {dropped} empty {field}")
        return cleaned

    async def _embed(self, text: str, user_id: Optional[str], timeout: Optional[float]) -> list[float]:
        if self.cache is not None:
            return await self.cache.get_or_set(
                ("query_embedding", text),
                lambda: self._embed_uncached(text, user_id, timeout),
                ttl_seconds=self.settings.cache_ttl_seconds,
            )
        return await self._embed_uncached(text, user_id, timeout)

    async def _embed_uncached(
        self,
        text: str,
        user_id: Optional[str],
        timeout: Optional[float],
    ) -> list[float]:
        try:
            embedding = await with_deadline(
                self.embedder.embed_query(text),
                timeout if timeout is not None else self.timeout,
                "embed_query",
                user_id=user_id,
            )
        except OperationTimeoutError:
            raise
        except Exception as e:
            raise ConversionError(
                f"Embedding failed: {e}",
                operation="embed_query",
                user_id=user_id,
            ) from e

        if len(embedding) == 0:
            raise ConversionError("Embedder returned an empty vector", operation="embed_query", user_id=user_id)
        return list(embedding)
