"""
Interaction learner - turns a user's feed interactions into preference signals.

The learning loop:
    1. Every read_more / like / share / hide is appended to the interaction log
    2. On analysis, the recent window is aggregated per category and per source
    3. Affinities are ranked by positive ratio, discounted when evidence is thin
    4. Recent positive tags become emerging topics; sources the user keeps
       hiding become declining sources
    5. Once confidence is high enough, those signals are proposed as
       preference changes. Committing them is the caller's decision.

Learning confidence grows with evidence:
    confidence = min(1, log10(n / min_interactions + 1))
    - n < min_interactions: 0 (nothing is learned from noise)
    - n = min_interactions: 0.30
    - n = 9 * min_interactions: 1.0
"""
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

from smartkhabar.config import LearnerSettings, get_settings
from smartkhabar.core.errors import (
    InsufficientDataError,
    InteractionLearnerError,
    OperationTimeoutError,
    PersonalizationError,
    with_deadline,
)
from smartkhabar.models.domain import (
    ActionCount,
    AffinityStats,
    Interaction,
    InteractionRecord,
    LearningInsights,
    PreferenceChange,
    PreferenceUpdateResult,
    RecommendedPreferenceUpdates,
    Trend,
    UserInteractionStats,
    UserPreferences,
    source_key,
    to_naive_utc,
    utcnow,
)
from smartkhabar.stores.base import InteractionStore

logger = structlog.get_logger(__name__)

TOPICS_REASON = "added emerging topics"
PREFERRED_REASON = "positive source interactions"
EXCLUDED_REASON = "negative interactions"


@dataclass
class _Analysis:
    """Insights plus the full signal tables behind them."""
    insights: LearningInsights
    source_stats: dict[str, AffinityStats] = field(default_factory=dict)
    emerging_counts: dict[str, int] = field(default_factory=dict)


class InteractionLearner:
    """
    Learns category and source affinities from the interaction log.

    Stateless between calls: every analysis reads the window fresh from
    the store, so concurrent requests for different users never interact.
    """

    def __init__(
        self,
        interaction_store: InteractionStore,
        settings: Optional[LearnerSettings] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = interaction_store
        self.settings = settings or get_settings().learner
        self.timeout = timeout if timeout is not None else get_settings().external_call_timeout_seconds
        self._clock = clock

    # =========================================================================
    # Public API
    # =========================================================================

    async def track_interaction(
        self,
        interaction: Interaction,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Append an interaction and prune history beyond the configured cap.

        A failed insert raises InteractionLearnerError. A failed prune is
        logged only, since the interaction itself was recorded.
        """
        await self._store_call(
            self.store.insert(interaction),
            "track_interaction",
            interaction.user_id,
            timeout,
        )

        try:
            await self._cleanup_old_interactions(interaction.user_id, timeout)
        except PersonalizationError as e:
            logger.warning(
                "Failed to prune old interactions",
                user_id=interaction.user_id,
                error=str(e),
            )

    async def analyze_interactions(
        self,
        user_id: str,
        window_size: Optional[int] = None,
        current_topics: Iterable[str] = (),
        timeout: Optional[float] = None,
    ) -> LearningInsights:
        """
        Aggregate the user's recent interactions into learning insights.

        Args:
            user_id: The user to analyze
            window_size: Number of most recent interactions to consider
                (defaults to the history cap)
            current_topics: Topics already in the user's profile; these are
                never reported as emerging
            timeout: Deadline for the store read

        Returns:
            LearningInsights; confidence 0 and empty lists below the
            minimum interaction count
        """
        analysis = await self._analyze(user_id, window_size, current_topics, timeout)
        return analysis.insights

    async def update_preferences_from_interactions(
        self,
        user_id: str,
        current_preferences: UserPreferences,
        timeout: Optional[float] = None,
    ) -> PreferenceUpdateResult:
        """
        Propose preference changes backed by interaction evidence.

        Never writes to the preference store. Below the commit confidence the
        input profile is returned as-is with no changes.
        """
        analysis = await self._analyze(
            user_id, None, current_preferences.topics, timeout
        )
        insights = analysis.insights

        if insights.learning_confidence < self.settings.commit_confidence_threshold:
            return PreferenceUpdateResult(
                updated_preferences=current_preferences,
                changes=[],
                learning_insights=insights,
            )

        confidence = insights.learning_confidence
        recommended = insights.recommended_preference_updates
        updated = current_preferences
        reasons: dict[str, tuple[str, float]] = {}

        if self.settings.topic_learning_enabled and insights.emerging_topics:
            known = {t.lower() for t in updated.topics}
            new_topics = [t for t in insights.emerging_topics if t.lower() not in known]
            if new_topics:
                updated = updated.with_topics([*updated.topics, *new_topics])
                strength = _mean(
                    min(1.0, analysis.emerging_counts.get(t, 0) / (2 * self.settings.emerging_min_count))
                    for t in new_topics
                )
                reasons["topics"] = (TOPICS_REASON, _round(confidence * strength))

        if self.settings.source_learning_enabled:
            additions = [
                s for s in recommended.preferred_sources or []
                if source_key(s) not in {source_key(p) for p in updated.preferred_sources}
            ]
            if additions:
                for source in additions:
                    updated = updated.add_preferred_source(source)
                strength = _mean(analysis.source_stats[s].positive_ratio for s in additions)
                reasons["preferred_sources"] = (PREFERRED_REASON, _round(confidence * strength))
                # Removing from excluded is a consequence of the same evidence
                reasons.setdefault("excluded_sources", reasons["preferred_sources"])

            exclusions = [
                s for s in insights.declining_sources
                if source_key(s) not in {source_key(e) for e in updated.excluded_sources}
            ]
            if exclusions:
                for source in exclusions:
                    updated = updated.add_excluded_source(source)
                strength = _mean(analysis.source_stats[s].negative_ratio for s in exclusions)
                reasons["excluded_sources"] = (EXCLUDED_REASON, _round(confidence * strength))
                reasons.setdefault("preferred_sources", reasons["excluded_sources"])

        changes = []
        for field_name in ("topics", "preferred_sources", "excluded_sources"):
            old_value = getattr(current_preferences, field_name)
            new_value = getattr(updated, field_name)
            if old_value != new_value:
                reason, change_confidence = reasons[field_name]
                changes.append(
                    PreferenceChange(
                        field=field_name,
                        old_value=list(old_value),
                        new_value=list(new_value),
                        reason=reason,
                        confidence=change_confidence,
                    )
                )

        if not changes:
            updated = current_preferences
        else:
            updated = updated.with_changes(last_updated=self._clock())
            logger.info(
                "Preference changes proposed",
                user_id=user_id,
                fields=[c.field for c in changes],
                learning_confidence=confidence,
            )

        return PreferenceUpdateResult(
            updated_preferences=updated,
            changes=changes,
            learning_insights=insights,
        )

    async def get_user_interaction_stats(
        self,
        user_id: str,
        timeout: Optional[float] = None,
    ) -> UserInteractionStats:
        """
        Activity summary for display: counts by action and a week-over-week trend.

        Not gated by learning confidence.
        """
        records = await self._store_call(
            self.store.query(user_id, limit=None, join_article_metadata=False),
            "get_interaction_stats",
            user_id,
            timeout,
        )
        if not records:
            return UserInteractionStats()

        now = to_naive_utc(self._clock())
        window = timedelta(days=self.settings.activity_window_days)
        recent_start = now - window
        previous_start = now - 2 * window

        recent = sum(1 for r in records if r.timestamp >= recent_start)
        previous = sum(1 for r in records if previous_start <= r.timestamp < recent_start)

        if recent > previous * 1.2:
            activity_trend = Trend.INCREASING
        elif recent < previous * 0.8:
            activity_trend = Trend.DECREASING
        else:
            activity_trend = Trend.STABLE

        action_counts = Counter(r.action.value for r in records)
        top_actions = [
            ActionCount(action=action, count=count)
            for action, count in sorted(action_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:5]
        ]

        return UserInteractionStats(
            total_interactions=len(records),
            recent_interactions=recent,
            top_actions=top_actions,
            activity_trend=activity_trend,
        )

    async def reset_user_learning(
        self,
        user_id: str,
        timeout: Optional[float] = None,
    ) -> int:
        """Delete the user's whole interaction history. Irreversible."""
        deleted = await self._store_call(
            self.store.delete_all(user_id),
            "reset_user_learning",
            user_id,
            timeout,
        )
        logger.info("User learning data reset", user_id=user_id, deleted=deleted)
        return deleted

    def get_config(self) -> LearnerSettings:
        return self.settings.model_copy()

    def update_config(self, **changes: Any) -> LearnerSettings:
        """Replace settings fields; the result is re-validated."""
        self.settings = type(self.settings)(**{**self.settings.model_dump(), **changes})
        return self.settings

    # =========================================================================
    # Analysis
    # =========================================================================

    async def _analyze(
        self,
        user_id: str,
        window_size: Optional[int],
        current_topics: Iterable[str],
        timeout: Optional[float],
    ) -> _Analysis:
        window = window_size or self.settings.max_interaction_history
        records = await self._store_call(
            self.store.query(user_id, limit=window, join_article_metadata=True),
            "analyze_interactions",
            user_id,
            timeout,
        )

        try:
            self._require_minimum(user_id, len(records))
        except InsufficientDataError as e:
            logger.debug(
                "Not enough interactions to learn from",
                user_id=user_id,
                available=e.available,
                required=e.required,
            )
            return _Analysis(
                insights=LearningInsights(
                    user_id=user_id,
                    total_interactions=len(records),
                    last_analyzed=self._clock(),
                )
            )

        # Newest first; the store promises this, the halves below depend on it
        records = sorted(records, key=lambda r: r.timestamp, reverse=True)

        category_stats: list[AffinityStats] = []
        if self.settings.category_learning_enabled:
            category_stats = self._analyze_items(records, lambda r: r.category)

        source_stats: list[AffinityStats] = []
        if self.settings.source_learning_enabled:
            source_stats = self._analyze_items(records, lambda r: r.source)

        emerging_counts: dict[str, int] = {}
        if self.settings.topic_learning_enabled:
            emerging_counts = self._extract_emerging_topics(records, current_topics)
        emerging_topics = list(emerging_counts)

        declining_sources = self._identify_declining_sources(source_stats)
        recommended = self._recommend_updates(source_stats, emerging_topics, declining_sources)

        limit = self.settings.top_items_limit
        insights = LearningInsights(
            user_id=user_id,
            total_interactions=len(records),
            learning_confidence=self.calculate_learning_confidence(len(records)),
            top_categories=category_stats[:limit],
            top_sources=source_stats[:limit],
            emerging_topics=emerging_topics,
            declining_sources=declining_sources,
            recommended_preference_updates=recommended,
            last_analyzed=self._clock(),
        )
        return _Analysis(
            insights=insights,
            source_stats={s.item: s for s in source_stats},
            emerging_counts=emerging_counts,
        )

    def _require_minimum(self, user_id: str, available: int):
        required = self.settings.min_interactions_for_learning
        if available < required:
            raise InsufficientDataError(user_id, available, required)

    def calculate_learning_confidence(self, total_interactions: int) -> float:
        """Monotonic in the interaction count, 0 below the minimum, capped at 1."""
        minimum = self.settings.min_interactions_for_learning
        if total_interactions < minimum:
            return 0.0

        confidence = min(math.log10(total_interactions / minimum + 1), 1.0)
        return _round(confidence)

    def _analyze_items(
        self,
        records: list[InteractionRecord],
        extract: Callable[[InteractionRecord], Optional[str]],
    ) -> list[AffinityStats]:
        """
        Aggregate records per item (category or source) and rank them.

        Trend compares how often the item appears in the newer half of the
        window against the older half; the middle record of an odd-sized
        window belongs to neither.
        The recent negative ratio is taken over the newer half, or over the
        whole window when the item has no activity there.
        """
        half = len(records) // 2
        older_start = len(records) - half

        totals: dict[str, int] = defaultdict(int)
        positives: dict[str, int] = defaultdict(int)
        negatives: dict[str, int] = defaultdict(int)
        recent: dict[str, int] = defaultdict(int)
        recent_negatives: dict[str, int] = defaultdict(int)
        older: dict[str, int] = defaultdict(int)
        last_seen: dict[str, datetime] = {}

        for index, record in enumerate(records):
            item = extract(record)
            if not item or not item.strip():
                continue
            item = item.strip()

            totals[item] += 1
            if record.action.is_positive:
                positives[item] += 1
            elif record.action.is_negative:
                negatives[item] += 1

            if index < half:
                recent[item] += 1
                if record.action.is_negative:
                    recent_negatives[item] += 1
            elif index >= older_start:
                older[item] += 1

            if item not in last_seen or record.timestamp > last_seen[item]:
                last_seen[item] = record.timestamp

        stats = [
            AffinityStats(
                item=item,
                total_interactions=total,
                positive_interactions=positives[item],
                negative_interactions=negatives[item],
                positive_ratio=positives[item] / total,
                negative_ratio=negatives[item] / total,
                last_interaction=last_seen[item],
                trend=self._trend(recent[item], older[item]),
                recent_negative_ratio=(
                    recent_negatives[item] / recent[item] if recent[item] else negatives[item] / total
                ),
            )
            for item, total in totals.items()
        ]
        return sorted(stats, key=self._rank_key)

    def _rank_key(self, stats: AffinityStats) -> tuple[float, int, str]:
        """
        Sort key: volume-adjusted positive ratio, then volume, then name.

        Below the significance threshold the ratio is scaled down in
        proportion to the missing evidence, so a single like (1/1) does not
        outrank a source liked 9 times out of 10, while 2 likes out of 2
        still beat a well-sampled but lukewarm source.
        """
        threshold = self.settings.significance_threshold
        ratio = stats.positive_ratio
        if stats.total_interactions < threshold:
            ratio *= stats.total_interactions / threshold
        return (-ratio, -stats.total_interactions, stats.item)

    def _trend(self, recent: int, older: int) -> Trend:
        margin = self.settings.trend_margin
        if recent > older * (1 + margin):
            return Trend.INCREASING
        if recent < older * (1 - margin):
            return Trend.DECREASING
        return Trend.STABLE

    def _extract_emerging_topics(
        self,
        records: list[InteractionRecord],
        current_topics: Iterable[str],
    ) -> dict[str, int]:
        """
        Tags concentrated in the user's latest positive activity.

        "Recent" is measured from the user's own latest interaction, not the
        wall clock, so a user returning after a break still has a recent
        window. Returns {tag: recent_count}, strongest first.
        """
        if not records:
            return {}

        latest = records[0].timestamp
        recent_start = latest - timedelta(hours=self.settings.emerging_window_hours)
        known = {t.strip().lower() for t in current_topics}

        recent_counts: Counter[str] = Counter()
        overall_counts: Counter[str] = Counter()
        for record in records:
            if not record.action.is_positive:
                continue
            tags = {t.strip().lower() for t in record.tags if t.strip()}
            overall_counts.update(tags)
            if record.timestamp >= recent_start:
                recent_counts.update(tags)

        recent_total = sum(recent_counts.values())
        overall_total = sum(overall_counts.values())
        if recent_total == 0:
            return {}

        emerging = [
            (tag, count)
            for tag, count in recent_counts.items()
            if count >= self.settings.emerging_min_count
            and tag not in known
            and count / recent_total >= overall_counts[tag] / overall_total
        ]
        emerging.sort(key=lambda kv: (-kv[1], kv[0]))
        return dict(emerging[: self.settings.max_emerging_topics])

    def _identify_declining_sources(self, source_stats: list[AffinityStats]) -> list[str]:
        declining = [
            s.item
            for s in source_stats
            if s.trend == Trend.DECREASING
            and s.recent_negative_ratio >= self.settings.decline_negative_ratio
            and s.total_interactions >= self.settings.decline_min_interactions
        ]
        return declining[: self.settings.max_declining_sources]

    def _recommend_updates(
        self,
        source_stats: list[AffinityStats],
        emerging_topics: list[str],
        declining_sources: list[str],
    ) -> RecommendedPreferenceUpdates:
        preferred = [
            s.item
            for s in source_stats
            if s.total_interactions >= self.settings.significance_threshold
            and s.positive_ratio >= self.settings.preferred_source_min_ratio
        ][: self.settings.max_preferred_recommendations]

        return RecommendedPreferenceUpdates(
            topics=emerging_topics or None,
            preferred_sources=preferred or None,
            excluded_sources=declining_sources or None,
        )

    # =========================================================================
    # Store access
    # =========================================================================

    async def _cleanup_old_interactions(self, user_id: str, timeout: Optional[float]) -> int:
        cap = self.settings.max_interaction_history
        records = await self._store_call(
            self.store.query(user_id, limit=cap + 1, join_article_metadata=False),
            "prune_interactions",
            user_id,
            timeout,
        )
        if len(records) <= cap:
            return 0

        # Ties at the cap boundary are cut by insertion order
        deleted = await self._store_call(
            self.store.delete_beyond(user_id, cap),
            "prune_interactions",
            user_id,
            timeout,
        )
        logger.info("Pruned old interactions", user_id=user_id, deleted=deleted, cap=cap)
        return deleted

    async def _store_call(
        self,
        awaitable: Awaitable[Any],
        operation: str,
        user_id: str,
        timeout: Optional[float],
    ) -> Any:
        """Await a store call under the deadline, wrapping failures."""
        try:
            return await with_deadline(
                awaitable,
                timeout if timeout is not None else self.timeout,
                operation,
                user_id=user_id,
            )
        except (OperationTimeoutError, InteractionLearnerError):
            raise
        except Exception as e:
            raise InteractionLearnerError(
                f"Failed to {operation.replace('_', ' ')}: {e}",
                operation=operation,
                user_id=user_id,
            ) from e


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def _round(value: float) -> float:
    return round(value * 100) / 100
