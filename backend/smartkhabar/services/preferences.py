"""
Preference manager - the only component that writes preference profiles.

Learning proposes, this commits: `apply_learning` is the explicit path from
learner output to the preference store.
"""
from typing import Any, Awaitable, Optional

import structlog

from smartkhabar.config import get_settings
from smartkhabar.core.errors import (
    PersonalizationError,
    StoreError,
    with_deadline,
)
from smartkhabar.models.domain import PreferenceUpdateResult, UserPreferences, source_key
from smartkhabar.services.interaction_learner import InteractionLearner
from smartkhabar.stores.base import PreferenceStore

logger = structlog.get_logger(__name__)

DEFAULT_TOPICS = ("general",)
UPDATABLE_FIELDS = frozenset(
    {"topics", "tone", "reading_time", "preferred_sources", "excluded_sources"}
)


class PreferenceManager:
    """Get-or-create and partial updates over a PreferenceStore."""

    def __init__(self, store: PreferenceStore, timeout: Optional[float] = None):
        self.store = store
        self.timeout = timeout if timeout is not None else get_settings().external_call_timeout_seconds

    async def get_preferences(self, user_id: str, timeout: Optional[float] = None) -> UserPreferences:
        """Return the user's profile, creating the default one on first access."""
        existing = await self._store_call(self.store.get(user_id), "get_preferences", user_id, timeout)
        if existing is not None:
            return existing

        defaults = UserPreferences(user_id=user_id, topics=DEFAULT_TOPICS)
        try:
            created = await self._store_call(
                self.store.create(defaults), "create_preferences", user_id, timeout
            )
        except StoreError:
            # Lost a create race; the other writer's profile stands
            existing = await self._store_call(self.store.get(user_id), "get_preferences", user_id, timeout)
            if existing is None:
                raise
            return existing

        logger.info("Default preferences created", user_id=user_id)
        return created

    async def update_preferences(
        self,
        user_id: str,
        timeout: Optional[float] = None,
        **changes: Any,
    ) -> UserPreferences:
        """
        Apply a partial update and persist it.

        Preferring a source removes it from the excluded list and vice versa.
        When one update names a source on both sides, excluded wins.

        Raises:
            StoreError: Unknown fields, invalid values, or store failure
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise StoreError(
                f"Unknown preference fields: {sorted(unknown)}",
                operation="update_preferences",
                user_id=user_id,
            )
        if not changes:
            return await self.get_preferences(user_id, timeout=timeout)

        current = await self.get_preferences(user_id, timeout=timeout)
        preferred = list(current.preferred_sources)
        excluded = list(current.excluded_sources)

        if "preferred_sources" in changes:
            preferred = list(changes["preferred_sources"] or ())
            preferred_keys = {source_key(s) for s in preferred if isinstance(s, str)}
            excluded = [s for s in excluded if source_key(s) not in preferred_keys]

        if "excluded_sources" in changes:
            excluded = list(changes["excluded_sources"] or ())
            excluded_keys = {source_key(s) for s in excluded if isinstance(s, str)}
            preferred = [
                s for s in preferred
                if not isinstance(s, str) or source_key(s) not in excluded_keys
            ]

        resolved = dict(changes)
        if "preferred_sources" in changes or "excluded_sources" in changes:
            resolved["preferred_sources"] = preferred
            resolved["excluded_sources"] = excluded

        updated = await self._store_call(
            self.store.update(user_id, resolved), "update_preferences", user_id, timeout
        )
        logger.info("Preferences updated", user_id=user_id, fields=sorted(resolved))
        return updated

    async def apply_learning(
        self,
        user_id: str,
        learner: InteractionLearner,
        timeout: Optional[float] = None,
    ) -> PreferenceUpdateResult:
        """
        Run the learner against the stored profile and persist what it proposes.

        Only the fields named in the change list are written.
        """
        current = await self.get_preferences(user_id, timeout=timeout)
        result = await learner.update_preferences_from_interactions(user_id, current, timeout=timeout)
        if not result.changes:
            return result

        changed = {
            change.field: list(getattr(result.updated_preferences, change.field))
            for change in result.changes
        }
        persisted = await self._store_call(
            self.store.update(user_id, changed), "apply_learning", user_id, timeout
        )
        logger.info(
            "Learned preferences committed",
            user_id=user_id,
            fields=sorted(changed),
            learning_confidence=result.learning_insights.learning_confidence,
        )
        return result.model_copy(update={"updated_preferences": persisted})

    async def _store_call(
        self,
        awaitable: Awaitable[Any],
        operation: str,
        user_id: str,
        timeout: Optional[float],
    ) -> Any:
        try:
            return await with_deadline(
                awaitable,
                timeout if timeout is not None else self.timeout,
                operation,
                user_id=user_id,
            )
        except PersonalizationError:
            raise
        except Exception as e:
            raise StoreError(
                f"Preference store call failed: {e}",
                operation=operation,
                user_id=user_id,
            ) from e
