"""
In-memory stores for development and testing.
Behave like the SQL stores without a database.
"""
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from smartkhabar.core.errors import StoreError
from smartkhabar.models.domain import (
    ArticleMetadata,
    Interaction,
    InteractionRecord,
    UserPreferences,
    utcnow,
)
from smartkhabar.stores.base import InteractionStore, PreferenceStore


class InMemoryInteractionStore(InteractionStore):
    """Interaction log held in a dict of per-user lists."""

    def __init__(self):
        self._interactions: dict[str, list[Interaction]] = defaultdict(list)
        self._articles: dict[str, ArticleMetadata] = {}

    def add_article(
        self,
        article_id: str,
        source: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ):
        """Register article metadata used for query-time joins."""
        self._articles[article_id] = ArticleMetadata(
            source=source, category=category, tags=tags or ()
        )

    async def insert(self, interaction: Interaction) -> None:
        self._interactions[interaction.user_id].append(interaction)

    async def query(
        self,
        user_id: str,
        limit: Optional[int] = None,
        join_article_metadata: bool = True,
    ) -> list[InteractionRecord]:
        # Stable sort keeps insertion order among equal timestamps, newest inserted first
        rows = sorted(
            reversed(self._interactions.get(user_id, [])),
            key=lambda i: i.timestamp,
            reverse=True,
        )
        if limit is not None:
            rows = rows[:limit]

        return [
            InteractionRecord(
                interaction=row,
                article=self._articles.get(row.article_id) if join_article_metadata else None,
            )
            for row in rows
        ]

    async def delete_older_than(self, user_id: str, cutoff: datetime) -> int:
        rows = self._interactions.get(user_id, [])
        kept = [i for i in rows if i.timestamp >= cutoff]
        self._interactions[user_id] = kept
        return len(rows) - len(kept)

    async def delete_beyond(self, user_id: str, keep: int) -> int:
        rows = self._interactions.get(user_id, [])
        newest = sorted(range(len(rows)), key=lambda i: (rows[i].timestamp, i), reverse=True)
        kept = set(newest[:keep])
        self._interactions[user_id] = [row for i, row in enumerate(rows) if i in kept]
        return len(rows) - len(kept)

    async def delete_all(self, user_id: str) -> int:
        return len(self._interactions.pop(user_id, []))

    def count(self, user_id: str) -> int:
        return len(self._interactions.get(user_id, []))


class InMemoryPreferenceStore(PreferenceStore):
    """Preference profiles held in a dict keyed by user."""

    def __init__(self):
        self._profiles: dict[str, UserPreferences] = {}

    async def get(self, user_id: str) -> Optional[UserPreferences]:
        return self._profiles.get(user_id)

    async def create(self, preferences: UserPreferences) -> UserPreferences:
        if preferences.user_id in self._profiles:
            raise StoreError(
                "Preferences already exist",
                operation="create_preferences",
                user_id=preferences.user_id,
            )
        self._profiles[preferences.user_id] = preferences
        return preferences

    async def update(self, user_id: str, changes: dict[str, Any]) -> UserPreferences:
        current = self._profiles.get(user_id)
        if current is None:
            raise StoreError(
                "No preferences to update",
                operation="update_preferences",
                user_id=user_id,
            )
        try:
            updated = current.with_changes(**{"last_updated": utcnow(), **changes})
        except ValidationError as e:
            raise StoreError(
                f"Invalid preference update: {e}",
                operation="update_preferences",
                user_id=user_id,
            ) from e
        self._profiles[user_id] = updated
        return updated
