"""
Interfaces for the durable stores the engine reads from and writes to.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from smartkhabar.models.domain import Interaction, InteractionRecord, UserPreferences


class InteractionStore(ABC):
    """Append-only interaction log, queryable by user."""

    @abstractmethod
    async def insert(self, interaction: Interaction) -> None:
        """Append one interaction."""
        pass

    @abstractmethod
    async def query(
        self,
        user_id: str,
        limit: Optional[int] = None,
        join_article_metadata: bool = True,
    ) -> list[InteractionRecord]:
        """
        Fetch a user's interactions, newest first.

        Args:
            user_id: The user whose history to read
            limit: Maximum rows to return (None = all)
            join_article_metadata: Attach source/category/tags of each article

        Returns:
            Interaction records ordered by timestamp descending
        """
        pass

    @abstractmethod
    async def delete_older_than(self, user_id: str, cutoff: datetime) -> int:
        """Delete a user's interactions strictly older than `cutoff`. Returns count."""
        pass

    @abstractmethod
    async def delete_beyond(self, user_id: str, keep: int) -> int:
        """
        Delete all but the user's `keep` newest interactions. Returns count.

        Rows sharing a timestamp are ordered by insertion, newest first, so
        exactly `keep` rows survive.
        """
        pass

    @abstractmethod
    async def delete_all(self, user_id: str) -> int:
        """Delete a user's whole history. Returns count."""
        pass


class PreferenceStore(ABC):
    """Exactly one preference profile per user. Last write wins."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserPreferences]:
        pass

    @abstractmethod
    async def create(self, preferences: UserPreferences) -> UserPreferences:
        pass

    @abstractmethod
    async def update(self, user_id: str, changes: dict[str, Any]) -> UserPreferences:
        """Apply a partial profile and return the stored result."""
        pass
