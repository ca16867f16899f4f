"""
SQLAlchemy-backed stores.

Every SQLAlchemy failure is wrapped in StoreError with the operation name,
so callers only ever see the engine's error types.
"""
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from smartkhabar.core.errors import StoreError
from smartkhabar.models.database import (
    Database,
    DBArticle,
    DBInteraction,
    DBUserPreferences,
)
from smartkhabar.models.domain import (
    ArticleMetadata,
    Interaction,
    InteractionAction,
    InteractionRecord,
    UserPreferences,
    utcnow,
)
from smartkhabar.stores.base import InteractionStore, PreferenceStore

logger = structlog.get_logger(__name__)


class SQLInteractionStore(InteractionStore):
    """Interaction log stored in the `interactions` table."""

    def __init__(self, database: Database):
        self.database = database

    async def insert(self, interaction: Interaction) -> None:
        try:
            async with self.database.async_session() as session:
                session.add(
                    DBInteraction(
                        user_id=interaction.user_id,
                        article_id=interaction.article_id,
                        action=interaction.action.value,
                        timestamp=interaction.timestamp,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(
                f"Insert failed: {e}",
                operation="insert_interaction",
                user_id=interaction.user_id,
            ) from e

    async def query(
        self,
        user_id: str,
        limit: Optional[int] = None,
        join_article_metadata: bool = True,
    ) -> list[InteractionRecord]:
        if join_article_metadata:
            stmt = select(
                DBInteraction,
                DBArticle.source,
                DBArticle.category,
                DBArticle.tags_json,
            ).outerjoin(DBArticle, DBArticle.id == DBInteraction.article_id)
        else:
            stmt = select(DBInteraction)

        stmt = (
            stmt.where(DBInteraction.user_id == user_id)
            .order_by(DBInteraction.timestamp.desc(), DBInteraction.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self.database.async_session() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as e:
            raise StoreError(
                f"Query failed: {e}",
                operation="query_interactions",
                user_id=user_id,
            ) from e

        records = []
        for row in rows:
            db_interaction = row[0]
            article = None
            if join_article_metadata and (row[1] or row[2] or row[3]):
                article = ArticleMetadata(source=row[1], category=row[2], tags=row[3] or ())
            records.append(
                InteractionRecord(
                    interaction=self._db_to_domain(db_interaction),
                    article=article,
                )
            )
        return records

    async def delete_older_than(self, user_id: str, cutoff: datetime) -> int:
        stmt = (
            delete(DBInteraction)
            .where(DBInteraction.user_id == user_id)
            .where(DBInteraction.timestamp < cutoff)
        )
        return await self._execute_delete(stmt, "delete_old_interactions", user_id)

    async def delete_beyond(self, user_id: str, keep: int) -> int:
        overflow = (
            select(DBInteraction.id)
            .where(DBInteraction.user_id == user_id)
            .order_by(DBInteraction.timestamp.desc(), DBInteraction.id.desc())
            .offset(keep)
        )
        stmt = delete(DBInteraction).where(DBInteraction.id.in_(overflow))
        return await self._execute_delete(stmt, "delete_overflow_interactions", user_id)

    async def delete_all(self, user_id: str) -> int:
        stmt = delete(DBInteraction).where(DBInteraction.user_id == user_id)
        return await self._execute_delete(stmt, "delete_all_interactions", user_id)

    async def upsert_article(
        self,
        article_id: str,
        source: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[list[str]] = None,
        title: Optional[str] = None,
        published_at: Optional[datetime] = None,
    ):
        """Insert or update the article metadata used in joins."""
        try:
            async with self.database.async_session() as session:
                existing = await session.get(DBArticle, article_id)
                if existing:
                    existing.source = source
                    existing.category = category
                    existing.tags_json = list(tags or [])
                    existing.title = title
                    existing.published_at = published_at
                else:
                    session.add(
                        DBArticle(
                            id=article_id,
                            source=source,
                            category=category,
                            tags_json=list(tags or []),
                            title=title,
                            published_at=published_at,
                        )
                    )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Article upsert failed: {e}", operation="upsert_article") from e

    async def _execute_delete(self, stmt, operation: str, user_id: str) -> int:
        try:
            async with self.database.async_session() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Delete failed: {e}", operation=operation, user_id=user_id) from e

        deleted = result.rowcount or 0
        logger.debug("Interactions deleted", user_id=user_id, operation=operation, count=deleted)
        return deleted

    @staticmethod
    def _db_to_domain(db_interaction: DBInteraction) -> Interaction:
        return Interaction(
            user_id=db_interaction.user_id,
            article_id=db_interaction.article_id,
            action=InteractionAction(db_interaction.action),
            timestamp=db_interaction.timestamp,
        )


class SQLPreferenceStore(PreferenceStore):
    """Preference profiles stored in the `user_preferences` table."""

    def __init__(self, database: Database):
        self.database = database

    async def get(self, user_id: str) -> Optional[UserPreferences]:
        try:
            async with self.database.async_session() as session:
                db_prefs = await session.get(DBUserPreferences, user_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Read failed: {e}", operation="get_preferences", user_id=user_id) from e

        return self._db_to_domain(db_prefs) if db_prefs else None

    async def create(self, preferences: UserPreferences) -> UserPreferences:
        try:
            async with self.database.async_session() as session:
                db_prefs = DBUserPreferences(user_id=preferences.user_id)
                self._apply(db_prefs, preferences)
                session.add(db_prefs)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(
                f"Create failed: {e}",
                operation="create_preferences",
                user_id=preferences.user_id,
            ) from e
        return preferences

    async def update(self, user_id: str, changes: dict[str, Any]) -> UserPreferences:
        try:
            async with self.database.async_session() as session:
                db_prefs = await session.get(DBUserPreferences, user_id)
                if db_prefs is None:
                    raise StoreError(
                        "No preferences to update",
                        operation="update_preferences",
                        user_id=user_id,
                    )

                changes = {"last_updated": utcnow(), **changes}
                try:
                    updated = self._db_to_domain(db_prefs).with_changes(**changes)
                except ValidationError as e:
                    raise StoreError(
                        f"Invalid preference update: {e}",
                        operation="update_preferences",
                        user_id=user_id,
                    ) from e

                self._apply(db_prefs, updated)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(
                f"Update failed: {e}",
                operation="update_preferences",
                user_id=user_id,
            ) from e
        return updated

    @staticmethod
    def _apply(db_prefs: DBUserPreferences, preferences: UserPreferences):
        db_prefs.topics_json = list(preferences.topics)
        db_prefs.preferred_sources_json = list(preferences.preferred_sources)
        db_prefs.excluded_sources_json = list(preferences.excluded_sources)
        db_prefs.tone = preferences.tone.value
        db_prefs.reading_time = preferences.reading_time
        db_prefs.last_updated = preferences.last_updated

    @staticmethod
    def _db_to_domain(db_prefs: DBUserPreferences) -> UserPreferences:
        return UserPreferences(
            user_id=db_prefs.user_id,
            topics=db_prefs.topics_json or (),
            tone=db_prefs.tone,
            reading_time=db_prefs.reading_time,
            preferred_sources=db_prefs.preferred_sources_json or (),
            excluded_sources=db_prefs.excluded_sources_json or (),
            last_updated=db_prefs.last_updated,
        )
