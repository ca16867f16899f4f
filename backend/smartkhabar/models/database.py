"""
SQLAlchemy database models for the personalization stores.
Uses SQLAlchemy 2.0 async patterns.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# =============================================================================
# Base
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models."""
    pass


# =============================================================================
# Articles
# =============================================================================

class DBArticle(Base):
    """Article metadata joined onto interactions for learning."""
    __tablename__ = "articles"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[Optional[str]] = mapped_column(String(255))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    tags_json: Mapped[Optional[list]] = mapped_column(JSON)  # List of tag strings
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    __table_args__ = (
        Index("ix_articles_source", "source"),
        Index("ix_articles_category", "category"),
    )


# =============================================================================
# Interactions
# =============================================================================

class DBInteraction(Base):
    """Append-only interaction log."""
    __tablename__ = "interactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # No FK: interactions may reference articles that were never ingested here
    article_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)  # read_more, like, hide, share
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_interactions_user", "user_id"),
        Index("ix_interactions_user_time", "user_id", "timestamp"),
    )


# =============================================================================
# Preferences
# =============================================================================

class DBUserPreferences(Base):
    """One preference profile per user."""
    __tablename__ = "user_preferences"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Stored as JSON lists
    topics_json: Mapped[Optional[list]] = mapped_column(JSON)
    preferred_sources_json: Mapped[Optional[list]] = mapped_column(JSON)
    excluded_sources_json: Mapped[Optional[list]] = mapped_column(JSON)

    tone: Mapped[str] = mapped_column(String(20), nullable=False, default="casual")
    reading_time: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# =============================================================================
# Database Connection
# =============================================================================

class Database:
    """Database connection manager."""

    def __init__(self, database_url: str, echo: bool = False):
        self.engine = create_async_engine(
            database_url,
            echo=echo,
        )
        self.async_session = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_tables(self):
        """Drop all tables (use with caution!)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self):
        await self.engine.dispose()
