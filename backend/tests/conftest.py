"""
Shared fixtures and builders for the engine tests.

Embeddings come from a bag-of-words embedder over a fixed vocabulary, so
similarities in the tests can be worked out by hand.
"""

import re
from datetime import datetime, timedelta
from typing import Optional

import pytest

from smartkhabar.config import LearnerSettings, QuerySettings, SearchSettings
from smartkhabar.models.domain import ChunkMetadata, Interaction, InteractionAction, TextChunk
from smartkhabar.services.interaction_learner import InteractionLearner
from smartkhabar.services.query_converter import PreferenceQueryConverter
from smartkhabar.services.semantic_search import SemanticSearchService
from smartkhabar.services.vector_index import InMemoryVectorIndex
from smartkhabar.stores.memory import InMemoryInteractionStore, InMemoryPreferenceStore

NOW = datetime(2026, 3, 1, 12, 0, 0)

VOCABULARY = [
    "technology", "software", "startups", "ai",
    "sports", "football", "league",
    "news", "breaking", "world", "general", "current", "events",
    "politics", "election", "science", "quantum", "health",
]


class KeywordEmbedder:
    """Counts vocabulary words; unknown words are ignored. Records every call."""

    def __init__(self):
        self.calls: list[str] = []

    def vector(self, text: str) -> list[float]:
        counts = [0.0] * len(VOCABULARY)
        for token in re.findall(r"\w+", text.lower()):
            if token in VOCABULARY:
                counts[VOCABULARY.index(token)] += 1.0
        return counts

    async def embed_query(self, text: str) -> list[float]:
        self.calls.append(text)
        return self.vector(text)


def make_chunk(
    chunk_id: str,
    article_id: str,
    content: str,
    source: Optional[str] = None,
    category: Optional[str] = None,
    published_at: Optional[datetime] = None,
    chunk_index: int = 0,
) -> TextChunk:
    return TextChunk(
        id=chunk_id,
        article_id=article_id,
        content=content,
        embedding=KeywordEmbedder().vector(content),
        metadata=ChunkMetadata(
            source=source,
            category=category,
            published_at=published_at,
            chunk_index=chunk_index,
            word_count=len(content.split()),
        ),
    )


def make_interaction(user_id: str, article_id: str, action: str, hours_ago: float) -> Interaction:
    return Interaction(
        user_id=user_id,
        article_id=article_id,
        action=InteractionAction(action),
        timestamp=NOW - timedelta(hours=hours_ago),
    )


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def interaction_store():
    return InMemoryInteractionStore()


@pytest.fixture
def preference_store():
    return InMemoryPreferenceStore()


@pytest.fixture
def learner(interaction_store, clock):
    return InteractionLearner(
        interaction_store,
        settings=LearnerSettings(),
        timeout=1.0,
        clock=clock,
    )


@pytest.fixture
def converter(embedder):
    return PreferenceQueryConverter(embedder, settings=QuerySettings(), timeout=1.0)


@pytest.fixture
def vector_index():
    return InMemoryVectorIndex()


@pytest.fixture
def search_service(vector_index, converter, clock):
    return SemanticSearchService(
        vector_index,
        converter,
        settings=SearchSettings(),
        timeout=1.0,
        clock=clock,
    )


@pytest.fixture
def news_scenario(interaction_store):
    """
    Seven liked techcrunch articles, preceded by two hidden cnn articles.

    Returns the interactions oldest first.
    """
    for i in range(1, 8):
        interaction_store.add_article(f"tc-{i}", source="techcrunch", category="technology", tags=["ai"])
    for i in range(1, 3):
        interaction_store.add_article(f"cnn-{i}", source="cnn", category="politics", tags=["election"])

    interactions = [
        make_interaction("u1", "cnn-1", "hide", hours_ago=10),
        make_interaction("u1", "cnn-2", "hide", hours_ago=9),
    ]
    for i in range(1, 8):
        interactions.append(make_interaction("u1", f"tc-{i}", "like", hours_ago=9 - i))
    return interactions
