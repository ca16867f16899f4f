"""
Services layer - the personalization engine's core logic.

1. Interaction Learner (interaction_learner.py):
   - Category and source affinities from interaction history
   - Emerging topics and declining sources
   - Confidence-gated preference proposals

2. Query Converter (query_converter.py):
   - Preference profile to weighted query text and embedding
   - Generic fallback query

3. Semantic Search (semantic_search.py):
   - Primary/fallback retrieval over the vector index
   - Category, source and recency boosts
   - Similar articles and trending topics

4. Preference Manager (preferences.py):
   - Get-or-create profiles, exclusive source lists
   - Commits learned changes on request

Collaborators: embeddings.py (embedding backends), vector_index.py
(similarity search), cache.py (TTL cache for query embeddings).
"""

from smartkhabar.services.cache import TTLCache
from smartkhabar.services.embeddings import Embedder, EmbeddingService
from smartkhabar.services.interaction_learner import InteractionLearner
from smartkhabar.services.preferences import PreferenceManager
from smartkhabar.services.query_converter import PreferenceQueryConverter
from smartkhabar.services.semantic_search import SemanticSearchService
from smartkhabar.services.vector_index import (
    InMemoryVectorIndex,
    VectorIndex,
    chunk_matches_filters,
)

__all__ = [
    # Learning
    "InteractionLearner",
    "PreferenceManager",
    # Retrieval
    "PreferenceQueryConverter",
    "SemanticSearchService",
    # Collaborators
    "Embedder",
    "EmbeddingService",
    "VectorIndex",
    "InMemoryVectorIndex",
    "chunk_matches_filters",
    "TTLCache",
]
