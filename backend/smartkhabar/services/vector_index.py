"""
Vector index interface and an in-memory numpy implementation.

For production corpora this should be backed by a real vector database
(FAISS, Qdrant, pgvector); the engine only depends on `VectorIndex`.
"""
import time
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from smartkhabar.models.domain import (
    SearchFilters,
    TextChunk,
    VectorMatch,
    VectorSearchMetrics,
    VectorSearchResponse,
)


class VectorIndex(ABC):
    """Similarity search over embedded article chunks."""

    @abstractmethod
    async def search(
        self,
        embedding: Sequence[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 50,
    ) -> VectorSearchResponse:
        """
        Find the chunks nearest to an embedding.

        Args:
            embedding: Query vector
            filters: Metadata filters and minimum relevance
            limit: Maximum number of matches

        Returns:
            Matches sorted by relevance descending
        """
        pass

    @abstractmethod
    async def get_article_chunks(self, article_id: str) -> list[TextChunk]:
        """Exact lookup of an article's chunks, ordered by chunk index."""
        pass

    @abstractmethod
    async def scan(self, filters: Optional[SearchFilters] = None) -> list[TextChunk]:
        """List chunks matching metadata filters, without similarity scoring."""
        pass


def chunk_matches_filters(chunk: TextChunk, filters: Optional[SearchFilters]) -> bool:
    """
    Metadata-only filter check.

    Source and category comparisons ignore case. Chunks lacking a filtered
    field do not match.
    """
    if filters is None:
        return True

    metadata = chunk.metadata
    if filters.sources is not None:
        sources = {s.lower() for s in filters.sources}
        if not metadata.source or metadata.source.lower() not in sources:
            return False

    if filters.categories is not None:
        categories = {c.lower() for c in filters.categories}
        if not metadata.category or metadata.category.lower() not in categories:
            return False

    if filters.date_range is not None:
        published_at = metadata.published_at
        if published_at is None:
            return False
        if not filters.date_range.start <= published_at <= filters.date_range.end:
            return False

    return True


class InMemoryVectorIndex(VectorIndex):
    """
    Brute-force cosine search over a numpy matrix.

    Embeddings are normalized on insert, so similarity is a dot product.
    """

    def __init__(self):
        self._chunks: list[TextChunk] = []
        self._embeddings: NDArray[np.float32] = np.empty((0, 0), dtype=np.float32)

    def add_chunks(self, chunks: list[TextChunk]):
        """Add chunks to the index. All embeddings must share one dimension."""
        if not chunks:
            return

        vectors = np.array([c.embedding for c in chunks], dtype=np.float32)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        vectors = vectors / np.where(norms > 0, norms, 1)

        if len(self._chunks) == 0:
            self._embeddings = vectors
        else:
            if vectors.shape[1] != self._embeddings.shape[1]:
                raise ValueError(
                    f"Embedding dimension {vectors.shape[1]} does not match "
                    f"index dimension {self._embeddings.shape[1]}"
                )
            self._embeddings = np.vstack([self._embeddings, vectors])

        self._chunks.extend(chunks)

    async def search(
        self,
        embedding: Sequence[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 50,
    ) -> VectorSearchResponse:
        start = time.perf_counter()
        if not self._chunks:
            return VectorSearchResponse()

        query = np.asarray(embedding, dtype=np.float32)
        norm = np.linalg.norm(query)
        if norm > 0:
            query = query / norm

        similarities = self._embeddings @ query
        min_score = filters.min_relevance_score if filters else None

        matches = []
        for i in np.argsort(-similarities, kind="stable"):
            score = float(similarities[i])
            if min_score is not None and score < min_score:
                break
            chunk = self._chunks[i]
            if not chunk_matches_filters(chunk, filters):
                continue
            matches.append(VectorMatch(chunk=chunk, relevance_score=score))
            if len(matches) >= limit:
                break

        return VectorSearchResponse(
            results=matches,
            metrics=VectorSearchMetrics(
                search_time_ms=(time.perf_counter() - start) * 1000,
                candidates_scanned=len(self._chunks),
            ),
        )

    async def get_article_chunks(self, article_id: str) -> list[TextChunk]:
        chunks = [c for c in self._chunks if c.article_id == article_id]
        return sorted(chunks, key=lambda c: c.metadata.chunk_index)

    async def scan(self, filters: Optional[SearchFilters] = None) -> list[TextChunk]:
        return [c for c in self._chunks if chunk_matches_filters(c, filters)]

    def clear(self):
        self._chunks = []
        self._embeddings = np.empty((0, 0), dtype=np.float32)

    @property
    def size(self) -> int:
        """Number of chunks in the index."""
        return len(self._chunks)
