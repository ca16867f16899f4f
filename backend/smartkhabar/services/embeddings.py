"""
Embedding adapters.

The engine only needs an object with `async embed_query(text)`; this module
provides the stock implementation backed by one of three backends.
"""
import asyncio
import hashlib
import re
from typing import Optional, Protocol

import numpy as np
from numpy.typing import NDArray

from smartkhabar.config import EmbeddingSettings, get_settings

_TOKEN_RE = re.compile(r"\w+")


class Embedder(Protocol):
    """The embedding function the engine depends on."""

    async def embed_query(self, text: str) -> list[float]:
        ...


class EmbeddingService:
    """
    Service for computing text embeddings.

    Backends, chosen by `EMBEDDING_BACKEND`:
    1. hash - deterministic feature hashing of word tokens (no model, for tests/dev)
    2. local - sentence-transformers (free, runs on CPU)
    3. openai - text-embedding-3 (paid, higher quality)

    All embeddings are normalized to unit length, so cosine similarity
    is a dot product.
    """

    def __init__(
        self,
        settings: Optional[EmbeddingSettings] = None,
        openai_api_key: Optional[str] = None,
    ):
        self.settings = settings or get_settings().embedding
        self._openai_api_key = openai_api_key
        self._model = None
        self._openai_client = None
        self._dimension = self.settings.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    async def initialize(self):
        """Load the configured backend (lazy, call once at startup)."""
        if self.settings.backend == "openai":
            await self._init_openai()
        elif self.settings.backend == "local":
            await self._init_local()

    async def _init_openai(self):
        from openai import AsyncOpenAI

        self._openai_client = AsyncOpenAI(api_key=self._openai_api_key or get_settings().openai_api_key)
        self._dimension = 1536  # text-embedding-3-small dimension

    async def _init_local(self):
        from sentence_transformers import SentenceTransformer

        # Load model in a thread pool to avoid blocking
        loop = asyncio.get_running_loop()
        self._model = await loop.run_in_executor(
            None,
            lambda: SentenceTransformer(self.settings.model)
        )
        self._dimension = self._model.get_sentence_embedding_dimension()

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query text as a plain list of floats."""
        embedding = await self.embed_text(text)
        return embedding.tolist()

    async def embed_text(self, text: str) -> NDArray[np.float32]:
        """
        Compute embedding for a single text.

        Returns:
            Normalized embedding vector
        """
        if self._openai_client:
            return await self._embed_openai(text)
        elif self._model:
            return await self._embed_local(text)
        else:
            return self._embed_hash(text)

    async def embed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        """
        Compute embeddings for multiple texts.

        Returns:
            Array of shape (n_texts, embedding_dim)
        """
        if not texts:
            return np.array([], dtype=np.float32).reshape(0, self._dimension)

        if self._openai_client:
            response = await self._openai_client.embeddings.create(
                model=self.settings.openai_model,
                input=texts,
            )
            embeddings = np.array([d.embedding for d in response.data], dtype=np.float32)
            return self._normalize_batch(embeddings)
        elif self._model:
            loop = asyncio.get_running_loop()
            embeddings = await loop.run_in_executor(
                None,
                lambda: self._model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
            )
            return self._normalize_batch(embeddings.astype(np.float32))
        else:
            return np.array([self._embed_hash(t) for t in texts], dtype=np.float32)

    async def _embed_openai(self, text: str) -> NDArray[np.float32]:
        response = await self._openai_client.embeddings.create(
            model=self.settings.openai_model,
            input=text,
        )
        embedding = np.array(response.data[0].embedding, dtype=np.float32)
        return self._normalize(embedding)

    async def _embed_local(self, text: str) -> NDArray[np.float32]:
        loop = asyncio.get_running_loop()
        embedding = await loop.run_in_executor(
            None,
            lambda: self._model.encode(text, convert_to_numpy=True)
        )
        return self._normalize(embedding.astype(np.float32))

    def _embed_hash(self, text: str) -> NDArray[np.float32]:
        """Signed feature hashing of lowercase word tokens."""
        embedding = np.zeros(self._dimension, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode()).digest()
            index = int.from_bytes(digest[:4], "big") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            embedding[index] += sign
        return self._normalize(embedding)

    @staticmethod
    def _normalize(embedding: NDArray[np.float32]) -> NDArray[np.float32]:
        """Normalize embedding to unit length."""
        norm = np.linalg.norm(embedding)
        if norm > 0:
            return embedding / norm
        return embedding

    @staticmethod
    def _normalize_batch(embeddings: NDArray[np.float32]) -> NDArray[np.float32]:
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        norms = np.where(norms > 0, norms, 1)  # Avoid division by zero
        return embeddings / norms

