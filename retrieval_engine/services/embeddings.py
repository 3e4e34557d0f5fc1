from __future__ import annotations

import asyncio
import hashlib
import math
import time
from typing import Any, Protocol

from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.errors import EmbeddingDimensionError


class EmbeddingService(Protocol):
    dimensions: int

    async def embed_text(self, text: str) -> list[float]: ...

    async def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class OpenRouterEmbeddingService:
    """Embeddings through the OpenAI-compatible endpoint (text-embedding-3-small by default)."""

    def __init__(self, openai_client: Any = None, model: str | None = None, dimensions: int | None = None):
        self._client = openai_client
        self.model = model or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions

    def _get_client(self) -> Any:
        if self._client is None:
            from retrieval_engine.llm_client import client

            self._client = client().raw
        return self._client

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        started = time.perf_counter()
        response = await self._get_client().embeddings.create(model=self.model, input=texts)
        vectors = [list(map(float, item.embedding)) for item in sorted(response.data, key=lambda d: d.index)]
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingDimensionError(self.dimensions, len(vector))
        logger.debug(
            f"Embedded {len(texts)} text(s) with {self.model} in {int((time.perf_counter() - started) * 1000)}ms"
        )
        return vectors

    async def embed_text(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        return vectors[0]


class LocalEmbeddingService:
    """sentence-transformers embeddings, with hashed vectors when the model cannot be loaded."""

    dimensions = 384

    def __init__(self, model_name: str | None = None, batch_size: int | None = None):
        self.model_name = model_name or settings.local_embed_model
        self.batch_size = batch_size or int(settings.local_embed_batch_size)
        self._model: Any | None = None
        self._load_attempted = False
        self._lock = asyncio.Lock()

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        async with self._lock:
            if not self._load_attempted:
                await asyncio.to_thread(self._load_model)
                self._load_attempted = True
        return await asyncio.to_thread(self._embed_sync, texts)

    async def embed_text(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        return vectors[0]

    def _load_model(self) -> None:
        from sentence_transformers import SentenceTransformer

        try:
            self._model = SentenceTransformer(self.model_name)
        except OSError as exc:
            logger.warning(f"Could not load embedding model {self.model_name}: {exc}")
            self._model = None

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        if self._model is None:
            return [_hashed_embedding(text, self.dimensions) for text in texts]

        vectors = self._model.encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        rows = [list(map(float, row)) for row in vectors]
        for row in rows:
            if len(row) != self.dimensions:
                raise EmbeddingDimensionError(self.dimensions, len(row))
        return rows


def _hashed_embedding(text: str, dim: int = 384) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    values = [0.0] * dim
    for i in range(dim):
        b = digest[i % len(digest)]
        values[i] = (b / 127.5) - 1.0
    norm = math.sqrt(sum(v * v for v in values))
    if norm <= 0:
        return values
    return [v / norm for v in values]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def get_embedding_service() -> EmbeddingService:
    backend = settings.embedding_backend.lower().strip()
    if backend == "local":
        return LocalEmbeddingService()
    if backend == "openrouter":
        return OpenRouterEmbeddingService()
    raise ValueError(f"Unsupported EMBEDDING_BACKEND: {settings.embedding_backend}")
