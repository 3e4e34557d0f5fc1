from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.errors import VectorIndexUnavailable
from retrieval_engine.services.embeddings import cosine_similarity


@dataclass(slots=True)
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class VectorRecord:
    id: str
    vector: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    async def upsert(self, id: str, vector: list[float], metadata: dict[str, Any]) -> None: ...

    async def query(
        self,
        vector: list[float],
        top_k: int,
        filter: dict[str, Any] | None = None,
        return_metadata: bool = True,
    ) -> list[VectorMatch]: ...

    async def get_by_ids(self, ids: list[str]) -> list[VectorRecord]: ...

    async def delete(self, ids: list[str]) -> None: ...


def _metadata_matches(metadata: dict[str, Any], filters: dict[str, Any]) -> bool:
    for key, expected in filters.items():
        if metadata.get(key) != expected:
            return False
    return True


def _chroma_where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    if not filters:
        return None
    clauses = [{key: {"$eq": value}} for key, value in filters.items()]
    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


def _clean_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma only stores scalar metadata values and rejects None.
    return {k: v for k, v in metadata.items() if isinstance(v, (str, int, float, bool))}


class InMemoryVectorIndex:
    """Brute-force cosine index for tests and single-process development."""

    def __init__(self) -> None:
        self._records: dict[str, VectorRecord] = {}

    async def upsert(self, id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        self._records[id] = VectorRecord(id=id, vector=list(vector), metadata=dict(metadata))

    async def query(
        self,
        vector: list[float],
        top_k: int,
        filter: dict[str, Any] | None = None,
        return_metadata: bool = True,
    ) -> list[VectorMatch]:
        matches = [
            VectorMatch(
                id=record.id,
                score=cosine_similarity(vector, record.vector),
                metadata=dict(record.metadata) if return_metadata else {},
            )
            for record in self._records.values()
            if not filter or _metadata_matches(record.metadata, filter)
        ]
        matches.sort(key=lambda m: (-m.score, m.id))
        return matches[: max(int(top_k), 0)]

    async def get_by_ids(self, ids: list[str]) -> list[VectorRecord]:
        return [self._records[i] for i in ids if i in self._records]

    async def delete(self, ids: list[str]) -> None:
        for i in ids:
            self._records.pop(i, None)

    def __len__(self) -> int:
        return len(self._records)


class ChromaVectorIndex:
    """Persistent chromadb collection using cosine distance; calls run in a worker thread."""

    def __init__(self, persist_dir: str | None = None, collection_name: str | None = None):
        self.persist_dir = Path(persist_dir or settings.chroma_persist_dir)
        self.collection_name = collection_name or settings.chroma_collection
        self._client: Any | None = None
        self._collection: Any | None = None
        self._client_lock = asyncio.Lock()

    async def _get_collection(self) -> Any:
        async with self._client_lock:
            if self._collection is not None:
                return self._collection
            import chromadb

            def _open() -> Any:
                self.persist_dir.mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(path=str(self.persist_dir))
                return client, client.get_or_create_collection(
                    name=self.collection_name,
                    metadata={"hnsw:space": "cosine"},
                )

            try:
                self._client, self._collection = await asyncio.to_thread(_open)
            except Exception as exc:
                raise VectorIndexUnavailable(f"Could not open Chroma collection: {exc}") from exc
            return self._collection

    async def _run(self, operation: str, fn: Any) -> Any:
        collection = await self._get_collection()
        try:
            return await asyncio.to_thread(fn, collection)
        except Exception as exc:
            logger.warning(f"Chroma {operation} failed: {exc}")
            raise VectorIndexUnavailable(f"Chroma {operation} failed: {exc}") from exc

    async def upsert(self, id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        await self._run(
            "upsert",
            lambda c: c.upsert(ids=[id], embeddings=[vector], metadatas=[_clean_metadata(metadata)]),
        )

    async def query(
        self,
        vector: list[float],
        top_k: int,
        filter: dict[str, Any] | None = None,
        return_metadata: bool = True,
    ) -> list[VectorMatch]:
        if top_k <= 0:
            return []

        def _sync_query(collection: Any) -> list[VectorMatch]:
            kwargs: dict[str, Any] = {
                "query_embeddings": [vector],
                "n_results": int(top_k),
                "include": ["metadatas", "distances"] if return_metadata else ["distances"],
            }
            where = _chroma_where(filter)
            if where:
                kwargs["where"] = where
            result = collection.query(**kwargs)
            ids = (result.get("ids") or [[]])[0]
            distances = (result.get("distances") or [[]])[0]
            metas = (result.get("metadatas") or [[]])[0] if return_metadata else []
            matches: list[VectorMatch] = []
            for idx, hit_id in enumerate(ids):
                distance = float(distances[idx]) if idx < len(distances) else 1.0
                metadata = metas[idx] if idx < len(metas) and isinstance(metas[idx], dict) else {}
                matches.append(VectorMatch(id=hit_id, score=1.0 - distance, metadata=dict(metadata)))
            return matches

        return await self._run("query", _sync_query)

    async def get_by_ids(self, ids: list[str]) -> list[VectorRecord]:
        if not ids:
            return []

        def _sync_get(collection: Any) -> list[VectorRecord]:
            result = collection.get(ids=ids, include=["embeddings", "metadatas"])
            embeddings = result.get("embeddings")
            if embeddings is None:
                embeddings = []
            metas = result.get("metadatas") or []
            return [
                VectorRecord(
                    id=record_id,
                    vector=list(map(float, embeddings[idx])) if idx < len(embeddings) else [],
                    metadata=dict(metas[idx] or {}) if idx < len(metas) else {},
                )
                for idx, record_id in enumerate(result.get("ids") or [])
            ]

        return await self._run("get", _sync_get)

    async def delete(self, ids: list[str]) -> None:
        if ids:
            await self._run("delete", lambda c: c.delete(ids=ids))


def get_vector_index() -> VectorIndex:
    backend = settings.vector_index_backend.lower().strip()
    if backend == "chromadb":
        return ChromaVectorIndex()
    if backend == "memory":
        return InMemoryVectorIndex()
    raise ValueError(f"Unsupported VECTOR_INDEX_BACKEND: {settings.vector_index_backend}")
