"""Private knowledge base: uploaded documents and prior messages, searchable by vector similarity.

Rows live in a DocumentStore, vectors in a VectorIndex. Search falls back to
brute-force cosine over stored rows when the index is unavailable; writes
raise IngestionError instead, leaving already-written rows in place so a
retry resumes where it stopped.
"""
from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.errors import (
    EmbeddingDimensionError,
    IngestionError,
    UnknownSourceError,
    VectorIndexUnavailable,
)
from retrieval_engine.models.knowledge import (
    ChunkHit,
    IngestResult,
    KnowledgeChunk,
    KnowledgeContext,
    MemoryHit,
    MessageMemoryEntry,
)
from retrieval_engine.services.chunking import chunk_text
from retrieval_engine.services.document_store import DocumentStore, memory_vector_id
from retrieval_engine.services.embeddings import EmbeddingService, cosine_similarity
from retrieval_engine.services.vector_index import VectorIndex

HASH_SAMPLE_CHUNKS = 5


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def recency_score(timestamp: datetime, now: datetime, horizon_days: float) -> float:
    """1.0 for a brand-new entry, decaying linearly to 0 at ``horizon_days``."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    age_days = max((now - timestamp).total_seconds(), 0.0) / 86400
    return max(0.0, 1.0 - age_days / horizon_days)


class KnowledgeBase:
    def __init__(
        self,
        store: DocumentStore,
        index: VectorIndex,
        embedder: EmbeddingService,
        *,
        dimensions: int | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.index = index
        self.embedder = embedder
        self.dimensions = dimensions or embedder.dimensions
        self._clock = clock

    def _check_dimensions(self, vector: list[float]) -> None:
        if len(vector) != self.dimensions:
            raise EmbeddingDimensionError(self.dimensions, len(vector))

    # --- Writes ---

    async def ingest(
        self,
        source_id: str,
        content: str,
        embedding: list[float],
        chunk_index: int,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeChunk:
        """Persist one chunk row, then index its vector."""
        self._check_dimensions(embedding)
        chunk = await self.store.append_chunk(source_id, chunk_index, content, embedding, metadata)
        try:
            await self.index.upsert(
                chunk.id,
                embedding,
                {"kind": "chunk", "source_id": source_id, "chunk_index": chunk_index},
            )
        except VectorIndexUnavailable as exc:
            raise IngestionError(f"Chunk {chunk_index} of source {source_id} was not indexed: {exc}") from exc
        return chunk

    async def _write_chunks(
        self,
        source_id: str,
        pieces: list[str],
        start_index: int,
        metadata: dict[str, Any] | None,
    ) -> int:
        batch_size = max(int(settings.embedding_batch_size), 1)
        written = 0
        for offset in range(0, len(pieces), batch_size):
            batch = pieces[offset : offset + batch_size]
            try:
                vectors = await self.embedder.embed_texts(batch)
            except EmbeddingDimensionError:
                raise
            except Exception as exc:
                raise IngestionError(f"Embedding failed for source {source_id}: {exc}") from exc
            for i, (piece, vector) in enumerate(zip(batch, vectors)):
                await self.ingest(source_id, piece, vector, start_index + offset + i, metadata)
                written += 1
            logger.debug(f"Ingested batch {offset // batch_size + 1} ({len(batch)} chunks) into {source_id}")
        return written

    async def _link_scopes(
        self,
        source_id: str,
        conversation_id: str | None,
        message_id: str | None,
        project_id: str | None,
    ) -> None:
        if conversation_id:
            await self.store.link_source_to_conversation(conversation_id, source_id, message_id)
        if project_id:
            await self.store.link_source_to_project(project_id, source_id)

    async def _restore_missing_vectors(self, source_id: str) -> int:
        """Re-upsert vectors for stored chunks the index does not have."""
        chunks = await self.store.get_chunks(source_id)
        if not chunks:
            return 0
        try:
            present = {record.id for record in await self.index.get_by_ids([c.id for c in chunks])}
        except VectorIndexUnavailable as exc:
            raise IngestionError(f"Could not verify vectors of source {source_id}: {exc}") from exc
        missing = [c for c in chunks if c.id not in present]
        for chunk in missing:
            await self.ingest(source_id, chunk.content, chunk.embedding, chunk.chunk_index, chunk.metadata)
        if missing:
            logger.info(f"Restored {len(missing)} missing vector(s) for {source_id}")
        return len(missing)

    async def ingest_document(
        self,
        content: str,
        *,
        name: str,
        type: str = "text",
        metadata: dict[str, Any] | None = None,
        conversation_id: str | None = None,
        message_id: str | None = None,
        project_id: str | None = None,
    ) -> IngestResult:
        """Hash, dedupe, chunk, embed and index a whole document, then link it to its scopes."""
        digest = content_hash(content)
        pieces = chunk_text(content)
        source, created = await self.store.create_source(digest, type, name, metadata)

        existing = 0
        restored = 0
        if not created:
            existing = await self.store.count_chunks(source.id)
            restored = await self._restore_missing_vectors(source.id)
            if existing >= len(pieces):
                logger.info(f"Source {source.id} already ingested; linking only")
                await self._link_scopes(source.id, conversation_id, message_id, project_id)
                return IngestResult(
                    source_id=source.id, created=False, chunks_written=restored, chunks_total=existing
                )
            logger.info(f"Resuming ingestion of {source.id} at chunk {existing}")

        written = await self._write_chunks(source.id, pieces[existing:], existing, metadata)
        await self._link_scopes(source.id, conversation_id, message_id, project_id)
        logger.info(f"Ingested '{name}' as {source.id}: {written} chunk(s)")
        return IngestResult(
            source_id=source.id,
            created=created,
            chunks_written=restored + written,
            chunks_total=existing + written,
        )

    async def ingest_chunks(
        self,
        chunks: list[str],
        *,
        name: str,
        type: str = "text",
        metadata: dict[str, Any] | None = None,
        conversation_id: str | None = None,
        message_id: str | None = None,
        project_id: str | None = None,
        source_id: str | None = None,
        start_index: int | None = None,
    ) -> IngestResult:
        """Ingest pre-chunked content.

        The first batch identifies the source by hashing its first five chunks
        and occupies indexes from 0. Follow-up batches pass the returned
        ``source_id`` and the ``start_index`` of their first chunk, so a retried
        batch rewrites the same rows instead of appending them again.
        """
        pieces = [c for c in chunks if c and c.strip()]
        if source_id is not None:
            if start_index is None:
                raise ValueError("start_index is required for a follow-up batch")
            if await self.store.get_source(source_id) is None:
                raise UnknownSourceError(source_id)
            created = False
            start = start_index
        else:
            digest = content_hash("".join(pieces[:HASH_SAMPLE_CHUNKS]))
            source, created = await self.store.create_source(digest, type, name, metadata)
            source_id = source.id
            start = 0

        existing = await self.store.count_chunks(source_id)
        if start > existing:
            raise IngestionError(f"Batch for {source_id} starts at chunk {start}; next index is {existing}")
        restored = 0 if created else await self._restore_missing_vectors(source_id)
        # Rows already stored are kept as they are; only the tail is embedded.
        skip = min(max(existing - start, 0), len(pieces))
        written = await self._write_chunks(source_id, pieces[skip:], start + skip, metadata)
        await self._link_scopes(source_id, conversation_id, message_id, project_id)
        total = await self.store.count_chunks(source_id)
        return IngestResult(
            source_id=source_id, created=created, chunks_written=restored + written, chunks_total=total
        )

    async def store_message(
        self,
        message_id: str,
        conversation_id: str,
        content: str,
        *,
        project_id: str | None = None,
        role: str = "user",
        timestamp: datetime | None = None,
    ) -> MessageMemoryEntry:
        """Remember a message so later conversations in the same project can recall it."""
        try:
            vector = await self.embedder.embed_text(content)
        except EmbeddingDimensionError:
            raise
        except Exception as exc:
            raise IngestionError(f"Embedding failed for message {message_id}: {exc}") from exc
        self._check_dimensions(vector)

        entry = MessageMemoryEntry(
            message_id=message_id,
            conversation_id=conversation_id,
            project_id=project_id,
            role=role,  # type: ignore[arg-type]
            content=content,
            embedding=vector,
            timestamp=timestamp or self._clock(),
        )
        await self.store.add_message_memory(entry)
        try:
            await self.index.upsert(
                memory_vector_id(message_id),
                vector,
                {
                    "kind": "message",
                    "message_id": message_id,
                    "conversation_id": conversation_id,
                    "project_id": project_id or "",
                    "role": role,
                    "timestamp": entry.timestamp.isoformat(),
                },
            )
        except VectorIndexUnavailable as exc:
            raise IngestionError(f"Message {message_id} was not indexed: {exc}") from exc
        return entry

    # --- Reads ---

    async def search(
        self,
        source_ids: list[str],
        query_vector: list[float],
        limit: int | None = None,
        min_score: float | None = None,
    ) -> list[ChunkHit]:
        """Top chunks from the allowed sources only, best first."""
        if not source_ids:
            return []
        limit = limit or settings.knowledge_chunk_limit
        min_score = settings.knowledge_min_score if min_score is None else min_score
        allowed = list(dict.fromkeys(source_ids))
        allowed_set = set(allowed)

        try:
            per_source = await asyncio.gather(
                *(
                    self.index.query(query_vector, limit * 2, filter={"kind": "chunk", "source_id": sid})
                    for sid in allowed
                )
            )
        except VectorIndexUnavailable as exc:
            logger.warning(f"Vector index unavailable, scanning stored chunks: {exc}")
            return await self._scan_chunks(allowed, query_vector, limit, min_score)

        scores: dict[str, float] = {}
        for matches in per_source:
            for match in matches:
                if match.metadata.get("source_id") not in allowed_set or match.score < min_score:
                    continue
                if match.score > scores.get(match.id, float("-inf")):
                    scores[match.id] = match.score
        if not scores:
            return []

        chunks = await self.store.get_chunks_by_ids(list(scores))
        hits = [ChunkHit(chunk=c, score=scores[c.id]) for c in chunks if c.source_id in allowed_set]
        hits.sort(key=lambda h: (-h.score, h.chunk.id))
        return hits[:limit]

    async def _scan_chunks(
        self, source_ids: list[str], query_vector: list[float], limit: int, min_score: float
    ) -> list[ChunkHit]:
        per_source = await asyncio.gather(*(self.store.get_chunks(sid) for sid in source_ids))
        hits = [
            ChunkHit(chunk=chunk, score=cosine_similarity(query_vector, chunk.embedding))
            for chunks in per_source
            for chunk in chunks
        ]
        hits = [h for h in hits if h.score >= min_score]
        hits.sort(key=lambda h: (-h.score, h.chunk.id))
        return hits[:limit]

    async def search_project_memory(
        self,
        project_id: str,
        query_vector: list[float],
        limit: int | None = None,
        min_score: float | None = None,
        exclude_conversation_id: str | None = None,
        recency_weight: float | None = None,
        now: datetime | None = None,
    ) -> list[MemoryHit]:
        """Messages from the project ranked by ``(1 - w) * similarity + w * recency``."""
        limit = limit or settings.memory_limit
        min_score = settings.memory_min_score if min_score is None else min_score
        weight = settings.memory_recency_weight if recency_weight is None else recency_weight
        if not 0.0 <= weight <= 1.0:
            raise ValueError("recency_weight must be between 0 and 1")
        now = now or self._clock()

        similarities: dict[str, float] = {}
        try:
            matches = await self.index.query(
                query_vector, limit * 2, filter={"kind": "message", "project_id": project_id}
            )
            for match in matches:
                message_id = match.metadata.get("message_id") or match.id.removeprefix("msg_")
                similarities[message_id] = max(match.score, similarities.get(message_id, float("-inf")))
            entries = await self.store.get_message_memories_by_ids(list(similarities))
        except VectorIndexUnavailable as exc:
            logger.warning(f"Vector index unavailable, scanning project memory: {exc}")
            entries = await self.store.get_project_memories(project_id)
            similarities = {e.message_id: cosine_similarity(query_vector, e.embedding) for e in entries}

        hits: list[MemoryHit] = []
        for entry in entries:
            if entry.project_id != project_id or entry.conversation_id == exclude_conversation_id:
                continue
            similarity = similarities.get(entry.message_id, 0.0)
            if similarity < min_score:
                continue
            recency = recency_score(entry.timestamp, now, settings.memory_recency_horizon_days)
            hits.append(
                MemoryHit(
                    entry=entry,
                    similarity=similarity,
                    recency=recency,
                    score=(1 - weight) * similarity + weight * recency,
                )
            )
        hits.sort(key=lambda h: (-h.score, h.entry.message_id))
        return hits[:limit]

    async def get_context(
        self,
        conversation_id: str,
        query: str,
        *,
        project_id: str | None = None,
        limit: int | None = None,
    ) -> KnowledgeContext:
        """Chunks from sources linked to the conversation or project, plus project memories."""
        try:
            vector = await self.embedder.embed_text(query)
            self._check_dimensions(vector)
        except Exception as exc:
            logger.warning(f"Knowledge context skipped, query embedding failed: {exc}")
            return KnowledgeContext()

        source_ids = await self.store.get_conversation_source_ids(conversation_id)
        if project_id:
            source_ids += await self.store.get_project_source_ids(project_id)

        chunk_search = self.search(source_ids, vector, limit=limit)
        if project_id:
            chunks, memories = await asyncio.gather(
                chunk_search,
                self.search_project_memory(project_id, vector, exclude_conversation_id=conversation_id),
            )
        else:
            chunks, memories = await chunk_search, []
        logger.info(f"Knowledge context for {conversation_id}: {len(chunks)} chunk(s), {len(memories)} memory hit(s)")
        return KnowledgeContext(chunks=chunks, memories=memories)

    async def reconstruct(self, source_id: str) -> str:
        """Source text rebuilt from its chunks in order."""
        chunks = await self.store.get_chunks(source_id)
        return "\n".join(c.content for c in sorted(chunks, key=lambda c: c.chunk_index))

    # --- Deletes ---

    async def _drop_vectors(self, vector_ids: list[str]) -> None:
        if not vector_ids:
            return
        try:
            await self.index.delete(vector_ids)
        except VectorIndexUnavailable as exc:
            logger.error(f"Could not delete {len(vector_ids)} vector(s) from the index: {exc}")
            raise

    async def delete_conversation(self, conversation_id: str) -> int:
        vector_ids = await self.store.delete_conversation(conversation_id)
        await self._drop_vectors(vector_ids)
        return len(vector_ids)

    async def delete_project(self, project_id: str) -> int:
        vector_ids = await self.store.delete_project(project_id)
        await self._drop_vectors(vector_ids)
        return len(vector_ids)
