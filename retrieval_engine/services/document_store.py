"""Durable storage for knowledge sources, chunks, scope links and message memory."""
from __future__ import annotations

import json
import uuid
from typing import Any, Protocol

import asyncpg

from retrieval_engine.config import settings
from retrieval_engine.models.knowledge import (
    ConversationSourceLink,
    KnowledgeChunk,
    KnowledgeSource,
    MessageMemoryEntry,
    ProjectSourceLink,
)
from retrieval_engine.services.logger import log_db_operation


def chunk_id_for(source_id: str, chunk_index: int) -> str:
    return f"{source_id}_{chunk_index}"


def memory_vector_id(message_id: str) -> str:
    return f"msg_{message_id}"


class DocumentStore(Protocol):
    async def get_source_by_hash(self, hash: str) -> KnowledgeSource | None: ...

    async def create_source(
        self, hash: str, type: str, name: str, metadata: dict[str, Any] | None = None
    ) -> tuple[KnowledgeSource, bool]: ...

    async def get_source(self, source_id: str) -> KnowledgeSource | None: ...

    async def append_chunk(
        self,
        source_id: str,
        chunk_index: int,
        content: str,
        embedding: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeChunk: ...

    async def get_chunks(self, source_id: str) -> list[KnowledgeChunk]: ...

    async def get_chunks_by_ids(self, chunk_ids: list[str]) -> list[KnowledgeChunk]: ...

    async def count_chunks(self, source_id: str) -> int: ...

    async def link_source_to_conversation(
        self, conversation_id: str, source_id: str, message_id: str | None = None
    ) -> None: ...

    async def link_source_to_project(self, project_id: str, source_id: str) -> None: ...

    async def get_conversation_source_ids(self, conversation_id: str) -> list[str]: ...

    async def get_project_source_ids(self, project_id: str) -> list[str]: ...

    async def add_message_memory(self, entry: MessageMemoryEntry) -> None: ...

    async def get_project_memories(self, project_id: str) -> list[MessageMemoryEntry]: ...

    async def get_message_memories_by_ids(self, message_ids: list[str]) -> list[MessageMemoryEntry]: ...

    async def delete_conversation(self, conversation_id: str) -> list[str]: ...

    async def delete_project(self, project_id: str) -> list[str]: ...


class InMemoryDocumentStore:
    """Dictionary-backed store. Deletes return the vector ids that must be dropped from the index."""

    def __init__(self) -> None:
        self.sources: dict[str, KnowledgeSource] = {}
        self.chunks: dict[str, list[KnowledgeChunk]] = {}
        self.conversation_links: list[ConversationSourceLink] = []
        self.project_links: list[ProjectSourceLink] = []
        self.memories: dict[str, MessageMemoryEntry] = {}

    async def get_source_by_hash(self, hash: str) -> KnowledgeSource | None:
        return next((s for s in self.sources.values() if s.hash == hash), None)

    async def create_source(
        self, hash: str, type: str, name: str, metadata: dict[str, Any] | None = None
    ) -> tuple[KnowledgeSource, bool]:
        existing = await self.get_source_by_hash(hash)
        if existing is not None:
            return existing, False
        source = KnowledgeSource(id=str(uuid.uuid4()), hash=hash, type=type, name=name, metadata=dict(metadata or {}))
        self.sources[source.id] = source
        self.chunks[source.id] = []
        return source, True

    async def get_source(self, source_id: str) -> KnowledgeSource | None:
        return self.sources.get(source_id)

    async def append_chunk(
        self,
        source_id: str,
        chunk_index: int,
        content: str,
        embedding: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeChunk:
        if source_id not in self.sources:
            raise KeyError(f"Unknown source: {source_id}")
        rows = self.chunks[source_id]
        if chunk_index < len(rows):
            # Retried write of an existing row.
            return rows[chunk_index]
        if chunk_index != len(rows):
            raise ValueError(f"chunk_index {chunk_index} leaves a gap; next index is {len(rows)}")
        chunk = KnowledgeChunk(
            id=chunk_id_for(source_id, chunk_index),
            source_id=source_id,
            chunk_index=chunk_index,
            content=content,
            embedding=list(embedding),
            metadata=dict(metadata or {}),
        )
        rows.append(chunk)
        return chunk

    async def get_chunks(self, source_id: str) -> list[KnowledgeChunk]:
        return list(self.chunks.get(source_id, []))

    async def get_chunks_by_ids(self, chunk_ids: list[str]) -> list[KnowledgeChunk]:
        wanted = set(chunk_ids)
        return [c for rows in self.chunks.values() for c in rows if c.id in wanted]

    async def count_chunks(self, source_id: str) -> int:
        return len(self.chunks.get(source_id, []))

    async def link_source_to_conversation(
        self, conversation_id: str, source_id: str, message_id: str | None = None
    ) -> None:
        for link in self.conversation_links:
            if link.conversation_id == conversation_id and link.source_id == source_id:
                return
        self.conversation_links.append(ConversationSourceLink(conversation_id, source_id, message_id))

    async def link_source_to_project(self, project_id: str, source_id: str) -> None:
        if any(l.project_id == project_id and l.source_id == source_id for l in self.project_links):
            return
        self.project_links.append(ProjectSourceLink(project_id, source_id))

    async def get_conversation_source_ids(self, conversation_id: str) -> list[str]:
        return [l.source_id for l in self.conversation_links if l.conversation_id == conversation_id]

    async def get_project_source_ids(self, project_id: str) -> list[str]:
        return [l.source_id for l in self.project_links if l.project_id == project_id]

    async def add_message_memory(self, entry: MessageMemoryEntry) -> None:
        self.memories[entry.message_id] = entry

    async def get_project_memories(self, project_id: str) -> list[MessageMemoryEntry]:
        return [m for m in self.memories.values() if m.project_id == project_id]

    async def get_message_memories_by_ids(self, message_ids: list[str]) -> list[MessageMemoryEntry]:
        return [self.memories[i] for i in message_ids if i in self.memories]

    def _drop_orphans(self, candidate_ids: set[str]) -> list[str]:
        linked = {l.source_id for l in self.conversation_links} | {l.source_id for l in self.project_links}
        vector_ids: list[str] = []
        for source_id in candidate_ids - linked:
            vector_ids.extend(c.id for c in self.chunks.pop(source_id, []))
            self.sources.pop(source_id, None)
        return vector_ids

    async def delete_conversation(self, conversation_id: str) -> list[str]:
        dropped = {l.source_id for l in self.conversation_links if l.conversation_id == conversation_id}
        self.conversation_links = [l for l in self.conversation_links if l.conversation_id != conversation_id]
        vector_ids = self._drop_orphans(dropped)
        for message_id in [m.message_id for m in self.memories.values() if m.conversation_id == conversation_id]:
            del self.memories[message_id]
            vector_ids.append(memory_vector_id(message_id))
        return vector_ids

    async def delete_project(self, project_id: str) -> list[str]:
        dropped = {l.source_id for l in self.project_links if l.project_id == project_id}
        self.project_links = [l for l in self.project_links if l.project_id != project_id]
        vector_ids = self._drop_orphans(dropped)
        for message_id in [m.message_id for m in self.memories.values() if m.project_id == project_id]:
            del self.memories[message_id]
            vector_ids.append(memory_vector_id(message_id))
        return vector_ids


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS knowledge_sources (
    id UUID PRIMARY KEY,
    hash TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS knowledge_chunks (
    id TEXT PRIMARY KEY,
    source_id UUID NOT NULL REFERENCES knowledge_sources(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL,
    embedding DOUBLE PRECISION[] NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    UNIQUE (source_id, chunk_index)
);
CREATE TABLE IF NOT EXISTS conversation_sources (
    conversation_id TEXT NOT NULL,
    source_id UUID NOT NULL REFERENCES knowledge_sources(id) ON DELETE CASCADE,
    message_id TEXT,
    PRIMARY KEY (conversation_id, source_id)
);
CREATE TABLE IF NOT EXISTS project_sources (
    project_id TEXT NOT NULL,
    source_id UUID NOT NULL REFERENCES knowledge_sources(id) ON DELETE CASCADE,
    PRIMARY KEY (project_id, source_id)
);
CREATE TABLE IF NOT EXISTS message_memories (
    message_id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    project_id TEXT,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    embedding DOUBLE PRECISION[] NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS message_memories_project_idx ON message_memories (project_id);
"""


def _coerce_json_object(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _source_from_row(row: Any) -> KnowledgeSource:
    return KnowledgeSource(
        id=str(row["id"]),
        hash=row["hash"],
        type=row["type"],
        name=row["name"],
        metadata=_coerce_json_object(row["metadata"]),
        created_at=row["created_at"],
    )


def _chunk_from_row(row: Any) -> KnowledgeChunk:
    return KnowledgeChunk(
        id=row["id"],
        source_id=str(row["source_id"]),
        chunk_index=row["chunk_index"],
        content=row["content"],
        embedding=list(row["embedding"] or []),
        metadata=_coerce_json_object(row["metadata"]),
    )


def _memory_from_row(row: Any) -> MessageMemoryEntry:
    return MessageMemoryEntry(
        message_id=row["message_id"],
        conversation_id=row["conversation_id"],
        project_id=row["project_id"],
        role=row["role"],
        content=row["content"],
        embedding=list(row["embedding"] or []),
        timestamp=row["created_at"],
    )


class PostgresDocumentStore:
    """asyncpg-backed store; the pool is created lazily from DATABASE_URL."""

    def __init__(self, database_url: str | None = None, pool: asyncpg.Pool | None = None):
        self.database_url = database_url or settings.database_url
        self._pool = pool

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            if not self.database_url:
                raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
            self._pool = await asyncpg.create_pool(self.database_url, min_size=1, max_size=10)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        log_db_operation("create", "schema", "success")

    async def get_source_by_hash(self, hash: str) -> KnowledgeSource | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM knowledge_sources WHERE hash = $1", hash)
        return _source_from_row(row) if row else None

    async def create_source(
        self, hash: str, type: str, name: str, metadata: dict[str, Any] | None = None
    ) -> tuple[KnowledgeSource, bool]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO knowledge_sources (id, hash, type, name, metadata)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                ON CONFLICT (hash) DO NOTHING
                RETURNING *
                """,
                uuid.uuid4(),
                hash,
                type,
                name,
                json.dumps(metadata or {}),
            )
            if row is not None:
                log_db_operation("insert", "knowledge_sources", "success", details=name)
                return _source_from_row(row), True
            row = await conn.fetchrow("SELECT * FROM knowledge_sources WHERE hash = $1", hash)
        return _source_from_row(row), False

    async def get_source(self, source_id: str) -> KnowledgeSource | None:
        try:
            key = uuid.UUID(source_id)
        except ValueError:
            return None
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM knowledge_sources WHERE id = $1", key)
        return _source_from_row(row) if row else None

    async def append_chunk(
        self,
        source_id: str,
        chunk_index: int,
        content: str,
        embedding: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeChunk:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                count = await conn.fetchval(
                    "SELECT count(*) FROM knowledge_chunks WHERE source_id = $1", uuid.UUID(source_id)
                )
                if chunk_index > count:
                    raise ValueError(f"chunk_index {chunk_index} leaves a gap; next index is {count}")
                row = await conn.fetchrow(
                    """
                    INSERT INTO knowledge_chunks (id, source_id, chunk_index, content, embedding, metadata)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                    ON CONFLICT (source_id, chunk_index) DO UPDATE SET id = knowledge_chunks.id
                    RETURNING *
                    """,
                    chunk_id_for(source_id, chunk_index),
                    uuid.UUID(source_id),
                    chunk_index,
                    content,
                    embedding,
                    json.dumps(metadata or {}),
                )
        return _chunk_from_row(row)

    async def get_chunks(self, source_id: str) -> list[KnowledgeChunk]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM knowledge_chunks WHERE source_id = $1 ORDER BY chunk_index",
                uuid.UUID(source_id),
            )
        return [_chunk_from_row(r) for r in rows]

    async def get_chunks_by_ids(self, chunk_ids: list[str]) -> list[KnowledgeChunk]:
        if not chunk_ids:
            return []
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM knowledge_chunks WHERE id = ANY($1::text[])", chunk_ids)
        return [_chunk_from_row(r) for r in rows]

    async def count_chunks(self, source_id: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT count(*) FROM knowledge_chunks WHERE source_id = $1", uuid.UUID(source_id)
            )

    async def link_source_to_conversation(
        self, conversation_id: str, source_id: str, message_id: str | None = None
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO conversation_sources (conversation_id, source_id, message_id)
                VALUES ($1, $2, $3)
                ON CONFLICT DO NOTHING
                """,
                conversation_id,
                uuid.UUID(source_id),
                message_id,
            )

    async def link_source_to_project(self, project_id: str, source_id: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO project_sources (project_id, source_id) VALUES ($1, $2) ON CONFLICT DO NOTHING",
                project_id,
                uuid.UUID(source_id),
            )

    async def get_conversation_source_ids(self, conversation_id: str) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT source_id FROM conversation_sources WHERE conversation_id = $1", conversation_id
            )
        return [str(r["source_id"]) for r in rows]

    async def get_project_source_ids(self, project_id: str) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT source_id FROM project_sources WHERE project_id = $1", project_id)
        return [str(r["source_id"]) for r in rows]

    async def add_message_memory(self, entry: MessageMemoryEntry) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO message_memories
                    (message_id, conversation_id, project_id, role, content, embedding, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (message_id) DO UPDATE
                SET content = EXCLUDED.content, embedding = EXCLUDED.embedding
                """,
                entry.message_id,
                entry.conversation_id,
                entry.project_id,
                entry.role,
                entry.content,
                entry.embedding,
                entry.timestamp,
            )

    async def get_project_memories(self, project_id: str) -> list[MessageMemoryEntry]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM message_memories WHERE project_id = $1", project_id)
        return [_memory_from_row(r) for r in rows]

    async def get_message_memories_by_ids(self, message_ids: list[str]) -> list[MessageMemoryEntry]:
        if not message_ids:
            return []
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM message_memories WHERE message_id = ANY($1::text[])", message_ids
            )
        return [_memory_from_row(r) for r in rows]

    async def _delete_scope(self, conn: Any, link_table: str, scope_column: str, scope_id: str) -> list[str]:
        source_rows = await conn.fetch(
            f"DELETE FROM {link_table} WHERE {scope_column} = $1 RETURNING source_id", scope_id
        )
        candidates = [r["source_id"] for r in source_rows]
        orphan_rows = await conn.fetch(
            """
            SELECT s.id FROM knowledge_sources s
            WHERE s.id = ANY($1::uuid[])
              AND NOT EXISTS (SELECT 1 FROM conversation_sources c WHERE c.source_id = s.id)
              AND NOT EXISTS (SELECT 1 FROM project_sources p WHERE p.source_id = s.id)
            """,
            candidates,
        )
        orphans = [r["id"] for r in orphan_rows]
        chunk_rows = await conn.fetch(
            "SELECT id FROM knowledge_chunks WHERE source_id = ANY($1::uuid[])", orphans
        )
        await conn.execute("DELETE FROM knowledge_sources WHERE id = ANY($1::uuid[])", orphans)
        memory_rows = await conn.fetch(
            f"DELETE FROM message_memories WHERE {scope_column} = $1 RETURNING message_id", scope_id
        )
        vector_ids = [r["id"] for r in chunk_rows]
        vector_ids.extend(memory_vector_id(r["message_id"]) for r in memory_rows)
        return vector_ids

    async def delete_conversation(self, conversation_id: str) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                ids = await self._delete_scope(conn, "conversation_sources", "conversation_id", conversation_id)
        log_db_operation("delete", "conversation_sources", "success", details=conversation_id)
        return ids

    async def delete_project(self, project_id: str) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                ids = await self._delete_scope(conn, "project_sources", "project_id", project_id)
        log_db_operation("delete", "project_sources", "success", details=project_id)
        return ids


def get_document_store() -> DocumentStore:
    backend = settings.document_store_backend.lower().strip()
    if backend == "postgres":
        return PostgresDocumentStore()
    if backend == "memory":
        return InMemoryDocumentStore()
    raise ValueError(f"Unsupported DOCUMENT_STORE_BACKEND: {settings.document_store_backend}")
