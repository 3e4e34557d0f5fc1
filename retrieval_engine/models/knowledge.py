from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class KnowledgeSource:
    id: str
    hash: str
    type: str
    name: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class KnowledgeChunk:
    id: str
    source_id: str
    chunk_index: int
    content: str
    embedding: list[float] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ConversationSourceLink:
    conversation_id: str
    source_id: str
    message_id: str | None = None


@dataclass(slots=True)
class ProjectSourceLink:
    project_id: str
    source_id: str


@dataclass(slots=True)
class MessageMemoryEntry:
    message_id: str
    conversation_id: str
    role: Literal["user", "assistant"]
    content: str
    embedding: list[float] = field(default_factory=list)
    project_id: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class ChunkHit:
    chunk: KnowledgeChunk
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk.id,
            "source_id": self.chunk.source_id,
            "chunk_index": self.chunk.chunk_index,
            "content": self.chunk.content,
            "score": round(self.score, 4),
        }


@dataclass(slots=True)
class MemoryHit:
    entry: MessageMemoryEntry
    similarity: float
    recency: float
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.entry.message_id,
            "conversation_id": self.entry.conversation_id,
            "role": self.entry.role,
            "content": self.entry.content,
            "timestamp": self.entry.timestamp.isoformat(),
            "similarity": round(self.similarity, 4),
            "recency": round(self.recency, 4),
            "score": round(self.score, 4),
        }


@dataclass(slots=True)
class IngestResult:
    source_id: str
    created: bool
    chunks_written: int
    chunks_total: int


@dataclass(slots=True)
class KnowledgeContext:
    chunks: list[ChunkHit] = field(default_factory=list)
    memories: list[MemoryHit] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.chunks and not self.memories
