from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


# --- Requests ---


class HistoryTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    conversation_id: str
    project_id: str | None = None
    history: list[HistoryTurn] = Field(default_factory=list)


class IngestRequest(BaseModel):
    name: str
    type: str = "text"
    content: str | None = None
    chunks: list[str] | None = None
    source_id: str | None = None
    start_index: int | None = Field(default=None, ge=0)
    conversation_id: str | None = None
    message_id: str | None = None
    project_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class KnowledgeSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    conversation_id: str
    project_id: str | None = None
    limit: int | None = Field(default=None, ge=1, le=50)


class StoreMessageRequest(BaseModel):
    message_id: str
    conversation_id: str
    content: str = Field(min_length=1)
    project_id: str | None = None
    role: Literal["user", "assistant"] = "user"
    timestamp: datetime | None = None


# --- Responses ---


class IngestResponse(BaseModel):
    source_id: str
    created: bool
    chunks_written: int
    chunks_total: int


class KnowledgeSearchResponse(BaseModel):
    chunks: list[dict[str, Any]]
    memories: list[dict[str, Any]]


class StoreMessageResponse(BaseModel):
    message_id: str
    stored: bool = True


class DeleteResponse(BaseModel):
    conversation_id: str
    vectors_deleted: int
