"""Tests for API routes."""
from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient
from sse_starlette.sse import AppStatus

from retrieval_engine.api.deps import get_engine, get_knowledge_base
from retrieval_engine.errors import VectorIndexUnavailable
from retrieval_engine.main import app
from retrieval_engine.models.events import EventType, SSEEvent
from retrieval_engine.services import streaming
from retrieval_engine.services.document_store import InMemoryDocumentStore
from retrieval_engine.services.knowledge_base import KnowledgeBase
from retrieval_engine.services.vector_index import InMemoryVectorIndex


class _Embedder:
    dimensions = 3

    async def embed_texts(self, texts):
        return [[1.0, 0.5, float(len(t) % 3)] for t in texts]

    async def embed_text(self, text):
        return (await self.embed_texts([text]))[0]


class _DownIndex(InMemoryVectorIndex):
    async def delete(self, ids):
        raise VectorIndexUnavailable("connection refused")


class _ScriptedEngine:
    def __init__(self, events: list[SSEEvent]):
        self.events = events
        self.calls: list[tuple] = []

    async def run_query(self, text, conversation_id, project_id=None, history=()):
        self.calls.append((text, conversation_id, project_id, list(history)))
        for event in self.events:
            yield event


@pytest.fixture
def kb():
    return KnowledgeBase(InMemoryDocumentStore(), InMemoryVectorIndex(), _Embedder())


@pytest.fixture
def client(kb):
    # Each TestClient runs its own event loop.
    AppStatus.should_exit_event = None
    app.dependency_overrides[get_knowledge_base] = lambda: kb
    yield TestClient(app)
    app.dependency_overrides.clear()


def _parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.replace("\r\n", "\n").split("\n\n"):
        name, data = None, None
        for line in block.splitlines():
            if line.startswith("event:"):
                name = line.split(":", 1)[1].strip()
            elif line.startswith("data:"):
                data = json.loads(line.split(":", 1)[1].strip())
        if name:
            events.append((name, data))
    return events


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "retrieval-engine"


def test_query_streams_engine_events(client):
    engine = _ScriptedEngine([streaming.planning(), streaming.complete("Answer", [], ["perplexity"])])
    app.dependency_overrides[get_engine] = lambda: engine

    response = client.post(
        "/api/query",
        json={
            "query": "what is new?",
            "conversation_id": "c1",
            "history": [{"role": "user", "content": "earlier"}],
        },
    )

    assert response.status_code == 200
    events = _parse_sse(response.text)
    assert [name for name, _ in events] == ["planning", "complete"]
    assert events[-1][1]["content"] == "Answer"
    assert engine.calls == [("what is new?", "c1", None, [{"role": "user", "content": "earlier"}])]


def test_query_stream_failure_ends_with_error_event(client):
    class _Exploding:
        async def run_query(self, *args, **kwargs):
            yield SSEEvent(event=EventType.PLANNING, data={"message": "Analyzing query"})
            raise RuntimeError("boom")

    app.dependency_overrides[get_engine] = lambda: _Exploding()

    response = client.post("/api/query", json={"query": "q", "conversation_id": "c1"})

    events = _parse_sse(response.text)
    assert events[-1][0] == "error"
    assert events[-1][1]["code"] == "internal"


def test_query_rejects_empty_text(client):
    app.dependency_overrides[get_engine] = lambda: _ScriptedEngine([])
    response = client.post("/api/query", json={"query": "", "conversation_id": "c1"})
    assert response.status_code == 422


def test_ingest_requires_exactly_one_body(client):
    both = client.post("/api/knowledge/ingest", json={"name": "doc", "content": "x", "chunks": ["x"]})
    neither = client.post("/api/knowledge/ingest", json={"name": "doc"})
    assert both.status_code == 422
    assert neither.status_code == 422


def test_ingest_search_and_delete_conversation(client, kb):
    ingest = client.post(
        "/api/knowledge/ingest",
        json={"name": "notes.txt", "content": "The launch is planned for May.", "conversation_id": "c1"},
    )
    assert ingest.status_code == 200
    body = ingest.json()
    assert body["created"] is True
    assert body["chunks_total"] == 1

    again = client.post(
        "/api/knowledge/ingest",
        json={"name": "notes.txt", "content": "The launch is planned for May.", "conversation_id": "c1"},
    )
    assert again.json()["created"] is False
    assert again.json()["source_id"] == body["source_id"]

    search = client.post(
        "/api/knowledge/search",
        json={"query": "when is the launch", "conversation_id": "c1"},
    )
    assert search.status_code == 200
    assert [c["source_id"] for c in search.json()["chunks"]] == [body["source_id"]]

    other = client.post("/api/knowledge/search", json={"query": "when is the launch", "conversation_id": "c2"})
    assert other.json()["chunks"] == []

    deleted = client.delete("/api/conversations/c1/knowledge")
    assert deleted.status_code == 200
    assert deleted.json() == {"conversation_id": "c1", "vectors_deleted": 1}
    assert len(kb.index) == 0


def test_ingest_chunk_batches(client):
    first = client.post("/api/knowledge/ingest", json={"name": "book", "chunks": ["one", "two"]})
    second = client.post(
        "/api/knowledge/ingest",
        json={
            "name": "book",
            "chunks": ["three"],
            "source_id": first.json()["source_id"],
            "start_index": first.json()["chunks_total"],
        },
    )
    unknown = client.post(
        "/api/knowledge/ingest",
        json={"name": "book", "chunks": ["x"], "source_id": "missing", "start_index": 0},
    )
    no_start = client.post(
        "/api/knowledge/ingest",
        json={"name": "book", "chunks": ["x"], "source_id": first.json()["source_id"]},
    )

    assert second.json()["chunks_total"] == 3
    assert unknown.status_code == 404
    assert no_start.status_code == 422


def test_store_message(client):
    response = client.post(
        "/api/memory/messages",
        json={"message_id": "m1", "conversation_id": "c1", "content": "I prefer metric units", "project_id": "p1"},
    )
    assert response.status_code == 200
    assert response.json() == {"message_id": "m1", "stored": True}


def test_delete_conversation_with_index_down_is_503(client, kb):
    client.post("/api/knowledge/ingest", json={"name": "a.txt", "content": "Some notes.", "conversation_id": "c1"})
    kb.index = _DownIndex()

    response = client.delete("/api/conversations/c1/knowledge")

    assert response.status_code == 503
