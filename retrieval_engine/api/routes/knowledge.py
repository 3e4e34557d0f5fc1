from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from retrieval_engine.api.deps import get_knowledge_base
from retrieval_engine.errors import (
    EmbeddingDimensionError,
    IngestionError,
    UnknownSourceError,
    VectorIndexUnavailable,
)
from retrieval_engine.models.schemas import (
    DeleteResponse,
    IngestRequest,
    IngestResponse,
    KnowledgeSearchRequest,
    KnowledgeSearchResponse,
    StoreMessageRequest,
    StoreMessageResponse,
)
from retrieval_engine.services.knowledge_base import KnowledgeBase

router = APIRouter(prefix="/api", tags=["knowledge"])


@router.post("/knowledge/ingest", response_model=IngestResponse)
async def ingest(request: IngestRequest, kb: KnowledgeBase = Depends(get_knowledge_base)):
    """Ingest a whole document, or one batch of pre-chunked content."""
    if (request.content is None) == (request.chunks is None):
        raise HTTPException(status_code=422, detail="Provide exactly one of content or chunks")
    if request.source_id is not None and request.start_index is None:
        raise HTTPException(status_code=422, detail="start_index is required with source_id")
    scope = {
        "conversation_id": request.conversation_id,
        "message_id": request.message_id,
        "project_id": request.project_id,
    }
    try:
        if request.content is not None:
            if not request.content.strip():
                raise HTTPException(status_code=422, detail="Content is empty")
            result = await kb.ingest_document(
                request.content, name=request.name, type=request.type, metadata=request.metadata, **scope
            )
        else:
            result = await kb.ingest_chunks(
                request.chunks or [],
                name=request.name,
                type=request.type,
                metadata=request.metadata,
                source_id=request.source_id,
                start_index=request.start_index,
                **scope,
            )
    except UnknownSourceError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except EmbeddingDimensionError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except IngestionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return IngestResponse(
        source_id=result.source_id,
        created=result.created,
        chunks_written=result.chunks_written,
        chunks_total=result.chunks_total,
    )


@router.post("/knowledge/search", response_model=KnowledgeSearchResponse)
async def search(request: KnowledgeSearchRequest, kb: KnowledgeBase = Depends(get_knowledge_base)):
    context = await kb.get_context(
        request.conversation_id, request.query, project_id=request.project_id, limit=request.limit
    )
    return KnowledgeSearchResponse(
        chunks=[hit.to_dict() for hit in context.chunks],
        memories=[hit.to_dict() for hit in context.memories],
    )


@router.post("/memory/messages", response_model=StoreMessageResponse)
async def store_message(request: StoreMessageRequest, kb: KnowledgeBase = Depends(get_knowledge_base)):
    try:
        entry = await kb.store_message(
            request.message_id,
            request.conversation_id,
            request.content,
            project_id=request.project_id,
            role=request.role,
            timestamp=request.timestamp,
        )
    except IngestionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return StoreMessageResponse(message_id=entry.message_id)


@router.delete("/conversations/{conversation_id}/knowledge", response_model=DeleteResponse)
async def delete_conversation_knowledge(conversation_id: str, kb: KnowledgeBase = Depends(get_knowledge_base)):
    try:
        deleted = await kb.delete_conversation(conversation_id)
    except VectorIndexUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return DeleteResponse(conversation_id=conversation_id, vectors_deleted=deleted)
