from __future__ import annotations

import json as _json

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from retrieval_engine.api.deps import get_engine
from retrieval_engine.models.schemas import QueryRequest
from retrieval_engine.services import logger as log_service
from retrieval_engine.services import streaming
from retrieval_engine.services.engine import RetrievalEngine

router = APIRouter(prefix="/api/query", tags=["query"])


@router.post("")
async def run_query(request: QueryRequest, engine: RetrievalEngine = Depends(get_engine)):
    """Stream status events for one query, ending with `complete` or `error`."""
    history = [turn.model_dump() for turn in request.history]

    async def event_generator():
        try:
            async for event in engine.run_query(
                request.query,
                request.conversation_id,
                project_id=request.project_id,
                history=history,
            ):
                yield {"event": event.event.value, "data": _json.dumps(event.data)}
        except Exception as e:
            log_service.log_event(
                event_type="stream_error",
                message="Unhandled error in query stream",
                error=str(e),
                conversation_id=request.conversation_id,
            )
            error_event = streaming.error("Query stream failed unexpectedly.")
            yield {"event": error_event.event.value, "data": _json.dumps(error_event.data)}

    return EventSourceResponse(event_generator())
