from __future__ import annotations

from functools import lru_cache

from retrieval_engine.services.document_store import get_document_store
from retrieval_engine.services.embeddings import get_embedding_service
from retrieval_engine.services.engine import RetrievalEngine
from retrieval_engine.services.knowledge_base import KnowledgeBase
from retrieval_engine.services.planner import QueryPlanner
from retrieval_engine.services.rate_limiter import get_rate_limiter
from retrieval_engine.services.vector_index import get_vector_index


@lru_cache(maxsize=1)
def get_knowledge_base() -> KnowledgeBase:
    return KnowledgeBase(get_document_store(), get_vector_index(), get_embedding_service())


@lru_cache(maxsize=1)
def get_engine() -> RetrievalEngine:
    return RetrievalEngine(
        planner=QueryPlanner(rate_limiter=get_rate_limiter()),
        knowledge_base=get_knowledge_base(),
    )
