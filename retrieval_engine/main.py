from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from retrieval_engine.api.deps import get_knowledge_base
from retrieval_engine.api.routes import knowledge, query
from retrieval_engine.config import settings
from retrieval_engine.services.document_store import PostgresDocumentStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    store = get_knowledge_base().store
    if isinstance(store, PostgresDocumentStore) and settings.database_url:
        await store.ensure_schema()
    yield
    # Shutdown
    if isinstance(store, PostgresDocumentStore):
        await store.close()


app = FastAPI(
    title="Retrieval Engine",
    description="Multi-source retrieval and cited answer synthesis",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(query.router)
app.include_router(knowledge.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "retrieval-engine"}
