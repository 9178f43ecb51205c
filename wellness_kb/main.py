"""FastAPI application entrypoint and routes.

Exposes the knowledge-base admin API (document upload, listing, content,
deletion, retrieval config, test query, health check, usage analytics) and the
conversation-facing endpoints: /kb/retrieve for context and /kb/chat for a
context-grounded reply. The database schema is initialized
at startup. Authentication is handled upstream and is not part of this service.

Collaborators are provided through FastAPI dependencies so they can be swapped
(e.g. for in-memory implementations) via app.dependency_overrides.
"""
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from openai import OpenAIError

from wellness_kb.analytics import SqlQueryAnalytics
from wellness_kb.cache import RedisConfigCache
from wellness_kb.config import settings
from wellness_kb.config_store import RetrievalConfigStore
from wellness_kb.db import init_db, vector_extension_installed
from wellness_kb.document_store import DocumentStore, SqlDocumentStore
from wellness_kb.embedding import Embedder, get_embedder
from wellness_kb.exceptions import (
    DocumentNotFound,
    InvalidRetrievalConfig,
    RetrievalUnavailable,
    UnsupportedOrCorruptDocument,
)
from wellness_kb.generation import generate_reply
from wellness_kb.health import run_health_check
from wellness_kb.ingestion.pipeline import IngestionPipeline
from wellness_kb.obs import span
from wellness_kb.retrieval import RetrievalPipeline, retrieve_context_or_empty
from wellness_kb.schemas import (
    AnalyticsSettings,
    ChatReply,
    ChatRequest,
    DocumentContent,
    DocumentSummary,
    HealthReport,
    IngestionSummary,
    KbAnalyticsReport,
    QueryProbeReport,
    QueryProbeRequest,
    RetrievalConfig,
    RetrievalResult,
    RetrieveRequest,
)
from wellness_kb.vector_index import PgVectorIndex, VectorIndex

logger = logging.getLogger(__name__)

app = FastAPI(title="Wellness Knowledge Base API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database schema and indexes at application startup."""
    if settings.INIT_DB_ON_STARTUP:
        init_db()


# Dependencies

def get_document_store() -> DocumentStore:
    return SqlDocumentStore()


def get_vector_index() -> VectorIndex:
    return PgVectorIndex()


def get_kb_embedder() -> Embedder:
    return get_embedder()


def get_config_store() -> RetrievalConfigStore:
    cache = RedisConfigCache() if settings.CONFIG_CACHE_ENABLED else None
    return RetrievalConfigStore(cache=cache)


def get_query_analytics() -> SqlQueryAnalytics:
    return SqlQueryAnalytics()


def get_ingestion_pipeline(
    store: DocumentStore = Depends(get_document_store),
    index: VectorIndex = Depends(get_vector_index),
    embedder: Embedder = Depends(get_kb_embedder),
) -> IngestionPipeline:
    return IngestionPipeline(store, index, embedder)


def get_retrieval_pipeline(
    store: DocumentStore = Depends(get_document_store),
    index: VectorIndex = Depends(get_vector_index),
    embedder: Embedder = Depends(get_kb_embedder),
    analytics: SqlQueryAnalytics = Depends(get_query_analytics),
) -> RetrievalPipeline:
    return RetrievalPipeline(index, store, embedder, analytics)


# Routes

@app.get("/health")
def health():
    """Liveness probe endpoint.

    Returns:
        dict: {"status": "ok"} when the service is running.
    """
    return {"status": "ok"}


@app.get("/admin/rag/documents", response_model=List[DocumentSummary])
def list_documents(store: DocumentStore = Depends(get_document_store)) -> List[DocumentSummary]:
    return store.list_documents()


@app.get("/admin/rag/documents/{document_id}/content", response_model=DocumentContent)
def get_document_content(document_id: UUID, store: DocumentStore = Depends(get_document_store)) -> DocumentContent:
    """Return a document's text rebuilt from its chunks."""
    try:
        return store.get_document_content(document_id)
    except DocumentNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/admin/rag/documents", response_model=IngestionSummary, status_code=201)
def upload_document(
    file: UploadFile = File(...),
    file_type: Optional[str] = Form(default=None),
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
) -> IngestionSummary:
    """Upload and index a PDF, TXT or MD document.

    Per-chunk failures do not fail the request; they are reported in the
    returned summary. Unsupported or unreadable files are rejected with 400.
    """
    data = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail=f"File exceeds {settings.MAX_UPLOAD_MB} MB limit")
    if not data:
        raise HTTPException(status_code=400, detail="No file uploaded")

    file_name = file.filename or "upload"
    with span("upload_document", {"file_name": file_name, "bytes": len(data)}):
        try:
            return pipeline.ingest(file_name, data, file_type)
        except UnsupportedOrCorruptDocument as exc:
            logger.warning("Rejected upload %s: %s", file_name, exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/admin/rag/documents/{document_id}", status_code=204)
def delete_document(document_id: UUID, pipeline: IngestionPipeline = Depends(get_ingestion_pipeline)) -> None:
    try:
        pipeline.delete_document(document_id)
    except DocumentNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/admin/kb/config", response_model=RetrievalConfig)
def get_kb_config(config_store: RetrievalConfigStore = Depends(get_config_store)) -> RetrievalConfig:
    return config_store.get_retrieval_config()


@app.put("/admin/kb/config", response_model=RetrievalConfig)
def update_kb_config(
    config: RetrievalConfig,
    config_store: RetrievalConfigStore = Depends(get_config_store),
) -> RetrievalConfig:
    try:
        return config_store.set_retrieval_config(config)
    except InvalidRetrievalConfig as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.post("/admin/kb/test-query", response_model=QueryProbeReport)
def run_test_query(
    req: QueryProbeRequest,
    pipeline: RetrievalPipeline = Depends(get_retrieval_pipeline),
    config_store: RetrievalConfigStore = Depends(get_config_store),
) -> QueryProbeReport:
    """Run a query against the knowledge base and report every candidate with timings."""
    try:
        return pipeline.probe_query(req.query, config_store.get_retrieval_config())
    except RetrievalUnavailable as exc:
        logger.exception("Test query failed")
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.get("/admin/kb/health-check", response_model=HealthReport)
def kb_health_check(
    store: DocumentStore = Depends(get_document_store),
    index: VectorIndex = Depends(get_vector_index),
    embedder: Embedder = Depends(get_kb_embedder),
    config_store: RetrievalConfigStore = Depends(get_config_store),
) -> HealthReport:
    check_extension = vector_extension_installed if isinstance(index, PgVectorIndex) else None
    return run_health_check(store, index, embedder, config_store, check_extension)


@app.post("/kb/retrieve", response_model=RetrievalResult)
def kb_retrieve(
    req: RetrieveRequest,
    pipeline: RetrievalPipeline = Depends(get_retrieval_pipeline),
    config_store: RetrievalConfigStore = Depends(get_config_store),
) -> RetrievalResult:
    """Knowledge-base context for a user message.

    Never fails because of the knowledge base: on any retrieval failure the
    result is empty and the conversation proceeds without context.
    """
    config = config_store.get_retrieval_config()
    return retrieve_context_or_empty(pipeline, req.query, config, req.conversation_id)


@app.post("/kb/chat", response_model=ChatReply)
def kb_chat(
    req: ChatRequest,
    pipeline: RetrievalPipeline = Depends(get_retrieval_pipeline),
    config_store: RetrievalConfigStore = Depends(get_config_store),
) -> ChatReply:
    """Reply to the latest user message with knowledge-base context in the system prompt.

    A knowledge-base outage only drops the context; a failed chat completion is a 502.
    """
    last_user = next((m.content for m in reversed(req.messages) if m.role == "user"), None)
    if last_user is None:
        raise HTTPException(status_code=422, detail="messages must contain a user turn")

    config = config_store.get_retrieval_config()
    retrieval = retrieve_context_or_empty(pipeline, last_user, config, req.conversation_id)
    try:
        reply = generate_reply(
            req.system_prompt,
            [m.model_dump() for m in req.messages],
            retrieval,
            max_tokens=req.max_tokens,
        )
    except OpenAIError as exc:
        logger.exception("Reply generation failed")
        raise HTTPException(status_code=502, detail="Reply generation failed") from exc
    return ChatReply(reply=reply, sources=retrieval.sources)


@app.get("/admin/kb/analytics", response_model=KbAnalyticsReport)
def kb_analytics(
    days: int = Query(default=7, ge=1, le=365),
    analytics: SqlQueryAnalytics = Depends(get_query_analytics),
) -> KbAnalyticsReport:
    """Knowledge-base usage aggregates for the last `days` days."""
    return KbAnalyticsReport(period_days=days, stats=analytics.usage_stats(days))


@app.get("/admin/kb/analytics/settings", response_model=AnalyticsSettings)
def get_analytics_settings(analytics: SqlQueryAnalytics = Depends(get_query_analytics)) -> AnalyticsSettings:
    return AnalyticsSettings(enabled=analytics.is_enabled())


@app.put("/admin/kb/analytics/settings", response_model=AnalyticsSettings)
def update_analytics_settings(
    body: AnalyticsSettings,
    analytics: SqlQueryAnalytics = Depends(get_query_analytics),
) -> AnalyticsSettings:
    return AnalyticsSettings(enabled=analytics.set_enabled(body.enabled))
