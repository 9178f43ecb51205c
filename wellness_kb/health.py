"""Knowledge-base health check.

run_health_check probes each dependency of the pipelines and reports one
HealthCheckItem per check:
- pgvector: vector extension installed
- documents / chunks: row counts
- embeddings: a probe embedding, reporting its dimension
- similarity_search: a probe search at a very low threshold (only when chunks exist)
- configuration: stored retrieval config present, or defaults in use

Overall status is "unhealthy" if any check errored, "degraded" if any warned,
otherwise "healthy".
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from wellness_kb.config_store import RetrievalConfigStore
from wellness_kb.document_store import DocumentStore
from wellness_kb.embedding import Embedder
from wellness_kb.exceptions import EmbeddingUnavailable, IndexWriteFailure
from wellness_kb.schemas import CheckStatus, HealthCheckItem, HealthReport
from wellness_kb.vector_index import VectorIndex

logger = logging.getLogger(__name__)

PROBE_THRESHOLD = 0.1
EMBEDDING_PROBE_TEXT = "test query for health check"
SEARCH_PROBE_TEXT = "health check test query"


def overall_status(checks: Dict[str, HealthCheckItem]) -> str:
    statuses = {c.status for c in checks.values()}
    if CheckStatus.ERROR in statuses:
        return "unhealthy"
    if CheckStatus.WARNING in statuses:
        return "degraded"
    return "healthy"


def _check_pgvector(check_extension: Optional[Callable[[], bool]]) -> HealthCheckItem:
    if check_extension is None:
        return HealthCheckItem(status=CheckStatus.WARNING, message="Could not verify vector extension directly")
    try:
        installed = check_extension()
    except SQLAlchemyError as exc:
        return HealthCheckItem(status=CheckStatus.ERROR, message=f"vector extension check failed: {exc}")
    if installed:
        return HealthCheckItem(status=CheckStatus.OK, message="vector extension is installed")
    return HealthCheckItem(status=CheckStatus.ERROR, message="vector extension is not installed")


def run_health_check(
    store: DocumentStore,
    index: VectorIndex,
    embedder: Embedder,
    config_store: RetrievalConfigStore,
    check_extension: Optional[Callable[[], bool]] = None,
) -> HealthReport:
    """Probe every knowledge-base dependency.

    Args:
        store: Document store (document count).
        index: Vector index (chunk count and probe search).
        embedder: Embedding backend (probe embedding).
        config_store: Source of the stored retrieval config.
        check_extension: Callable reporting whether pgvector is installed; None
            when the index is not Postgres-backed.

    Returns:
        HealthReport: Per-check results and the aggregated status.
    """
    checks: Dict[str, HealthCheckItem] = {"pgvector": _check_pgvector(check_extension)}

    try:
        n_docs = store.count_documents()
        checks["documents"] = HealthCheckItem(
            status=CheckStatus.OK, message=f"{n_docs} documents in knowledge base", count=n_docs
        )
    except SQLAlchemyError as exc:
        logger.exception("Health check: document count failed")
        checks["documents"] = HealthCheckItem(status=CheckStatus.ERROR, message=str(exc))

    n_chunks = 0
    try:
        n_chunks = index.count()
        checks["chunks"] = HealthCheckItem(status=CheckStatus.OK, message=f"{n_chunks} chunks indexed", count=n_chunks)
    except IndexWriteFailure as exc:
        logger.exception("Health check: chunk count failed")
        checks["chunks"] = HealthCheckItem(status=CheckStatus.ERROR, message=str(exc))

    try:
        probe = embedder.embed(EMBEDDING_PROBE_TEXT)
        checks["embeddings"] = HealthCheckItem(
            status=CheckStatus.OK, message="OpenAI embedding generation working", dimensions=len(probe)
        )
    except EmbeddingUnavailable as exc:
        checks["embeddings"] = HealthCheckItem(status=CheckStatus.ERROR, message=f"Embedding generation failed: {exc}")

    if n_chunks > 0:
        try:
            hits = index.search(embedder.embed(SEARCH_PROBE_TEXT), PROBE_THRESHOLD, 1)
            checks["similarity_search"] = HealthCheckItem(
                status=CheckStatus.OK, message="Similarity search working", results_found=len(hits)
            )
        except (EmbeddingUnavailable, IndexWriteFailure) as exc:
            checks["similarity_search"] = HealthCheckItem(
                status=CheckStatus.ERROR, message=f"Similarity search failed: {exc}"
            )
    else:
        checks["similarity_search"] = HealthCheckItem(
            status=CheckStatus.WARNING, message="No chunks to search - upload documents first"
        )

    try:
        stored = config_store.has_stored_config()
        checks["configuration"] = HealthCheckItem(
            status=CheckStatus.OK if stored else CheckStatus.WARNING,
            message="KB configuration found" if stored else "Using default configuration",
            config=config_store.get_retrieval_config(),
        )
    except SQLAlchemyError as exc:
        logger.exception("Health check: configuration lookup failed")
        checks["configuration"] = HealthCheckItem(status=CheckStatus.ERROR, message=str(exc))

    status = overall_status(checks)
    if status != "healthy":
        logger.warning("Knowledge base health: %s", status)
    return HealthReport(status=status, timestamp=datetime.now(timezone.utc), checks=checks)
