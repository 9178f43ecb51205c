"""Retrieval pipeline: turn a user message into knowledge-base context.

Steps for one query:
1) Embed the normalized query text.
2) Search the vector index with the configured threshold and max_chunks.
3) Re-sort candidates by similarity (descending, stable) and keep the top
   min(use_top_chunks, max_chunks).
4) Resolve document names in one batched lookup.
5) Assemble the context: a source header per chunk, then its text, chunks
   separated by a horizontal rule.

Similarity is cosine similarity (1 - cosine distance); a candidate is kept
when similarity >= threshold. Retrievals that produce context are handed to the
optional usage analytics recorder.
"""
import logging
import time
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from wellness_kb.analytics import QueryAnalytics
from wellness_kb.document_store import DocumentStore
from wellness_kb.embedding import Embedder
from wellness_kb.exceptions import EmbeddingUnavailable, IndexWriteFailure, RetrievalUnavailable
from wellness_kb.obs import Trace, span
from wellness_kb.schemas import (
    ChunkMetadata,
    KbQueryUsage,
    QueryProbeHit,
    QueryProbeReport,
    RetrievalConfig,
    RetrievalResult,
    RetrievalSource,
)
from wellness_kb.vector_index import SearchHit, VectorIndex

logger = logging.getLogger(__name__)

UNKNOWN_DOCUMENT = "Unknown Document"
CHUNK_SEPARATOR = "\n\n---\n\n"
PREVIEW_CHARS = 200


def format_source_header(file_name: str, metadata: ChunkMetadata) -> str:
    """Build the HTML-comment source header placed above each context chunk.

    Example:
        <!-- Source: sleep.pdf (Chunk 2/7) Page: 3 -->
    """
    header = f"<!-- Source: {file_name}"
    if metadata.chunk_index is not None:
        total = metadata.total_chunks if metadata.total_chunks is not None else "?"
        header += f" (Chunk {metadata.chunk_index + 1}/{total})"
    if metadata.page is not None:
        header += f" Page: {metadata.page}"
    return header + " -->"


def build_context(hits: Sequence[SearchHit], names: Dict[UUID, str]) -> str:
    blocks = [
        f"{format_source_header(names.get(h.document_id, UNKNOWN_DOCUMENT), h.metadata)}\n{h.text}"
        for h in hits
    ]
    return CHUNK_SEPARATOR.join(blocks)


def _preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    flat = text.replace("\n", " ")
    return flat if len(flat) <= limit else flat[:limit] + "..."


class RetrievalPipeline:
    """Query-time half of the knowledge base."""

    def __init__(
        self,
        index: VectorIndex,
        store: DocumentStore,
        embedder: Embedder,
        analytics: Optional[QueryAnalytics] = None,
    ):
        self._index = index
        self._store = store
        self._embedder = embedder
        self._analytics = analytics

    def retrieve(
        self, query_text: str, config: RetrievalConfig, conversation_id: Optional[str] = None
    ) -> RetrievalResult:
        """Retrieve context for a user message.

        Args:
            query_text: The user's message.
            config: Retrieval knobs, read once by the caller for this query.
            conversation_id: Recorded with the usage analytics, if any.

        Returns:
            RetrievalResult: Context text and ordered sources; empty when nothing
            clears the similarity threshold.

        Raises:
            RetrievalUnavailable: If embedding or index search fails.
        """
        t0 = time.time()
        trace = Trace("retrieve", input={"query": query_text[:200]})

        with span("retrieve.embed"):
            vector = self._embed_query(query_text)
        embedding_ms = int((time.time() - t0) * 1000)

        with span("retrieve.search", {"threshold": config.similarity_threshold, "max_chunks": config.max_chunks}):
            candidates = self._search(vector, config)
        search_ms = int((time.time() - t0) * 1000) - embedding_ms

        if config.debug_mode:
            logger.info(
                "Knowledge base retrieval debug: query=%r embedding_ms=%d search_ms=%d chunks_found=%d threshold=%s",
                query_text, embedding_ms, search_ms, len(candidates), config.similarity_threshold,
            )

        if not candidates:
            trace.end(output={"chunks_found": 0})
            return RetrievalResult()

        # sorted() is stable: equal similarities keep the index's order
        ranked = sorted(candidates, key=lambda h: h.similarity, reverse=True)
        top = ranked[: config.effective_top_chunks]
        names = self._resolve_names(top)

        if config.debug_mode:
            self._log_selection(candidates, top, names)

        result = RetrievalResult(
            context_text=build_context(top, names),
            sources=[
                RetrievalSource(
                    file_name=names.get(h.document_id, UNKNOWN_DOCUMENT),
                    similarity=h.similarity,
                    metadata=h.metadata,
                )
                for h in top
            ],
        )
        self._track(
            KbQueryUsage(
                query_text=query_text,
                conversation_id=conversation_id,
                chunks_found=len(candidates),
                chunks_used=len(top),
                avg_similarity=sum(h.similarity for h in top) / len(top),
                sources=[s.file_name for s in result.sources],
                embedding_time_ms=embedding_ms,
                retrieval_time_ms=search_ms,
                total_time_ms=int((time.time() - t0) * 1000),
                threshold_used=config.similarity_threshold,
            )
        )
        trace.event("retrieval_result", {"chunks_found": len(candidates), "chunks_used": len(top)})
        trace.end(output={"sources": [s.file_name for s in result.sources]})
        return result

    def probe_query(self, query_text: str, config: RetrievalConfig) -> QueryProbeReport:
        """Run a diagnostic search and report every candidate with timings.

        Raises:
            RetrievalUnavailable: If embedding or index search fails.
        """
        t0 = time.time()
        vector = self._embed_query(query_text)
        t1 = time.time()
        candidates = self._search(vector, config)
        t2 = time.time()

        ranked = sorted(candidates, key=lambda h: h.similarity, reverse=True)
        names = self._resolve_names(ranked)
        return QueryProbeReport(
            query=query_text,
            embedding_time_ms=int((t1 - t0) * 1000),
            search_time_ms=int((t2 - t1) * 1000),
            total_time_ms=int((t2 - t0) * 1000),
            chunks_found=len(ranked),
            similarity_threshold=config.similarity_threshold,
            results=[
                QueryProbeHit(
                    rank=i,
                    similarity=h.similarity,
                    document=names.get(h.document_id, UNKNOWN_DOCUMENT),
                    metadata=h.metadata,
                    text_preview=_preview(h.text),
                )
                for i, h in enumerate(ranked, start=1)
            ],
        )

    def _track(self, usage: KbQueryUsage) -> None:
        if self._analytics is None:
            return
        try:
            self._analytics.record_query(usage)
        except Exception:
            logger.exception("KB analytics tracking error; continuing without it")

    def _embed_query(self, query_text: str) -> List[float]:
        try:
            return self._embedder.embed(query_text)
        except (EmbeddingUnavailable, ValueError) as exc:
            raise RetrievalUnavailable(f"query embedding failed: {exc}") from exc

    def _search(self, vector: Sequence[float], config: RetrievalConfig) -> List[SearchHit]:
        try:
            return self._index.search(vector, config.similarity_threshold, config.max_chunks)
        except IndexWriteFailure as exc:
            raise RetrievalUnavailable(f"similarity search failed: {exc}") from exc

    def _resolve_names(self, hits: Sequence[SearchHit]) -> Dict[UUID, str]:
        """Look up display names once; fall back to the name stored in chunk metadata."""
        ids = list(dict.fromkeys(h.document_id for h in hits))
        try:
            names = self._store.get_document_names(ids)
        except SQLAlchemyError:
            logger.exception("Document name lookup failed; using names from chunk metadata")
            names = {}
        resolved = dict(names)
        for h in hits:
            if h.document_id not in resolved and h.metadata.file_name:
                resolved[h.document_id] = h.metadata.file_name
        return resolved

    @staticmethod
    def _log_selection(
        candidates: Sequence[SearchHit],
        top: Sequence[SearchHit],
        names: Dict[UUID, str],
    ) -> None:
        sims = [h.similarity for h in candidates]
        logger.info(
            "Knowledge base chunks: found=%d using_top=%d similarity_range=%.4f-%.4f",
            len(candidates), len(top), max(sims), min(sims),
        )
        for i, h in enumerate(top, start=1):
            meta = h.metadata
            position = f"{meta.chunk_index + 1}/{meta.total_chunks or '?'}" if meta.chunk_index is not None else "N/A"
            logger.info(
                "  %d. %s similarity=%.4f chunk=%s size=%d preview=%r",
                i, names.get(h.document_id, UNKNOWN_DOCUMENT), h.similarity, position, len(h.text),
                _preview(h.text, 150),
            )


def retrieve_context_or_empty(
    pipeline: RetrievalPipeline,
    query_text: str,
    config: RetrievalConfig,
    conversation_id: Optional[str] = None,
) -> RetrievalResult:
    """Conversation-facing retrieval that never fails.

    Any retrieval failure is logged and replaced by an empty result so the
    reply can proceed without knowledge-base context.
    """
    try:
        return pipeline.retrieve(query_text, config, conversation_id=conversation_id)
    except RetrievalUnavailable:
        logger.exception("Knowledge base retrieval failed; continuing without context")
        return RetrievalResult()

