"""Document ingestion pipeline.

State machine per document:

    extracting -> chunking -> embedding (+ storing, per chunk) -> indexed | empty | failed

- extracting: bytes -> text. Failure is fatal: no document row is created and
  UnsupportedOrCorruptDocument propagates to the uploader.
- chunking: deterministic windows; an empty result records the document with
  zero chunks (state "empty", not searchable).
- embedding: every chunk is embedded and upserted independently. Failures are
  collected as ChunkProcessingFailure outcomes and counted; they never abort
  the document. Chunk indices are assigned before any parallel fan-out.
- terminal: at least one stored chunk stamps last_indexed_at ("indexed");
  none stored leaves the document un-indexed for inspection ("failed"). A
  document deleted while its chunks were being written also ends "failed".

There is no rollback: chunks stored before an abort stay indexed.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence
from uuid import UUID

from wellness_kb.config import settings
from wellness_kb.document_store import DocumentStore
from wellness_kb.embedding import Embedder, EmbeddingOutcome
from wellness_kb.exceptions import (
    ChunkProcessingFailure,
    DocumentNotFound,
    EmbeddingUnavailable,
    IndexWriteFailure,
)
from wellness_kb.ingestion.extract import extract_text
from wellness_kb.obs import Trace, span
from wellness_kb.schemas import ChunkFailure, ChunkMetadata, IngestionState, IngestionSummary
from wellness_kb.utils import chunk_id_for, chunk_spans, page_for_offset, resolve_file_type
from wellness_kb.vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedChunk:
    """A chunk with its index and metadata fixed before embedding starts."""
    index: int
    text: str
    metadata: ChunkMetadata


@dataclass(frozen=True)
class ChunkOutcome:
    index: int
    chunk_id: Optional[UUID] = None
    failure: Optional[ChunkProcessingFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class IngestionPipeline:
    """Extract, chunk, embed and index one uploaded document at a time."""

    def __init__(
        self,
        store: DocumentStore,
        index: VectorIndex,
        embedder: Embedder,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        min_chunk_length: Optional[int] = None,
        max_workers: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self._store = store
        self._index = index
        self._embedder = embedder
        self.chunk_size = chunk_size or settings.CHUNK_SIZE
        self.chunk_overlap = settings.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        self.min_chunk_length = settings.MIN_CHUNK_LENGTH if min_chunk_length is None else min_chunk_length
        self.max_workers = max(1, max_workers or settings.INGEST_MAX_WORKERS)
        self.batch_size = max(1, batch_size or settings.EMBED_BATCH_SIZE)
        if self.chunk_overlap < 0 or self.chunk_size <= self.chunk_overlap:
            raise ValueError("chunk_size must exceed chunk_overlap >= 0")

    def ingest(self, file_name: str, data: bytes, file_type: Optional[str] = None) -> IngestionSummary:
        """Ingest one uploaded document.

        Args:
            file_name: Display name of the upload.
            data: Raw file bytes.
            file_type: Optional declared format or MIME type; otherwise taken from the extension.

        Returns:
            IngestionSummary: Document id, terminal state and chunk counts.

        Raises:
            UnsupportedOrCorruptDocument: If the file cannot be converted to text.
        """
        t0 = time.time()
        trace = Trace("ingest", input={"file_name": file_name, "bytes": len(data)})

        fmt = resolve_file_type(file_name, file_type)
        logger.info("Ingesting %s: state=%s", file_name, IngestionState.EXTRACTING.value)
        with span("ingest.extract", {"file_type": fmt}):
            extracted = extract_text(data, fmt)

        document_id = self._store.insert_document(file_name, fmt)

        logger.debug("Document %s: state=%s", document_id, IngestionState.CHUNKING.value)
        spans = chunk_spans(extracted.text, self.chunk_size, self.chunk_overlap, self.min_chunk_length)
        total = len(spans)
        prepared = [
            PreparedChunk(
                index=i,
                text=text,
                metadata=ChunkMetadata(
                    chunk_index=i,
                    total_chunks=total,
                    chunk_size=len(text),
                    file_type=fmt,
                    file_name=file_name,
                    page=page_for_offset(extracted.page_offsets, start),
                ),
            )
            for i, (start, text) in enumerate(spans)
        ]

        if not prepared:
            logger.warning("Document %s (%s) produced no chunks; it is not searchable", document_id, file_name)
            summary = IngestionSummary(
                document_id=document_id,
                file_name=file_name,
                file_type=fmt,
                state=IngestionState.EMPTY,
                total_chunks=0,
                processed_chunks=0,
                failed_chunks=0,
            )
            trace.end(output=summary.model_dump(mode="json"))
            return summary

        logger.debug("Document %s: state=%s (%d chunks)", document_id, IngestionState.EMBEDDING.value, total)
        with span("ingest.embed_and_store", {"chunks": total}):
            outcomes = self._process(document_id, prepared)

        processed = sum(1 for o in outcomes if o.ok)
        failures = [o.failure for o in outcomes if o.failure is not None]
        last_indexed_at = None
        if processed:
            stamped = datetime.now(timezone.utc)
            try:
                self._store.update_document(document_id, last_indexed_at=stamped)
            except DocumentNotFound:
                logger.warning("Document %s (%s) was deleted during ingestion", document_id, file_name)
                state = IngestionState.FAILED
            else:
                last_indexed_at = stamped
                state = IngestionState.INDEXED
        else:
            logger.error("Document %s (%s): all %d chunks failed; left un-indexed", document_id, file_name, total)
            state = IngestionState.FAILED

        summary = IngestionSummary(
            document_id=document_id,
            file_name=file_name,
            file_type=fmt,
            state=state,
            total_chunks=total,
            processed_chunks=processed,
            failed_chunks=len(failures),
            failures=[ChunkFailure(chunk_index=f.chunk_index, reason=f.reason) for f in failures],
            last_indexed_at=last_indexed_at,
        )
        logger.info(
            "Document ingestion completed: file=%s id=%s type=%s total=%d processed=%d failed=%d (%.0f ms)",
            file_name, document_id, fmt, total, processed, len(failures), (time.time() - t0) * 1000,
        )
        trace.end(output=summary.model_dump(mode="json"))
        return summary

    def delete_document(self, document_id: UUID) -> None:
        """Delete a document, its chunk rows and its index entries.

        Raises:
            DocumentNotFound: If the id is unknown.
        """
        self._store.delete_document(document_id)
        removed = self._index.delete_document(document_id)
        logger.info("Deleted document %s (%d index entries removed)", document_id, removed)

    def _process(self, document_id: UUID, prepared: Sequence[PreparedChunk]) -> List[ChunkOutcome]:
        batches = [prepared[i:i + self.batch_size] for i in range(0, len(prepared), self.batch_size)]
        if self.max_workers == 1 or len(batches) == 1:
            results = [self._process_batch(document_id, b) for b in batches]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="kb-ingest") as pool:
                results = list(pool.map(lambda b: self._process_batch(document_id, b), batches))
        outcomes = [o for batch in results for o in batch]
        outcomes.sort(key=lambda o: o.index)
        return outcomes

    def _process_batch(self, document_id: UUID, batch: Sequence[PreparedChunk]) -> List[ChunkOutcome]:
        try:
            vectors: List[EmbeddingOutcome] = self._embedder.embed_many([c.text for c in batch])
        except EmbeddingUnavailable as exc:
            vectors = [exc] * len(batch)
        return [self._store_chunk(document_id, chunk, vector) for chunk, vector in zip(batch, vectors)]

    def _store_chunk(self, document_id: UUID, chunk: PreparedChunk, vector: EmbeddingOutcome) -> ChunkOutcome:
        if isinstance(vector, EmbeddingUnavailable):
            return self._failed(document_id, chunk.index, f"embedding failed: {vector}")

        chunk_id = chunk_id_for(document_id, chunk.index)
        try:
            self._index.upsert(chunk_id, document_id, vector, chunk.text, chunk.metadata)
        except IndexWriteFailure as exc:
            return self._failed(document_id, chunk.index, f"storage failed: {exc}")
        return ChunkOutcome(index=chunk.index, chunk_id=chunk_id)

    @staticmethod
    def _failed(document_id: UUID, index: int, reason: str) -> ChunkOutcome:
        failure = ChunkProcessingFailure(document_id, index, reason)
        logger.error("Failed to process chunk %d for doc %s: %s", index, document_id, reason)
        return ChunkOutcome(index=index, failure=failure)
