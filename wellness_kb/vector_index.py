"""Vector index capability used by ingestion and retrieval.

Two implementations share the VectorIndex contract:
- PgVectorIndex: chunk rows in Postgres, cosine distance via pgvector's <=> operator.
- InMemoryVectorIndex: exact brute-force cosine scan over numpy arrays, for small
  corpora, local development and tests.

Contract (both implementations):
- search returns hits ordered by cosine similarity descending, ties broken by
  insertion order, and never returns a hit with similarity below the threshold.
- upsert is idempotent on chunk id.
- delete_document removes every entry of a document atomically with respect to
  concurrent searches, and upserts for a deleted document are rejected.
"""
import itertools
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence
from uuid import UUID

import numpy as np
from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from wellness_kb.db import SessionFactory, session_scope
from wellness_kb.exceptions import IndexWriteFailure
from wellness_kb.models import DocumentChunk, KnowledgeBaseDocument
from wellness_kb.schemas import ChunkMetadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchHit:
    """A chunk matched by a similarity search."""
    chunk_id: UUID
    document_id: UUID
    similarity: float
    text: str
    metadata: ChunkMetadata


class VectorIndex(Protocol):
    def upsert(
        self,
        chunk_id: UUID,
        document_id: UUID,
        vector: Sequence[float],
        text: str,
        metadata: ChunkMetadata,
    ) -> None:
        """Insert or replace the entry for chunk_id."""

    def search(self, query_vector: Sequence[float], threshold: float, limit: int) -> List[SearchHit]:
        """Return up to limit hits with similarity >= threshold, best first."""

    def delete_document(self, document_id: UUID) -> int:
        """Remove all entries of a document; returns the number removed."""

    def count(self) -> int:
        """Total number of indexed chunks."""


class PgVectorIndex:
    """Vector index backed by the document_chunks table and pgvector.

    Writes take a shared row lock on the owning document and deletes take an
    exclusive one, so a delete in progress cannot interleave with chunk writes
    for the same document.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory

    def upsert(
        self,
        chunk_id: UUID,
        document_id: UUID,
        vector: Sequence[float],
        text: str,
        metadata: ChunkMetadata,
    ) -> None:
        try:
            with session_scope(self._session_factory) as db:
                owner = db.execute(
                    select(KnowledgeBaseDocument.id)
                    .where(KnowledgeBaseDocument.id == document_id)
                    .with_for_update(read=True)
                ).scalar_one_or_none()
                if owner is None:
                    raise IndexWriteFailure(f"document {document_id} does not exist")
                existing = db.execute(
                    select(DocumentChunk.id).where(DocumentChunk.id == chunk_id)
                ).scalar_one_or_none()
                if existing is None:
                    db.add(
                        DocumentChunk(
                            id=chunk_id,
                            document_id=document_id,
                            chunk_text=text,
                            metadata_=metadata.to_json(),
                            embedding=list(vector),
                        )
                    )
                else:
                    # keeps created_at, so tie order survives a re-upsert
                    db.execute(
                        update(DocumentChunk)
                        .where(DocumentChunk.id == chunk_id)
                        .values(
                            {
                                DocumentChunk.chunk_text: text,
                                DocumentChunk.metadata_: metadata.to_json(),
                                DocumentChunk.embedding: list(vector),
                            }
                        )
                    )
        except SQLAlchemyError as exc:
            raise IndexWriteFailure(f"failed to store chunk {chunk_id}: {exc}") from exc

    @staticmethod
    def search_statement(query_vector: Sequence[float], threshold: float, limit: int) -> Select:
        """SELECT for the chunks within threshold, nearest first, ties by insertion time."""
        # similarity = 1 - cosine distance
        distance = DocumentChunk.embedding.cosine_distance(list(query_vector))
        similarity = (1 - distance).label("similarity")
        stmt = (
            select(
                DocumentChunk.id,
                DocumentChunk.document_id,
                DocumentChunk.chunk_text,
                DocumentChunk.metadata_.label("chunk_metadata"),
                similarity,
            )
            .where((1 - distance) >= threshold)
            .order_by(distance, DocumentChunk.created_at)
            .limit(limit)
        )
        return stmt

    def search(self, query_vector: Sequence[float], threshold: float, limit: int) -> List[SearchHit]:
        if limit <= 0:
            return []
        stmt = self.search_statement(query_vector, threshold, limit)
        try:
            with session_scope(self._session_factory) as db:
                rows = db.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise IndexWriteFailure(f"similarity search failed: {exc}") from exc
        return [
            SearchHit(
                chunk_id=r.id,
                document_id=r.document_id,
                similarity=float(r.similarity),
                text=r.chunk_text,
                metadata=ChunkMetadata.model_validate(r.chunk_metadata or {}),
            )
            for r in rows
        ]

    def delete_document(self, document_id: UUID) -> int:
        try:
            with session_scope(self._session_factory) as db:
                db.execute(
                    select(KnowledgeBaseDocument.id)
                    .where(KnowledgeBaseDocument.id == document_id)
                    .with_for_update()
                )
                result = db.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise IndexWriteFailure(f"failed to delete chunks of document {document_id}: {exc}") from exc

    def count(self) -> int:
        try:
            with session_scope(self._session_factory) as db:
                return int(db.execute(select(func.count(DocumentChunk.id))).scalar_one())
        except SQLAlchemyError as exc:
            raise IndexWriteFailure(f"failed to count chunks: {exc}") from exc


@dataclass
class _Entry:
    seq: int
    document_id: UUID
    vector: np.ndarray
    text: str
    metadata: ChunkMetadata


class InMemoryVectorIndex:
    """Exact cosine index held in process memory, for small corpora and tests.

    The vector dimension is fixed by the first upsert; later vectors of a
    different length are rejected. Deleted document ids are remembered so late
    upserts from an in-flight ingestion are refused; only the most recent
    max_tombstones deletions are kept.
    """

    def __init__(self, max_tombstones: int = 10_000) -> None:
        self._lock = threading.RLock()
        self._entries: Dict[UUID, _Entry] = {}
        self._deleted_documents: "OrderedDict[UUID, None]" = OrderedDict()
        self._max_tombstones = max(1, max_tombstones)
        self._seq = itertools.count()
        self._dim: Optional[int] = None

    def upsert(
        self,
        chunk_id: UUID,
        document_id: UUID,
        vector: Sequence[float],
        text: str,
        metadata: ChunkMetadata,
    ) -> None:
        arr = np.asarray(vector, dtype=np.float64)
        if arr.ndim != 1 or arr.size == 0:
            raise IndexWriteFailure(f"chunk {chunk_id}: vector must be a non-empty 1-d sequence")
        with self._lock:
            if document_id in self._deleted_documents:
                raise IndexWriteFailure(f"document {document_id} has been deleted")
            if self._dim is None:
                self._dim = arr.size
            elif arr.size != self._dim:
                raise IndexWriteFailure(
                    f"chunk {chunk_id}: vector dimension {arr.size} does not match index dimension {self._dim}"
                )
            existing = self._entries.get(chunk_id)
            seq = existing.seq if existing is not None else next(self._seq)
            self._entries[chunk_id] = _Entry(seq, document_id, arr, text, metadata)

    def search(self, query_vector: Sequence[float], threshold: float, limit: int) -> List[SearchHit]:
        if limit <= 0:
            return []
        with self._lock:
            items = list(self._entries.items())
        if not items:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        matrix = np.vstack([entry.vector for _, entry in items])
        if query.size != matrix.shape[1]:
            raise IndexWriteFailure(
                f"query dimension {query.size} does not match index dimension {matrix.shape[1]}"
            )
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        sims = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        scored = [
            (float(sim), entry.seq, chunk_id, entry)
            for (chunk_id, entry), sim in zip(items, sims)
            if float(sim) >= threshold
        ]
        scored.sort(key=lambda s: (-s[0], s[1]))
        return [
            SearchHit(
                chunk_id=chunk_id,
                document_id=entry.document_id,
                similarity=sim,
                text=entry.text,
                metadata=entry.metadata,
            )
            for sim, _, chunk_id, entry in scored[:limit]
        ]

    def delete_document(self, document_id: UUID) -> int:
        with self._lock:
            doomed = [cid for cid, entry in self._entries.items() if entry.document_id == document_id]
            for cid in doomed:
                del self._entries[cid]
            self._deleted_documents[document_id] = None
            self._deleted_documents.move_to_end(document_id)
            while len(self._deleted_documents) > self._max_tombstones:
                self._deleted_documents.popitem(last=False)
        if doomed:
            logger.debug("Removed %d index entries for document %s", len(doomed), document_id)
        return len(doomed)

    def count(self) -> int:
        with self._lock:
            return len(self._entries)
