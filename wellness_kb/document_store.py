"""Document store: the knowledge_base_documents table and its chunk bookkeeping.

The ingestion pipeline creates and stamps documents here; retrieval resolves
display names here in one round trip; admins list, inspect and delete documents.
Chunk vectors themselves are written through wellness_kb.vector_index.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol
from uuid import UUID

from sqlalchemy import delete, func, select

from wellness_kb.db import SessionFactory, session_scope
from wellness_kb.exceptions import DocumentNotFound
from wellness_kb.models import DocumentChunk, KnowledgeBaseDocument
from wellness_kb.schemas import ChunkMetadata, DocumentContent, DocumentSummary

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    def insert_document(self, file_name: str, file_type: str) -> UUID:
        """Create a document row and return its id."""

    def update_document(self, document_id: UUID, last_indexed_at: datetime) -> None:
        """Stamp a document as indexed."""

    def delete_document(self, document_id: UUID) -> None:
        """Delete a document and, by cascade, all its chunks."""

    def get_document_names(self, document_ids: Iterable[UUID]) -> Dict[UUID, str]:
        """Map ids to display names in a single lookup; unknown ids are omitted."""

    def list_documents(self) -> List[DocumentSummary]:
        """All documents, newest first, with chunk counts."""

    def get_document_content(self, document_id: UUID) -> DocumentContent:
        """Rebuild a document's text from its chunks."""

    def count_documents(self) -> int:
        """Number of documents."""


def _summary(doc: KnowledgeBaseDocument, chunk_count: int) -> DocumentSummary:
    return DocumentSummary(
        id=doc.id,
        file_name=doc.file_name,
        file_type=doc.file_type,
        uploaded_at=doc.uploaded_at,
        last_indexed_at=doc.last_indexed_at,
        chunk_count=chunk_count,
    )


class SqlDocumentStore:
    """DocumentStore over SQLAlchemy sessions."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory

    def insert_document(self, file_name: str, file_type: str) -> UUID:
        with session_scope(self._session_factory) as db:
            doc = KnowledgeBaseDocument(file_name=file_name, file_type=file_type)
            db.add(doc)
            db.flush()
            document_id = doc.id
        logger.info("Created document %s (%s, %s)", document_id, file_name, file_type)
        return document_id

    def update_document(self, document_id: UUID, last_indexed_at: datetime) -> None:
        with session_scope(self._session_factory) as db:
            doc = db.get(KnowledgeBaseDocument, document_id)
            if doc is None:
                raise DocumentNotFound(f"document {document_id} not found")
            doc.last_indexed_at = last_indexed_at

    def delete_document(self, document_id: UUID) -> None:
        """Delete the document row and its chunks in one transaction.

        The document row is locked first so concurrent chunk writes for the
        same document (which take a shared lock on it) wait or fail.
        """
        with session_scope(self._session_factory) as db:
            doc = db.execute(
                select(KnowledgeBaseDocument)
                .where(KnowledgeBaseDocument.id == document_id)
                .with_for_update()
            ).scalar_one_or_none()
            if doc is None:
                raise DocumentNotFound(f"document {document_id} not found")
            removed = db.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id)).rowcount
            db.execute(delete(KnowledgeBaseDocument).where(KnowledgeBaseDocument.id == document_id))
        logger.info("Deleted document %s and %s chunks", document_id, removed)

    def get_document_names(self, document_ids: Iterable[UUID]) -> Dict[UUID, str]:
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return {}
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(KnowledgeBaseDocument.id, KnowledgeBaseDocument.file_name).where(
                    KnowledgeBaseDocument.id.in_(ids)
                )
            ).all()
        return {r.id: r.file_name for r in rows}

    def list_documents(self) -> List[DocumentSummary]:
        counts = (
            select(DocumentChunk.document_id, func.count(DocumentChunk.id).label("chunk_count"))
            .group_by(DocumentChunk.document_id)
            .subquery()
        )
        stmt = (
            select(KnowledgeBaseDocument, func.coalesce(counts.c.chunk_count, 0))
            .outerjoin(counts, counts.c.document_id == KnowledgeBaseDocument.id)
            .order_by(KnowledgeBaseDocument.uploaded_at.desc())
        )
        with session_scope(self._session_factory) as db:
            return [_summary(doc, int(n)) for doc, n in db.execute(stmt).all()]

    def get_document_content(self, document_id: UUID) -> DocumentContent:
        with session_scope(self._session_factory) as db:
            doc = db.get(KnowledgeBaseDocument, document_id)
            if doc is None:
                raise DocumentNotFound(f"document {document_id} not found")
            rows = db.execute(
                select(
                    DocumentChunk.chunk_text,
                    DocumentChunk.metadata_.label("chunk_metadata"),
                    DocumentChunk.created_at,
                ).where(
                    DocumentChunk.document_id == document_id
                )
            ).all()
            summary = _summary(doc, len(rows))

        def order(row) -> tuple:
            meta = ChunkMetadata.model_validate(row.chunk_metadata or {})
            index = meta.chunk_index if meta.chunk_index is not None else len(rows)
            return index, row.created_at

        ordered = sorted(rows, key=order)
        return DocumentContent(
            document=summary,
            content="\n\n".join(r.chunk_text for r in ordered),
            total_chunks=len(ordered),
        )

    def count_documents(self) -> int:
        with session_scope(self._session_factory) as db:
            return int(db.execute(select(func.count(KnowledgeBaseDocument.id))).scalar_one())

