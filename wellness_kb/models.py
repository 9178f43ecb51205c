"""Database ORM models.

Defines persistent entities used by the knowledge-base pipelines:
- KnowledgeBaseDocument: an uploaded document; owns its chunks (cascade delete).
- DocumentChunk: a searchable chunk of a document with JSON metadata and a pgvector
  embedding used for cosine similarity search.
- SystemSetting: key/value rows; the retrieval config and the analytics toggle live here.
- KbQueryLog: one row per retrieval that produced context, for usage analytics.
"""
import uuid
from datetime import datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from wellness_kb.config import settings
from wellness_kb.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeBaseDocument(Base):
    """An uploaded knowledge-base document.

    A document with last_indexed_at set has at least one stored chunk. Documents
    with zero chunks stay visible but are not searchable.
    """
    __tablename__ = "knowledge_base_documents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    file_name = Column(String(512), nullable=False)
    file_type = Column(String(16), nullable=False)  # pdf | txt | md
    uploaded_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    last_indexed_at = Column(DateTime(timezone=True), nullable=True)

    chunks = relationship(
        "DocumentChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_kb_documents_uploaded_at", "uploaded_at"),)


class DocumentChunk(Base):
    """Vector-embedded document chunk used for retrieval.

    Each row carries the chunk text, a metadata object (see
    wellness_kb.schemas.ChunkMetadata) and an embedding vector. Rows are
    immutable once written and are removed only together with their document.

    Notes:
        The embedding dimension is derived from settings.EMBEDDING_DIM and should
        match the embedding model configured in wellness_kb.config.Settings.
    """
    __tablename__ = "document_chunks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id = Column(
        Uuid,
        ForeignKey("knowledge_base_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_text = Column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=False)

    # insertion order breaks similarity ties
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    document = relationship("KnowledgeBaseDocument", back_populates="chunks")

    __table_args__ = (Index("idx_document_chunks_document", "document_id"),)


class SystemSetting(Base):
    """Named configuration row; setting_value holds a JSON document."""
    __tablename__ = "system_settings"

    setting_key = Column(String(128), primary_key=True)
    setting_value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class KbQueryLog(Base):
    """A retrieval that produced context, recorded while analytics are enabled."""
    __tablename__ = "kb_query_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    query_text = Column(Text, nullable=False)
    conversation_id = Column(String(128), nullable=True)
    chunks_found = Column(Integer, nullable=False)
    chunks_used = Column(Integer, nullable=False)
    avg_similarity = Column(Float, nullable=False)
    sources = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=list)
    embedding_time_ms = Column(Integer, nullable=False)
    retrieval_time_ms = Column(Integer, nullable=False)
    total_time_ms = Column(Integer, nullable=False)
    threshold_used = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("idx_kb_query_log_created_at", "created_at"),)
