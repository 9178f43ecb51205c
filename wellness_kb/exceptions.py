"""Error taxonomy for the knowledge-base pipelines.

Ingestion failures below the document boundary are recorded, not raised:
ChunkProcessingFailure instances are collected into the ingestion summary.
Retrieval failures surface as RetrievalUnavailable so callers can degrade to
answering without knowledge-base context.
"""
from typing import Optional
from uuid import UUID


class KnowledgeBaseError(RuntimeError):
    """Base class for knowledge-base errors."""


class UnsupportedOrCorruptDocument(KnowledgeBaseError):
    """Raised when an upload cannot be converted to text (bad format or corrupt file)."""


class EmbeddingUnavailable(KnowledgeBaseError):
    """Raised when the embedding service fails (transport, quota, bad response)."""


class IndexWriteFailure(KnowledgeBaseError):
    """Raised when the vector index cannot be written to or searched."""


class RetrievalUnavailable(KnowledgeBaseError):
    """Umbrella error for any failure on the retrieval path."""


class DocumentNotFound(KnowledgeBaseError):
    """Raised when a document id does not exist."""


class InvalidRetrievalConfig(KnowledgeBaseError):
    """Raised when an admin submits a retrieval config that fails validation."""


class ChunkProcessingFailure(KnowledgeBaseError):
    """A single chunk that could not be embedded or stored.

    Attributes:
        document_id: Owning document.
        chunk_index: Position of the chunk in the chunker's output.
        reason: Short description of what went wrong.
    """

    def __init__(self, document_id: Optional[UUID], chunk_index: int, reason: str):
        super().__init__(f"chunk {chunk_index} of document {document_id}: {reason}")
        self.document_id = document_id
        self.chunk_index = chunk_index
        self.reason = reason
