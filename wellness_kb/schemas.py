"""Pydantic schemas shared by the pipelines and the API.

Defines:
- ChunkMetadata: the well-defined per-chunk metadata stored beside each vector.
- RetrievalConfig: admin-tunable retrieval knobs, with defaults from settings.
- IngestionSummary: structured result of ingesting one document.
- RetrievalSource / RetrievalResult: context handed to the conversation flow.
- Admin payloads: document listings, content reconstruction, test query, health report,
  usage analytics.
- Chat payloads for the /kb/chat reply endpoint.

Chunk metadata and retrieval results are serialized with camelCase aliases
(chunkIndex, contextText, ...) to match the stored JSON and the admin UI.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field

from wellness_kb.config import settings


class ChunkMetadata(BaseModel):
    """Position and attribution metadata for a chunk.

    Attributes:
        chunk_index: Zero-based index within the document (chunker output order).
        total_chunks: Number of chunks the chunker produced for the document.
        chunk_size: Character length of the chunk text.
        file_type: Source format (pdf, txt, md).
        file_name: Source file name, denormalized for attribution.
        page: 1-based PDF page the chunk starts on, when known.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    chunk_index: Optional[int] = Field(default=None, alias="chunkIndex", ge=0)
    total_chunks: Optional[int] = Field(default=None, alias="totalChunks", ge=1)
    chunk_size: Optional[int] = Field(default=None, alias="chunkSize", ge=0)
    file_type: Optional[str] = Field(default=None, alias="fileType")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    page: Optional[int] = Field(default=None, ge=1)

    def to_json(self) -> Dict[str, object]:
        """Serialize for storage using the camelCase keys, omitting unknown fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class RetrievalConfig(BaseModel):
    """Process-wide retrieval knobs, read on every query.

    Attributes:
        similarity_threshold: Minimum cosine similarity to accept a candidate, in (0, 1].
        max_chunks: Upper bound on candidates fetched from the index per query.
        use_top_chunks: Number of best candidates included in the assembled context.
        debug_mode: Verbose diagnostic logging; never changes results.
    """
    similarity_threshold: float = Field(default=settings.KB_SIMILARITY_THRESHOLD, gt=0.0, le=1.0)
    max_chunks: int = Field(default=settings.KB_MAX_CHUNKS, ge=1)
    use_top_chunks: int = Field(default=settings.KB_USE_TOP_CHUNKS, ge=1)
    debug_mode: bool = settings.KB_DEBUG_MODE

    @property
    def effective_top_chunks(self) -> int:
        # use_top_chunks larger than max_chunks is read as max_chunks
        return min(self.use_top_chunks, self.max_chunks)


class IngestionState(str, Enum):
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    INDEXED = "indexed"
    EMPTY = "empty"
    FAILED = "failed"


class ChunkFailure(BaseModel):
    chunk_index: int
    reason: str


class IngestionSummary(BaseModel):
    """Counts reported to the uploader after a document has been processed."""
    document_id: UUID
    file_name: str
    file_type: str
    state: IngestionState
    total_chunks: int
    processed_chunks: int
    failed_chunks: int
    failures: List[ChunkFailure] = Field(default_factory=list)
    last_indexed_at: Optional[datetime] = None


class RetrievalSource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    similarity: float
    metadata: ChunkMetadata


class RetrievalResult(BaseModel):
    """Context string for the LLM prompt plus ordered source attribution."""
    model_config = ConfigDict(populate_by_name=True)

    context_text: str = Field(default="", alias="contextText")
    sources: List[RetrievalSource] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.context_text


class RetrieveRequest(BaseModel):
    query: str = Field(..., min_length=1, description="User message to ground")
    conversation_id: Optional[str] = None


class DocumentSummary(BaseModel):
    id: UUID
    file_name: str
    file_type: str
    uploaded_at: datetime
    last_indexed_at: Optional[datetime] = None
    chunk_count: int = 0

    @computed_field
    @property
    def searchable(self) -> bool:
        return self.last_indexed_at is not None and self.chunk_count > 0


class DocumentContent(BaseModel):
    """A document's text rebuilt from its stored chunks, in chunk order."""
    document: DocumentSummary
    content: str
    total_chunks: int


class QueryProbeRequest(BaseModel):
    query: str = Field(..., min_length=1)


class QueryProbeHit(BaseModel):
    rank: int
    similarity: float
    document: str
    metadata: ChunkMetadata
    text_preview: str


class QueryProbeReport(BaseModel):
    """Diagnostic view of a single retrieval, used by admins to tune the threshold."""
    query: str
    embedding_time_ms: int
    search_time_ms: int
    total_time_ms: int
    chunks_found: int
    similarity_threshold: float
    results: List[QueryProbeHit] = Field(default_factory=list)


class CheckStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


class HealthCheckItem(BaseModel):
    status: CheckStatus
    message: str
    count: Optional[int] = None
    dimensions: Optional[int] = None
    results_found: Optional[int] = None
    config: Optional[RetrievalConfig] = None


class HealthReport(BaseModel):
    status: str
    timestamp: datetime
    checks: Dict[str, HealthCheckItem]


class KbQueryUsage(BaseModel):
    """Usage record for one retrieval that produced context."""
    query_text: str
    conversation_id: Optional[str] = None
    chunks_found: int
    chunks_used: int
    avg_similarity: float
    sources: List[str] = Field(default_factory=list)
    embedding_time_ms: int
    retrieval_time_ms: int
    total_time_ms: int
    threshold_used: float


class SourceUsage(BaseModel):
    file_name: str
    count: int


class KbUsageStats(BaseModel):
    total_queries: int = 0
    avg_chunks_found: float = 0.0
    avg_chunks_used: float = 0.0
    avg_similarity: float = 0.0
    avg_response_time_ms: float = 0.0
    top_sources: List[SourceUsage] = Field(default_factory=list)
    queries_per_day: Dict[str, int] = Field(default_factory=dict)


class KbAnalyticsReport(BaseModel):
    period_days: int
    stats: KbUsageStats


class AnalyticsSettings(BaseModel):
    enabled: bool


class ChatMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str = Field(..., min_length=1)


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(..., min_length=1, description="Conversation so far, ending with the user turn")
    conversation_id: Optional[str] = None
    system_prompt: Optional[str] = Field(default=None, description="Overrides settings.BASE_SYSTEM_PROMPT")
    max_tokens: Optional[int] = Field(default=None, ge=1, le=4000)


class ChatReply(BaseModel):
    reply: str
    sources: List[RetrievalSource] = Field(default_factory=list)
