"""Shared fixtures: deterministic embedder, in-memory stores, SQLite sessions."""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from wellness_kb.db import init_db
from wellness_kb.exceptions import DocumentNotFound, EmbeddingUnavailable
from wellness_kb.schemas import DocumentContent, DocumentSummary, RetrievalConfig
from wellness_kb.utils import normalize_for_embedding
from wellness_kb.vector_index import InMemoryVectorIndex


class FakeEmbedder:
    """Hash-seeded unit vectors; same text always maps to the same vector."""

    def __init__(
        self,
        dim: int = 8,
        fail_when: Optional[Callable[[str], bool]] = None,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
    ) -> None:
        self.dim = dim
        self.fail_when = fail_when or (lambda text: False)
        self.vectors = {normalize_for_embedding(k): list(v) for k, v in (vectors or {}).items()}
        self.calls: List[str] = []

    def vector_for(self, text: str) -> List[float]:
        clean = normalize_for_embedding(text)
        if clean in self.vectors:
            return list(self.vectors[clean])
        seed = int.from_bytes(hashlib.sha256(clean.encode("utf-8")).digest()[:8], "big")
        v = np.random.default_rng(seed).normal(size=self.dim)
        return (v / np.linalg.norm(v)).tolist()

    def embed(self, text: str) -> List[float]:
        clean = normalize_for_embedding(text)
        if not clean:
            raise ValueError("cannot embed empty text")
        self.calls.append(clean)
        if self.fail_when(clean):
            raise EmbeddingUnavailable(f"fake failure for {clean[:20]!r}")
        return self.vector_for(clean)

    def embed_many(self, texts: Sequence[str]) -> list:
        outcomes: list = []
        for text in texts:
            try:
                outcomes.append(self.embed(text))
            except EmbeddingUnavailable as exc:
                outcomes.append(exc)
        return outcomes


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self.documents: Dict[uuid.UUID, DocumentSummary] = {}
        self.name_lookups = 0

    def insert_document(self, file_name: str, file_type: str) -> uuid.UUID:
        doc_id = uuid.uuid4()
        self.documents[doc_id] = DocumentSummary(
            id=doc_id,
            file_name=file_name,
            file_type=file_type,
            uploaded_at=datetime.now(timezone.utc),
        )
        return doc_id

    def update_document(self, document_id: uuid.UUID, last_indexed_at: datetime) -> None:
        if document_id not in self.documents:
            raise DocumentNotFound(str(document_id))
        self.documents[document_id] = self.documents[document_id].model_copy(
            update={"last_indexed_at": last_indexed_at}
        )

    def delete_document(self, document_id: uuid.UUID) -> None:
        if self.documents.pop(document_id, None) is None:
            raise DocumentNotFound(str(document_id))

    def get_document_names(self, document_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, str]:
        self.name_lookups += 1
        return {i: self.documents[i].file_name for i in document_ids if i in self.documents}

    def list_documents(self) -> List[DocumentSummary]:
        return sorted(self.documents.values(), key=lambda d: d.uploaded_at, reverse=True)

    def get_document_content(self, document_id: uuid.UUID) -> DocumentContent:
        if document_id not in self.documents:
            raise DocumentNotFound(str(document_id))
        return DocumentContent(document=self.documents[document_id], content="", total_chunks=0)

    def count_documents(self) -> int:
        return len(self.documents)


class InMemoryConfigStore:
    def __init__(self, config: Optional[RetrievalConfig] = None) -> None:
        self.config = config

    def get_retrieval_config(self) -> RetrievalConfig:
        return self.config or RetrievalConfig()

    def has_stored_config(self) -> bool:
        return self.config is not None

    def set_retrieval_config(self, config: RetrievalConfig) -> RetrievalConfig:
        self.config = config
        return config


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def vector_index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def config_store() -> InMemoryConfigStore:
    return InMemoryConfigStore()


@pytest.fixture
def session_factory():
    """SQLAlchemy session factory over a private in-memory SQLite database."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, future=True)
    engine.dispose()
