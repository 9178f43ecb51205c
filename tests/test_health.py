"""Tests for the knowledge-base health check."""

from __future__ import annotations

import uuid

from wellness_kb.health import run_health_check
from wellness_kb.schemas import ChunkMetadata, CheckStatus, RetrievalConfig

from conftest import FakeEmbedder, InMemoryConfigStore


def test_empty_knowledge_base_is_degraded(document_store, vector_index, embedder, config_store) -> None:
    report = run_health_check(document_store, vector_index, embedder, config_store, check_extension=lambda: True)

    assert report.status == "degraded"
    assert report.checks["pgvector"].status == CheckStatus.OK
    assert report.checks["documents"].count == 0
    assert report.checks["embeddings"].dimensions == 8
    assert report.checks["similarity_search"].status == CheckStatus.WARNING
    assert report.checks["configuration"].status == CheckStatus.WARNING


def test_populated_knowledge_base_is_healthy(document_store, vector_index, embedder) -> None:
    doc = document_store.insert_document("guide.txt", "txt")
    vector_index.upsert(uuid.uuid4(), doc, embedder.vector_for("x"), "some guide text", ChunkMetadata(chunk_index=0))
    config_store = InMemoryConfigStore(RetrievalConfig(similarity_threshold=0.7))

    report = run_health_check(document_store, vector_index, embedder, config_store, check_extension=lambda: True)

    assert report.status == "healthy"
    assert report.checks["chunks"].count == 1
    assert report.checks["similarity_search"].status == CheckStatus.OK
    assert report.checks["configuration"].config.similarity_threshold == 0.7


def test_embedding_outage_is_unhealthy(document_store, vector_index, config_store) -> None:
    embedder = FakeEmbedder(fail_when=lambda text: True)

    report = run_health_check(document_store, vector_index, embedder, config_store, check_extension=lambda: True)

    assert report.status == "unhealthy"
    assert report.checks["embeddings"].status == CheckStatus.ERROR
    assert "Embedding generation failed" in report.checks["embeddings"].message


def test_missing_extension_is_an_error(document_store, vector_index, embedder, config_store) -> None:
    report = run_health_check(document_store, vector_index, embedder, config_store, check_extension=lambda: False)

    assert report.checks["pgvector"].status == CheckStatus.ERROR
    assert report.status == "unhealthy"


def test_in_memory_index_cannot_verify_extension(document_store, vector_index, embedder, config_store) -> None:
    report = run_health_check(document_store, vector_index, embedder, config_store)

    assert report.checks["pgvector"].status == CheckStatus.WARNING
