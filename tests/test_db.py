"""Tests for schema bootstrap helpers."""

from __future__ import annotations

from sqlalchemy import inspect

from wellness_kb.db import HNSW_MAX_DIMENSIONS, embedding_index_ddl


def test_embedding_index_uses_hnsw_cosine() -> None:
    ddl = embedding_index_ddl(1536)

    assert "USING hnsw (embedding vector_cosine_ops)" in ddl
    assert "IF NOT EXISTS" in ddl
    assert "ivfflat" not in ddl


def test_embedding_index_skipped_above_hnsw_limit() -> None:
    assert embedding_index_ddl(HNSW_MAX_DIMENSIONS) is not None
    assert embedding_index_ddl(3072) is None


def test_init_db_creates_tables_on_sqlite(session_factory) -> None:
    with session_factory() as db:
        tables = set(inspect(db.get_bind()).get_table_names())

    assert {"knowledge_base_documents", "document_chunks", "system_settings", "kb_query_log"} <= tables
