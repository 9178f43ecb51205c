"""End-to-end tests for the FastAPI routes with in-memory collaborators."""

from __future__ import annotations

import uuid
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from wellness_kb import generation
from wellness_kb.analytics import SqlQueryAnalytics
from wellness_kb.config import settings
from wellness_kb.ingestion.pipeline import IngestionPipeline
from wellness_kb.main import (
    app,
    get_config_store,
    get_document_store,
    get_ingestion_pipeline,
    get_kb_embedder,
    get_query_analytics,
    get_retrieval_pipeline,
    get_vector_index,
)
from wellness_kb.retrieval import RetrievalPipeline
from wellness_kb.vector_index import InMemoryVectorIndex

from conftest import FakeEmbedder

SLEEP_TEXT = (
    "Keep a regular sleep schedule. Avoid caffeine after noon. "
    "Dim the lights an hour before bed and keep the bedroom cool."
)


@pytest.fixture
def client(document_store, vector_index, config_store, session_factory):
    embedder = FakeEmbedder(dim=8)
    analytics = SqlQueryAnalytics(session_factory)
    app.dependency_overrides[get_query_analytics] = lambda: analytics
    app.dependency_overrides[get_document_store] = lambda: document_store
    app.dependency_overrides[get_vector_index] = lambda: vector_index
    app.dependency_overrides[get_kb_embedder] = lambda: embedder
    app.dependency_overrides[get_config_store] = lambda: config_store
    app.dependency_overrides[get_ingestion_pipeline] = lambda: IngestionPipeline(
        document_store, vector_index, embedder, max_workers=1
    )
    app.dependency_overrides[get_retrieval_pipeline] = lambda: RetrievalPipeline(
        vector_index, document_store, embedder, analytics
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upload(client: TestClient, name: str, data: bytes):
    return client.post("/admin/rag/documents", files={"file": (name, data, "application/octet-stream")})


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_upload_list_and_retrieve(client) -> None:
    resp = _upload(client, "sleep.txt", SLEEP_TEXT.encode("utf-8"))
    assert resp.status_code == 201
    summary = resp.json()
    assert summary["state"] == "indexed"
    assert summary["processed_chunks"] == 1

    docs = client.get("/admin/rag/documents").json()
    assert [d["file_name"] for d in docs] == ["sleep.txt"]

    client.put(
        "/admin/kb/config",
        json={"similarity_threshold": 0.99, "max_chunks": 5, "use_top_chunks": 3, "debug_mode": False},
    )
    body = client.post("/kb/retrieve", json={"query": SLEEP_TEXT}).json()
    assert body["contextText"].startswith("<!-- Source: sleep.txt (Chunk 1/1) -->\n")
    assert body["sources"][0]["fileName"] == "sleep.txt"
    assert body["sources"][0]["metadata"]["chunkIndex"] == 0


def test_retrieve_with_no_match_is_empty(client) -> None:
    _upload(client, "sleep.txt", SLEEP_TEXT.encode("utf-8"))
    client.put("/admin/kb/config", json={"similarity_threshold": 0.999})

    body = client.post("/kb/retrieve", json={"query": "completely unrelated question"}).json()

    assert body == {"contextText": "", "sources": []}


def test_retrieve_survives_embedding_outage(client) -> None:
    app.dependency_overrides[get_retrieval_pipeline] = lambda: RetrievalPipeline(
        InMemoryVectorIndex(), app.dependency_overrides[get_document_store](), FakeEmbedder(fail_when=lambda t: True)
    )

    resp = client.post("/kb/retrieve", json={"query": "hello"})

    assert resp.status_code == 200
    assert resp.json() == {"contextText": "", "sources": []}


def test_test_query_reports_503_on_outage(client) -> None:
    app.dependency_overrides[get_retrieval_pipeline] = lambda: RetrievalPipeline(
        InMemoryVectorIndex(), app.dependency_overrides[get_document_store](), FakeEmbedder(fail_when=lambda t: True)
    )

    assert client.post("/admin/kb/test-query", json={"query": "hello"}).status_code == 503


def test_test_query_lists_candidates(client) -> None:
    _upload(client, "sleep.txt", SLEEP_TEXT.encode("utf-8"))
    client.put("/admin/kb/config", json={"similarity_threshold": 0.99})

    report = client.post("/admin/kb/test-query", json={"query": SLEEP_TEXT}).json()

    assert report["chunks_found"] == 1
    assert report["results"][0]["document"] == "sleep.txt"
    assert report["results"][0]["rank"] == 1


def test_unsupported_upload_is_400(client) -> None:
    assert _upload(client, "slides.pptx", b"PK\x03\x04 data").status_code == 400
    assert _upload(client, "broken.pdf", b"not really a pdf").status_code == 400


def test_oversized_upload_is_413(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "MAX_UPLOAD_MB", 0)

    assert _upload(client, "big.txt", b"x" * 64).status_code == 413


def test_delete_document(client, vector_index) -> None:
    doc_id = _upload(client, "sleep.txt", SLEEP_TEXT.encode("utf-8")).json()["document_id"]

    assert client.delete(f"/admin/rag/documents/{doc_id}").status_code == 204
    assert client.get("/admin/rag/documents").json() == []
    assert vector_index.count() == 0
    assert client.delete(f"/admin/rag/documents/{doc_id}").status_code == 404


def test_content_of_unknown_document_is_404(client) -> None:
    assert client.get(f"/admin/rag/documents/{uuid.uuid4()}/content").status_code == 404


def test_config_round_trip_and_validation(client) -> None:
    assert client.get("/admin/kb/config").json()["similarity_threshold"] == 0.78

    resp = client.put("/admin/kb/config", json={"similarity_threshold": 0.6, "max_chunks": 4, "use_top_chunks": 2})
    assert resp.status_code == 200
    assert client.get("/admin/kb/config").json()["max_chunks"] == 4

    assert client.put("/admin/kb/config", json={"similarity_threshold": 1.5}).status_code == 422
    assert client.put("/admin/kb/config", json={"max_chunks": 0}).status_code == 422


def test_health_check_endpoint(client) -> None:
    report = client.get("/admin/kb/health-check").json()

    assert report["status"] in {"healthy", "degraded", "unhealthy"}
    assert set(report["checks"]) == {
        "pgvector",
        "documents",
        "chunks",
        "embeddings",
        "similarity_search",
        "configuration",
    }


def _fake_chat_client(monkeypatch, reply: str = "Try winding down earlier.") -> MagicMock:
    chat = MagicMock()
    chat.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=reply))]
    )
    monkeypatch.setattr(generation, "get_client", lambda: chat)
    return chat


def test_chat_reply_uses_knowledge_base_context(client, monkeypatch) -> None:
    chat = _fake_chat_client(monkeypatch)
    _upload(client, "sleep.txt", SLEEP_TEXT.encode("utf-8"))
    client.put("/admin/kb/config", json={"similarity_threshold": 0.99})

    resp = client.post(
        "/kb/chat",
        json={"messages": [{"role": "user", "content": SLEEP_TEXT}], "system_prompt": "BASE"},
    )

    assert resp.status_code == 200
    assert resp.json()["reply"] == "Try winding down earlier."
    assert resp.json()["sources"][0]["fileName"] == "sleep.txt"
    system = chat.chat.completions.create.call_args.kwargs["messages"][0]["content"]
    assert system.startswith("BASE\n\nRelevant information from knowledge base:\n<!-- Source: sleep.txt")


def test_chat_requires_a_user_turn(client, monkeypatch) -> None:
    _fake_chat_client(monkeypatch)

    resp = client.post("/kb/chat", json={"messages": [{"role": "assistant", "content": "Hello!"}]})

    assert resp.status_code == 422


def test_analytics_toggle_and_report(client) -> None:
    assert client.get("/admin/kb/analytics/settings").json() == {"enabled": False}
    _upload(client, "sleep.txt", SLEEP_TEXT.encode("utf-8"))
    client.put("/admin/kb/config", json={"similarity_threshold": 0.99})

    client.post("/kb/retrieve", json={"query": SLEEP_TEXT})
    assert client.get("/admin/kb/analytics").json()["stats"]["total_queries"] == 0

    assert client.put("/admin/kb/analytics/settings", json={"enabled": True}).json() == {"enabled": True}
    client.post("/kb/retrieve", json={"query": SLEEP_TEXT, "conversation_id": "conv-1"})
    report = client.get("/admin/kb/analytics", params={"days": 30}).json()

    assert report["period_days"] == 30
    assert report["stats"]["total_queries"] == 1
    assert report["stats"]["avg_chunks_used"] == 1.0
    assert report["stats"]["top_sources"] == [{"file_name": "sleep.txt", "count": 1}]


def test_analytics_window_is_validated(client) -> None:
    assert client.get("/admin/kb/analytics", params={"days": 0}).status_code == 422
