"""Knowledge-base (RAG) service for the wellness chat assistant.

Submodules overview:
- main: FastAPI application, admin and retrieval routes.
- config: Application settings and environment variable loading.
- db: Database engine/session management helpers.
- models: ORM models (documents, chunks, system settings, query log).
- schemas: Pydantic models for chunk metadata, configs, summaries and API payloads.
- exceptions: Error taxonomy shared by the pipelines.
- utils: File-type detection, normalization and the chunker.
- embedding: Embedding client and providers.
- vector_index: pgvector-backed and in-memory similarity search.
- document_store: Document rows, name lookup, listing and content reconstruction.
- config_store / cache: Retrieval config persistence with a Redis read-through cache.
- ingestion: Upload ingestion pipeline and CLI.
- retrieval: Query-time retrieval and context assembly.
- generation: System prompt assembly and reply generation (/kb/chat).
- health: Knowledge-base health check.
- analytics: Knowledge-base usage log and aggregates.
- obs: Observability utilities (tracing/spans).
"""
