"""SQLAlchemy engine, sessions and schema bootstrap for the knowledge base.

- init_db: create the pgvector extension, the knowledge-base tables and the HNSW
  cosine index over document_chunks.embedding (Postgres only for the extension and index).
- session_scope: one transaction per unit of work, used by every store.
- vector_extension_installed: Health probe for the pgvector extension.

Configuration is read from wellness_kb.config.settings.DATABASE_URL.
"""
import logging
from contextlib import contextmanager
from typing import Callable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from wellness_kb.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy setup
engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()

SessionFactory = Callable[[], Session]

HNSW_MAX_DIMENSIONS = 2000


def init_db(bind: Optional[Engine] = None) -> None:
    """Create the vector extension, tables and the chunk embedding index.

    Args:
        bind: Engine to initialize; defaults to the module engine. Non-Postgres
            engines (SQLite in tests) get the tables only.

    Idempotent.
    """
    bind = bind or engine
    is_postgres = bind.dialect.name == "postgresql"
    if is_postgres:
        with bind.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.commit()

    # models register themselves on Base.metadata
    from wellness_kb import models  # noqa: F401

    Base.metadata.create_all(bind=bind)

    if not is_postgres:
        return
    ddl = embedding_index_ddl(settings.EMBEDDING_DIM)
    if ddl is None:
        logger.warning(
            "Embedding dimension %d exceeds the HNSW limit of %d; similarity search runs as an exact scan",
            settings.EMBEDDING_DIM, HNSW_MAX_DIMENSIONS,
        )
        return
    with bind.connect() as conn:
        conn.execute(text(ddl))
        conn.commit()


def embedding_index_ddl(dimensions: int) -> Optional[str]:
    """DDL for the HNSW cosine index over document_chunks.embedding.

    HNSW builds its graph incrementally, so the index is usable on an empty table.
    Returns None when pgvector cannot index vectors this wide.
    """
    if dimensions > HNSW_MAX_DIMENSIONS:
        return None
    return (
        "CREATE INDEX IF NOT EXISTS idx_document_chunks_embedding_hnsw "
        "ON document_chunks USING hnsw (embedding vector_cosine_ops)"
    )


def vector_extension_installed(bind: Optional[Engine] = None) -> bool:
    """Return True if the pgvector extension is present in the connected database."""
    bind = bind or engine
    if bind.dialect.name != "postgresql":
        return False
    with bind.connect() as conn:
        row = conn.execute(text("SELECT extname FROM pg_extension WHERE extname = 'vector'")).first()
    return row is not None


@contextmanager
def session_scope(session_factory: Optional[SessionFactory] = None):
    """Yield a session that commits on success and rolls back on error.

    Args:
        session_factory: Factory to open the session with; defaults to SessionLocal.
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
