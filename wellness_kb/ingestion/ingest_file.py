"""Local file ingestor.

Reads PDF, TXT or MD files from disk and runs each through the ingestion
pipeline (extract, chunk, embed, store) against the configured database.

Usage:
  python -m wellness_kb.ingestion.ingest_file --path guides/sleep.pdf --path faq.md

Configuration:
- Database: wellness_kb.config.settings.DATABASE_URL
- Embeddings: wellness_kb.config.settings.OPENAI_EMBEDDING_MODEL
- Chunk params: wellness_kb.config.settings.CHUNK_SIZE, CHUNK_OVERLAP
"""
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from wellness_kb.db import init_db
from wellness_kb.document_store import SqlDocumentStore
from wellness_kb.embedding import get_embedder
from wellness_kb.exceptions import UnsupportedOrCorruptDocument
from wellness_kb.ingestion.pipeline import IngestionPipeline
from wellness_kb.schemas import IngestionState, IngestionSummary
from wellness_kb.vector_index import PgVectorIndex

logger = logging.getLogger(__name__)


def ingest_path(pipeline: IngestionPipeline, path: Path, file_type: Optional[str] = None) -> IngestionSummary:
    """Read one file and ingest it under its base name."""
    logger.info("Reading %s", path)
    return pipeline.ingest(path.name, path.read_bytes(), file_type)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Ingest PDF / TXT / MD files into the knowledge base.")
    parser.add_argument("--path", required=True, action="append", help="File to ingest (repeatable)")
    parser.add_argument("--file-type", default=None, choices=["pdf", "txt", "md"], help="Override detected type")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: INFO)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    init_db()
    pipeline = IngestionPipeline(SqlDocumentStore(), PgVectorIndex(), get_embedder())

    failed = 0
    for raw in args.path:
        path = Path(raw)
        try:
            summary = ingest_path(pipeline, path, args.file_type)
        except (OSError, UnsupportedOrCorruptDocument) as exc:
            logger.error("Skipping %s: %s", path, exc)
            failed += 1
            continue
        if summary.state != IngestionState.INDEXED:
            failed += 1
        print(
            f"[INGEST] {path.name} -> {summary.state.value}: "
            f"{summary.processed_chunks}/{summary.total_chunks} chunks stored, {summary.failed_chunks} failed "
            f"(id={summary.document_id})"
        )
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
