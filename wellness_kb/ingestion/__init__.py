"""Ingestion package: turn uploaded documents into searchable chunks.

- extract: PDF / TXT / MD bytes to text (pypdf for PDF)
- pipeline: IngestionPipeline (extract, chunk, embed, store) and document deletion
- ingest_file: command-line ingestion of local files
"""
