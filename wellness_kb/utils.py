"""Utility helpers for file-type detection, text normalization, and chunking.

This module provides:
- resolve_file_type: map a declared type or file name to pdf / txt / md
- normalize_for_embedding: collapse newlines and whitespace runs before embedding
- chunk_spans / chunk_text: fixed-size character windows with overlap and tail coverage
- chunk_id_for: stable chunk identifier derived from document id and chunk index
- page_for_offset: locate the PDF page a character offset falls on
"""
import bisect
import re
import uuid
from pathlib import PurePath
from typing import List, Optional, Sequence, Tuple

from wellness_kb.exceptions import UnsupportedOrCorruptDocument

SUPPORTED_FILE_TYPES = ("pdf", "txt", "md")

_FILE_TYPE_ALIASES = {
    "pdf": "pdf",
    "application/pdf": "pdf",
    "txt": "txt",
    "text": "txt",
    "text/plain": "txt",
    "md": "md",
    "markdown": "md",
    "text/markdown": "md",
}


def resolve_file_type(file_name: str, declared: Optional[str] = None) -> str:
    """Resolve the source format of an upload.

    Args:
        file_name: Original file name; its extension is used when nothing is declared.
        declared: Optional declared format or MIME type.

    Returns:
        str: One of SUPPORTED_FILE_TYPES.

    Raises:
        UnsupportedOrCorruptDocument: If the format is not pdf, plain text or markdown.
    """
    candidate = (declared or PurePath(file_name).suffix.lstrip(".")).strip().lower()
    file_type = _FILE_TYPE_ALIASES.get(candidate)
    if file_type is None:
        raise UnsupportedOrCorruptDocument(
            f"Unsupported document type {candidate or '<none>'!r} for {file_name!r}; "
            "only PDF, TXT and MD are supported"
        )
    return file_type


def normalize_for_embedding(text: str) -> str:
    """Collapse newlines and whitespace runs to single spaces.

    Embedding models are sensitive to raw newlines.
    """
    return re.sub(r"\s+", " ", text).strip()


def chunk_spans(text: str, chunk_size: int, overlap: int, min_length: int = 10) -> List[Tuple[int, str]]:
    """Split text into overlapping fixed-size windows.

    The window advances by chunk_size - overlap characters and the last window
    always ends at the end of the text. A window whose trimmed text is shorter than
    min_length is dropped when its neighbours already cover all of its content;
    otherwise it is merged into the preceding window (or the following one, at the
    start of the text), so no content is lost. Merged chunks may exceed chunk_size.

    Args:
        text: Input string to split.
        chunk_size: Window width in characters.
        overlap: Characters shared between consecutive windows.
        min_length: Minimum trimmed length of a chunk; texts shorter than this yield nothing.

    Returns:
        List[Tuple[int, str]]: (start offset, trimmed chunk text) pairs in document order.

    Raises:
        ValueError: If chunk_size <= overlap or overlap < 0.
    """
    if overlap < 0 or chunk_size <= overlap:
        raise ValueError(f"chunk_size must exceed overlap >= 0 (got size={chunk_size}, overlap={overlap})")
    if not text:
        return []

    n = len(text)
    step = chunk_size - overlap
    spans: List[Tuple[int, int]] = []
    start = 0
    while True:
        end = min(start + chunk_size, n)
        spans.append((start, end))
        if end >= n:
            break
        start += step

    # a final window with only whitespace past the previous window adds nothing
    if len(spans) > 1 and not text[spans[-2][1]:n].strip():
        spans.pop()

    kept: List[Tuple[int, int]] = []
    carry: Optional[int] = None
    for i, (start, end) in enumerate(spans):
        if carry is not None:
            start, carry = carry, None
        if len(text[start:end].strip()) >= min_length:
            kept.append((start, end))
            continue
        # too short to stand alone: keep only if it holds text no neighbour covers
        covered_to = kept[-1][1] if kept else 0
        next_start = spans[i + 1][0] if i + 1 < len(spans) else n
        if not text[max(start, covered_to):next_start].strip():
            continue
        if kept:
            kept[-1] = (kept[-1][0], end)
        else:
            carry = start

    return [(s, text[s:e].strip()) for s, e in kept]


def chunk_text(text: str, chunk_size: int, overlap: int, min_length: int = 10) -> List[str]:
    """Split text into fixed-size character chunks with overlap.

    Args:
        text: Input string to split.
        chunk_size: Target chunk size in characters.
        overlap: Number of characters to overlap between consecutive chunks.
        min_length: Minimum trimmed length for a chunk to be kept.

    Returns:
        List[str]: Trimmed chunks. A text no longer than chunk_size yields exactly
        one chunk equal to the trimmed text, or none if that is below min_length.
    """
    return [c for _, c in chunk_spans(text, chunk_size, overlap, min_length)]


def chunk_id_for(document_id: uuid.UUID, chunk_index: int) -> uuid.UUID:
    """Stable chunk id: retrying the same chunk of the same document hits the same row."""
    return uuid.uuid5(document_id, f"chunk-{chunk_index}")


def page_for_offset(page_offsets: Sequence[int], offset: int) -> Optional[int]:
    """Return the 1-based page containing a character offset.

    Args:
        page_offsets: Ascending start offsets of each page in the extracted text.
        offset: Character offset into the extracted text.

    Returns:
        Optional[int]: Page number, or None when no page layout is known.
    """
    if not page_offsets:
        return None
    return max(1, bisect.bisect_right(page_offsets, offset))
