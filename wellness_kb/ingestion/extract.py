"""Text extraction for uploaded knowledge-base documents.

PDF pages are read with pypdf and joined by blank lines; the start offset of
each page is kept so chunks can be attributed to the page they start on.
Plain text and markdown are decoded as UTF-8.
"""
import io
import logging
from dataclasses import dataclass, field
from typing import List

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from wellness_kb.exceptions import UnsupportedOrCorruptDocument

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class ExtractedText:
    """Plain text of a document plus, for PDFs, where each page starts."""
    text: str
    page_offsets: List[int] = field(default_factory=list)


def extract_pdf(data: bytes) -> ExtractedText:
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            raise UnsupportedOrCorruptDocument("encrypted PDFs are not supported")
        parts: List[str] = []
        offsets: List[int] = []
        position = 0
        for page in reader.pages:
            page_text = (page.extract_text() or "").strip()
            if parts:
                position += len(PAGE_SEPARATOR)
            offsets.append(position)
            parts.append(page_text)
            position += len(page_text)
    except (PyPdfError, ValueError, TypeError, KeyError) as exc:
        raise UnsupportedOrCorruptDocument(f"could not read PDF: {exc}") from exc
    return ExtractedText(text=PAGE_SEPARATOR.join(parts), page_offsets=offsets)


def extract_plain(data: bytes) -> ExtractedText:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise UnsupportedOrCorruptDocument(f"text document is not valid UTF-8: {exc}") from exc
    return ExtractedText(text=text)


def extract_text(data: bytes, file_type: str) -> ExtractedText:
    """Convert uploaded bytes to plain text according to the resolved file type.

    Args:
        data: Raw upload.
        file_type: One of pdf, txt, md.

    Returns:
        ExtractedText: Text and page offsets (PDF only).

    Raises:
        UnsupportedOrCorruptDocument: Unknown type or unreadable content.
    """
    if file_type == "pdf":
        return extract_pdf(data)
    if file_type in ("txt", "md"):
        return extract_plain(data)
    raise UnsupportedOrCorruptDocument(f"Unsupported file type for knowledge base: {file_type!r}")
