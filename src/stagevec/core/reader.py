"""Document readers: raw blob -> normalized per-page text.

A page that fails to extract is replaced by a sentinel instead of aborting the
document. A blob that cannot be opened at all raises DocumentReadError.
"""

import logging
from pathlib import PurePosixPath
from typing import List, Protocol

import fitz  # PyMuPDF

from .errors import DocumentReadError
from .logging_config import get_audit_logger, log_page_extraction_failure
from .models import ExtractedDocument, PageText

logger = logging.getLogger(__name__)

UNABLE_TO_EXTRACT = "Unable to Extract"


def normalize_text(text: str) -> str:
    """Replace newlines and null bytes with spaces."""
    return text.replace("\r\n", " ").replace("\n", " ").replace("\r", " ").replace("\0", " ")


class DocumentReader(Protocol):
    def read(self, data: bytes, path: str) -> ExtractedDocument:
        ...


class PdfReader:
    """Extract page text from PDF blobs with PyMuPDF."""

    def __init__(self):
        self.audit_logger = get_audit_logger("reader")

    def extract_page(self, page: fitz.Page) -> str:
        return page.get_text()

    def read(self, data: bytes, path: str) -> ExtractedDocument:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise DocumentReadError(path, f"cannot open PDF: {e}") from e

        pages: List[PageText] = []
        try:
            for page_index in range(doc.page_count):
                page_num = page_index + 1
                try:
                    raw = self.extract_page(doc[page_index])
                    pages.append(PageText(page=page_num, text=normalize_text(raw or "")))
                except Exception as e:
                    log_page_extraction_failure(self.audit_logger, path, page_num, e)
                    pages.append(PageText(page=page_num, text=UNABLE_TO_EXTRACT, ok=False))
        finally:
            doc.close()

        logger.debug(f"Extracted {len(pages)} pages from {path}")
        return ExtractedDocument(path=path, pages=pages)


class TextReader:
    """Read plain text blobs as a single page."""

    def read(self, data: bytes, path: str) -> ExtractedDocument:
        text = data.decode("utf-8", errors="replace")
        return ExtractedDocument(path=path, pages=[PageText(page=1, text=normalize_text(text))])


READERS = {
    ".pdf": PdfReader,
    ".txt": TextReader,
    ".md": TextReader,
}


def reader_for(path: str) -> DocumentReader:
    """Pick a reader by file suffix."""
    suffix = PurePosixPath(path).suffix.lower()
    reader_cls = READERS.get(suffix)
    if reader_cls is None:
        raise DocumentReadError(path, f"unsupported file type: {suffix or '(none)'}")
    return reader_cls()
