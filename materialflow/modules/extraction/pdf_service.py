"""MaterialFlow PDF Service — PyMuPDF page probe and page-range copies."""

from __future__ import annotations

import math

import fitz  # PyMuPDF
import structlog

from materialflow.core.exceptions import InputError
from materialflow.modules.extraction.schemas import PageBatch

logger = structlog.get_logger()

PDF_SIGNATURE = b"%PDF"
BATCH_SIZE = 5


def _open(pdf_bytes: bytes) -> fitz.Document:
    try:
        return fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise InputError(f"Invalid PDF file: {e}") from e


def validate_pdf(pdf_bytes: bytes) -> int:
    """Check the %PDF signature and return the page count.

    Raises:
        InputError: empty bytes, missing signature, unreadable or page-less file.
    """
    if not pdf_bytes:
        raise InputError("Invalid PDF buffer: empty")
    if not pdf_bytes.startswith(PDF_SIGNATURE):
        raise InputError("Invalid PDF buffer: missing PDF header")

    doc = _open(pdf_bytes)
    try:
        page_count = doc.page_count
    finally:
        doc.close()

    if page_count < 1:
        raise InputError("Could not determine page count from PDF")
    return page_count


def plan_batches(total_pages: int, batch_size: int = BATCH_SIZE) -> list[PageBatch]:
    """Split pages 1..total_pages into consecutive inclusive ranges."""
    num_batches = math.ceil(total_pages / batch_size) if total_pages > 0 else 0
    batches = []
    for i in range(num_batches):
        start = i * batch_size + 1
        end = min(start + batch_size - 1, total_pages)
        batches.append(PageBatch(index=i, start=start, end=end))
    return batches


def extract_page_range(pdf_bytes: bytes, start_page: int, end_page: int) -> bytes:
    """Copy pages ``start_page``..``end_page`` (1-based, inclusive) into a new PDF."""
    src = _open(pdf_bytes)
    try:
        total = src.page_count
        if start_page < 1 or end_page > total or start_page > end_page:
            raise InputError(
                f"Invalid page range {start_page}-{end_page} for a {total}-page document"
            )

        out = fitz.open()
        try:
            out.insert_pdf(src, from_page=start_page - 1, to_page=end_page - 1)
            data = out.tobytes(garbage=3, deflate=True)
        finally:
            out.close()
    finally:
        src.close()

    logger.debug("PDF page range extracted", start=start_page, end=end_page, size=len(data))
    return data
