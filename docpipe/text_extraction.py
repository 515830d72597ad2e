"""
Text extraction for non-image documents.

PDF via PyMuPDF (pages joined with a form feed so page numbers can be
recovered from character offsets), DOCX via python-docx, and plain text with
an encoding fallback.
"""

from __future__ import annotations

import io

from docpipe.errors import ApiError

PAGE_BREAK = "\f"

PDF_MIME_TYPES = frozenset({"application/pdf"})
DOCX_MIME_TYPES = frozenset({"application/vnd.openxmlformats-officedocument.wordprocessingml.document"})
# python-docx reads OOXML only; binary .doc files have no extractor.
LEGACY_WORD_MIME_TYPES = frozenset({"application/msword"})
TEXT_MIME_TYPES = frozenset({"text/plain", "text/markdown", "text/csv"})
IMAGE_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/tiff"})


def _permanent(code: str, message: str) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="permanent",
        retryable=False,
        http_status=422,
    )


def _normalize_text(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    return "".join(ch for ch in normalized if ch in {"\n", "\t", PAGE_BREAK} or ord(ch) >= 32)


def decode_text_with_fallback(raw: bytes) -> str:
    for encoding in ("utf-8", "gb18030"):
        try:
            return _normalize_text(raw.decode(encoding))
        except UnicodeDecodeError:
            continue
    raise _permanent("TEXT_ENCODING_UNSUPPORTED", "text encoding unsupported")


def extract_pdf_text(file_bytes: bytes) -> str:
    try:
        import pymupdf
    except ImportError:
        raise ApiError(
            code="PARSER_DEPENDENCY_MISSING",
            message="pymupdf is required for PDF parsing",
            error_class="permanent",
            retryable=False,
            http_status=500,
        )

    try:
        doc = pymupdf.open(stream=file_bytes, filetype="pdf")
    except Exception as exc:
        raise _permanent("DOC_PARSE_PDF_CORRUPT", f"Failed to open PDF: {exc}") from exc

    pages: list[str] = []
    try:
        for page in doc:
            pages.append(_normalize_text(page.get_text("text")).strip())
    finally:
        doc.close()
    if not any(pages):
        return ""
    return PAGE_BREAK.join(pages)


def extract_docx_text(file_bytes: bytes) -> str:
    try:
        import docx
    except ImportError:
        raise ApiError(
            code="PARSER_DEPENDENCY_MISSING",
            message="python-docx is required for DOCX parsing",
            error_class="permanent",
            retryable=False,
            http_status=500,
        )

    try:
        doc = docx.Document(io.BytesIO(file_bytes))
    except Exception as exc:
        raise _permanent("DOC_PARSE_DOCX_CORRUPT", f"Failed to open DOCX: {exc}") from exc

    lines = [para.text.strip() for para in doc.paragraphs if para.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                lines.append(" | ".join(cells))
    return _normalize_text("\n".join(lines))


def extract_text(file_bytes: bytes, *, mime_type: str) -> str:
    mime = (mime_type or "").lower()
    if mime in PDF_MIME_TYPES:
        return extract_pdf_text(file_bytes)
    if mime in DOCX_MIME_TYPES:
        return extract_docx_text(file_bytes)
    if mime in TEXT_MIME_TYPES:
        return decode_text_with_fallback(file_bytes)
    if mime in LEGACY_WORD_MIME_TYPES:
        raise _permanent("DOC_LEGACY_WORD_UNSUPPORTED", "legacy .doc files are not supported; convert to .docx")
    raise _permanent("DOC_MIME_UNSUPPORTED", f"no text extractor for {mime_type}")


def page_for_offset(text: str, offset: int) -> int:
    """1-based page number of ``offset`` in text produced by ``extract_pdf_text``."""
    return text.count(PAGE_BREAK, 0, max(0, offset)) + 1
