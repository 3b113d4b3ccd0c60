from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Optional
from zipfile import BadZipFile

import docx
import PyPDF2
from docx.opc.exceptions import PackageNotFoundError
from PyPDF2.errors import PdfReadError

from borz.errors import EmptyDocument, UnsupportedDocumentType

logger = logging.getLogger(__name__)

PDF = "pdf"
PLAIN_TEXT = "text"
MARKDOWN = "markdown"
DOCX = "docx"

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

_KIND_BY_MIME = {
    "application/pdf": PDF,
    "text/plain": PLAIN_TEXT,
    "text/markdown": MARKDOWN,
    "text/x-markdown": MARKDOWN,
    DOCX_MIME: DOCX,
}
_KIND_BY_EXTENSION = {
    "pdf": PDF,
    "txt": PLAIN_TEXT,
    "md": MARKDOWN,
    "markdown": MARKDOWN,
    "docx": DOCX,
}
_GENERIC_MIME_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


@dataclass
class ExtractedDocument:
    kind: str
    file_name: str
    text: str
    page_count: Optional[int] = None
    metadata: dict[str, str] = field(default_factory=dict)


# Resolve the document kind from its MIME type, falling back to the file extension for generic types
def detect_document_kind(mime_type: Optional[str], file_name: Optional[str] = None) -> Optional[str]:
    mime = (mime_type or "").split(";")[0].strip().lower()
    kind = _KIND_BY_MIME.get(mime)
    if kind is not None:
        return kind
    if mime in _GENERIC_MIME_TYPES and file_name and "." in file_name:
        return _KIND_BY_EXTENSION.get(file_name.rsplit(".", 1)[-1].lower())
    return None


def is_supported_document(mime_type: Optional[str], file_name: Optional[str] = None) -> bool:
    return detect_document_kind(mime_type, file_name) is not None


def _extract_pdf(data: bytes) -> tuple[str, int, dict[str, str]]:
    reader = PyPDF2.PdfReader(BytesIO(data))
    pages: list[str] = []
    for page in reader.pages:
        text = page.extract_text()
        if text:
            pages.append(text)

    meta: dict[str, str] = {}
    info = reader.metadata
    if info:
        if info.title:
            meta["title"] = str(info.title)
        if info.author:
            meta["author"] = str(info.author)
    return "\n\n".join(pages), len(reader.pages), meta


def _extract_docx(data: bytes) -> tuple[str, dict[str, str]]:
    document = docx.Document(BytesIO(data))
    parts = [p.text for p in document.paragraphs if p.text and p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text and c.text.strip()]
            if cells:
                parts.append(" | ".join(cells))

    meta: dict[str, str] = {}
    props = document.core_properties
    if props.title:
        meta["title"] = props.title
    if props.author:
        meta["author"] = props.author
    return "\n".join(parts), meta


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


# Extracts plain text from a PDF, plain-text, markdown or .docx payload
def extract_document_text(data: bytes, mime_type: Optional[str], file_name: str = "document") -> ExtractedDocument:
    kind = detect_document_kind(mime_type, file_name)
    if kind is None:
        raise UnsupportedDocumentType(f"Unsupported document type: {mime_type or 'unknown'}")

    page_count: Optional[int] = None
    meta: dict[str, str] = {}
    try:
        if kind == PDF:
            text, page_count, meta = _extract_pdf(data)
        elif kind == DOCX:
            text, meta = _extract_docx(data)
        else:
            text = _decode_text(data)
    except (PdfReadError, PackageNotFoundError, BadZipFile, ValueError, KeyError) as e:
        logger.warning("documents.parse.error: kind=%s file=%s err=%s", kind, file_name, e.__class__.__name__)
        raise UnsupportedDocumentType(f"Could not read {file_name}: the file appears to be corrupt")

    text = text.strip()
    if not text:
        raise EmptyDocument(f"No text could be extracted from {file_name}")

    logger.info("documents.extracted: kind=%s chars=%d pages=%s", kind, len(text), page_count)
    return ExtractedDocument(kind=kind, file_name=file_name, text=text, page_count=page_count, metadata=meta)
