from io import BytesIO

import docx
import pytest
from PyPDF2 import PdfWriter

from borz.errors import EmptyDocument, UnsupportedDocumentType
from borz.services.documents import (
    DOCX,
    DOCX_MIME,
    MARKDOWN,
    PDF,
    PLAIN_TEXT,
    detect_document_kind,
    extract_document_text,
)


@pytest.mark.parametrize(
    "mime,name,kind",
    [
        ("application/pdf", "a.pdf", PDF),
        ("text/plain; charset=utf-8", "a.txt", PLAIN_TEXT),
        ("text/markdown", "a.md", MARKDOWN),
        (DOCX_MIME, "a.docx", DOCX),
        ("application/octet-stream", "notes.MD", MARKDOWN),
        ("", "report.pdf", PDF),
        ("application/zip", "a.zip", None),
        ("application/octet-stream", "noext", None),
    ],
)
def test_detect_document_kind(mime, name, kind):
    assert detect_document_kind(mime, name) == kind


def test_plain_text_and_markdown():
    doc = extract_document_text("Quarterly numbers went up.\n".encode("utf-8"), "text/plain", "q.txt")
    assert doc.text == "Quarterly numbers went up."
    assert doc.kind == PLAIN_TEXT

    md = extract_document_text(b"# Title\n\n- item", "text/markdown", "notes.md")
    assert md.text.startswith("# Title")


def test_latin1_text_falls_back():
    doc = extract_document_text("café".encode("latin-1"), "text/plain", "menu.txt")
    assert doc.text == "café"


def test_docx_paragraphs_and_tables():
    document = docx.Document()
    document.add_paragraph("Meeting notes")
    table = document.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Owner"
    table.rows[0].cells[1].text = "Ada"
    document.core_properties.title = "Weekly sync"
    buf = BytesIO()
    document.save(buf)

    doc = extract_document_text(buf.getvalue(), DOCX_MIME, "notes.docx")
    assert "Meeting notes" in doc.text
    assert "Owner | Ada" in doc.text
    assert doc.metadata["title"] == "Weekly sync"


def test_pdf_without_text_is_empty():
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    buf = BytesIO()
    writer.write(buf)
    with pytest.raises(EmptyDocument):
        extract_document_text(buf.getvalue(), "application/pdf", "blank.pdf")


def test_corrupt_files_are_unsupported():
    with pytest.raises(UnsupportedDocumentType):
        extract_document_text(b"this is not a pdf", "application/pdf", "broken.pdf")
    with pytest.raises(UnsupportedDocumentType):
        extract_document_text(b"not a zip either", DOCX_MIME, "broken.docx")


def test_unsupported_type():
    with pytest.raises(UnsupportedDocumentType) as exc:
        extract_document_text(b"PK\x03\x04", "application/zip", "bundle.zip")
    assert exc.value.message == "Unsupported document type: application/zip"


def test_whitespace_only_text_is_empty():
    with pytest.raises(EmptyDocument):
        extract_document_text(b"   \n\t ", "text/plain", "blank.txt")
