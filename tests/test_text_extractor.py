"""Tests for text extraction from PDF, DOCX and pasted text."""
import io

import fitz
import pytest
from docx import Document as DocxDocument

from app.exceptions import CorruptDocument, FileTooLarge, UnsupportedFileType
from app.models.database_models import FileType
from app.services.text_extractor import (
    TextExtractor,
    coerce_file_type,
    normalize_extracted_text,
)

MB = 1024 * 1024


def _pdf_bytes(*pages: str) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        y = 72
        for line in text.splitlines():
            page.insert_text((72, y), line)
            y += 16
    data = doc.tobytes()
    doc.close()
    return data


def _docx_bytes(*paragraphs: str) -> bytes:
    doc = DocxDocument()
    for text in paragraphs:
        doc.add_paragraph(text)
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


@pytest.mark.asyncio
async def test_extract_pdf_text_across_pages():
    data = _pdf_bytes("1. What is a relation?", "2. Define a foreign key.")
    result = await TextExtractor().extract(data, "pdf")

    assert result.file_type == FileType.PDF
    assert "1. What is a relation?" in result.text
    assert "2. Define a foreign key." in result.text
    assert result.metadata["page_count"] == 2
    assert result.metadata["word_count"] > 0


@pytest.mark.asyncio
async def test_extract_pdf_drops_isolated_page_numbers():
    data = _pdf_bytes("1. Explain indexing.\n7")
    result = await TextExtractor().extract(data, FileType.PDF)

    lines = [line.strip() for line in result.text.splitlines()]
    assert "7" not in lines


@pytest.mark.asyncio
async def test_extract_docx_paragraphs_and_tables():
    doc = DocxDocument()
    doc.add_paragraph("1. Explain normalization.")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "2."
    table.rows[0].cells[1].text = "Design a schema."
    buf = io.BytesIO()
    doc.save(buf)

    result = await TextExtractor().extract(buf.getvalue(), "docx")

    assert result.file_type == FileType.DOCX
    assert "1. Explain normalization." in result.text
    assert "2. | Design a schema." in result.text


@pytest.mark.asyncio
async def test_extract_plain_text_normalizes_line_endings():
    raw = "1. First\r\n\r\n\r\n\r\n2. Second\fpage two here  ".encode("utf-8")
    result = await TextExtractor().extract(raw, "text")

    assert result.text == "1. First\n\n2. Second\npage two here"


@pytest.mark.asyncio
async def test_extract_plain_text_may_be_empty():
    result = await TextExtractor().extract(b"   ", "text")
    assert result.text == ""


@pytest.mark.asyncio
async def test_unsupported_file_type_rejected():
    with pytest.raises(UnsupportedFileType):
        await TextExtractor().extract(b"data", "xlsx")


@pytest.mark.asyncio
async def test_exactly_max_size_is_accepted():
    data = b"a" * (10 * MB)
    result = await TextExtractor().extract(data, "text")
    assert len(result.text) == 10 * MB


@pytest.mark.asyncio
async def test_one_byte_over_max_size_fails():
    data = b"a" * (10 * MB + 1)
    with pytest.raises(FileTooLarge):
        await TextExtractor().extract(data, "text")


@pytest.mark.asyncio
async def test_declared_size_over_limit_fails_before_parsing():
    with pytest.raises(FileTooLarge):
        await TextExtractor().extract(b"tiny", "pdf", size=10 * MB + 1)


@pytest.mark.asyncio
async def test_corrupt_pdf_raises():
    with pytest.raises(CorruptDocument) as exc_info:
        await TextExtractor().extract(b"%PDF-1.4 this is not really a pdf", "pdf")
    assert exc_info.value.message in {
        "The PDF file could not be opened. It may be damaged or not a PDF.",
        "The PDF content could not be read.",
        "The PDF file contains no extractable text. Scanned documents are not supported.",
    }


@pytest.mark.asyncio
async def test_corrupt_docx_raises():
    with pytest.raises(CorruptDocument) as exc_info:
        await TextExtractor().extract(b"PK\x03\x04 broken zip", "docx")
    # Parser internals stay in the log
    assert exc_info.value.message == (
        "The DOCX file could not be opened. It may be damaged or not a DOCX."
    )


@pytest.mark.asyncio
async def test_pdf_without_text_is_reported_not_silently_empty():
    doc = fitz.open()
    doc.new_page()
    data = doc.tobytes()
    doc.close()

    with pytest.raises(CorruptDocument):
        await TextExtractor().extract(data, "pdf")


@pytest.mark.asyncio
async def test_docx_helper_round_trip():
    result = await TextExtractor().extract(_docx_bytes("Q1: Define entropy."), ".DOCX")
    assert result.text == "Q1: Define entropy."


def test_coerce_file_type_aliases():
    assert coerce_file_type("txt") == FileType.TEXT
    assert coerce_file_type("text/plain") == FileType.TEXT
    assert coerce_file_type(".PDF") == FileType.PDF
    assert coerce_file_type("application/pdf") == FileType.PDF
    assert coerce_file_type(FileType.DOCX) == FileType.DOCX
    with pytest.raises(UnsupportedFileType):
        coerce_file_type("")


def test_normalize_collapses_blank_runs():
    assert normalize_extracted_text("a\n\n\n\nb c") == "a\n\nb c"
