"""
Text extraction for uploaded question documents.

Turns raw PDF / DOCX / pasted-text bytes into normalised plain text with
page and section breaks collapsed to newlines.  Every failure is raised as
one of UnsupportedFileType, FileTooLarge or CorruptDocument; nothing is
silently degraded to empty text.
"""
from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import fitz  # PyMuPDF
from docx import Document as DocxDocument

from app.config import settings
from app.exceptions import CorruptDocument, FileTooLarge, UnsupportedFileType
from app.models.database_models import FileType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class ExtractedText:
    """
    Output of the TextExtractor.

    Attributes:
        text:      Normalised UTF-8 plain text.
        file_type: The format the text came from.
        metadata:  page_count (None for DOCX / text), word_count, and any
                   format-specific fields.
    """

    text: str
    file_type: FileType
    metadata: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class TextExtractor:
    """Extracts plain text from PDF, DOCX and pasted-text payloads."""

    def __init__(self, max_size: Optional[int] = None) -> None:
        self.max_size = max_size if max_size is not None else settings.MAX_FILE_SIZE

    async def extract(
        self,
        data: bytes,
        file_type: Any,
        size: Optional[int] = None,
    ) -> ExtractedText:
        """
        Extract normalised text from *data*.

        Args:
            data:      Raw file bytes.
            file_type: FileType or a string such as "pdf", ".docx", "text".
            size:      Declared size in bytes; defaults to ``len(data)``.

        Raises:
            UnsupportedFileType: type is not pdf / docx / text.
            FileTooLarge:        declared or actual size exceeds MAX_FILE_SIZE.
            CorruptDocument:     the parser cannot decode the structure, or a
                                 binary document holds no extractable text.
        """
        ft = coerce_file_type(file_type)
        self.check_size(size if size is not None else len(data))
        self.check_size(len(data))

        if ft == FileType.PDF:
            result = self._extract_pdf(data)
        elif ft == FileType.DOCX:
            result = self._extract_docx(data)
        else:
            result = self._extract_plain(data)

        result.text = normalize_extracted_text(result.text)
        result.metadata["word_count"] = len(result.text.split())

        if ft != FileType.TEXT and not result.text:
            raise CorruptDocument(
                f"The {ft.value.upper()} file contains no extractable text. "
                "Scanned documents are not supported."
            )

        logger.info(
            "Extracted %d chars (%d words) from %s payload",
            len(result.text),
            result.metadata["word_count"],
            ft.value,
        )
        return result

    def check_size(self, size: int) -> None:
        if size > self.max_size:
            raise FileTooLarge(
                f"File exceeds the {self.max_size // (1024 * 1024)} MB size limit."
            )

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    def _extract_pdf(self, data: bytes) -> ExtractedText:
        """Extract page text with PyMuPDF, dropping isolated page numbers."""
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            logger.warning("PyMuPDF could not open PDF payload: %s", exc)
            raise CorruptDocument(
                "The PDF file could not be opened. It may be damaged or not a PDF."
            ) from exc

        try:
            if doc.needs_pass:
                raise CorruptDocument(
                    "PDF is password-protected. Please provide an unlocked copy."
                )

            page_texts: List[str] = []
            try:
                for page in doc:
                    lines = [
                        line
                        for line in page.get_text("text").splitlines()
                        # Skip isolated page numbers (pure digits ≤ 4 chars)
                        if not re.match(r"^\s*\d{1,4}\s*$", line)
                    ]
                    page_texts.append("\n".join(lines))
            except Exception as exc:
                logger.warning("PyMuPDF failed while reading PDF pages: %s", exc)
                raise CorruptDocument("The PDF content could not be read.") from exc

            raw_meta = doc.metadata or {}
            metadata: Dict[str, Any] = {
                "page_count": doc.page_count,
                "title": raw_meta.get("title", ""),
                "author": raw_meta.get("author", ""),
                "file_type": "pdf",
            }
        finally:
            doc.close()

        return ExtractedText(
            text="\n".join(page_texts),
            file_type=FileType.PDF,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # DOCX
    # ------------------------------------------------------------------

    def _extract_docx(self, data: bytes) -> ExtractedText:
        """Extract paragraph and table text from a DOCX file."""
        try:
            doc = DocxDocument(io.BytesIO(data))
        except Exception as exc:
            logger.warning("python-docx could not open DOCX payload: %s", exc)
            raise CorruptDocument(
                "The DOCX file could not be opened. It may be damaged or not a DOCX."
            ) from exc

        parts: List[str] = [para.text for para in doc.paragraphs]

        # Tables: questions are sometimes laid out as "No. | Question | Marks"
        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                non_empty = [c for c in cells if c]
                if non_empty:
                    parts.append(" | ".join(non_empty))

        core = doc.core_properties
        metadata: Dict[str, Any] = {
            "page_count": None,   # python-docx cannot report rendered page count
            "title": core.title or "",
            "author": core.author or "",
            "file_type": "docx",
        }
        return ExtractedText(
            text="\n".join(parts),
            file_type=FileType.DOCX,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Plain text
    # ------------------------------------------------------------------

    def _extract_plain(self, data: bytes) -> ExtractedText:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            logger.warning("Pasted text is not valid UTF-8; decoding as latin-1")
            text = data.decode("latin-1")
        return ExtractedText(
            text=text,
            file_type=FileType.TEXT,
            metadata={"page_count": None, "file_type": "text"},
        )


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------

def coerce_file_type(file_type: Any) -> FileType:
    """Map "pdf", ".PDF", "docx", "txt", FileType.TEXT, ... onto FileType."""
    if isinstance(file_type, FileType):
        return file_type
    ft = str(file_type or "").lower().strip().lstrip(".")
    if ft in ("txt", "plain", "text/plain"):
        ft = "text"
    elif ft == "application/pdf":
        ft = "pdf"
    elif ft == "application/vnd.openxmlformats-officedocument.wordprocessingml.document":
        ft = "docx"
    if ft not in settings.SUPPORTED_FILE_TYPES:
        raise UnsupportedFileType(
            f"Unsupported file type {file_type!r}. Accepted: PDF, DOCX or pasted text."
        )
    return FileType(ft)


def normalize_extracted_text(text: str) -> str:
    """Collapse line endings, page breaks and blank-line runs."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # Form feed, vertical tab, and unicode line / paragraph separators
    text = re.sub(r"[\f\v\u2028\u2029]", "\n", text)
    text = text.replace("\u00a0", " ")
    lines = [line.rstrip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
