"""
Error taxonomy for the CLO analysis pipeline.

Every failure the pipeline reports carries a stable ``kind`` plus a message
that is safe to show to an instructor as-is.  ``app.main`` renders these as
``{"error": kind, "detail": message}`` with the class's HTTP status.
"""
from __future__ import annotations

from fastapi import status


class CLOAnalysisError(Exception):
    """Base class for all pipeline errors."""

    kind: str = "CLOAnalysisError"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "The analysis request could not be completed."

    def __init__(self, message: str = "") -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class UnsupportedFileType(CLOAnalysisError):
    kind = "UnsupportedFileType"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Unsupported file type. Accepted: PDF, DOCX or pasted text."


class FileTooLarge(CLOAnalysisError):
    kind = "FileTooLarge"
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    default_message = "File exceeds the upload size limit."


class CorruptDocument(CLOAnalysisError):
    kind = "CorruptDocument"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "The document could not be read."


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class NoCLOsDefined(CLOAnalysisError):
    kind = "NoCLOsDefined"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Add at least one learning outcome to this CLO set before analyzing."


class AlreadyAnalyzing(CLOAnalysisError):
    kind = "AlreadyAnalyzing"
    status_code = status.HTTP_409_CONFLICT
    default_message = "An analysis is already running for this document."


class InvalidStateTransition(CLOAnalysisError):
    kind = "InvalidStateTransition"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This action is not allowed in the document's current state."


# ---------------------------------------------------------------------------
# Generative service
# ---------------------------------------------------------------------------

class GenerativeServiceTimeout(CLOAnalysisError):
    kind = "GenerativeServiceTimeout"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_message = "The AI analysis service took too long to respond. Please try again."


class GenerativeServiceMalformedResponse(CLOAnalysisError):
    kind = "GenerativeServiceMalformedResponse"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "The AI analysis service returned an unusable response. Please try again."


class GenerativeServiceError(CLOAnalysisError):
    kind = "GenerativeServiceError"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "The AI analysis service is unavailable. Please try again later."


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class DocumentNotFound(CLOAnalysisError):
    kind = "DocumentNotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Analysis document not found."


class CLOSetNotFound(CLOAnalysisError):
    kind = "CLOSetNotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "CLO set not found."


class CLONotFound(CLOAnalysisError):
    kind = "CLONotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Learning outcome not found."


class QuestionNotFound(CLOAnalysisError):
    kind = "QuestionNotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Question not found."
