"""
Analysis document endpoints.

Route summary
-------------
PUT    /api/documents/{document_id}/file                - upload raw bytes (multipart)
POST   /api/documents/{document_id}/parse               - extract + segment questions
GET    /api/documents/{document_id}                     - document detail
DELETE /api/documents/{document_id}                     - delete document (cascades)

GET    /api/documents/{document_id}/questions           - extracted questions
PATCH  /api/documents/{document_id}/questions/{number}  - edit one question (parsed only)
DELETE /api/documents/{document_id}/questions/{number}  - delete one question (parsed only)

POST   /api/documents/{document_id}/analyze             - run a scorer
GET    /api/documents/{document_id}/mappings            - latest mapping set + report
GET    /api/documents/{document_id}/analysis-status     - polling view
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, File, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies.auth import get_authorized_document
from app.dependencies.services import get_analysis_manager
from app.exceptions import FileTooLarge
from app.models.database_models import AnalysisDocument
from app.models.schemas import (
    AnalysisReportResponse,
    AnalysisStatusResponse,
    AnalyzeRequest,
    AnalyzeResponse,
    DocumentMappingsResponse,
    DocumentResponse,
    MappingResponse,
    ParseResponse,
    QuestionDeleteResponse,
    QuestionResponse,
    QuestionUpdateRequest,
)
from app.services.analysis_manager import AnalysisDocumentManager
from app.services.run_registry import run_registry

logger = logging.getLogger(__name__)

router = APIRouter()

UPLOAD_CHUNK_BYTES = 1024 * 1024


# ---------------------------------------------------------------------------
# Upload / parse
# ---------------------------------------------------------------------------

@router.put("/{document_id}/file", response_model=DocumentResponse)
async def upload_file(
    document: AnalysisDocument = Depends(get_authorized_document),
    file: UploadFile = File(...),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> DocumentResponse:
    """
    Upload the raw bytes for a pending document.

    - The file is read in 1 MB slices and rejected as soon as it passes
      MAX_FILE_SIZE (exactly MAX_FILE_SIZE is accepted)
    - Parsing is a separate step: POST /api/documents/{id}/parse
    """
    chunks: List[bytes] = []
    size = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        size += len(chunk)
        if size > settings.MAX_FILE_SIZE:
            raise FileTooLarge(
                f"File exceeds the {settings.MAX_FILE_SIZE // (1024 * 1024)} MB size limit."
            )
        chunks.append(chunk)

    updated = await manager.store_upload(db, document.id, b"".join(chunks), file.filename)
    return DocumentResponse.model_validate(updated)


@router.post("/{document_id}/parse", response_model=ParseResponse)
async def parse_document(
    document: AnalysisDocument = Depends(get_authorized_document),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> ParseResponse:
    outcome = await manager.parse_document(db, document.id)
    return ParseResponse(
        document_id=outcome.document_id,
        total_questions=outcome.total_questions,
        warnings=outcome.warnings,
    )


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(
    document: AnalysisDocument = Depends(get_authorized_document),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> DocumentResponse:
    current = await manager.get_document(db, document.id)
    return DocumentResponse.model_validate(current)


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_document(
    document: AnalysisDocument = Depends(get_authorized_document),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete a document, its questions, mappings and report, and its file."""
    await manager.delete_document(db, document.id)


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

@router.get("/{document_id}/questions", response_model=List[QuestionResponse])
async def list_questions(
    document: AnalysisDocument = Depends(get_authorized_document),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> List[QuestionResponse]:
    questions = await manager.list_questions(db, document.id)
    return [QuestionResponse.model_validate(q) for q in questions]


@router.patch("/{document_id}/questions/{question_number}", response_model=QuestionResponse)
async def update_question(
    question_number: int,
    body: QuestionUpdateRequest,
    document: AnalysisDocument = Depends(get_authorized_document),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> QuestionResponse:
    question = await manager.update_question(db, document.id, question_number, body.question_text)
    return QuestionResponse.model_validate(question)


@router.delete("/{document_id}/questions/{question_number}", response_model=QuestionDeleteResponse)
async def delete_question(
    question_number: int,
    document: AnalysisDocument = Depends(get_authorized_document),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> QuestionDeleteResponse:
    total = await manager.delete_question(db, document.id, question_number)
    return QuestionDeleteResponse(document_id=document.id, total_questions=total)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

@router.post("/{document_id}/analyze", response_model=AnalyzeResponse)
async def analyze_document(
    body: AnalyzeRequest,
    document: AnalysisDocument = Depends(get_authorized_document),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> AnalyzeResponse:
    """
    Run the chosen scorer and replace the document's mapping set.

    A second request while a run is in flight is rejected with 409
    (AlreadyAnalyzing), never queued.
    """
    outcome = await manager.analyze(db, document.id, body.strategy)
    return AnalyzeResponse(
        document_id=outcome.document_id,
        strategy=outcome.strategy,
        total_questions=outcome.total_questions,
        mappings=[MappingResponse.model_validate(m) for m in outcome.mappings],
        report=AnalysisReportResponse.model_validate(outcome.report),
        warnings=outcome.warnings,
    )


@router.get("/{document_id}/mappings", response_model=DocumentMappingsResponse)
async def list_mappings(
    document: AnalysisDocument = Depends(get_authorized_document),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> DocumentMappingsResponse:
    current = await manager.get_document(db, document.id)
    mappings = await manager.list_mappings(db, document.id)
    report = await manager.get_report(db, document.id)
    return DocumentMappingsResponse(
        document_id=current.id,
        status=current.status,
        mappings=[MappingResponse.model_validate(m) for m in mappings],
        report=AnalysisReportResponse.model_validate(report) if report else None,
    )


@router.get("/{document_id}/analysis-status", response_model=AnalysisStatusResponse)
async def analysis_status(
    document: AnalysisDocument = Depends(get_authorized_document),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> AnalysisStatusResponse:
    current = await manager.get_document(db, document.id)
    run = run_registry.get_status(document.id)
    return AnalysisStatusResponse(
        document_id=current.id,
        status=current.status,
        is_running=run_registry.is_running(document.id),
        strategy=run.strategy if run else None,
        elapsed_seconds=run.elapsed_seconds if run else None,
        error_message=current.error_message or (run.error if run else None),
    )
