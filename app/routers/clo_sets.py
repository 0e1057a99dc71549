"""
CLO set endpoints.

Route summary
-------------
POST   /api/clo-sets                              - create CLO set
GET    /api/clo-sets                              - list user's CLO sets
GET    /api/clo-sets/{clo_set_id}                 - CLO set detail with CLOs
DELETE /api/clo-sets/{clo_set_id}                 - delete set (cascades)

POST   /api/clo-sets/{clo_set_id}/clos            - add a learning outcome
PATCH  /api/clo-sets/{clo_set_id}/clos/{clo_id}   - edit a learning outcome
DELETE /api/clo-sets/{clo_set_id}/clos/{clo_id}   - delete outcome and its mappings

POST   /api/clo-sets/{clo_set_id}/documents       - register a document for upload
POST   /api/clo-sets/{clo_set_id}/documents/paste - create + parse pasted questions
GET    /api/clo-sets/{clo_set_id}/documents       - list analysis documents

GET    /api/clo-sets/{clo_set_id}/coverage        - per-CLO / per-document coverage
"""
import dataclasses
import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies.auth import (
    get_authorized_clo_set,
    get_current_user_id,
    get_or_create_user,
)
from app.dependencies.services import get_analysis_manager, get_coverage_aggregator
from app.exceptions import CLONotFound
from app.models.database_models import CLO, AnalysisDocument, CLOMapping, CLOSet, User
from app.models.schemas import (
    CLOCreate,
    CLOResponse,
    CLOSetCreate,
    CLOSetDetailResponse,
    CLOSetResponse,
    CLOUpdate,
    CoverageResponse,
    DocumentCreateRequest,
    DocumentCreateResponse,
    DocumentResponse,
    ParseResponse,
    PasteTextRequest,
)
from app.services.analysis_manager import AnalysisDocumentManager
from app.services.coverage import CoverageAggregator
from app.utils.helpers import safe_remove

logger = logging.getLogger(__name__)

router = APIRouter()


async def _counts(db: AsyncSession, model, clo_set_ids: List[int]) -> Dict[int, int]:
    if not clo_set_ids:
        return {}
    result = await db.execute(
        select(model.clo_set_id, func.count(model.id).label("cnt"))
        .where(model.clo_set_id.in_(clo_set_ids))
        .group_by(model.clo_set_id)
    )
    return {row.clo_set_id: row.cnt for row in result}


# ---------------------------------------------------------------------------
# CLO set CRUD
# ---------------------------------------------------------------------------

@router.post("", response_model=CLOSetResponse, status_code=status.HTTP_201_CREATED)
async def create_clo_set(
    body: CLOSetCreate,
    user: User = Depends(get_or_create_user),
    db: AsyncSession = Depends(get_db),
) -> CLOSetResponse:
    """Create a new CLO set for the authenticated user."""
    clo_set = CLOSet(name=body.name, description=body.description, user_id=user.id)
    db.add(clo_set)
    await db.flush()

    logger.info("Created CLO set id=%d name=%r for user=%s", clo_set.id, clo_set.name, user.id)
    return CLOSetResponse(
        id=clo_set.id,
        name=clo_set.name,
        description=clo_set.description,
        created_at=clo_set.created_at,
    )


@router.get("", response_model=List[CLOSetResponse])
async def list_clo_sets(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> List[CLOSetResponse]:
    """List the authenticated user's CLO sets, newest first."""
    result = await db.execute(
        select(CLOSet).where(CLOSet.user_id == user_id).order_by(CLOSet.created_at.desc(), CLOSet.id.desc())
    )
    clo_sets = result.scalars().all()

    ids = [s.id for s in clo_sets]
    clo_counts = await _counts(db, CLO, ids)
    doc_counts = await _counts(db, AnalysisDocument, ids)

    return [
        CLOSetResponse(
            id=s.id,
            name=s.name,
            description=s.description,
            created_at=s.created_at,
            clo_count=clo_counts.get(s.id, 0),
            document_count=doc_counts.get(s.id, 0),
        )
        for s in clo_sets
    ]


@router.get("/{clo_set_id}", response_model=CLOSetDetailResponse)
async def get_clo_set(
    clo_set: CLOSet = Depends(get_authorized_clo_set),
    db: AsyncSession = Depends(get_db),
) -> CLOSetDetailResponse:
    """CLO set with its learning outcomes in order."""
    result = await db.execute(
        select(CLO).where(CLO.clo_set_id == clo_set.id).order_by(CLO.order_index, CLO.id)
    )
    clos = result.scalars().all()
    doc_counts = await _counts(db, AnalysisDocument, [clo_set.id])

    return CLOSetDetailResponse(
        id=clo_set.id,
        name=clo_set.name,
        description=clo_set.description,
        created_at=clo_set.created_at,
        clo_count=len(clos),
        document_count=doc_counts.get(clo_set.id, 0),
        clos=[CLOResponse.model_validate(c) for c in clos],
    )


@router.delete("/{clo_set_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_clo_set(
    clo_set: CLOSet = Depends(get_authorized_clo_set),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete a CLO set with its CLOs, documents, questions and mappings."""
    doc_result = await db.execute(
        select(AnalysisDocument.file_path).where(AnalysisDocument.clo_set_id == clo_set.id)
    )
    for (file_path,) in doc_result.all():
        safe_remove(file_path)

    await db.delete(clo_set)
    await db.flush()
    logger.info("Deleted CLO set id=%d name=%r", clo_set.id, clo_set.name)


# ---------------------------------------------------------------------------
# CLOs
# ---------------------------------------------------------------------------

@router.post("/{clo_set_id}/clos", response_model=CLOResponse, status_code=status.HTTP_201_CREATED)
async def create_clo(
    body: CLOCreate,
    clo_set: CLOSet = Depends(get_authorized_clo_set),
    db: AsyncSession = Depends(get_db),
) -> CLOResponse:
    order_index = body.order_index
    if order_index is None:
        count = await db.execute(select(func.count(CLO.id)).where(CLO.clo_set_id == clo_set.id))
        order_index = count.scalar() or 0

    clo = CLO(
        clo_set_id=clo_set.id,
        code=body.code.strip(),
        description=body.description.strip(),
        bloom_level=body.bloom_level,
        order_index=order_index,
    )
    db.add(clo)
    await db.flush()

    logger.info("Added %s to CLO set %d", clo.code, clo_set.id)
    return CLOResponse.model_validate(clo)


@router.patch("/{clo_set_id}/clos/{clo_id}", response_model=CLOResponse)
async def update_clo(
    clo_id: int,
    body: CLOUpdate,
    clo_set: CLOSet = Depends(get_authorized_clo_set),
    db: AsyncSession = Depends(get_db),
) -> CLOResponse:
    clo = await _get_clo(db, clo_set.id, clo_id)

    changes = body.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if value is None and field in ("code", "description", "order_index"):
            continue
        if isinstance(value, str):
            value = value.strip()
        setattr(clo, field, value)
    await db.flush()

    logger.info("Updated CLO %d (%s) in set %d", clo.id, ", ".join(changes) or "no changes", clo_set.id)
    return CLOResponse.model_validate(clo)


@router.delete(
    "/{clo_set_id}/clos/{clo_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_model=None,
)
async def delete_clo(
    clo_id: int,
    clo_set: CLOSet = Depends(get_authorized_clo_set),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete a learning outcome; its mappings go with it."""
    clo = await _get_clo(db, clo_set.id, clo_id)

    await db.execute(delete(CLOMapping).where(CLOMapping.clo_id == clo.id))
    await db.execute(delete(CLO).where(CLO.id == clo.id))
    await db.flush()
    logger.info("Deleted CLO %d from set %d", clo_id, clo_set.id)


async def _get_clo(db: AsyncSession, clo_set_id: int, clo_id: int) -> CLO:
    result = await db.execute(select(CLO).where(CLO.id == clo_id, CLO.clo_set_id == clo_set_id))
    clo = result.scalar_one_or_none()
    if clo is None:
        raise CLONotFound(f"Learning outcome {clo_id} not found.")
    return clo


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@router.post(
    "/{clo_set_id}/documents",
    response_model=DocumentCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_document(
    body: DocumentCreateRequest,
    clo_set: CLOSet = Depends(get_authorized_clo_set),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> DocumentCreateResponse:
    """Register a pending document; PUT the file to ``upload_target`` next."""
    document, target = await manager.create_document(
        db, clo_set.id, body.file_name, body.file_type, body.file_size
    )
    return DocumentCreateResponse(
        document_id=document.id, upload_target=target, status=document.status
    )


@router.post(
    "/{clo_set_id}/documents/paste",
    response_model=ParseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_from_pasted_text(
    body: PasteTextRequest,
    clo_set: CLOSet = Depends(get_authorized_clo_set),
    manager: AnalysisDocumentManager = Depends(get_analysis_manager),
    db: AsyncSession = Depends(get_db),
) -> ParseResponse:
    """Create a document from pasted questions and parse it in one call."""
    outcome = await manager.create_from_pasted_text(db, clo_set.id, body.text, body.file_name)
    return ParseResponse(
        document_id=outcome.document_id,
        total_questions=outcome.total_questions,
        warnings=outcome.warnings,
    )


@router.get("/{clo_set_id}/documents", response_model=List[DocumentResponse])
async def list_documents(
    clo_set: CLOSet = Depends(get_authorized_clo_set),
    db: AsyncSession = Depends(get_db),
) -> List[DocumentResponse]:
    result = await db.execute(
        select(AnalysisDocument)
        .where(AnalysisDocument.clo_set_id == clo_set.id)
        .order_by(AnalysisDocument.uploaded_at.desc(), AnalysisDocument.id.desc())
        .execution_options(populate_existing=True)
    )
    return [DocumentResponse.model_validate(d) for d in result.scalars().all()]


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------

@router.get("/{clo_set_id}/coverage", response_model=CoverageResponse)
async def get_coverage(
    clo_set: CLOSet = Depends(get_authorized_clo_set),
    aggregator: CoverageAggregator = Depends(get_coverage_aggregator),
    db: AsyncSession = Depends(get_db),
) -> CoverageResponse:
    """Coverage over the set's completed documents."""
    report = await aggregator.get_coverage(clo_set.id, db)
    return CoverageResponse(**dataclasses.asdict(report))
