"""
Authentication and ownership dependencies for FastAPI routes.

Extracts user identity from the X-User-Id header (set by the frontend's
auth provider) and verifies that a CLO set or analysis document belongs to
that user.  Resources owned by someone else are reported as not found.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.exceptions import CLOSetNotFound, DocumentNotFound
from app.models.database_models import AnalysisDocument, CLOSet, User

logger = logging.getLogger(__name__)


async def get_current_user_id(
    x_user_id: str = Header(..., alias="X-User-Id"),
) -> str:
    """Extract the authenticated user ID from the request header. Raises 401 if missing."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header.",
        )
    return x_user_id


async def get_or_create_user(
    user_id: str = Depends(get_current_user_id),
    x_user_email: Optional[str] = Header(None, alias="X-User-Email"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Ensure the user exists in the local users table. Creates if needed."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        user = User(
            id=user_id,
            email=x_user_email or f"{user_id}@clo-analysis.local",
            name=x_user_name,
        )
        db.add(user)
        await db.flush()
        logger.info("Created new user: id=%s email=%s", user_id, user.email)

    return user


async def get_authorized_clo_set(
    clo_set_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> CLOSet:
    """
    Verify that the given CLO set belongs to the current user.
    Returns the CLOSet ORM object or raises CLOSetNotFound.
    """
    result = await db.execute(
        select(CLOSet).where(
            CLOSet.id == clo_set_id,
            CLOSet.user_id == user_id,
        )
    )
    clo_set = result.scalar_one_or_none()

    if clo_set is None:
        raise CLOSetNotFound(f"CLO set {clo_set_id} not found.")

    return clo_set


async def get_authorized_document(
    document_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> AnalysisDocument:
    """
    Verify that the given document's CLO set belongs to the current user.
    Returns the AnalysisDocument ORM object or raises DocumentNotFound.
    """
    result = await db.execute(
        select(AnalysisDocument)
        .join(CLOSet, AnalysisDocument.clo_set_id == CLOSet.id)
        .where(
            AnalysisDocument.id == document_id,
            CLOSet.user_id == user_id,
        )
    )
    document = result.scalar_one_or_none()

    if document is None:
        raise DocumentNotFound(f"Analysis document {document_id} not found.")

    return document
