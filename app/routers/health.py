"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from datetime import datetime, timezone
import logging

from app.database import get_db
from app.dependencies.services import get_generative_service
from app.models.schemas import HealthCheckResponse
from app.services.generative import GenerativeTextService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    generative_service: GenerativeTextService = Depends(get_generative_service),
):
    """
    Health check endpoint to verify system status.

    Returns:
        HealthCheckResponse with status of database and Ollama
    """
    # Check database connection
    db_status = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        db_status = "error"

    # Check Ollama connection (only the generative strategy depends on it)
    ollama_status = "ok" if await generative_service.check_health() else "error"

    # Overall status
    overall_status = "healthy" if db_status == "ok" and ollama_status == "ok" else "degraded"

    return HealthCheckResponse(
        status=overall_status,
        database=db_status,
        ollama=ollama_status,
        timestamp=datetime.now(timezone.utc),
    )
