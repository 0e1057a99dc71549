"""Database and schema models for the CLO analysis backend."""
from app.models.database_models import (
    User,
    CLOSet,
    CLO,
    AnalysisDocument,
    ExtractedQuestion,
    CLOMapping,
    AnalysisReport,
    DocumentStatus,
    FileType,
    BloomLevel,
    QuestionQuality,
    AnalysisStrategy,
)
from app.models.schemas import (
    CLOSetCreate,
    CLOSetResponse,
    CLOCreate,
    CLOResponse,
    DocumentResponse,
    QuestionResponse,
    MappingResponse,
    CoverageResponse,
    HealthCheckResponse,
)

__all__ = [
    # Database models
    "User",
    "CLOSet",
    "CLO",
    "AnalysisDocument",
    "ExtractedQuestion",
    "CLOMapping",
    "AnalysisReport",
    "DocumentStatus",
    "FileType",
    "BloomLevel",
    "QuestionQuality",
    "AnalysisStrategy",
    # Pydantic schemas
    "CLOSetCreate",
    "CLOSetResponse",
    "CLOCreate",
    "CLOResponse",
    "DocumentResponse",
    "QuestionResponse",
    "MappingResponse",
    "CoverageResponse",
    "HealthCheckResponse",
]
