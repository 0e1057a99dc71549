"""
Pydantic schemas for request/response validation.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime

from app.models.database_models import (
    AnalysisStrategy,
    BloomLevel,
    DocumentStatus,
    FileType,
    QuestionQuality,
)


# CLO Set Schemas
class CLOSetCreate(BaseModel):
    """Schema for creating a CLO set."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class CLOCreate(BaseModel):
    """Schema for adding a learning outcome to a set."""

    code: str = Field(..., min_length=1, max_length=50)
    description: str = Field(..., min_length=1)
    bloom_level: Optional[BloomLevel] = None
    order_index: Optional[int] = Field(None, ge=0)


class CLOUpdate(BaseModel):
    """Schema for editing a learning outcome; omitted fields are unchanged."""

    code: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, min_length=1)
    bloom_level: Optional[BloomLevel] = None
    order_index: Optional[int] = Field(None, ge=0)


class CLOResponse(BaseModel):
    """Schema for learning outcome responses."""

    id: int
    clo_set_id: int
    code: str
    description: str
    bloom_level: Optional[BloomLevel] = None
    order_index: int = 0

    model_config = ConfigDict(from_attributes=True)


class CLOSetResponse(BaseModel):
    """Schema for CLO set responses."""

    id: int
    name: str
    description: Optional[str] = None
    created_at: datetime
    clo_count: int = 0
    document_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class CLOSetDetailResponse(CLOSetResponse):
    """CLO set with its learning outcomes."""

    clos: List[CLOResponse] = []


# Analysis Document Schemas
class DocumentCreateRequest(BaseModel):
    """Register a document before uploading its bytes."""

    file_name: Optional[str] = Field(None, max_length=255)
    file_type: str = Field(..., description="pdf, docx or text")
    file_size: int = Field(..., ge=0)


class DocumentCreateResponse(BaseModel):
    """Where to PUT the raw file."""

    document_id: int
    upload_target: str
    status: DocumentStatus


class PasteTextRequest(BaseModel):
    """Pasted question text."""

    text: str
    file_name: Optional[str] = Field(None, max_length=255)


class ParseResponse(BaseModel):
    """Result of extraction + segmentation."""

    document_id: int
    total_questions: int
    warnings: List[str] = []


class DocumentResponse(BaseModel):
    """Schema for analysis document responses."""

    id: int
    clo_set_id: int
    file_name: Optional[str] = None
    file_type: FileType
    file_size: int
    status: DocumentStatus
    total_questions: int
    error_message: Optional[str] = None
    uploaded_at: datetime
    parsed_at: Optional[datetime] = None
    analyzed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class QuestionResponse(BaseModel):
    """Schema for extracted question responses."""

    id: int
    question_number: int
    question_text: str
    bloom_level: Optional[BloomLevel] = None
    bloom_reasoning: Optional[str] = None
    quality: Optional[QuestionQuality] = None
    issues: Optional[List[str]] = None
    improved_question_text: Optional[str] = None
    improved_explanation: Optional[str] = None
    improved_target_clo: Optional[str] = None
    improved_target_bloom: Optional[BloomLevel] = None

    model_config = ConfigDict(from_attributes=True)


class QuestionUpdateRequest(BaseModel):
    """New text for one question."""

    question_text: str = Field(..., min_length=1)


class QuestionDeleteResponse(BaseModel):
    document_id: int
    total_questions: int


# Analysis Schemas
class AnalyzeRequest(BaseModel):
    """Which scorer to run."""

    strategy: AnalysisStrategy = AnalysisStrategy.LOCAL


class MappingResponse(BaseModel):
    """One (question, CLO) relevance score."""

    question_id: int
    question_number: int
    clo_id: int
    clo_code: str
    relevance_score: float = Field(..., ge=0, le=100)
    confidence: Optional[float] = None
    analysis: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AnalysisReportResponse(BaseModel):
    """Summary of the latest successful scorer run."""

    strategy: AnalysisStrategy
    total_questions: int
    mapped_questions: int
    unmapped_questions: int
    perfect_questions: int
    good_questions: int
    needs_improvement: int
    overall_summary: Optional[str] = None
    recommendations: Optional[List[str]] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AnalyzeResponse(BaseModel):
    """Result of a scorer run."""

    document_id: int
    strategy: AnalysisStrategy
    total_questions: int
    mappings: List[MappingResponse]
    report: AnalysisReportResponse
    warnings: List[str] = []


class DocumentMappingsResponse(BaseModel):
    document_id: int
    status: DocumentStatus
    mappings: List[MappingResponse]
    report: Optional[AnalysisReportResponse] = None


class AnalysisStatusResponse(BaseModel):
    """Polling view of a document's analysis."""

    document_id: int
    status: DocumentStatus
    is_running: bool
    strategy: Optional[AnalysisStrategy] = None
    elapsed_seconds: Optional[float] = None
    error_message: Optional[str] = None


# Coverage Schemas
class CLOCoverageResponse(BaseModel):
    clo_id: int
    code: str
    coverage_percentage: float
    avg_relevance: float
    mapped_questions: int

    model_config = ConfigDict(from_attributes=True)


class DocumentCoverageResponse(BaseModel):
    document_id: int
    avg_relevance: float
    total_questions: int

    model_config = ConfigDict(from_attributes=True)


class CoverageResponse(BaseModel):
    """Per-CLO and per-document coverage for a CLO set."""

    clo_set_id: int
    threshold: float
    total_questions: int
    per_clo: List[CLOCoverageResponse]
    per_document: List[DocumentCoverageResponse]

    model_config = ConfigDict(from_attributes=True)


# Health Check Schema
class HealthCheckResponse(BaseModel):
    """Schema for health check response."""

    status: str
    database: str
    ollama: str
    timestamp: datetime
