"""
SQLAlchemy ORM models for the CLO analysis database.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Float,
    Enum as SQLEnum,
    JSON,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum

from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums
class DocumentStatus(str, enum.Enum):
    """Lifecycle of one analysis document (see analysis_manager.ALLOWED_TRANSITIONS)."""

    PENDING = "pending"
    PARSING = "parsing"
    PARSED = "parsed"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class FileType(str, enum.Enum):
    """Accepted source formats for an analysis document."""

    PDF = "pdf"
    DOCX = "docx"
    TEXT = "text"


class BloomLevel(str, enum.Enum):
    """Bloom's taxonomy levels, lowest to highest cognitive complexity."""

    REMEMBER = "remember"
    UNDERSTAND = "understand"
    APPLY = "apply"
    ANALYZE = "analyze"
    EVALUATE = "evaluate"
    CREATE = "create"


class QuestionQuality(str, enum.Enum):
    """How well a question aligns with its best-matching CLO."""

    PERFECT = "perfect"
    GOOD = "good"
    NEEDS_IMPROVEMENT = "needs_improvement"
    UNMAPPED = "unmapped"


class AnalysisStrategy(str, enum.Enum):
    """Which scorer produced a mapping set."""

    LOCAL = "local"
    GENERATIVE = "generative"


# Models
class User(Base):
    """Instructor account (synced from the frontend's auth provider)."""

    __tablename__ = "users"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationships
    clo_sets = relationship("CLOSet", back_populates="user", cascade="all, delete-orphan")


class CLOSet(Base):
    """Named grouping of learning outcomes for one course."""

    __tablename__ = "clo_sets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="clo_sets")
    clos = relationship(
        "CLO", back_populates="clo_set", cascade="all, delete-orphan", order_by="CLO.order_index"
    )
    documents = relationship("AnalysisDocument", back_populates="clo_set", cascade="all, delete-orphan")


class CLO(Base):
    """A single course learning outcome."""

    __tablename__ = "clos"

    id = Column(Integer, primary_key=True, index=True)
    clo_set_id = Column(Integer, ForeignKey("clo_sets.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(50), nullable=False)  # e.g. "CLO-1"
    description = Column(Text, nullable=False)
    bloom_level = Column(SQLEnum(BloomLevel), nullable=True)
    order_index = Column(Integer, nullable=False, default=0)

    # Relationships
    clo_set = relationship("CLOSet", back_populates="clos")
    mappings = relationship("CLOMapping", back_populates="clo", cascade="all, delete-orphan")


class AnalysisDocument(Base):
    """One unit of analysis: an uploaded file or a pasted block of questions."""

    __tablename__ = "analysis_documents"

    id = Column(Integer, primary_key=True, index=True)
    clo_set_id = Column(Integer, ForeignKey("clo_sets.id", ondelete="CASCADE"), nullable=False, index=True)
    file_name = Column(String(255), nullable=True)
    file_type = Column(SQLEnum(FileType), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    file_path = Column(String(512), nullable=True)  # UUID-based path on disk once uploaded
    source_text = Column(Text, nullable=True)  # pasted input, kept for re-parse
    status = Column(SQLEnum(DocumentStatus), nullable=False, default=DocumentStatus.PENDING, index=True)
    total_questions = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    uploaded_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    parsed_at = Column(DateTime(timezone=True), nullable=True)
    analysis_started_at = Column(DateTime(timezone=True), nullable=True)  # last analyzing claim
    analyzed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    clo_set = relationship("CLOSet", back_populates="documents")
    questions = relationship(
        "ExtractedQuestion",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="ExtractedQuestion.question_number",
    )
    report = relationship(
        "AnalysisReport", back_populates="document", cascade="all, delete-orphan", uselist=False
    )


class ExtractedQuestion(Base):
    """A question segmented out of an analysis document."""

    __tablename__ = "extracted_questions"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(
        Integer, ForeignKey("analysis_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_number = Column(Integer, nullable=False)  # 1-based position
    question_text = Column(Text, nullable=False)

    # Filled in by the latest scorer run
    bloom_level = Column(SQLEnum(BloomLevel), nullable=True)
    bloom_reasoning = Column(Text, nullable=True)
    quality = Column(SQLEnum(QuestionQuality), nullable=True)
    issues = Column(JSON, nullable=True)

    # Suggested rewrite (generative runs only, never for a perfect fit)
    improved_question_text = Column(Text, nullable=True)
    improved_explanation = Column(Text, nullable=True)
    improved_target_clo = Column(String(50), nullable=True)  # CLO code
    improved_target_bloom = Column(SQLEnum(BloomLevel), nullable=True)

    # Relationships
    document = relationship("AnalysisDocument", back_populates="questions")
    mappings = relationship("CLOMapping", back_populates="question", cascade="all, delete-orphan")


class CLOMapping(Base):
    """Relevance of one question to one CLO, produced by a scorer run."""

    __tablename__ = "clo_mappings"

    id = Column(Integer, primary_key=True, index=True)
    question_id = Column(
        Integer, ForeignKey("extracted_questions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    clo_id = Column(Integer, ForeignKey("clos.id", ondelete="CASCADE"), nullable=False, index=True)
    relevance_score = Column(Float, nullable=False)  # 0-100
    confidence = Column(Float, nullable=True)  # 0-1
    analysis = Column(Text, nullable=True)  # short rationale

    # Relationships
    question = relationship("ExtractedQuestion", back_populates="mappings")
    clo = relationship("CLO", back_populates="mappings")


class AnalysisReport(Base):
    """Summary of the most recent successful scorer run for a document."""

    __tablename__ = "analysis_reports"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(
        Integer,
        ForeignKey("analysis_documents.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    strategy = Column(SQLEnum(AnalysisStrategy), nullable=False)
    total_questions = Column(Integer, nullable=False, default=0)
    mapped_questions = Column(Integer, nullable=False, default=0)
    unmapped_questions = Column(Integer, nullable=False, default=0)
    perfect_questions = Column(Integer, nullable=False, default=0)
    good_questions = Column(Integer, nullable=False, default=0)
    needs_improvement = Column(Integer, nullable=False, default=0)
    overall_summary = Column(Text, nullable=True)
    recommendations = Column(JSON, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationships
    document = relationship("AnalysisDocument", back_populates="report")
