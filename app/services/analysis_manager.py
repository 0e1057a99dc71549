"""
Analysis Document Manager.

Owns the lifecycle of one analysis document and orchestrates
Text Extractor -> Question Segmenter -> Scorer, persisting each stage.

State machine
-------------
    pending   -> parsing
    parsing   -> parsed | failed
    parsed    -> analyzing | parsing (re-parse)
    analyzing -> completed | failed | parsed (cancelled first run)
    completed -> analyzing (re-analysis)
    failed    -> parsing (retry)

Every status change goes through ``ensure_transition``.  A scorer run
either persists a complete new mapping set atomically or persists nothing:
a failed first analysis leaves the document ``failed``, a failed
re-analysis leaves it ``completed`` with the previous mappings intact.

Public API
----------
AnalysisDocumentManager.create_document(db, clo_set_id, file_name, file_type, file_size)
AnalysisDocumentManager.store_upload(db, document_id, data, file_name=None)
AnalysisDocumentManager.parse_document(db, document_id) -> ParseOutcome
AnalysisDocumentManager.create_from_pasted_text(db, clo_set_id, text) -> ParseOutcome
AnalysisDocumentManager.update_question(db, document_id, number, text)
AnalysisDocumentManager.delete_question(db, document_id, number)
AnalysisDocumentManager.analyze(db, document_id, strategy) -> AnalysisOutcome
AnalysisDocumentManager.delete_document(db, document_id)
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Tuple

import aiofiles
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import (
    AlreadyAnalyzing,
    CLOAnalysisError,
    CLOSetNotFound,
    CorruptDocument,
    DocumentNotFound,
    GenerativeServiceTimeout,
    InvalidStateTransition,
    NoCLOsDefined,
    QuestionNotFound,
)
from app.models.database_models import (
    CLO,
    AnalysisDocument,
    AnalysisReport,
    AnalysisStrategy,
    CLOMapping,
    CLOSet,
    DocumentStatus,
    ExtractedQuestion,
    FileType,
    QuestionQuality,
)
from app.services.generative import GenerativeTextService
from app.services.question_segmenter import QuestionSegmenter
from app.services.run_registry import RunPhase, run_registry
from app.services.scoring import (
    CLOInput,
    ImprovedQuestion,
    QuestionInput,
    ScoringResult,
    get_scorer,
)
from app.services.text_extractor import TextExtractor, coerce_file_type
from app.utils.helpers import safe_remove

logger = logging.getLogger(__name__)

S = DocumentStatus

ALLOWED_TRANSITIONS: Dict[DocumentStatus, FrozenSet[DocumentStatus]] = {
    S.PENDING: frozenset({S.PARSING}),
    S.PARSING: frozenset({S.PARSED, S.FAILED}),
    S.PARSED: frozenset({S.ANALYZING, S.PARSING}),
    S.ANALYZING: frozenset({S.COMPLETED, S.FAILED, S.PARSED}),
    S.COMPLETED: frozenset({S.ANALYZING}),
    S.FAILED: frozenset({S.PARSING}),
}

PARSEABLE_STATES = frozenset({S.PENDING, S.FAILED, S.PARSED})
ANALYZABLE_STATES = frozenset({S.PARSED, S.COMPLETED})
UPLOADABLE_STATES = frozenset({S.PENDING, S.FAILED})

# Added to GENERATIVE_TIMEOUT before an 'analyzing' claim counts as abandoned
ABANDONED_RUN_GRACE_SECONDS = 30


def ensure_transition(current: DocumentStatus, target: DocumentStatus) -> None:
    """Raise InvalidStateTransition unless current -> target is allowed."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(
            f"Cannot move a document from '{current.value}' to '{target.value}'."
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class ParseOutcome:
    document_id: int
    total_questions: int
    warnings: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class MappingRow:
    """One persisted mapping joined with its question number and CLO code."""

    question_id: int
    question_number: int
    clo_id: int
    clo_code: str
    relevance_score: float
    confidence: Optional[float]
    analysis: Optional[str]


@dataclasses.dataclass
class AnalysisOutcome:
    document_id: int
    strategy: AnalysisStrategy
    total_questions: int
    mappings: List[MappingRow]
    report: AnalysisReport
    warnings: List[str] = dataclasses.field(default_factory=list)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class AnalysisDocumentManager:
    """Drives one document through extraction, segmentation and scoring."""

    def __init__(
        self,
        generative_service: Optional[GenerativeTextService] = None,
        extractor: Optional[TextExtractor] = None,
        segmenter: Optional[QuestionSegmenter] = None,
    ) -> None:
        self._generative = generative_service
        self._extractor = extractor or TextExtractor()
        self._segmenter = segmenter or QuestionSegmenter(generative_service)

    # ------------------------------------------------------------------
    # Creation and upload
    # ------------------------------------------------------------------

    async def create_document(
        self,
        db: AsyncSession,
        clo_set_id: int,
        file_name: Optional[str],
        file_type: str,
        file_size: int,
    ) -> Tuple[AnalysisDocument, str]:
        """
        Register a pending document.

        Returns ``(document, upload_target)``; the raw bytes go to the
        upload target with PUT.

        Raises:
            UnsupportedFileType, FileTooLarge, CLOSetNotFound
        """
        ft = coerce_file_type(file_type)
        self._extractor.check_size(file_size)
        await self._ensure_clo_set(db, clo_set_id)

        document = AnalysisDocument(
            clo_set_id=clo_set_id,
            file_name=file_name,
            file_type=ft,
            file_size=file_size,
            status=S.PENDING,
        )
        db.add(document)
        await db.commit()

        logger.info(
            "Created document id=%d (%s, %s, %d bytes) in CLO set %d",
            document.id, file_name, ft.value, file_size, clo_set_id,
        )
        return document, upload_target(document.id)

    async def store_upload(
        self,
        db: AsyncSession,
        document_id: int,
        data: bytes,
        file_name: Optional[str] = None,
    ) -> AnalysisDocument:
        """Write the raw bytes of a pending (or failed) document to disk."""
        document = await self.get_document(db, document_id)
        if document.status not in UPLOADABLE_STATES:
            raise InvalidStateTransition(
                f"A file can only be uploaded while the document is pending or failed "
                f"(current status: '{document.status.value}')."
            )
        self._extractor.check_size(len(data))

        ext = "txt" if document.file_type == FileType.TEXT else document.file_type.value
        os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
        # Use a UUID-based name on disk to prevent collisions
        file_path = os.path.join(settings.UPLOAD_DIR, f"{uuid.uuid4().hex}.{ext}")

        async with aiofiles.open(file_path, "wb") as out:
            await out.write(data)

        previous_path = document.file_path
        document.file_path = file_path
        document.file_size = len(data)
        if file_name:
            document.file_name = file_name
        await db.commit()
        safe_remove(previous_path)

        logger.info("Stored upload for document %d at %s (%d bytes)", document_id, file_path, len(data))
        return document

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    async def parse_document(self, db: AsyncSession, document_id: int) -> ParseOutcome:
        """
        Extract and segment a document, replacing any previous questions.

        Allowed from pending, failed (retry) and parsed (re-parse).  Any
        extraction or segmentation error leaves the document ``failed`` with
        ``error_message`` set and is re-raised.
        """
        document = await self._recover_abandoned_run(db, await self.get_document(db, document_id))
        if document.status not in PARSEABLE_STATES:
            raise InvalidStateTransition(
                f"Cannot parse a document in '{document.status.value}' state."
            )
        if not document.file_path and document.source_text is None:
            raise InvalidStateTransition("No file has been uploaded for this document yet.")

        ensure_transition(document.status, S.PARSING)
        # Conditional claim: a concurrent parse of the same document gets rowcount 0
        claimed = await db.execute(
            update(AnalysisDocument)
            .where(
                AnalysisDocument.id == document_id,
                AnalysisDocument.status.in_(list(PARSEABLE_STATES)),
            )
            .values(status=S.PARSING, error_message=None)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await db.rollback()
            raise InvalidStateTransition("This document is already being processed.")
        await db.commit()
        document = await self.get_document(db, document_id)

        started = time.monotonic()
        try:
            data = await self._read_source(document)
            extracted = await self._extractor.extract(data, document.file_type)
            segmentation = await self._segmenter.segment(extracted.text)

            await self._clear_results(db, document_id, questions=True)
            db.add_all(
                [
                    ExtractedQuestion(
                        document_id=document_id,
                        question_number=q.number,
                        question_text=q.text,
                    )
                    for q in segmentation.questions
                ]
            )
            ensure_transition(document.status, S.PARSED)
            document.status = S.PARSED
            document.total_questions = segmentation.total_questions
            document.parsed_at = _utcnow()
            document.analyzed_at = None
            await db.commit()
        except Exception as exc:
            await db.rollback()
            await self._set_status(db, document_id, S.PARSING, S.FAILED, _user_message(exc))
            logger.error("Parsing failed for document %d: %s", document_id, exc, exc_info=True)
            raise

        for warning in segmentation.warnings:
            logger.warning("Document %d: %s", document_id, warning)
        logger.info(
            "Parsed document %d: %d questions (%s) in %.2fs",
            document_id,
            segmentation.total_questions,
            segmentation.strategy.value,
            time.monotonic() - started,
        )
        return ParseOutcome(
            document_id=document_id,
            total_questions=segmentation.total_questions,
            warnings=list(segmentation.warnings),
        )

    async def create_from_pasted_text(
        self, db: AsyncSession, clo_set_id: int, text: str, file_name: Optional[str] = None
    ) -> ParseOutcome:
        """Create a text document from pasted input and parse it in one call."""
        size = len((text or "").encode("utf-8"))
        self._extractor.check_size(size)
        await self._ensure_clo_set(db, clo_set_id)

        document = AnalysisDocument(
            clo_set_id=clo_set_id,
            file_name=file_name,
            file_type=FileType.TEXT,
            file_size=size,
            source_text=text or "",
            status=S.PENDING,
        )
        db.add(document)
        await db.commit()
        logger.info("Created pasted-text document id=%d in CLO set %d", document.id, clo_set_id)

        return await self.parse_document(db, document.id)

    # ------------------------------------------------------------------
    # Question editing (parsed only)
    # ------------------------------------------------------------------

    async def update_question(
        self, db: AsyncSession, document_id: int, question_number: int, question_text: str
    ) -> ExtractedQuestion:
        document = await self._recover_abandoned_run(db, await self.get_document(db, document_id))
        _ensure_editable(document)
        question = await self._get_question(db, document_id, question_number)

        question.question_text = question_text.strip()
        question.bloom_level = None
        question.bloom_reasoning = None
        question.quality = None
        question.issues = None
        _apply_improvement(question, None)
        await db.commit()

        logger.info("Updated question %d of document %d", question_number, document_id)
        return question

    async def delete_question(
        self, db: AsyncSession, document_id: int, question_number: int
    ) -> int:
        """Delete one question and renumber the rest 1..n; returns the new total."""
        document = await self._recover_abandoned_run(db, await self.get_document(db, document_id))
        _ensure_editable(document)
        question = await self._get_question(db, document_id, question_number)

        await db.execute(delete(CLOMapping).where(CLOMapping.question_id == question.id))
        await db.execute(delete(ExtractedQuestion).where(ExtractedQuestion.id == question.id))

        result = await db.execute(
            select(ExtractedQuestion)
            .where(ExtractedQuestion.document_id == document_id)
            .order_by(ExtractedQuestion.question_number)
        )
        remaining = list(result.scalars().all())
        for number, q in enumerate(remaining, start=1):
            q.question_number = number

        document.total_questions = len(remaining)
        await db.commit()

        logger.info(
            "Deleted question %d of document %d (%d remaining)",
            question_number, document_id, len(remaining),
        )
        return len(remaining)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(
        self,
        db: AsyncSession,
        document_id: int,
        strategy: AnalysisStrategy = AnalysisStrategy.LOCAL,
    ) -> AnalysisOutcome:
        """
        Run one scorer over the document and replace its mapping set.

        Raises:
            AlreadyAnalyzing:        a run for this document is in flight.
            InvalidStateTransition:  the document is not parsed / completed.
            NoCLOsDefined:           the CLO set is empty (no state change).
            GenerativeService*:      the generative strategy failed.
        """
        strategy = AnalysisStrategy(strategy)
        run = run_registry.claim(document_id, strategy)
        error: Optional[str] = None
        try:
            return await self._run_analysis(db, document_id, strategy, run)
        except BaseException as exc:
            error = _user_message(exc)
            raise
        finally:
            run_registry.release(document_id, error)

    async def _run_analysis(self, db, document_id, strategy, run) -> AnalysisOutcome:
        document = await self._recover_abandoned_run(
            db, await self.get_document(db, document_id), own_run=True
        )
        if document.status == S.ANALYZING:
            raise AlreadyAnalyzing()
        if document.status not in ANALYZABLE_STATES:
            raise InvalidStateTransition(
                f"Cannot analyze a document in '{document.status.value}' state. "
                "Parse it first."
            )

        clos = await self._load_clos(db, document.clo_set_id)
        if not clos:
            raise NoCLOsDefined()

        previous = document.status
        ensure_transition(previous, S.ANALYZING)
        claimed = await db.execute(
            update(AnalysisDocument)
            .where(
                AnalysisDocument.id == document_id,
                AnalysisDocument.status.in_(list(ANALYZABLE_STATES)),
            )
            .values(status=S.ANALYZING, analysis_started_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await db.rollback()
            raise AlreadyAnalyzing()
        await db.commit()

        # Snapshot: edits are rejected outside 'parsed', so this is stable
        result = await db.execute(
            select(ExtractedQuestion)
            .where(ExtractedQuestion.document_id == document_id)
            .order_by(ExtractedQuestion.question_number)
        )
        question_rows = list(result.scalars().all())
        questions = [
            QuestionInput(id=q.id, number=q.question_number, text=q.question_text)
            for q in question_rows
        ]

        started = time.monotonic()
        try:
            scorer = get_scorer(strategy, self._generative)
            try:
                scoring = await asyncio.wait_for(
                    scorer.score(questions, clos), timeout=settings.GENERATIVE_TIMEOUT
                )
            except asyncio.TimeoutError as exc:
                raise GenerativeServiceTimeout() from exc

            run.phase = RunPhase.SAVING
            elapsed_ms = int((time.monotonic() - started) * 1000)
            report = await self._save_results(
                db, document_id, question_rows, scoring, elapsed_ms
            )
            await db.commit()
        except asyncio.CancelledError:
            await db.rollback()
            restored = S.COMPLETED if previous == S.COMPLETED else S.PARSED
            await self._set_status(db, document_id, S.ANALYZING, restored)
            logger.warning("Analysis of document %d cancelled; status restored to %s",
                           document_id, restored.value)
            raise
        except Exception as exc:
            await db.rollback()
            if previous == S.COMPLETED:
                # Re-analysis: last good mapping set stays in place
                await self._set_status(db, document_id, S.ANALYZING, S.COMPLETED)
            else:
                await self._set_status(db, document_id, S.ANALYZING, S.FAILED, _user_message(exc))
            logger.error(
                "Analysis (%s) failed for document %d: %s",
                strategy.value, document_id, exc, exc_info=True,
            )
            raise

        for warning in scoring.warnings:
            logger.warning("Document %d: %s", document_id, warning)
        logger.info(
            "Analyzed document %d with %s strategy: %d questions x %d CLOs in %d ms",
            document_id, strategy.value, len(questions), len(clos), report.processing_time_ms,
        )
        return AnalysisOutcome(
            document_id=document_id,
            strategy=strategy,
            total_questions=len(questions),
            mappings=await self.list_mappings(db, document_id),
            report=report,
            warnings=list(scoring.warnings),
        )

    async def _save_results(
        self,
        db: AsyncSession,
        document_id: int,
        question_rows: List[ExtractedQuestion],
        scoring: ScoringResult,
        elapsed_ms: int,
    ) -> AnalysisReport:
        """Replace mappings, question annotations and report; caller commits."""
        await self._clear_results(db, document_id, questions=False)

        db.add_all(
            [
                CLOMapping(
                    question_id=m.question_id,
                    clo_id=m.clo_id,
                    relevance_score=m.relevance_score,
                    confidence=m.confidence,
                    analysis=m.analysis,
                )
                for m in scoring.mappings
            ]
        )

        by_id = {q.id: q for q in question_rows}
        for qr in scoring.question_results:
            question = by_id[qr.question_id]
            question.bloom_level = qr.bloom_level
            question.bloom_reasoning = qr.bloom_reasoning
            question.quality = qr.quality
            question.issues = list(qr.issues)
            _apply_improvement(question, qr.improved_question)

        counts = scoring.quality_counts()
        total = len(scoring.question_results)
        report = AnalysisReport(
            document_id=document_id,
            strategy=scoring.strategy,
            total_questions=total,
            mapped_questions=total - counts[QuestionQuality.UNMAPPED],
            unmapped_questions=counts[QuestionQuality.UNMAPPED],
            perfect_questions=counts[QuestionQuality.PERFECT],
            good_questions=counts[QuestionQuality.GOOD],
            needs_improvement=counts[QuestionQuality.NEEDS_IMPROVEMENT],
            overall_summary=scoring.summary,
            recommendations=list(scoring.recommendations),
            processing_time_ms=elapsed_ms,
        )
        db.add(report)

        ensure_transition(S.ANALYZING, S.COMPLETED)
        await db.execute(
            update(AnalysisDocument)
            .where(AnalysisDocument.id == document_id)
            .values(
                status=S.COMPLETED,
                total_questions=len(question_rows),
                analyzed_at=_utcnow(),
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        return report

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_document(self, db: AsyncSession, document_id: int) -> None:
        """Delete a document with its questions, mappings and report (any state)."""
        document = await self.get_document(db, document_id)
        file_path = document.file_path

        await self._clear_results(db, document_id, questions=True)
        await db.execute(delete(AnalysisDocument).where(AnalysisDocument.id == document_id))
        await db.commit()

        safe_remove(file_path)
        run_registry.forget(document_id)
        logger.info("Deleted document id=%d", document_id)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_document(self, db: AsyncSession, document_id: int) -> AnalysisDocument:
        # Status is often changed with bulk UPDATEs, so never trust the identity map
        result = await db.execute(
            select(AnalysisDocument)
            .where(AnalysisDocument.id == document_id)
            .execution_options(populate_existing=True)
        )
        document = result.scalar_one_or_none()
        if document is None:
            raise DocumentNotFound()
        return document

    async def list_questions(
        self, db: AsyncSession, document_id: int
    ) -> List[ExtractedQuestion]:
        await self.get_document(db, document_id)
        result = await db.execute(
            select(ExtractedQuestion)
            .where(ExtractedQuestion.document_id == document_id)
            .order_by(ExtractedQuestion.question_number)
        )
        return list(result.scalars().all())

    async def list_mappings(self, db: AsyncSession, document_id: int) -> List[MappingRow]:
        result = await db.execute(
            select(CLOMapping, ExtractedQuestion.question_number, CLO.code)
            .join(ExtractedQuestion, CLOMapping.question_id == ExtractedQuestion.id)
            .join(CLO, CLOMapping.clo_id == CLO.id)
            .where(ExtractedQuestion.document_id == document_id)
            .order_by(ExtractedQuestion.question_number, CLO.order_index, CLO.id)
        )
        return [
            MappingRow(
                question_id=mapping.question_id,
                question_number=number,
                clo_id=mapping.clo_id,
                clo_code=code,
                relevance_score=mapping.relevance_score,
                confidence=mapping.confidence,
                analysis=mapping.analysis,
            )
            for mapping, number, code in result.all()
        ]

    async def get_report(
        self, db: AsyncSession, document_id: int
    ) -> Optional[AnalysisReport]:
        result = await db.execute(
            select(AnalysisReport).where(AnalysisReport.document_id == document_id)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ensure_clo_set(self, db: AsyncSession, clo_set_id: int) -> None:
        found = await db.execute(select(CLOSet.id).where(CLOSet.id == clo_set_id))
        if found.scalar_one_or_none() is None:
            raise CLOSetNotFound()

    async def _load_clos(self, db: AsyncSession, clo_set_id: int) -> List[CLOInput]:
        result = await db.execute(
            select(CLO).where(CLO.clo_set_id == clo_set_id).order_by(CLO.order_index, CLO.id)
        )
        return [
            CLOInput(id=c.id, code=c.code, description=c.description, bloom_level=c.bloom_level)
            for c in result.scalars().all()
        ]

    async def _get_question(
        self, db: AsyncSession, document_id: int, question_number: int
    ) -> ExtractedQuestion:
        result = await db.execute(
            select(ExtractedQuestion).where(
                ExtractedQuestion.document_id == document_id,
                ExtractedQuestion.question_number == question_number,
            )
        )
        question = result.scalar_one_or_none()
        if question is None:
            raise QuestionNotFound(f"Question {question_number} not found in this document.")
        return question

    async def _clear_results(
        self, db: AsyncSession, document_id: int, questions: bool
    ) -> None:
        """Delete mappings and report (and the questions themselves if asked)."""
        question_ids = select(ExtractedQuestion.id).where(
            ExtractedQuestion.document_id == document_id
        )
        await db.execute(
            delete(CLOMapping)
            .where(CLOMapping.question_id.in_(question_ids))
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(AnalysisReport)
            .where(AnalysisReport.document_id == document_id)
            .execution_options(synchronize_session="fetch")
        )
        if questions:
            await db.execute(
                delete(ExtractedQuestion)
                .where(ExtractedQuestion.document_id == document_id)
                .execution_options(synchronize_session="fetch")
            )

    async def _recover_abandoned_run(
        self, db: AsyncSession, document: AnalysisDocument, own_run: bool = False
    ) -> AnalysisDocument:
        """
        Release a document left in 'analyzing' by a run that no longer exists.

        A run is abandoned when no run for the document is in flight in this
        process and its claim is older than GENERATIVE_TIMEOUT plus a grace
        period (the worker died or restarted mid-run).  The document goes
        back to ``completed`` when it still holds a mapping set, otherwise to
        ``parsed``.  ``own_run`` means the caller holds the registry slot.
        """
        if document.status != S.ANALYZING:
            return document
        if not own_run and run_registry.is_running(document.id):
            return document

        started = document.analysis_started_at
        if started is not None:
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            age = (_utcnow() - started).total_seconds()
            if age < settings.GENERATIVE_TIMEOUT + ABANDONED_RUN_GRACE_SECONDS:
                return document

        restored = S.COMPLETED if document.analyzed_at else S.PARSED
        ensure_transition(S.ANALYZING, restored)
        await db.execute(
            update(AnalysisDocument)
            .where(AnalysisDocument.id == document.id, AnalysisDocument.status == S.ANALYZING)
            .values(status=restored)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.warning(
            "Document %d was left in 'analyzing' by an abandoned run; restored to %s",
            document.id, restored.value,
        )
        return await self.get_document(db, document.id)

    async def _set_status(
        self,
        db: AsyncSession,
        document_id: int,
        current: DocumentStatus,
        target: DocumentStatus,
        error_message: Optional[str] = None,
    ) -> None:
        """Move a document out of a working state after a rollback and commit."""
        ensure_transition(current, target)
        await db.execute(
            update(AnalysisDocument)
            .where(AnalysisDocument.id == document_id)
            .values(status=target, error_message=error_message)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async def _read_source(self, document: AnalysisDocument) -> bytes:
        if document.file_path:
            try:
                async with aiofiles.open(document.file_path, "rb") as fh:
                    return await fh.read()
            except OSError as exc:
                raise CorruptDocument("The uploaded file could not be read from storage.") from exc
        return (document.source_text or "").encode("utf-8")


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------

def upload_target(document_id: int) -> str:
    return f"/api/documents/{document_id}/file"


def _ensure_editable(document: AnalysisDocument) -> None:
    if document.status != S.PARSED:
        raise InvalidStateTransition(
            f"Questions can only be edited while the document is parsed "
            f"(current status: '{document.status.value}')."
        )


def _apply_improvement(
    question: ExtractedQuestion, improved: Optional[ImprovedQuestion]
) -> None:
    question.improved_question_text = improved.text if improved else None
    question.improved_explanation = improved.explanation if improved else None
    question.improved_target_clo = improved.target_clo_code if improved else None
    question.improved_target_bloom = improved.target_bloom_level if improved else None


def _user_message(exc: BaseException) -> str:
    """Message safe to store on the document and show to the instructor."""
    if isinstance(exc, CLOAnalysisError):
        return exc.message
    if isinstance(exc, asyncio.CancelledError):
        return "The analysis was cancelled."
    return "An unexpected error occurred while processing the document."
