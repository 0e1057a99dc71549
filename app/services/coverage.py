"""
Coverage aggregation over persisted mappings.

Read-side only.  Only documents in ``completed`` state contribute.

Per CLO:
    coverage_percentage = 100 * (questions with a mapping to this CLO >= threshold)
                              / (all questions across completed documents)
    avg_relevance       = mean of the mappings to this CLO that are >= threshold
Per document:
    avg_relevance       = mean over its questions of the single highest mapping score
"""
from __future__ import annotations

import dataclasses
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import CLOSetNotFound
from app.models.database_models import (
    CLO,
    AnalysisDocument,
    CLOMapping,
    CLOSet,
    DocumentStatus,
    ExtractedQuestion,
)
from app.utils.helpers import safe_divide

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Inputs / outputs
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class CoverageCLO:
    id: int
    code: str


@dataclasses.dataclass(frozen=True)
class CoverageQuestion:
    id: int
    document_id: int


@dataclasses.dataclass(frozen=True)
class CoverageMapping:
    question_id: int
    clo_id: int
    relevance_score: float


@dataclasses.dataclass
class CLOCoverage:
    clo_id: int
    code: str
    coverage_percentage: float
    avg_relevance: float
    mapped_questions: int


@dataclasses.dataclass
class DocumentCoverage:
    document_id: int
    avg_relevance: float
    total_questions: int


@dataclasses.dataclass
class CoverageReport:
    clo_set_id: Optional[int]
    threshold: float
    total_questions: int
    per_clo: List[CLOCoverage]
    per_document: List[DocumentCoverage]


# ---------------------------------------------------------------------------
# Pure computation
# ---------------------------------------------------------------------------

def compute_coverage(
    clos: Sequence[CoverageCLO],
    document_ids: Sequence[int],
    questions: Sequence[CoverageQuestion],
    mappings: Sequence[CoverageMapping],
    threshold: float = 50.0,
    clo_set_id: Optional[int] = None,
) -> CoverageReport:
    """
    Compute coverage from already-filtered rows.

    *document_ids*, *questions* and *mappings* must belong to completed
    documents only; anything referencing an unknown question is ignored.
    """
    question_doc = {q.id: q.document_id for q in questions}
    total_questions = len(question_doc)

    covered: Dict[int, Set[int]] = defaultdict(set)
    passing_scores: Dict[int, List[float]] = defaultdict(list)
    best_by_question: Dict[int, float] = {}

    for m in mappings:
        if m.question_id not in question_doc:
            continue
        best = best_by_question.get(m.question_id)
        if best is None or m.relevance_score > best:
            best_by_question[m.question_id] = m.relevance_score
        if m.relevance_score >= threshold:
            covered[m.clo_id].add(m.question_id)
            passing_scores[m.clo_id].append(m.relevance_score)

    per_clo = [
        CLOCoverage(
            clo_id=clo.id,
            code=clo.code,
            coverage_percentage=round(
                100.0 * safe_divide(len(covered[clo.id]), total_questions), 2
            ),
            avg_relevance=round(
                safe_divide(sum(passing_scores[clo.id]), len(passing_scores[clo.id])), 2
            ),
            mapped_questions=len(covered[clo.id]),
        )
        for clo in clos
    ]

    questions_by_doc: Dict[int, List[int]] = defaultdict(list)
    for qid, doc_id in question_doc.items():
        questions_by_doc[doc_id].append(qid)

    per_document = []
    for doc_id in document_ids:
        qids = questions_by_doc.get(doc_id, [])
        best_scores = [best_by_question.get(qid, 0.0) for qid in qids]
        per_document.append(
            DocumentCoverage(
                document_id=doc_id,
                avg_relevance=round(safe_divide(sum(best_scores), len(best_scores)), 2),
                total_questions=len(qids),
            )
        )

    return CoverageReport(
        clo_set_id=clo_set_id,
        threshold=threshold,
        total_questions=total_questions,
        per_clo=per_clo,
        per_document=per_document,
    )


# ---------------------------------------------------------------------------
# Database-backed aggregator
# ---------------------------------------------------------------------------

class CoverageAggregator:
    """Loads a CLO set's completed documents and computes its coverage."""

    def __init__(self, threshold: Optional[float] = None) -> None:
        self.threshold = threshold if threshold is not None else settings.MAPPED_THRESHOLD

    async def get_coverage(self, clo_set_id: int, db: AsyncSession) -> CoverageReport:
        found = await db.execute(select(CLOSet.id).where(CLOSet.id == clo_set_id))
        if found.scalar_one_or_none() is None:
            raise CLOSetNotFound()

        clo_rows = await db.execute(
            select(CLO.id, CLO.code)
            .where(CLO.clo_set_id == clo_set_id)
            .order_by(CLO.order_index, CLO.id)
        )
        clos = [CoverageCLO(id=row.id, code=row.code) for row in clo_rows]

        doc_rows = await db.execute(
            select(AnalysisDocument.id)
            .where(
                AnalysisDocument.clo_set_id == clo_set_id,
                AnalysisDocument.status == DocumentStatus.COMPLETED,
            )
            .order_by(AnalysisDocument.id)
        )
        document_ids = list(doc_rows.scalars().all())

        questions: List[CoverageQuestion] = []
        mappings: List[CoverageMapping] = []
        if document_ids:
            q_rows = await db.execute(
                select(ExtractedQuestion.id, ExtractedQuestion.document_id).where(
                    ExtractedQuestion.document_id.in_(document_ids)
                )
            )
            questions = [CoverageQuestion(id=r.id, document_id=r.document_id) for r in q_rows]

            m_rows = await db.execute(
                select(CLOMapping.question_id, CLOMapping.clo_id, CLOMapping.relevance_score)
                .join(ExtractedQuestion, CLOMapping.question_id == ExtractedQuestion.id)
                .where(ExtractedQuestion.document_id.in_(document_ids))
            )
            mappings = [
                CoverageMapping(
                    question_id=r.question_id,
                    clo_id=r.clo_id,
                    relevance_score=float(r.relevance_score),
                )
                for r in m_rows
            ]

        report = compute_coverage(
            clos, document_ids, questions, mappings, self.threshold, clo_set_id=clo_set_id
        )
        logger.info(
            "Coverage for CLO set %d: %d completed documents, %d questions, %d CLOs",
            clo_set_id, len(document_ids), report.total_questions, len(clos),
        )
        return report
