"""Tests for the analysis document lifecycle: parse, edit, analyze, delete."""
import asyncio
import json
import os
from datetime import datetime, timedelta, timezone

import fitz
import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.exceptions import (
    AlreadyAnalyzing,
    CLOSetNotFound,
    CorruptDocument,
    DocumentNotFound,
    FileTooLarge,
    GenerativeServiceMalformedResponse,
    GenerativeServiceTimeout,
    InvalidStateTransition,
    NoCLOsDefined,
    QuestionNotFound,
    UnsupportedFileType,
)
from app.models.database_models import (
    AnalysisDocument,
    AnalysisReport,
    AnalysisStrategy,
    BloomLevel,
    CLOMapping,
    DocumentStatus,
    ExtractedQuestion,
    QuestionQuality,
)
from app.services.analysis_manager import (
    ALLOWED_TRANSITIONS,
    AnalysisDocumentManager,
    ensure_transition,
)
from app.services.run_registry import RunPhase, run_registry
from app.services.text_extractor import TextExtractor
from tests.conftest import SAMPLE_QUESTIONS, FakeGenerativeService, create_clo_set

GENERATIVE_REPLY = json.dumps(
    {
        "overall_summary": "Model summary.",
        "recommendations": ["Model recommendation."],
        "questions": [
            {"question_number": 1, "bloom_level": "understand",
             "mapped_clos": [{"clo_code": "CLO-1", "relevance_score": 95, "reasoning": "Normalization."}]},
            {"question_number": 2, "bloom_level": "create",
             "mapped_clos": [{"clo_code": "CLO-2", "relevance_score": 90}]},
            {"question_number": 3, "bloom_level": "remember", "mapped_clos": []},
        ],
    }
)


def _pdf_bytes(*lines: str) -> bytes:
    doc = fitz.open()
    page = doc.new_page()
    y = 72
    for line in lines:
        page.insert_text((72, y), line)
        y += 16
    data = doc.tobytes()
    doc.close()
    return data


async def _count(db, model, **filters):
    stmt = select(func.count()).select_from(model)
    for column, value in filters.items():
        stmt = stmt.where(getattr(model, column) == value)
    return (await db.execute(stmt)).scalar_one()


async def _parsed_document(db, manager=None, text=SAMPLE_QUESTIONS):
    clo_set = await create_clo_set(db)
    manager = manager or AnalysisDocumentManager()
    outcome = await manager.create_from_pasted_text(db, clo_set.id, text)
    return manager, outcome.document_id


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

def test_every_status_has_a_transition_entry():
    assert set(ALLOWED_TRANSITIONS) == set(DocumentStatus)


@pytest.mark.parametrize(
    "current, target",
    [
        (DocumentStatus.PENDING, DocumentStatus.ANALYZING),
        (DocumentStatus.PARSING, DocumentStatus.COMPLETED),
        (DocumentStatus.COMPLETED, DocumentStatus.PARSING),
        (DocumentStatus.FAILED, DocumentStatus.ANALYZING),
    ],
)
def test_disallowed_transitions_raise(current, target):
    with pytest.raises(InvalidStateTransition):
        ensure_transition(current, target)


def test_allowed_transitions_pass():
    ensure_transition(DocumentStatus.PARSED, DocumentStatus.ANALYZING)
    ensure_transition(DocumentStatus.COMPLETED, DocumentStatus.ANALYZING)
    ensure_transition(DocumentStatus.FAILED, DocumentStatus.PARSING)


# ---------------------------------------------------------------------------
# Creation, upload and parsing
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_paste_parses_questions(db_session):
    manager, doc_id = await _parsed_document(db_session)

    document = await manager.get_document(db_session, doc_id)
    assert document.status == DocumentStatus.PARSED
    assert document.total_questions == 3
    assert document.parsed_at is not None

    questions = await manager.list_questions(db_session, doc_id)
    assert [q.question_number for q in questions] == [1, 2, 3]
    assert questions[0].question_text.startswith("Explain the principles")


@pytest.mark.asyncio
async def test_empty_paste_is_parsed_with_zero_questions(db_session):
    clo_set = await create_clo_set(db_session)
    outcome = await AnalysisDocumentManager().create_from_pasted_text(db_session, clo_set.id, "   ")

    assert outcome.total_questions == 0
    assert outcome.warnings == ["No questions found in document."]
    document = await AnalysisDocumentManager().get_document(db_session, outcome.document_id)
    assert document.status == DocumentStatus.PARSED


@pytest.mark.asyncio
async def test_paste_into_unknown_clo_set(db_session):
    with pytest.raises(CLOSetNotFound):
        await AnalysisDocumentManager().create_from_pasted_text(db_session, 999, "1. Q?")


@pytest.mark.asyncio
async def test_upload_then_parse_pdf(db_session):
    clo_set = await create_clo_set(db_session)
    manager = AnalysisDocumentManager()
    data = _pdf_bytes("1. Explain normalization.", "2. Design a protocol.")

    document, target = await manager.create_document(
        db_session, clo_set.id, "exam.pdf", "pdf", len(data)
    )
    assert document.status == DocumentStatus.PENDING
    assert target == f"/api/documents/{document.id}/file"

    stored = await manager.store_upload(db_session, document.id, data)
    assert stored.file_path.startswith(settings.UPLOAD_DIR)
    assert os.path.exists(stored.file_path)

    outcome = await manager.parse_document(db_session, document.id)
    assert outcome.total_questions == 2


@pytest.mark.asyncio
async def test_create_document_rejects_bad_type_and_size(db_session):
    clo_set = await create_clo_set(db_session)
    manager = AnalysisDocumentManager()

    with pytest.raises(UnsupportedFileType):
        await manager.create_document(db_session, clo_set.id, "a.xlsx", "xlsx", 10)
    with pytest.raises(FileTooLarge):
        await manager.create_document(
            db_session, clo_set.id, "a.pdf", "pdf", settings.MAX_FILE_SIZE + 1
        )
    document, _ = await manager.create_document(
        db_session, clo_set.id, "a.pdf", "pdf", settings.MAX_FILE_SIZE
    )
    assert document.file_size == settings.MAX_FILE_SIZE


@pytest.mark.asyncio
async def test_parse_without_upload_is_rejected(db_session):
    clo_set = await create_clo_set(db_session)
    manager = AnalysisDocumentManager()
    document, _ = await manager.create_document(db_session, clo_set.id, "a.pdf", "pdf", 100)

    with pytest.raises(InvalidStateTransition):
        await manager.parse_document(db_session, document.id)
    assert (await manager.get_document(db_session, document.id)).status == DocumentStatus.PENDING


@pytest.mark.asyncio
async def test_corrupt_upload_fails_then_retry_succeeds(db_session):
    clo_set = await create_clo_set(db_session)
    manager = AnalysisDocumentManager()
    document, _ = await manager.create_document(db_session, clo_set.id, "a.pdf", "pdf", 20)
    await manager.store_upload(db_session, document.id, b"%PDF-1.4 broken bytes")

    with pytest.raises(CorruptDocument):
        await manager.parse_document(db_session, document.id)

    failed = await manager.get_document(db_session, document.id)
    assert failed.status == DocumentStatus.FAILED
    assert failed.error_message

    first_path = failed.file_path
    await manager.store_upload(db_session, document.id, _pdf_bytes("1. Define a key."))
    assert not os.path.exists(first_path)

    outcome = await manager.parse_document(db_session, document.id)
    assert outcome.total_questions == 1
    document = await manager.get_document(db_session, document.id)
    assert document.status == DocumentStatus.PARSED
    assert document.error_message is None


@pytest.mark.asyncio
async def test_upload_rejected_after_parse(db_session):
    manager, doc_id = await _parsed_document(db_session)
    with pytest.raises(InvalidStateTransition):
        await manager.store_upload(db_session, doc_id, b"1. Another?")


@pytest.mark.asyncio
async def test_reparse_replaces_questions(db_session):
    manager, doc_id = await _parsed_document(db_session)

    outcome = await manager.parse_document(db_session, doc_id)

    assert outcome.total_questions == 3
    assert await _count(db_session, ExtractedQuestion, document_id=doc_id) == 3


class _GatedExtractor(TextExtractor):
    """Holds every extraction until ``gate`` opens."""

    def __init__(self, gate: asyncio.Event) -> None:
        super().__init__()
        self.gate = gate
        self.calls = 0

    async def extract(self, data, file_type, size=None):
        self.calls += 1
        await self.gate.wait()
        return await super().extract(data, file_type, size)


@pytest.mark.asyncio
async def test_concurrent_parse_admits_one_run(db_session):
    _, doc_id = await _parsed_document(db_session)
    gate = asyncio.Event()
    extractor = _GatedExtractor(gate)
    manager = AnalysisDocumentManager(extractor=extractor)
    sessions = async_sessionmaker(db_session.bind, class_=AsyncSession, expire_on_commit=False)

    async with sessions() as other_session:
        first = asyncio.create_task(manager.parse_document(db_session, doc_id))
        second = asyncio.create_task(manager.parse_document(other_session, doc_id))

        # With the gate shut a task can only finish by being rejected
        done, pending = await asyncio.wait(
            {first, second}, timeout=5, return_when=asyncio.FIRST_COMPLETED
        )
        assert len(done) == 1
        rejected = done.pop()
        with pytest.raises(InvalidStateTransition):
            rejected.result()

        gate.set()
        outcome = await pending.pop()

    assert extractor.calls == 1
    assert outcome.total_questions == 3
    assert await _count(db_session, ExtractedQuestion, document_id=doc_id) == 3
    document = await manager.get_document(db_session, doc_id)
    assert document.status == DocumentStatus.PARSED


# ---------------------------------------------------------------------------
# Question editing
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_update_question_text(db_session):
    manager, doc_id = await _parsed_document(db_session)

    question = await manager.update_question(db_session, doc_id, 2, "  Design a routing protocol.  ")

    assert question.question_text == "Design a routing protocol."
    with pytest.raises(QuestionNotFound):
        await manager.update_question(db_session, doc_id, 9, "Nope")


@pytest.mark.asyncio
async def test_delete_question_renumbers(db_session):
    manager, doc_id = await _parsed_document(db_session)

    remaining = await manager.delete_question(db_session, doc_id, 2)

    assert remaining == 2
    questions = await manager.list_questions(db_session, doc_id)
    assert [q.question_number for q in questions] == [1, 2]
    assert questions[1].question_text.startswith("Describe the history")
    assert (await manager.get_document(db_session, doc_id)).total_questions == 2


@pytest.mark.asyncio
async def test_questions_locked_after_analysis(db_session):
    manager, doc_id = await _parsed_document(db_session)
    await manager.analyze(db_session, doc_id, AnalysisStrategy.LOCAL)

    with pytest.raises(InvalidStateTransition):
        await manager.update_question(db_session, doc_id, 1, "Changed")
    with pytest.raises(InvalidStateTransition):
        await manager.delete_question(db_session, doc_id, 1)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_local_analysis_persists_full_grid(db_session):
    manager, doc_id = await _parsed_document(db_session)

    outcome = await manager.analyze(db_session, doc_id, AnalysisStrategy.LOCAL)

    assert outcome.total_questions == 3
    assert len(outcome.mappings) == 6
    grid = {(m.question_number, m.clo_code): m.relevance_score for m in outcome.mappings}
    assert grid[(1, "CLO-1")] == 80.0
    assert grid[(2, "CLO-2")] == 83.33

    document = await manager.get_document(db_session, doc_id)
    assert document.status == DocumentStatus.COMPLETED
    assert document.analyzed_at is not None

    report = await manager.get_report(db_session, doc_id)
    assert report.strategy == AnalysisStrategy.LOCAL
    assert report.perfect_questions == 2
    assert report.unmapped_questions == 1
    assert report.mapped_questions == 2

    questions = await manager.list_questions(db_session, doc_id)
    assert questions[2].quality == QuestionQuality.UNMAPPED

    status = run_registry.get_status(doc_id)
    assert status.phase == RunPhase.COMPLETED
    assert not status.is_running


@pytest.mark.asyncio
async def test_reanalysis_replaces_rather_than_appends(db_session):
    manager, doc_id = await _parsed_document(db_session)

    await manager.analyze(db_session, doc_id, AnalysisStrategy.LOCAL)
    await manager.analyze(db_session, doc_id, AnalysisStrategy.LOCAL)

    mappings = await manager.list_mappings(db_session, doc_id)
    assert len(mappings) == 6
    assert await _count(db_session, AnalysisReport, document_id=doc_id) == 1


@pytest.mark.asyncio
async def test_generative_analysis_uses_model_scores(db_session):
    fake = FakeGenerativeService(GENERATIVE_REPLY)
    manager, doc_id = await _parsed_document(db_session, AnalysisDocumentManager(fake))

    outcome = await manager.analyze(db_session, doc_id, AnalysisStrategy.GENERATIVE)

    assert fake.calls == 1
    grid = {(m.question_number, m.clo_code): m.relevance_score for m in outcome.mappings}
    assert grid == {
        (1, "CLO-1"): 95.0, (1, "CLO-2"): 0.0,
        (2, "CLO-1"): 0.0, (2, "CLO-2"): 90.0,
        (3, "CLO-1"): 0.0, (3, "CLO-2"): 0.0,
    }
    assert outcome.report.strategy == AnalysisStrategy.GENERATIVE
    assert outcome.report.overall_summary == "Model summary."


@pytest.mark.asyncio
async def test_analysis_before_parse_is_rejected(db_session):
    clo_set = await create_clo_set(db_session)
    manager = AnalysisDocumentManager()
    document, _ = await manager.create_document(db_session, clo_set.id, "a.pdf", "pdf", 100)

    with pytest.raises(InvalidStateTransition):
        await manager.analyze(db_session, document.id)


@pytest.mark.asyncio
async def test_no_clos_leaves_status_unchanged(db_session):
    clo_set = await create_clo_set(db_session, clos=[])
    manager = AnalysisDocumentManager()
    outcome = await manager.create_from_pasted_text(db_session, clo_set.id, SAMPLE_QUESTIONS)

    with pytest.raises(NoCLOsDefined):
        await manager.analyze(db_session, outcome.document_id)

    document = await manager.get_document(db_session, outcome.document_id)
    assert document.status == DocumentStatus.PARSED
    assert document.error_message is None


@pytest.mark.asyncio
async def test_first_analysis_failure_marks_failed(db_session):
    fake = FakeGenerativeService("not json", "still not json")
    manager, doc_id = await _parsed_document(db_session, AnalysisDocumentManager(fake))

    with pytest.raises(GenerativeServiceMalformedResponse):
        await manager.analyze(db_session, doc_id, AnalysisStrategy.GENERATIVE)

    document = await manager.get_document(db_session, doc_id)
    assert document.status == DocumentStatus.FAILED
    assert document.error_message
    assert await manager.list_mappings(db_session, doc_id) == []

    status = run_registry.get_status(doc_id)
    assert status.phase == RunPhase.FAILED
    assert status.error == document.error_message


@pytest.mark.asyncio
async def test_failed_reanalysis_keeps_previous_results(db_session):
    fake = FakeGenerativeService("not json")
    manager, doc_id = await _parsed_document(db_session, AnalysisDocumentManager(fake))
    await manager.analyze(db_session, doc_id, AnalysisStrategy.LOCAL)

    with pytest.raises(GenerativeServiceMalformedResponse):
        await manager.analyze(db_session, doc_id, AnalysisStrategy.GENERATIVE)

    document = await manager.get_document(db_session, doc_id)
    assert document.status == DocumentStatus.COMPLETED
    mappings = await manager.list_mappings(db_session, doc_id)
    assert len(mappings) == 6
    assert (await manager.get_report(db_session, doc_id)).strategy == AnalysisStrategy.LOCAL


@pytest.mark.asyncio
async def test_garbage_reanalysis_does_not_zero_previous_results(db_session):
    fake = FakeGenerativeService('{"questions": ["junk", 7, null]}')
    manager, doc_id = await _parsed_document(db_session, AnalysisDocumentManager(fake))
    first = await manager.analyze(db_session, doc_id, AnalysisStrategy.LOCAL)
    before = {(m.question_number, m.clo_code): m.relevance_score for m in first.mappings}

    with pytest.raises(GenerativeServiceMalformedResponse):
        await manager.analyze(db_session, doc_id, AnalysisStrategy.GENERATIVE)

    after = {
        (m.question_number, m.clo_code): m.relevance_score
        for m in await manager.list_mappings(db_session, doc_id)
    }
    assert after == before
    assert (await manager.get_document(db_session, doc_id)).status == DocumentStatus.COMPLETED


@pytest.mark.asyncio
async def test_generative_analysis_stores_improved_questions(db_session):
    reply = json.dumps(
        {
            "questions": [
                {
                    "question_number": 3,
                    "bloom_level": "remember",
                    "bloom_reasoning": "Recall of historical facts.",
                    "mapped_clos": [{"clo_code": "CLO-1", "relevance_score": 10}],
                    "improved_question": {
                        "text": "Explain how normalization avoids update anomalies.",
                        "explanation": "Aligns the question with CLO-1.",
                        "target_clo": "CLO-1",
                        "target_bloom_level": "understand",
                    },
                }
            ]
        }
    )
    fake = FakeGenerativeService(reply)
    manager, doc_id = await _parsed_document(db_session, AnalysisDocumentManager(fake))

    await manager.analyze(db_session, doc_id, AnalysisStrategy.GENERATIVE)

    q3 = (await manager.list_questions(db_session, doc_id))[2]
    assert q3.bloom_reasoning == "Recall of historical facts."
    assert q3.improved_question_text == "Explain how normalization avoids update anomalies."
    assert q3.improved_explanation == "Aligns the question with CLO-1."
    assert q3.improved_target_clo == "CLO-1"
    assert q3.improved_target_bloom == BloomLevel.UNDERSTAND

    # A keyword re-analysis has no suggestions and clears the old ones
    await manager.analyze(db_session, doc_id, AnalysisStrategy.LOCAL)
    q3 = (await manager.list_questions(db_session, doc_id))[2]
    assert q3.improved_question_text is None
    assert q3.bloom_reasoning == "Detected from action verbs in the question."


@pytest.mark.asyncio
async def test_generative_timeout(db_session, monkeypatch):
    fake = FakeGenerativeService(GENERATIVE_REPLY, gate=asyncio.Event())
    manager, doc_id = await _parsed_document(db_session, AnalysisDocumentManager(fake))
    monkeypatch.setattr(settings, "GENERATIVE_TIMEOUT", 0.05)

    with pytest.raises(GenerativeServiceTimeout):
        await manager.analyze(db_session, doc_id, AnalysisStrategy.GENERATIVE)

    document = await manager.get_document(db_session, doc_id)
    assert document.status == DocumentStatus.FAILED


@pytest.mark.asyncio
async def test_concurrent_analysis_rejected(db_session):
    gate = asyncio.Event()
    fake = FakeGenerativeService(GENERATIVE_REPLY, gate=gate)
    manager, doc_id = await _parsed_document(db_session, AnalysisDocumentManager(fake))

    first = asyncio.create_task(manager.analyze(db_session, doc_id, AnalysisStrategy.GENERATIVE))
    await fake.started.wait()
    assert run_registry.is_running(doc_id)

    with pytest.raises(AlreadyAnalyzing):
        await manager.analyze(db_session, doc_id, AnalysisStrategy.LOCAL)

    gate.set()
    outcome = await first
    assert outcome.strategy == AnalysisStrategy.GENERATIVE
    assert not run_registry.is_running(doc_id)


async def _force_analyzing(db, doc_id, started_at):
    await db.execute(
        update(AnalysisDocument)
        .where(AnalysisDocument.id == doc_id)
        .values(status=DocumentStatus.ANALYZING, analysis_started_at=started_at)
    )
    await db.commit()


@pytest.mark.asyncio
async def test_document_already_analyzing_in_database(db_session):
    # A fresh claim from another worker process
    manager, doc_id = await _parsed_document(db_session)
    await _force_analyzing(db_session, doc_id, datetime.now(timezone.utc))

    with pytest.raises(AlreadyAnalyzing):
        await manager.analyze(db_session, doc_id)
    assert (await manager.get_document(db_session, doc_id)).status == DocumentStatus.ANALYZING


@pytest.mark.asyncio
async def test_abandoned_first_run_is_recovered_on_analyze(db_session):
    manager, doc_id = await _parsed_document(db_session)
    await _force_analyzing(db_session, doc_id, datetime.now(timezone.utc) - timedelta(hours=1))

    outcome = await manager.analyze(db_session, doc_id)

    assert outcome.total_questions == 3
    document = await manager.get_document(db_session, doc_id)
    assert document.status == DocumentStatus.COMPLETED


@pytest.mark.asyncio
async def test_abandoned_run_without_claim_time_unblocks_editing(db_session):
    manager, doc_id = await _parsed_document(db_session)
    await _force_analyzing(db_session, doc_id, None)

    question = await manager.update_question(db_session, doc_id, 1, "Define a primary key.")

    assert question.question_text == "Define a primary key."
    assert (await manager.get_document(db_session, doc_id)).status == DocumentStatus.PARSED


@pytest.mark.asyncio
async def test_abandoned_reanalysis_restores_completed_then_reparse_rejected(db_session):
    manager, doc_id = await _parsed_document(db_session)
    await manager.analyze(db_session, doc_id)
    await _force_analyzing(db_session, doc_id, datetime.now(timezone.utc) - timedelta(hours=1))

    # Completed documents are not re-parseable; the last good mappings survive
    with pytest.raises(InvalidStateTransition):
        await manager.parse_document(db_session, doc_id)

    document = await manager.get_document(db_session, doc_id)
    assert document.status == DocumentStatus.COMPLETED
    assert len(await manager.list_mappings(db_session, doc_id)) == 6


@pytest.mark.asyncio
async def test_in_flight_run_is_not_treated_as_abandoned(db_session):
    gate = asyncio.Event()
    fake = FakeGenerativeService(GENERATIVE_REPLY, gate=gate)
    manager, doc_id = await _parsed_document(db_session, AnalysisDocumentManager(fake))

    task = asyncio.create_task(manager.analyze(db_session, doc_id, AnalysisStrategy.GENERATIVE))
    await fake.started.wait()
    await db_session.execute(
        update(AnalysisDocument)
        .where(AnalysisDocument.id == doc_id)
        .values(analysis_started_at=datetime.now(timezone.utc) - timedelta(hours=1))
    )
    await db_session.commit()

    with pytest.raises(InvalidStateTransition):
        await manager.update_question(db_session, doc_id, 1, "Changed.")

    gate.set()
    await task
    assert (await manager.get_document(db_session, doc_id)).status == DocumentStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancelled_first_analysis_returns_to_parsed(db_session):
    fake = FakeGenerativeService(GENERATIVE_REPLY, gate=asyncio.Event())
    manager, doc_id = await _parsed_document(db_session, AnalysisDocumentManager(fake))

    task = asyncio.create_task(manager.analyze(db_session, doc_id, AnalysisStrategy.GENERATIVE))
    await fake.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    document = await manager.get_document(db_session, doc_id)
    assert document.status == DocumentStatus.PARSED
    assert not run_registry.is_running(doc_id)


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_document_cascades(db_session):
    manager, doc_id = await _parsed_document(db_session)
    await manager.analyze(db_session, doc_id)

    await manager.delete_document(db_session, doc_id)

    with pytest.raises(DocumentNotFound):
        await manager.get_document(db_session, doc_id)
    assert await _count(db_session, ExtractedQuestion, document_id=doc_id) == 0
    assert await _count(db_session, AnalysisReport, document_id=doc_id) == 0
    assert await _count(db_session, CLOMapping) == 0
    assert run_registry.get_status(doc_id) is None


@pytest.mark.asyncio
async def test_delete_removes_uploaded_file(db_session):
    clo_set = await create_clo_set(db_session)
    manager = AnalysisDocumentManager()
    document, _ = await manager.create_document(db_session, clo_set.id, "a.pdf", "pdf", 10)
    stored = await manager.store_upload(db_session, document.id, _pdf_bytes("1. Q?"))
    path = stored.file_path

    await manager.delete_document(db_session, document.id)

    assert not os.path.exists(path)
