"""
Question segmentation: normalised document text -> ordered question list.

Two strategies:

pattern     Leading numeric markers at line starts ("1.", "1)", "Q1:",
            "Question 2.") delimit questions.  Output is always renumbered
            1..n, so duplicate or out-of-order markers are harmless.
generative  Long unnumbered text is sent to the generative service, which is
            asked to return one numbered question per line; the reply is then
            run back through the pattern strategy.

Without a generative service, long unnumbered text is split on blank lines.
"""
from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from app.config import settings
from app.exceptions import GenerativeServiceMalformedResponse
from app.services.generative import (
    GenerativeTextService,
    parse_json_robust,
    strip_code_fences,
)

logger = logging.getLogger(__name__)

# "1." "1)" "Q1" "Q1:" "Q1." "Q 1)" "Question 1:" "Question #1." followed by
# whitespace or end of line.  "1.5 marks" is not a marker.
_MARKER_RE = re.compile(
    r"^\s*(?:(?:Question|Q)\s*#?\s*(?P<qnum>\d{1,3})\s*[.):\-]?|(?P<num>\d{1,3})\s*[.)])(?=\s|$)\s*",
    re.IGNORECASE,
)

MAX_QUESTIONS_WARNING = 200
SHORT_QUESTION_CHARS = 15
LONG_QUESTION_CHARS = 500

_SEGMENT_PROMPT = """\
You are an expert educational content analyzer. Extract every question from \
the following exam or assignment text.

DOCUMENT TEXT:
---
{text}
---

Rules:
- Only extract actual questions, not instructions, headers or mark schemes.
- Keep sub-parts (a, b, c) together with their parent question.
- Fix obvious formatting problems but do not invent questions.

Respond with ONE question per line, numbered sequentially, and nothing else:
1. First question text
2. Second question text\
"""


class SegmentationStrategy(str, enum.Enum):
    PATTERN = "pattern"
    PARAGRAPH = "paragraph"
    GENERATIVE = "generative"


@dataclass
class SegmentedQuestion:
    number: int   # 1-based, contiguous
    text: str


@dataclass
class SegmentationResult:
    questions: List[SegmentedQuestion] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    strategy: SegmentationStrategy = SegmentationStrategy.PATTERN

    @property
    def total_questions(self) -> int:
        return len(self.questions)


class QuestionSegmenter:
    """Splits document text into discrete, sequentially numbered questions."""

    SEGMENT_PROMPT = _SEGMENT_PROMPT

    def __init__(
        self,
        generative_service: Optional[GenerativeTextService] = None,
        llm_threshold: Optional[int] = None,
    ) -> None:
        self._generative = generative_service
        self.llm_threshold = (
            llm_threshold if llm_threshold is not None else settings.SEGMENTER_LLM_THRESHOLD
        )

    async def segment(self, text: str) -> SegmentationResult:
        """
        Segment *text* into questions.

        Zero questions is a valid result (the caller still marks the
        document parsed); it is reported through ``warnings``.

        Raises:
            GenerativeServiceTimeout / GenerativeServiceError /
            GenerativeServiceMalformedResponse: only when the generative
            strategy is used and the service fails.
        """
        text = (text or "").strip()
        if not text:
            return SegmentationResult(warnings=validate_questions([]))

        texts, warnings, markers = split_by_markers(text)
        strategy = SegmentationStrategy.PATTERN

        if markers == 0:
            if len(text) > self.llm_threshold and self._generative is not None:
                return await self._segment_generatively(text)
            if len(text) > self.llm_threshold:
                texts = _split_paragraphs(text)
                strategy = SegmentationStrategy.PARAGRAPH
                if len(texts) > 1:
                    warnings.append(
                        "No question numbering found; each paragraph was treated as one question."
                    )
            else:
                texts = [_join_lines(text.splitlines())]

        return _build_result(texts, warnings, strategy)

    async def _segment_generatively(self, text: str) -> SegmentationResult:
        logger.info("segment: %d chars of unnumbered text, using generative segmenter", len(text))
        response = await self._generative.complete(self.SEGMENT_PROMPT.format(text=text))

        cleaned = strip_code_fences(response)
        texts, _warnings, markers = split_by_markers(cleaned)

        if markers == 0:
            # Some models answer in the JSON shape they were trained on anyway
            texts = _questions_from_json(cleaned)

        if not texts:
            logger.warning(
                "segment: generative response had no numbered questions. Preview: %s",
                response[:300],
            )
            raise GenerativeServiceMalformedResponse(
                "The AI service could not identify any questions in this document."
            )

        return _build_result(
            texts,
            ["Questions were identified by AI because the text had no numbering."],
            SegmentationStrategy.GENERATIVE,
        )


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------

def split_by_markers(text: str) -> Tuple[List[str], List[str], int]:
    """
    Pattern strategy.

    Returns ``(question_texts, warnings, marker_count)``.  Question texts
    have their marker stripped and internal line breaks joined.
    """
    segments: List[List[str]] = []
    marker_numbers: List[int] = []
    preamble: List[str] = []

    for line in text.splitlines():
        match = _MARKER_RE.match(line)
        if match:
            marker_numbers.append(int(match.group("qnum") or match.group("num")))
            segments.append([line[match.end():]])
        elif segments:
            segments[-1].append(line)
        elif line.strip():
            preamble.append(line)

    warnings: List[str] = []
    if not marker_numbers:
        return [], warnings, 0

    if preamble:
        warnings.append("Text before the first numbered question was ignored.")

    if marker_numbers != list(range(1, len(marker_numbers) + 1)):
        warnings.append(
            "Question numbering was duplicated or out of order; questions were renumbered."
        )

    texts = [_join_lines(lines) for lines in segments]
    dropped = sum(1 for t in texts if not t)
    if dropped:
        warnings.append(f"{dropped} empty question(s) were dropped.")
    return [t for t in texts if t], warnings, len(marker_numbers)


def validate_questions(questions: List[str]) -> List[str]:
    """Return human-readable warnings about a suspicious question list."""
    warnings: List[str] = []

    if not questions:
        warnings.append("No questions found in document.")
        return warnings

    if len(questions) > MAX_QUESTIONS_WARNING:
        warnings.append("Large number of questions detected. This may take longer to analyze.")

    too_short = sum(1 for q in questions if len(q) < SHORT_QUESTION_CHARS)
    if too_short > len(questions) / 2:
        warnings.append("Many questions seem unusually short. Please verify the extraction.")

    if any(len(q) > LONG_QUESTION_CHARS for q in questions):
        warnings.append("Some questions are very long. They may contain multiple questions.")

    return warnings


def _build_result(
    texts: List[str], warnings: List[str], strategy: SegmentationStrategy
) -> SegmentationResult:
    texts = [t for t in texts if t]
    return SegmentationResult(
        questions=[SegmentedQuestion(number=i, text=t) for i, t in enumerate(texts, start=1)],
        warnings=warnings + validate_questions(texts),
        strategy=strategy,
    )


def _join_lines(lines: List[str]) -> str:
    return re.sub(r"\s+", " ", " ".join(line.strip() for line in lines)).strip()


def _split_paragraphs(text: str) -> List[str]:
    paragraphs = re.split(r"\n\s*\n", text)
    return [p for p in (_join_lines(para.splitlines()) for para in paragraphs) if p]


def _questions_from_json(text: str) -> List[str]:
    ok, parsed = parse_json_robust(text)
    if not ok:
        return []
    items = parsed.get("questions") if isinstance(parsed, dict) else parsed
    if not isinstance(items, list):
        return []

    texts: List[str] = []
    for item in items:
        if isinstance(item, str):
            texts.append(_join_lines(item.splitlines()))
        elif isinstance(item, dict):
            raw = item.get("questionText") or item.get("question_text") or item.get("text") or ""
            texts.append(_join_lines(str(raw).splitlines()))
    return [t for t in texts if t]
