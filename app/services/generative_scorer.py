"""
Generative CLO scorer.

Sends one prompt listing every CLO and every question to the generative
text service and asks for a JSON grid of relevance scores.  The reply is
parsed robustly, validated entry by entry, and completed so the caller
always receives one mapping per (question, CLO) pair.

Validation rules:
  - unknown question_number          -> entry dropped, warning
  - unknown clo_code                 -> mapping dropped, warning
  - non-numeric / out-of-range score -> mapping dropped, warning
  - duplicate (question, CLO) pair   -> higher score kept
  - non-object question entry        -> entry dropped, warning
  - pairs the model left out         -> score 0
  - improved question aimed at an unknown CLO -> suggestion dropped, warning
If no entry for a known question survives validation (an empty list
included), or the reply cannot be parsed even after one terser retry,
GenerativeServiceMalformedResponse is raised.
"""
from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.exceptions import GenerativeServiceMalformedResponse, NoCLOsDefined
from app.models.database_models import AnalysisStrategy, BloomLevel, QuestionQuality
from app.services.generative import GenerativeTextService, parse_json_robust
from app.services.scoring import (
    CLOInput,
    ImprovedQuestion,
    QuestionInput,
    QuestionResult,
    ScoredMapping,
    Scorer,
    ScoringResult,
    classify_quality,
    coerce_bloom_level,
    default_recommendations,
    detect_bloom_level,
)
from app.utils.helpers import first_sentence, truncate_text

logger = logging.getLogger(__name__)

RATIONALE_MAX_CHARS = 300

_MAPPING_PROMPT = """\
You are an expert educational assessment analyst specializing in Course \
Learning Outcomes (CLO) mapping.

COURSE LEARNING OUTCOMES (CLOs):
{clo_list}

QUESTIONS TO ANALYZE:
{question_list}

For EACH question:
1. Identify its Bloom's taxonomy level (remember / understand / apply / analyze / evaluate / create) \
and say briefly why.
2. Score its relevance to EACH CLO from 0 to 100 (100 = the question directly \
assesses the CLO at an appropriate cognitive level).
3. Give a one-sentence reason and a confidence between 0 and 1 for each score.
4. List any problems with the question (ambiguous, too broad, unclear wording, ...).
5. If no CLO scores 80 or more, suggest an improved question that targets one \
of the CLOs above; otherwise set "improved_question" to null.

Return ONLY valid JSON, no markdown:
{{
  "overall_summary": "1-2 sentence summary of the analysis",
  "recommendations": ["Recommendation 1", "Recommendation 2"],
  "questions": [
    {{
      "question_number": 1,
      "bloom_level": "understand",
      "bloom_reasoning": "Asks students to explain, indicating understanding",
      "mapped_clos": [
        {{"clo_code": "{example_code}", "relevance_score": 65, "reasoning": "Why it maps", "confidence": 0.9}}
      ],
      "issues": [],
      "improved_question": {{
        "text": "Rewritten question",
        "explanation": "Why the rewrite aligns better",
        "target_clo": "{example_code}",
        "target_bloom_level": "apply"
      }}
    }}
  ]
}}

Analyze ALL {question_count} questions and use the exact CLO codes listed above.\
"""

_RETRY_PROMPT = """\
Return ONLY a JSON object, nothing else.

CLOs:
{clo_list}

Questions:
{question_list}

Format:
{{"questions": [{{"question_number": 1, "bloom_level": "apply", \
"mapped_clos": [{{"clo_code": "{example_code}", "relevance_score": 70}}]}}]}}\
"""


class GenerativeScorer(Scorer):
    """Scores questions against CLOs with a generative model."""

    strategy = AnalysisStrategy.GENERATIVE

    def __init__(self, service: GenerativeTextService, max_tokens: int = 4000) -> None:
        self._service = service
        self.max_tokens = max_tokens

    async def score(
        self,
        questions: Sequence[QuestionInput],
        clos: Sequence[CLOInput],
    ) -> ScoringResult:
        if not clos:
            raise NoCLOsDefined()
        if not questions:
            return ScoringResult(strategy=self.strategy, question_results=[])

        payload = await self._request(questions, clos)
        return self._build_result(payload, questions, clos)

    # ------------------------------------------------------------------
    # Model call
    # ------------------------------------------------------------------

    async def _request(
        self, questions: Sequence[QuestionInput], clos: Sequence[CLOInput]
    ) -> Dict[str, Any]:
        """Ask the model for the grid; one retry with a terser prompt."""
        fmt = _prompt_fields(questions, clos)

        for attempt, template in enumerate((_MAPPING_PROMPT, _RETRY_PROMPT), start=1):
            response = await self._service.complete(
                template.format(**fmt), max_tokens=self.max_tokens
            )
            ok, parsed = parse_json_robust(response)
            if ok and isinstance(parsed, list):
                parsed = {"questions": parsed}
            if ok and isinstance(parsed, dict) and isinstance(parsed.get("questions"), list):
                return parsed
            logger.warning(
                "Generative scoring attempt %d returned no usable JSON. Preview: %s",
                attempt,
                response[:300],
            )

        raise GenerativeServiceMalformedResponse()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _build_result(
        self,
        payload: Dict[str, Any],
        questions: Sequence[QuestionInput],
        clos: Sequence[CLOInput],
    ) -> ScoringResult:
        by_number = {q.number: q for q in questions}
        by_code = {clo.code.strip().upper(): clo for clo in clos}
        warnings: List[str] = []

        # (question_number, clo_id) -> (score, confidence, rationale)
        scores: Dict[Tuple[int, int], Tuple[float, float, Optional[str]]] = {}
        blooms: Dict[int, Any] = {}
        issues: Dict[int, List[str]] = {}

        entries = payload["questions"]
        valid_entries = 0
        mapping_entries = 0
        valid_mappings = 0
        improved: Dict[int, ImprovedQuestion] = {}
        bloom_reasons: Dict[int, str] = {}

        for entry in entries:
            if not isinstance(entry, dict):
                warnings.append(f"Ignored malformed question entry {entry!r}.")
                continue
            number = _as_int(entry.get("question_number"))
            if number not in by_number:
                warnings.append(
                    f"Ignored analysis for unknown question number {entry.get('question_number')!r}."
                )
                continue
            valid_entries += 1
            blooms[number] = entry.get("bloom_level")
            raw_issues = entry.get("issues")
            if isinstance(raw_issues, list):
                issues[number] = [str(i) for i in raw_issues if i]
            if entry.get("bloom_reasoning"):
                bloom_reasons[number] = first_sentence(
                    str(entry["bloom_reasoning"]), RATIONALE_MAX_CHARS
                )
            suggestion = _improved_question(entry.get("improved_question"), by_code)
            if suggestion is not None:
                improved[number] = suggestion
            elif entry.get("improved_question"):
                warnings.append(f"Q{number}: ignored invalid improved question.")

            raw_mappings = entry.get("mapped_clos")
            if not isinstance(raw_mappings, list):
                continue
            for raw in raw_mappings:
                if not isinstance(raw, dict):
                    continue
                mapping_entries += 1
                clo = by_code.get(str(raw.get("clo_code", "")).strip().upper())
                if clo is None:
                    warnings.append(
                        f"Q{number}: ignored mapping to unknown CLO {raw.get('clo_code')!r}."
                    )
                    continue
                score = _as_score(raw.get("relevance_score"))
                if score is None:
                    warnings.append(
                        f"Q{number}: ignored invalid relevance score "
                        f"{raw.get('relevance_score')!r} for {clo.code}."
                    )
                    continue
                valid_mappings += 1

                key = (number, clo.id)
                if key in scores and scores[key][0] >= score:
                    continue
                rationale = raw.get("reasoning") or raw.get("analysis")
                scores[key] = (
                    score,
                    _as_confidence(raw.get("confidence"), score),
                    first_sentence(str(rationale), RATIONALE_MAX_CHARS) if rationale else None,
                )

        if not valid_entries or (mapping_entries and not valid_mappings):
            logger.warning(
                "Generative scoring: no valid entries in response (%d questions, %d mappings)",
                len(entries),
                mapping_entries,
            )
            raise GenerativeServiceMalformedResponse(
                "The AI analysis service returned no usable scores. Please try again."
            )

        for message in warnings:
            logger.warning("Generative scoring: %s", message)

        results: List[QuestionResult] = []
        for question in questions:
            mappings = []
            for clo in clos:
                score, confidence, rationale = scores.get(
                    (question.number, clo.id), (0.0, 0.0, None)
                )
                mappings.append(
                    ScoredMapping(
                        question_id=question.id,
                        clo_id=clo.id,
                        clo_code=clo.code,
                        relevance_score=score,
                        confidence=confidence,
                        analysis=rationale,
                    )
                )
            best = max(m.relevance_score for m in mappings)
            quality, quality_issues = classify_quality(best)
            results.append(
                QuestionResult(
                    question_id=question.id,
                    question_number=question.number,
                    bloom_level=coerce_bloom_level(
                        blooms.get(question.number), detect_bloom_level(question.text)
                    ),
                    quality=quality,
                    issues=issues.get(question.number, []) + quality_issues,
                    mappings=mappings,
                    bloom_reasoning=bloom_reasons.get(question.number),
                    # A perfect fit needs no rewrite
                    improved_question=(
                        None if quality == QuestionQuality.PERFECT
                        else improved.get(question.number)
                    ),
                )
            )

        summary = payload.get("overall_summary")
        recommendations = payload.get("recommendations")
        if not isinstance(recommendations, list) or not recommendations:
            recommendations = default_recommendations(results)

        return ScoringResult(
            strategy=self.strategy,
            question_results=results,
            summary=str(summary) if summary else "Analysis completed.",
            recommendations=[str(r) for r in recommendations if r],
            warnings=warnings,
        )


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------

def _prompt_fields(
    questions: Sequence[QuestionInput], clos: Sequence[CLOInput]
) -> Dict[str, Any]:
    clo_lines = []
    for i, clo in enumerate(clos, start=1):
        bloom = f" (Bloom's: {clo.bloom_level.value})" if clo.bloom_level else ""
        clo_lines.append(f"{i}. {clo.code}: {clo.description}{bloom}")
    return {
        "clo_list": "\n".join(clo_lines),
        "question_list": "\n\n".join(f"Q{q.number}. {q.text}" for q in questions),
        "question_count": len(questions),
        "example_code": clos[0].code,
    }


def _improved_question(
    raw: Any, by_code: Dict[str, CLOInput]
) -> Optional[ImprovedQuestion]:
    """Validate a suggested rewrite; its target CLO must be one of the inputs."""
    if not isinstance(raw, dict):
        return None
    text = str(raw.get("text") or "").strip()
    if not text:
        return None

    target_code = None
    raw_target = raw.get("target_clo") or raw.get("target_clo_code")
    if raw_target:
        clo = by_code.get(str(raw_target).strip().upper())
        if clo is None:
            return None
        target_code = clo.code

    target_bloom = None
    raw_bloom = raw.get("target_bloom_level") or raw.get("target_bloom")
    if raw_bloom:
        try:
            target_bloom = BloomLevel(str(raw_bloom).lower().strip())
        except ValueError:
            target_bloom = None

    explanation = raw.get("explanation")
    return ImprovedQuestion(
        text=text,
        explanation=(
            truncate_text(str(explanation).strip(), 600) if explanation else None
        ),
        target_clo_code=target_code,
        target_bloom_level=target_bloom,
    )


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(str(value).strip().lstrip("Qq").rstrip("."))
    except (TypeError, ValueError):
        return None


def _as_score(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        score = float(str(value).strip().rstrip("%"))
    except ValueError:
        return None
    if math.isnan(score) or score < 0 or score > 100:
        return None
    return round(score, 2)


def _as_confidence(value: Any, score: float) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return round(score / 100.0, 2)
    if math.isnan(confidence):
        return round(score / 100.0, 2)
    return min(1.0, max(0.0, confidence))
