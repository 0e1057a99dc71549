"""
Keyword-overlap scorer.

Pure and deterministic: the same questions and CLOs always produce the same
grid.  For each pair

    score = 100 * |clo_words ∩ question_words| / |clo_words|

where both word sets are ``content_words`` (lowercased, punctuation stripped,
stop words and tokens of two characters or fewer removed).
"""
from __future__ import annotations

import logging
from typing import List, Sequence

from app.exceptions import NoCLOsDefined
from app.models.database_models import AnalysisStrategy, QuestionQuality
from app.services.scoring import (
    CLOInput,
    QuestionInput,
    QuestionResult,
    ScoredMapping,
    Scorer,
    ScoringResult,
    classify_quality,
    default_recommendations,
    detect_bloom_level,
)
from app.utils.helpers import content_words, safe_divide

logger = logging.getLogger(__name__)

# Shared terms at which confidence saturates at 1.0
CONFIDENCE_SATURATION = 5


def keyword_score(clo_words: Sequence[str], question_words: Sequence[str]) -> float:
    """Percentage of the CLO's content words present in the question."""
    if not clo_words:
        return 0.0
    shared = set(clo_words) & set(question_words)
    return round(100.0 * len(shared) / len(clo_words), 2)


class HeuristicScorer(Scorer):
    """Scores questions against CLOs by shared content words."""

    strategy = AnalysisStrategy.LOCAL

    async def score(
        self,
        questions: Sequence[QuestionInput],
        clos: Sequence[CLOInput],
    ) -> ScoringResult:
        if not clos:
            raise NoCLOsDefined()

        clo_words = {clo.id: content_words(clo.description) for clo in clos}
        results: List[QuestionResult] = []

        for question in questions:
            q_words = content_words(question.text)
            q_set = set(q_words)
            mappings: List[ScoredMapping] = []

            for clo in clos:
                words = clo_words[clo.id]
                shared = [w for w in words if w in q_set]
                mappings.append(
                    ScoredMapping(
                        question_id=question.id,
                        clo_id=clo.id,
                        clo_code=clo.code,
                        relevance_score=keyword_score(words, q_words),
                        confidence=min(1.0, len(shared) / CONFIDENCE_SATURATION),
                        analysis=_rationale(shared),
                    )
                )

            best = max(m.relevance_score for m in mappings)
            quality, issues = classify_quality(best)
            results.append(
                QuestionResult(
                    question_id=question.id,
                    question_number=question.number,
                    bloom_level=detect_bloom_level(question.text),
                    quality=quality,
                    issues=issues,
                    mappings=mappings,
                    bloom_reasoning="Detected from action verbs in the question.",
                )
            )

        logger.info(
            "Keyword scoring: %d questions x %d CLOs", len(questions), len(clos)
        )
        return ScoringResult(
            strategy=self.strategy,
            question_results=results,
            summary=_summary(results, len(clos)),
            recommendations=default_recommendations(results),
        )


def _rationale(shared: List[str]) -> str:
    if not shared:
        return "No shared key terms."
    return "Shared key terms: " + ", ".join(shared) + "."


def _summary(results: List[QuestionResult], clo_count: int) -> str:
    total = len(results)
    mapped = sum(1 for r in results if r.quality != QuestionQuality.UNMAPPED)
    avg_best = safe_divide(sum(r.best_score for r in results), total)
    return (
        f"Analyzed {total} questions against {clo_count} CLOs using keyword matching. "
        f"{mapped} of {total} questions have at least one relevant CLO "
        f"(average best relevance {avg_best:.1f}%)."
    )
