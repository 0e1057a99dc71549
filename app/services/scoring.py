"""
CLO relevance scoring: the strategy-agnostic contract.

A ``Scorer`` takes the full question list of one document plus the full CLO
list of its set and returns a complete question × CLO grid of relevance
scores (0-100).  The Analysis Document Manager only ever talks to this
interface; ``get_scorer`` picks the implementation for a strategy.

Bands for a single mapping score:
    strong    score >= 60
    moderate  30 <= score < 60
    weak      score < 30

Question quality from the best mapping score:
    perfect             >= 80
    good                >= 60
    needs_improvement   >= 30
    unmapped            < 30
"""
from __future__ import annotations

import abc
import dataclasses
import re
from typing import Dict, List, Optional, Sequence, Tuple

from app.models.database_models import AnalysisStrategy, BloomLevel, QuestionQuality
from app.services.generative import GenerativeTextService

STRONG_THRESHOLD = 60.0
MODERATE_THRESHOLD = 30.0

PERFECT_THRESHOLD = 80.0
GOOD_THRESHOLD = 60.0
NEEDS_IMPROVEMENT_THRESHOLD = 30.0

# Checked highest level first; the first verb found wins.
BLOOM_VERBS: Dict[BloomLevel, Tuple[str, ...]] = {
    BloomLevel.CREATE: ("create", "design", "develop", "construct", "formulate", "compose",
                        "plan", "produce", "invent", "generate"),
    BloomLevel.EVALUATE: ("evaluate", "judge", "assess", "critique", "justify", "argue",
                          "defend", "support", "rate", "prioritize"),
    BloomLevel.ANALYZE: ("analyze", "analyse", "contrast", "examine", "differentiate",
                         "distinguish", "investigate", "categorize", "relate", "breakdown"),
    BloomLevel.APPLY: ("solve", "use", "demonstrate", "apply", "implement", "execute",
                       "employ", "operate", "show", "calculate", "compute"),
    BloomLevel.UNDERSTAND: ("explain", "describe", "summarize", "interpret", "clarify",
                            "paraphrase", "illustrate", "classify", "compare", "discuss"),
    BloomLevel.REMEMBER: ("list", "name", "identify", "define", "recall", "state",
                          "recognize", "memorize", "repeat", "label"),
}

_BLOOM_PATTERNS = [
    (level, re.compile(r"\b(?:" + "|".join(verbs) + r")\b", re.IGNORECASE))
    for level, verbs in BLOOM_VERBS.items()
]


# ---------------------------------------------------------------------------
# Inputs / outputs
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class QuestionInput:
    """Snapshot of one extracted question taken at the start of a run."""

    id: int
    number: int
    text: str


@dataclasses.dataclass(frozen=True)
class CLOInput:
    id: int
    code: str
    description: str
    bloom_level: Optional[BloomLevel] = None


@dataclasses.dataclass
class ScoredMapping:
    question_id: int
    clo_id: int
    clo_code: str
    relevance_score: float      # 0-100
    confidence: float = 0.0     # 0-1
    analysis: Optional[str] = None

    @property
    def band(self) -> str:
        return relevance_band(self.relevance_score)


@dataclasses.dataclass(frozen=True)
class ImprovedQuestion:
    """A rewrite suggested for a question that is not a perfect fit."""

    text: str
    explanation: Optional[str] = None
    target_clo_code: Optional[str] = None
    target_bloom_level: Optional[BloomLevel] = None


@dataclasses.dataclass
class QuestionResult:
    question_id: int
    question_number: int
    bloom_level: BloomLevel
    quality: QuestionQuality
    issues: List[str]
    mappings: List[ScoredMapping]   # one per CLO, in CLO order
    bloom_reasoning: Optional[str] = None
    improved_question: Optional[ImprovedQuestion] = None

    @property
    def best_score(self) -> float:
        return max((m.relevance_score for m in self.mappings), default=0.0)


@dataclasses.dataclass
class ScoringResult:
    strategy: AnalysisStrategy
    question_results: List[QuestionResult]
    summary: str = ""
    recommendations: List[str] = dataclasses.field(default_factory=list)
    warnings: List[str] = dataclasses.field(default_factory=list)

    @property
    def mappings(self) -> List[ScoredMapping]:
        return [m for qr in self.question_results for m in qr.mappings]

    def quality_counts(self) -> Dict[QuestionQuality, int]:
        counts = {q: 0 for q in QuestionQuality}
        for qr in self.question_results:
            counts[qr.quality] += 1
        return counts


# ---------------------------------------------------------------------------
# Scorer interface
# ---------------------------------------------------------------------------

class Scorer(abc.ABC):
    """Maps every question of one document to every CLO of its set."""

    strategy: AnalysisStrategy

    @abc.abstractmethod
    async def score(
        self,
        questions: Sequence[QuestionInput],
        clos: Sequence[CLOInput],
    ) -> ScoringResult:
        """
        Return a complete mapping grid.

        Raises:
            NoCLOsDefined: *clos* is empty.
        """


def get_scorer(
    strategy: AnalysisStrategy,
    generative_service: Optional[GenerativeTextService] = None,
) -> Scorer:
    """Return the scorer implementation for *strategy*."""
    # Imported here to avoid circular imports at module load time
    from app.services.generative_scorer import GenerativeScorer
    from app.services.heuristic_scorer import HeuristicScorer

    strategy = AnalysisStrategy(strategy)
    if strategy == AnalysisStrategy.LOCAL:
        return HeuristicScorer()
    if generative_service is None:
        raise ValueError("The generative strategy needs a GenerativeTextService")
    return GenerativeScorer(generative_service)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def relevance_band(score: float) -> str:
    if score >= STRONG_THRESHOLD:
        return "strong"
    if score >= MODERATE_THRESHOLD:
        return "moderate"
    return "weak"


def classify_quality(best_score: float) -> Tuple[QuestionQuality, List[str]]:
    """Grade a question by its best mapping score; returns (quality, issues)."""
    if best_score >= PERFECT_THRESHOLD:
        return QuestionQuality.PERFECT, []
    if best_score >= GOOD_THRESHOLD:
        return QuestionQuality.GOOD, []
    if best_score >= NEEDS_IMPROVEMENT_THRESHOLD:
        return QuestionQuality.NEEDS_IMPROVEMENT, [
            "Relevance scores are below 60% - question may need revision"
        ]
    return QuestionQuality.UNMAPPED, [
        "No CLO mappings found above 30% relevance threshold"
    ]


def detect_bloom_level(text: str) -> BloomLevel:
    """Detect a Bloom's level from action verbs; defaults to UNDERSTAND."""
    for level, pattern in _BLOOM_PATTERNS:
        if pattern.search(text or ""):
            return level
    return BloomLevel.UNDERSTAND


def coerce_bloom_level(value: object, fallback: BloomLevel) -> BloomLevel:
    try:
        return BloomLevel(str(value).lower().strip())
    except ValueError:
        return fallback


def default_recommendations(
    question_results: Sequence[QuestionResult],
) -> List[str]:
    """Recommendations derived from the quality distribution alone."""
    total = len(question_results)
    counts = {q: 0 for q in QuestionQuality}
    for qr in question_results:
        counts[qr.quality] += 1

    recommendations = ["Review low-confidence mappings manually to ensure accuracy."]
    if total and counts[QuestionQuality.UNMAPPED] > total / 3:
        recommendations.append(
            "High number of unmapped questions - consider revising CLO descriptions "
            "or question wording."
        )
    if total and counts[QuestionQuality.PERFECT] == 0 and counts[QuestionQuality.GOOD] == 0:
        recommendations.append(
            "No high-quality mappings found. Questions may be too generic or CLO "
            "descriptions need clarification."
        )
    return recommendations
