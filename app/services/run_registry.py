"""
In-memory singleton that tracks in-flight analysis runs per document.

A run is claimed before the document is touched and released when the
scorer run finishes, whatever the outcome.  A second claim for the same
document is rejected immediately (never queued).

Usage
-----
    from app.services.run_registry import run_registry

    status = run_registry.claim(document_id, AnalysisStrategy.LOCAL)
    try:
        ...
    finally:
        run_registry.release(document_id)
"""
from __future__ import annotations

import dataclasses
import enum
import logging
import time
from typing import Dict, Optional

from app.exceptions import AlreadyAnalyzing
from app.models.database_models import AnalysisStrategy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Run phase enum
# ---------------------------------------------------------------------------

class RunPhase(str, enum.Enum):
    SCORING = "scoring"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Run status (mutable dataclass shared between the run and pollers)
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class RunStatus:
    document_id: int
    strategy: AnalysisStrategy
    phase: RunPhase = RunPhase.SCORING
    error: Optional[str] = None
    started_at: float = dataclasses.field(default_factory=time.monotonic)
    completed_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self.completed_at is None

    @property
    def elapsed_seconds(self) -> float:
        end = self.completed_at if self.completed_at else time.monotonic()
        return round(end - self.started_at, 2)


# ---------------------------------------------------------------------------
# Registry (class-level state, acts as a singleton)
# ---------------------------------------------------------------------------

class AnalysisRunRegistry:
    """At most one in-flight scorer run per document, per process."""

    _running: Dict[int, RunStatus] = {}
    _last: Dict[int, RunStatus] = {}

    @classmethod
    def is_running(cls, document_id: int) -> bool:
        return document_id in cls._running

    @classmethod
    def get_status(cls, document_id: int) -> Optional[RunStatus]:
        """The in-flight run, else the most recent finished one."""
        return cls._running.get(document_id) or cls._last.get(document_id)

    @classmethod
    def claim(cls, document_id: int, strategy: AnalysisStrategy) -> RunStatus:
        """
        Reserve the run slot for *document_id*.

        Raises:
            AlreadyAnalyzing: a run for this document is in flight.
        """
        # No await between check and insert, so this is atomic on one event loop
        if document_id in cls._running:
            raise AlreadyAnalyzing()
        status = RunStatus(document_id=document_id, strategy=AnalysisStrategy(strategy))
        cls._running[document_id] = status
        logger.info("Analysis run claimed for document %d (%s)", document_id, status.strategy.value)
        return status

    @classmethod
    def release(cls, document_id: int, error: Optional[str] = None) -> None:
        status = cls._running.pop(document_id, None)
        if status is None:
            return
        status.completed_at = time.monotonic()
        if error:
            status.phase = RunPhase.FAILED
            status.error = error
        elif status.phase != RunPhase.FAILED:
            status.phase = RunPhase.COMPLETED
        cls._last[document_id] = status
        logger.info(
            "Analysis run released for document %d (%s, %.2fs)",
            document_id,
            status.phase.value,
            status.elapsed_seconds,
        )

    @classmethod
    def forget(cls, document_id: int) -> None:
        """Drop the finished-run record (document deleted)."""
        cls._last.pop(document_id, None)

    @classmethod
    def reset(cls) -> None:
        cls._running.clear()
        cls._last.clear()


# Module-level singleton instance
run_registry = AnalysisRunRegistry
