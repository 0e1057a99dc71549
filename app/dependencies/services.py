"""
Service dependencies for FastAPI routes.

Routes never construct the generative client or the document manager
themselves; tests override ``get_generative_service`` with a fake.
"""
from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from app.services.analysis_manager import AnalysisDocumentManager
from app.services.coverage import CoverageAggregator
from app.services.generative import GenerativeTextService, OllamaGenerativeService


@lru_cache(maxsize=1)
def get_ollama_service() -> OllamaGenerativeService:
    # One instance per process so its semaphore bounds every caller
    return OllamaGenerativeService()


def get_generative_service() -> GenerativeTextService:
    return get_ollama_service()


def get_analysis_manager(
    generative_service: GenerativeTextService = Depends(get_generative_service),
) -> AnalysisDocumentManager:
    return AnalysisDocumentManager(generative_service=generative_service)


def get_coverage_aggregator() -> CoverageAggregator:
    return CoverageAggregator()
