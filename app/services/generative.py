"""
Generative text service boundary.

The pipeline only ever needs one capability from a language model: "given a
prompt, return text".  ``GenerativeTextService`` is that capability; the
production implementation talks to Ollama's /api/generate endpoint, and tests
inject a fake that returns canned text.

This module also holds the robust JSON parsing helpers shared by every
consumer of model output (models wrap JSON in code fences, leave trailing
commas, use Python literals, or surround it with prose).

Public API
----------
GenerativeTextService.complete(prompt) -> str
OllamaGenerativeService(...)
parse_json_robust(text) -> (success, value)
strip_code_fences(text) -> str
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import re
from typing import Any, List, Optional, Tuple

import httpx

from app.config import settings
from app.exceptions import (
    GenerativeServiceError,
    GenerativeServiceMalformedResponse,
    GenerativeServiceTimeout,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------

class GenerativeTextService(abc.ABC):
    """Anything that can turn a prompt into text."""

    @abc.abstractmethod
    async def complete(self, prompt: str, max_tokens: int = 2000) -> str:
        """
        Return the model's text response for *prompt*.

        Raises:
            GenerativeServiceTimeout:           the call exceeded its timeout.
            GenerativeServiceError:             the service is unreachable or errored.
            GenerativeServiceMalformedResponse: the service answered with nothing.
        """

    async def check_health(self) -> bool:
        """Return True if the service is reachable."""
        return True


# ---------------------------------------------------------------------------
# Ollama implementation
# ---------------------------------------------------------------------------

class OllamaGenerativeService(GenerativeTextService):
    """
    Generative text via Ollama /api/generate.

    Limits concurrency to ``max_concurrent`` simultaneous calls per instance
    and uses a low temperature so structured (JSON / numbered-line) output
    stays stable between runs.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_LLM_MODEL
        self.timeout_seconds = float(timeout if timeout is not None else settings.OLLAMA_TIMEOUT)
        self.timeout = httpx.Timeout(self.timeout_seconds, connect=10.0)
        self._transport = transport
        self._semaphore = asyncio.Semaphore(
            max_concurrent or settings.GENERATIVE_MAX_CONCURRENT
        )

    async def complete(self, prompt: str, max_tokens: int = 2000) -> str:
        """POST to Ollama /api/generate and return the response text."""
        async with self._semaphore:
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self._transport
                ) as client:
                    resp = await client.post(
                        f"{self.base_url}/api/generate",
                        json={
                            "model": self.model,
                            "prompt": prompt,
                            "stream": False,
                            "options": {
                                "num_predict": max_tokens,
                                "temperature": 0.1,  # low temp for deterministic JSON
                            },
                        },
                    )
            except httpx.TimeoutException as exc:
                logger.error(
                    "complete: request timed out after %.0f s", self.timeout_seconds
                )
                raise GenerativeServiceTimeout() from exc
            except httpx.HTTPError as exc:
                logger.error("complete: connection error - %s", exc)
                raise GenerativeServiceError() from exc

        if resp.status_code != 200:
            logger.error(
                "complete: Ollama returned HTTP %d: %s",
                resp.status_code,
                resp.text[:300],
            )
            raise GenerativeServiceError()

        try:
            text = resp.json().get("response", "")
        except ValueError as exc:
            raise GenerativeServiceMalformedResponse() from exc

        if not text or not text.strip():
            logger.warning("complete: empty response from model %s", self.model)
            raise GenerativeServiceMalformedResponse(
                "The AI analysis service returned an empty response. Please try again."
            )
        return text

    async def list_models(self) -> Optional[List[str]]:
        """Model names from Ollama /api/tags, or None when Ollama is unreachable."""
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as exc:
            logger.warning("Ollama health check failed: %s", exc)
            return None

        if resp.status_code != 200:
            logger.warning("Ollama /api/tags responded with status %d", resp.status_code)
            return None
        try:
            models = resp.json().get("models") or []
        except ValueError:
            logger.warning("Ollama /api/tags returned a non-JSON body")
            return None
        return [m["name"] for m in models if isinstance(m, dict) and m.get("name")]

    async def check_health(self) -> bool:
        """Return True if Ollama answers /api/tags."""
        return await self.list_models() is not None

    def has_model(self, available: List[str]) -> bool:
        """True when the configured model is among *available*."""
        # Partial match so "qwen2.5:latest" still counts for "qwen2.5:3b"
        family = self.model.split(":")[0]
        return any(m == self.model or m.startswith(family) for m in available)


# ---------------------------------------------------------------------------
# Robust JSON parsing
# ---------------------------------------------------------------------------

def parse_json_robust(response: str) -> Tuple[bool, Any]:
    """
    Try multiple strategies to parse JSON from potentially messy model output.

    Handles:
    - Markdown code fences (```json … ```, ``` … ```)
    - Trailing commas before ] or }
    - Python-style True / False / None
    - Surrounding prose - finds the first balanced {...} or [...] block
    - Missing closing bracket (adds one and retries)

    Returns ``(success, parsed_value)``.
    """
    if not response:
        return False, None

    text = response.strip()

    # Strategy 1: direct parse
    ok, val = _try_json(text)
    if ok:
        return True, val

    # Strategy 2: strip markdown code fences
    stripped = strip_code_fences(text)
    if stripped != text:
        ok, val = _try_json(stripped)
        if ok:
            return True, val
        text = stripped  # work on stripped version from here

    # Strategy 3: fix common JSON mangling
    fixed = _fix_json_issues(text)
    ok, val = _try_json(fixed)
    if ok:
        return True, val

    # Strategy 4: extract JSON structure from surrounding prose
    for bracket_pair in (("{", "}"), ("[", "]")):
        fragment = _extract_json_structure(text, *bracket_pair)
        if fragment:
            ok, val = _try_json(fragment)
            if ok:
                return True, val
            ok, val = _try_json(_fix_json_issues(fragment))
            if ok:
                return True, val

    # Strategy 5: attempt to close a truncated array / object
    for suffix in ("]", "}", "]}", "}]}"):
        ok, val = _try_json(fixed + suffix)
        if ok:
            logger.debug("parse_json_robust: recovered with suffix %r", suffix)
            return True, val

    logger.warning(
        "parse_json_robust: all strategies failed. Preview: %s",
        response[:400],
    )
    return False, None


def strip_code_fences(text: str) -> str:
    """Remove ```json / ``` delimiters that models often wrap output in."""
    # Remove opening fence (with optional language tag)
    text = re.sub(r"^\s*```(?:json|python|javascript|text)?\s*\n?", "", text, flags=re.IGNORECASE)
    # Remove closing fence
    text = re.sub(r"\n?```\s*$", "", text)
    return text.strip()


def _try_json(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def _fix_json_issues(text: str) -> str:
    """Repair the most common JSON mangling patterns from models."""
    # Trailing commas before ] or }
    text = re.sub(r",(\s*[}\]])", r"\1", text)
    # Python → JSON literals
    text = re.sub(r"\bTrue\b", "true", text)
    text = re.sub(r"\bFalse\b", "false", text)
    text = re.sub(r"\bNone\b", "null", text)
    # Strip line comments (// …) - JSON doesn't allow them
    text = re.sub(r"(?m)^\s*//[^\n]*$", "", text)
    return text.strip()


def _extract_json_structure(text: str, open_b: str, close_b: str) -> str:
    """
    Find the first complete balanced open_b … close_b structure in *text*.
    Returns the matched fragment, or empty string if not found.
    """
    start = text.find(open_b)
    if start == -1:
        return ""

    depth = 0
    in_string = False
    escape_next = False

    for i, ch in enumerate(text[start:], start=start):
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == open_b:
            depth += 1
        elif ch == close_b:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""
