"""
Common utility functions and helpers.
"""
from typing import List, Optional
import logging
import os
import re
import unicodedata

logger = logging.getLogger(__name__)


# Fixed stop-word list used for lexical CLO matching.  Changing it changes
# every heuristic score, so treat it as part of the scoring contract.
STOPWORDS = frozenset({
    'the', 'a', 'an', 'in', 'on', 'at', 'for', 'to', 'of', 'and', 'or', 'but',
    'is', 'are', 'was', 'were', 'be', 'been', 'being', 'have', 'has', 'had',
    'do', 'does', 'did', 'will', 'would', 'should', 'could', 'may', 'might',
    'can', 'this', 'that', 'these', 'those', 'it', 'its', 'they', 'their',
    'what', 'which', 'who', 'when', 'where', 'why', 'how', 'with', 'from',
    'by', 'as', 'such', 'not', 'so', 'than', 'too', 'very', 'just', 'also',
    'into', 'about', 'using', 'use', 'able', 'students', 'student',
    'each', 'any', 'all', 'your', 'you', 'we', 'our', 'i', 'me', 'my',
    'following', 'given', 'based', 'between', 'within', 'them', 'then',
})


def normalize_text(text: str) -> str:
    """
    Normalize text for lexical comparison.

    Lowercases, folds unicode compatibility forms, replaces punctuation
    with spaces and collapses whitespace.

    Args:
        text: Raw text string

    Returns:
        Normalized text
    """
    text = unicodedata.normalize('NFKD', text)
    text = ''.join(ch for ch in text if not unicodedata.combining(ch))
    text = text.lower()
    # Punctuation becomes a word boundary ("client-server" -> "client server")
    text = re.sub(r'[^\w\s]', ' ', text)
    text = text.replace('_', ' ')
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def content_words(text: str, min_length: int = 3) -> List[str]:
    """
    Return the distinct content words of *text* in first-seen order.

    Stop words and tokens shorter than *min_length* are dropped.

    Args:
        text: Input text
        min_length: Minimum token length to keep

    Returns:
        Ordered, de-duplicated list of content words
    """
    seen = set()
    words: List[str] = []
    for word in normalize_text(text).split():
        if len(word) < min_length or word in STOPWORDS or word in seen:
            continue
        seen.add(word)
        words.append(word)
    return words


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Safely divide two numbers, returning default if denominator is zero.

    Args:
        numerator: Numerator
        denominator: Denominator
        default: Default value if division fails

    Returns:
        Result of division or default
    """
    return numerator / denominator if denominator != 0 else default


def truncate_text(text: str, max_length: int = 200, suffix: str = "...") -> str:
    """
    Truncate text to maximum length.

    Args:
        text: Text to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix


def first_sentence(text: str, max_length: int = 300) -> str:
    """Return the first sentence of *text*, capped at *max_length* characters."""
    text = re.sub(r'\s+', ' ', text or '').strip()
    match = re.match(r'(.+?[.!?])(\s|$)', text)
    sentence = match.group(1) if match else text
    return truncate_text(sentence, max_length)


def safe_remove(path: Optional[str]) -> None:
    """Delete a stored file, logging a warning instead of raising."""
    try:
        if path and os.path.exists(path):
            os.remove(path)
    except OSError as exc:
        logger.warning("Could not remove file %r: %s", path, exc)
