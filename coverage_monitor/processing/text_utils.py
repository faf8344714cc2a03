"""Text processing utilities for title comparison and keyword matching."""

import re
from difflib import SequenceMatcher
from unicodedata import normalize


def normalize_title(title: str) -> str:
    """Convert title to the form used for similarity comparison.

    Args:
        title: Item title

    Returns:
        Lowercase title with punctuation removed and whitespace collapsed
    """
    if not title:
        return ""

    title = normalize('NFKC', title).lower()
    title = re.sub(r'[^\w\s]', ' ', title)
    return re.sub(r'\s+', ' ', title).strip()


def title_similarity(a: str, b: str) -> float:
    """Similarity ratio (0.0 to 1.0) between two titles after normalization."""
    na, nb = normalize_title(a), normalize_title(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    return SequenceMatcher(None, na, nb).ratio()


def contains_term(text: str, term: str) -> bool:
    """Case-insensitive substring match."""
    term = term.strip().lower()
    return bool(term) and term in text.lower()


def matching_terms(text: str, terms: list[str]) -> list[str]:
    """Return the terms that occur in text, preserving input order."""
    lowered = text.lower()
    return [t for t in terms if t.strip() and t.strip().lower() in lowered]
