"""
Parley - Text Utilities
========================
Stateless helpers shared by the embedder and the preference feeder:
input sanitation before embedding, statement clean-up, and the word-set
(Jaccard) similarity used by the preference deduplication gate.
"""

from __future__ import annotations

import re

_WHITESPACE_RE = re.compile(r"\s+")

# Trailing conjunction left over when a capture stops mid-clause
_TRAILING_CONJUNCTION_RE = re.compile(r"\s+(and|but|or|so|because|that|when|where)$", re.IGNORECASE)

# Captures that open like a question or a greeting are not preferences
_NON_STATEMENT_RE = re.compile(r"^(what|how|why|when|where|who|hello|hi|hey)", re.IGNORECASE)

_WORD_RE = re.compile(r"[a-z0-9']+")

# Ignored when comparing preference statements word by word
_CONNECTIVES = frozenset({"a", "an", "the", "and", "or", "of", "to", "with"})

TRUNCATION_MARKER = "..."


def normalize_whitespace(text: str) -> str:
    """Collapse every whitespace run to a single space and trim."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def clean_text(text: str, max_words: int) -> tuple[str, bool]:
    """
    Prepare text for the embedding model.

    Whitespace is collapsed and trimmed.  When the result has more than
    *max_words* words, only the first *max_words* are kept and
    ``TRUNCATION_MARKER`` is appended.  This is lossy on purpose: the
    embedding then represents the opening of a very long document.

    Returns:
        ``(cleaned_text, was_truncated)``
    """
    cleaned = normalize_whitespace(text)
    words = cleaned.split(" ")
    if len(words) > max_words:
        return " ".join(words[:max_words]) + TRUNCATION_MARKER, True
    return cleaned, False


def clean_preference(text: str) -> str | None:
    """
    Normalise a captured preference phrase.

    Returns *None* when the phrase is too short (< 5 chars), too long
    (> 200 chars), or reads like a question or greeting.
    """
    cleaned = normalize_whitespace(text)
    cleaned = _TRAILING_CONJUNCTION_RE.sub("", cleaned)

    if len(cleaned) < 5 or len(cleaned) > 200:
        return None
    if _NON_STATEMENT_RE.match(cleaned):
        return None
    return cleaned


def _word_set(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall(text.lower()) if w not in _CONNECTIVES}


def jaccard_similarity(a: str, b: str) -> float:
    """
    Word-set Jaccard similarity of two strings, 0.0–1.0.

    Words are lower-cased and stripped of punctuation, and connectives
    such as "and" / "the" are ignored, so "brief, concise" and
    "brief and concise" produce the same set.
    """
    words_a = _word_set(a)
    words_b = _word_set(b)
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)
