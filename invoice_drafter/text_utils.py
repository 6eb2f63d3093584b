"""
Small text helpers shared by the decision, notes and unparsed-line heuristics.
"""

import re
from typing import Iterable

from .config import KEYWORD_OVERLAP_THRESHOLD

_SENTENCE_SPLIT = re.compile(r"(?:\r?\n)+|(?<!\d)[.!?]+(?!\d)")
_LINE_SPLIT = re.compile(r"\r?\n+")

KEYWORD_STOPWORDS = frozenset(
    {
        "this", "that", "with", "from", "into", "your", "their", "them", "they",
        "about", "maybe", "guess", "sometimes", "should", "could", "would", "might",
        "make", "makes", "sense", "just", "also", "like", "kind", "sort",
    }
)


def split_into_sentences(text: str) -> list[str]:
    """Split on line breaks and sentence punctuation, keeping decimals intact."""
    return [part.strip() for part in _SENTENCE_SPLIT.split(text) if part and part.strip()]


def split_into_lines(text: str) -> list[str]:
    return [line.strip() for line in _LINE_SPLIT.split(text) if line.strip()]


def split_note_lines(notes: str) -> list[str]:
    """Split notes into lines, then into sentences ending with punctuation."""
    pieces: list[str] = []
    for line in _LINE_SPLIT.split(notes):
        pieces.extend(re.split(r"(?<=[.!?])\s+", line))
    return [piece.strip() for piece in pieces if piece.strip()]


def normalize_decision_text(text: str) -> str:
    """Lowercase, unify apostrophes and collapse punctuation to spaces."""
    lowered = re.sub(r"[‘’‛]", "'", text.lower())
    lowered = re.sub(r"[^a-z0-9\s']", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def extract_keywords(text: str) -> list[str]:
    """Return the content words (4+ letters, no stopwords) of a text."""
    cleaned = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return [word for word in cleaned.split() if len(word) >= 4 and word not in KEYWORD_STOPWORDS]


def expand_keyword_variants(words: Iterable[str]) -> list[str]:
    """Add singular forms of plural-looking words."""
    expanded: dict[str, None] = {}
    for word in words:
        if not word:
            continue
        expanded[word] = None
        if word.endswith("s") and len(word) > 4:
            expanded[word[:-1]] = None
    return list(expanded)


def keyword_overlap(first: Iterable[str], second: Iterable[str]) -> int:
    return len(set(first) & set(second))


def keywords_overlap(first: Iterable[str], second: Iterable[str]) -> bool:
    """True when two keyword collections share enough words to be related."""
    return keyword_overlap(first, second) >= KEYWORD_OVERLAP_THRESHOLD


def truncate(text: str, limit: int = 120) -> str:
    if len(text) > limit:
        return f"{text[:limit - 3]}..."
    return text
