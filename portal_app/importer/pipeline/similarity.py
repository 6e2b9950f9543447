"""
Bounded name similarity used by the row matcher.

Short names are compared with Levenshtein similarity. Longer names use a
cheaper blend of character-set overlap and prefix/suffix agreement so a row
can be scored against many candidates without quadratic edit-distance cost.
"""

from __future__ import annotations

from rapidfuzz.distance import Levenshtein

MATCH_THRESHOLD = 0.75
EARLY_EXIT_SCORE = 0.80
FIRST_WORD_SCORE = 0.95
FIRST_WORD_MIN_LENGTH = 3

SHORT_STRING_MAX_LENGTH = 15
MAX_LENGTH_DIFFERENCE_RATIO = 0.5
AFFIX_WINDOW = 10

JACCARD_WEIGHT = 0.6
PREFIX_WEIGHT = 0.2
SUFFIX_WEIGHT = 0.2


def _clamp(value: float) -> float:
    return float(max(0.0, min(1.0, value)))


def levenshtein_similarity(a: str, b: str) -> float:
    """Return ``(maxLen - distance) / maxLen`` for two strings."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    distance = Levenshtein.distance(a, b)
    return _clamp((max_len - distance) / max_len)


def _affix_ratio(a: str, b: str) -> float:
    window = min(AFFIX_WINDOW, max(len(a), len(b)))
    if window == 0:
        return 1.0
    matches = sum(1 for left, right in zip(a[:AFFIX_WINDOW], b[:AFFIX_WINDOW]) if left == right)
    return matches / window


def approximate_similarity(a: str, b: str) -> float:
    """Blend Jaccard character overlap with prefix and suffix agreement."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    if abs(len(a) - len(b)) > longer * MAX_LENGTH_DIFFERENCE_RATIO:
        return 0.0

    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    jaccard = len(set_a & set_b) / len(union) if union else 1.0
    prefix = _affix_ratio(a, b)
    suffix = _affix_ratio(a[::-1], b[::-1])
    return _clamp(JACCARD_WEIGHT * jaccard + PREFIX_WEIGHT * prefix + SUFFIX_WEIGHT * suffix)


def score(a: str, b: str) -> float:
    """Similarity of two normalized names in ``[0, 1]``."""
    a = a or ""
    b = b or ""
    if a == b:
        return 1.0
    if max(len(a), len(b)) <= SHORT_STRING_MAX_LENGTH:
        return levenshtein_similarity(a, b)
    return approximate_similarity(a, b)


def first_words_match(word_a: str, word_b: str) -> bool:
    """True when two first significant words are equal and long enough to trust."""
    return bool(word_a) and word_a == word_b and len(word_a) >= FIRST_WORD_MIN_LENGTH


__all__ = [
    "MATCH_THRESHOLD",
    "EARLY_EXIT_SCORE",
    "FIRST_WORD_SCORE",
    "levenshtein_similarity",
    "approximate_similarity",
    "score",
    "first_words_match",
]
