"""Importer pipeline helpers."""

from __future__ import annotations

from .candidate_index import CandidateIndex, EntityRecord
from .normalize import clean_display_name, first_significant_word, normalize_name
from .similarity import MATCH_THRESHOLD, approximate_similarity, first_words_match, levenshtein_similarity, score

__all__ = [
    "CandidateIndex",
    "EntityRecord",
    "MATCH_THRESHOLD",
    "approximate_similarity",
    "clean_display_name",
    "first_significant_word",
    "first_words_match",
    "levenshtein_similarity",
    "normalize_name",
    "score",
]
