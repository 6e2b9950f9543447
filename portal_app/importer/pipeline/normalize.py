"""Canonical comparison forms for entity names."""

from __future__ import annotations

import re

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")

LEADING_ARTICLE = "the"


def normalize_name(value: object | None) -> str:
    """
    Lowercase, drop punctuation, and collapse whitespace.

    Punctuation is removed before whitespace is collapsed so the result is
    stable when normalized again.
    """
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    text = _NON_WORD_RE.sub("", text.lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def first_significant_word(value: object | None) -> str:
    """Return the first normalized token, skipping a leading "the"."""
    tokens = normalize_name(value).split(" ")
    tokens = [token for token in tokens if token]
    if tokens and tokens[0] == LEADING_ARTICLE:
        tokens = tokens[1:]
    return tokens[0] if tokens else ""


def clean_display_name(value: object | None) -> str:
    """Trim a raw name for storage and exact lookup."""
    if value is None:
        return ""
    return str(value).strip()


__all__ = ["normalize_name", "first_significant_word", "clean_display_name", "LEADING_ARTICLE"]
