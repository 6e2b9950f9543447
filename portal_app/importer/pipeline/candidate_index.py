"""
Per-job lookup structures over the existing entity set.

The index is a point-in-time snapshot: it is built once from a full paginated
fetch and never updated. A new job builds a new index.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from .normalize import clean_display_name, first_significant_word, normalize_name

FIRST_WORD_BUCKET_LIMIT = 50
LENGTH_CANDIDATE_LIMIT = 100
LENGTH_WINDOW_RATIO = 0.3
FIRST_WORD_INDEX_MIN_LENGTH = 3


@dataclass(frozen=True)
class EntityRecord:
    """Immutable snapshot of one stored entity."""

    id: int
    name: str
    url: str | None = None
    logo_url: str | None = None
    data_source: str | None = None
    normalized: str = field(init=False, compare=False, repr=False)
    first_word: str = field(init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "normalized", normalize_name(self.name))
        object.__setattr__(self, "first_word", first_significant_word(self.name))

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "logo_url": self.logo_url,
            "data_source": self.data_source,
        }


class CandidateIndex:
    """Exact, first-word, and normalized-length lookups over a fixed record set."""

    def __init__(
        self,
        records: tuple[EntityRecord, ...],
        exact_by_name: Mapping[str, EntityRecord],
        by_first_word: Mapping[str, tuple[EntityRecord, ...]],
        by_normalized_length: Mapping[int, tuple[EntityRecord, ...]],
    ) -> None:
        self._records = records
        self._exact_by_name = MappingProxyType(dict(exact_by_name))
        self._by_first_word = MappingProxyType(dict(by_first_word))
        self._by_normalized_length = MappingProxyType(dict(by_normalized_length))

    @classmethod
    def build(cls, records: Iterable[EntityRecord]) -> "CandidateIndex":
        ordered = tuple(records)
        exact: dict[str, EntityRecord] = {}
        first_words: dict[str, list[EntityRecord]] = {}
        lengths: dict[int, list[EntityRecord]] = {}

        for record in ordered:
            # Duplicate names keep the first record fetched.
            exact.setdefault(clean_display_name(record.name), record)
            if len(record.first_word) >= FIRST_WORD_INDEX_MIN_LENGTH:
                first_words.setdefault(record.first_word, []).append(record)
            lengths.setdefault(len(record.normalized), []).append(record)

        return cls(
            ordered,
            exact,
            {word: tuple(bucket) for word, bucket in first_words.items()},
            {length: tuple(bucket) for length, bucket in lengths.items()},
        )

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> tuple[EntityRecord, ...]:
        return self._records

    @property
    def exact_by_name(self) -> Mapping[str, EntityRecord]:
        return self._exact_by_name

    @property
    def by_first_word(self) -> Mapping[str, tuple[EntityRecord, ...]]:
        return self._by_first_word

    @property
    def by_normalized_length(self) -> Mapping[int, tuple[EntityRecord, ...]]:
        return self._by_normalized_length

    def exact(self, name: str) -> EntityRecord | None:
        return self._exact_by_name.get(clean_display_name(name))

    def first_word_candidates(self, word: str) -> tuple[EntityRecord, ...]:
        if not word:
            return ()
        return self._by_first_word.get(word, ())[:FIRST_WORD_BUCKET_LIMIT]

    def length_candidates(self, normalized: str) -> list[EntityRecord]:
        """
        Collect records whose normalized length is within 30% of ``normalized``.

        Candidates are ordered by closest length first (fetch order within a
        length) and capped at ``LENGTH_CANDIDATE_LIMIT``.
        """
        target = len(normalized)
        low = max(0, math.floor(target * (1 - LENGTH_WINDOW_RATIO)))
        high = math.ceil(target * (1 + LENGTH_WINDOW_RATIO))
        lengths = sorted(
            (length for length in self._by_normalized_length if low <= length <= high),
            key=lambda length: (abs(length - target), length),
        )
        candidates: list[EntityRecord] = []
        for length in lengths:
            for record in self._by_normalized_length[length]:
                candidates.append(record)
                if len(candidates) >= LENGTH_CANDIDATE_LIMIT:
                    return candidates
        return candidates


__all__ = ["EntityRecord", "CandidateIndex", "FIRST_WORD_BUCKET_LIMIT", "LENGTH_CANDIDATE_LIMIT"]
