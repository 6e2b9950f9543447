"""
Row classification against a candidate index.

``match_row`` is the single matching routine shared by every import type.
``RowMatcher`` wraps it with the entity-kind specific pieces: which column
holds the name and which entity collection the index is built from.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from flask import current_app

from portal_app.importer.metrics import record_row_matches
from portal_app.importer.registry import (
    EntityKind,
    ImportTypeDescriptor,
    get_entity_kind,
    get_owner_kind,
)

from .candidate_index import CandidateIndex, EntityRecord
from .normalize import first_significant_word, normalize_name
from .similarity import EARLY_EXIT_SCORE, FIRST_WORD_SCORE, MATCH_THRESHOLD, first_words_match, score
from .store import EntityStore


class MatchType(str, enum.Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    NEW = "new"
    ERROR = "error"


class MatchAction(str, enum.Enum):
    UPDATE = "update"
    MATCH = "match"
    CREATE = "create"


@dataclass(slots=True)
class RowMatch:
    row_index: int
    name: str
    match_type: MatchType
    matched_entity: EntityRecord | None = None
    similarity: float | None = None
    action: MatchAction | None = None
    basis: str | None = None
    error: str | None = None

    @property
    def matched_id(self) -> int | None:
        return self.matched_entity.id if self.matched_entity else None

    def to_payload(self) -> dict[str, Any]:
        return {
            "rowIndex": self.row_index,
            "name": self.name,
            "matchType": self.match_type.value,
            "matchedEntity": self.matched_entity.as_dict() if self.matched_entity else None,
            "similarity": self.similarity,
            "action": self.action.value if self.action else None,
            "basis": self.basis,
            "error": self.error,
        }


def match_row(
    row_index: int,
    name: str | None,
    index: CandidateIndex,
    *,
    threshold: float = MATCH_THRESHOLD,
) -> RowMatch:
    """
    Classify one imported name as exact, fuzzy, new, or error.

    Args:
        row_index: Zero-based position of the row in its batch.
        name: Raw name from the row.
        index: Candidate index for the entity kind being matched.
        threshold: Minimum similarity for a scored fuzzy match.

    Returns:
        RowMatch: Classification plus the matched record and score, if any.
    """
    display_name = (name or "").strip()
    normalized = normalize_name(display_name)
    if not display_name:
        return RowMatch(row_index, display_name, MatchType.ERROR, error="Missing name")

    exact = index.exact(display_name)
    if exact is not None:
        return RowMatch(
            row_index,
            display_name,
            MatchType.EXACT,
            matched_entity=exact,
            similarity=1.0,
            action=MatchAction.UPDATE,
            basis="exact",
        )

    # Punctuation-only names have no comparison form to score against
    if not normalized:
        return RowMatch(row_index, display_name, MatchType.NEW, action=MatchAction.CREATE)

    first_word = first_significant_word(display_name)
    for candidate in index.first_word_candidates(first_word):
        if first_words_match(first_word, candidate.first_word):
            return RowMatch(
                row_index,
                display_name,
                MatchType.FUZZY,
                matched_entity=candidate,
                similarity=FIRST_WORD_SCORE,
                action=MatchAction.MATCH,
                basis="first_word",
            )

    best: EntityRecord | None = None
    best_score = 0.0
    for candidate in index.length_candidates(normalized):
        candidate_score = score(normalized, candidate.normalized)
        if candidate_score >= threshold and candidate_score > best_score:
            best, best_score = candidate, candidate_score
            if best_score >= EARLY_EXIT_SCORE:
                break

    if best is not None:
        return RowMatch(
            row_index,
            display_name,
            MatchType.FUZZY,
            matched_entity=best,
            similarity=round(best_score, 4),
            action=MatchAction.MATCH,
            basis="similarity",
        )
    return RowMatch(row_index, display_name, MatchType.NEW, action=MatchAction.CREATE)


def split_list_field(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(",")
    return [str(item).strip() for item in items if str(item).strip()]


@dataclass(slots=True)
class ValidationSummary:
    total: int = 0
    exact: int = 0
    fuzzy: int = 0
    new: int = 0
    errors: int = 0

    def add(self, match_type: MatchType) -> None:
        self.total += 1
        if match_type is MatchType.EXACT:
            self.exact += 1
        elif match_type is MatchType.FUZZY:
            self.fuzzy += 1
        elif match_type is MatchType.NEW:
            self.new += 1
        else:
            self.errors += 1

    def as_dict(self) -> dict[str, int]:
        return {"total": self.total, "exact": self.exact, "fuzzy": self.fuzzy, "new": self.new, "errors": self.errors}


@dataclass(slots=True)
class RowReview:
    match: RowMatch
    owner_match: RowMatch | None = None
    categories: list[str] = field(default_factory=list)
    unknown_categories: list[str] = field(default_factory=list)
    state_code: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.match.to_payload()
        if self.owner_match is not None:
            payload["owner"] = self.owner_match.to_payload()
        if self.categories or self.unknown_categories:
            payload["categories"] = list(self.categories)
            payload["unknownCategories"] = list(self.unknown_categories)
        if self.state_code is not None:
            payload["stateCode"] = self.state_code
        return payload


@dataclass(slots=True)
class ValidationReport:
    import_type: str
    reviews: list[RowReview]
    summary: ValidationSummary
    candidates: list[EntityRecord]

    def to_payload(self, *, include_candidates: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "importType": self.import_type,
            "results": [review.to_payload() for review in self.reviews],
            "summary": self.summary.as_dict(),
        }
        if include_candidates:
            payload["existingEntities"] = [{"id": record.id, "name": record.name} for record in self.candidates]
        return payload


class RowMatcher:
    """Generic matcher for one import type, parameterised by its entity kinds."""

    def __init__(
        self,
        descriptor: ImportTypeDescriptor,
        *,
        store: EntityStore | None = None,
        threshold: float | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.store = store or EntityStore()
        self.kind: EntityKind = get_entity_kind(descriptor.primary)
        self.owner_kind: EntityKind | None = get_owner_kind(descriptor)
        self.threshold = threshold if threshold is not None else _configured_threshold()
        self._index: CandidateIndex | None = None
        self._owner_index: CandidateIndex | None = None
        self._category_names: dict[str, str] | None = None

    @property
    def index(self) -> CandidateIndex:
        if self._index is None:
            self._index = CandidateIndex.build(self.store.fetch_all(self.kind))
        return self._index

    @property
    def owner_index(self) -> CandidateIndex | None:
        if self.owner_kind is None:
            return None
        if self._owner_index is None:
            self._owner_index = CandidateIndex.build(self.store.fetch_all(self.owner_kind))
        return self._owner_index

    def match(self, row_index: int, row: Mapping[str, Any]) -> RowMatch:
        return match_row(row_index, self.kind.extract_name(row), self.index, threshold=self.threshold)

    def review_row(self, row_index: int, row: Mapping[str, Any]) -> RowReview:
        review = RowReview(match=self.match(row_index, row))
        if self.owner_kind is not None and self.owner_index is not None:
            review.owner_match = match_row(
                row_index,
                self.owner_kind.extract_name(row),
                self.owner_index,
                threshold=self.threshold,
            )
            state_code = row.get("state_code")
            review.state_code = str(state_code).strip().upper() if state_code else None
        if self.kind.name == "brand":
            known = self._known_categories()
            for category in split_list_field(row.get("brand_categories")):
                if category.lower() in known:
                    review.categories.append(known[category.lower()])
                else:
                    review.unknown_categories.append(category)
        return review

    def validate_rows(self, rows: Sequence[Mapping[str, Any]], *, progress=None) -> ValidationReport:
        """
        Classify every row and summarise the outcome.

        ``progress`` is called with the number of processed rows after each row
        when supplied.
        """
        summary = ValidationSummary()
        reviews: list[RowReview] = []
        for position, row in enumerate(rows):
            review = self.review_row(position, row)
            summary.add(review.match.match_type)
            reviews.append(review)
            if progress is not None:
                progress(position + 1)

        record_row_matches(self.descriptor.name, summary.as_dict())
        current_app.logger.info(
            "Validated %s import rows",
            self.descriptor.name,
            extra={"import_type": self.descriptor.name, "import_validation_summary": summary.as_dict()},
        )
        return ValidationReport(
            import_type=self.descriptor.name,
            reviews=reviews,
            summary=summary,
            candidates=list(self.index.records),
        )

    def _known_categories(self) -> dict[str, str]:
        if self._category_names is None:
            self._category_names = {key: category.name for key, category in self.store.category_lookup().items()}
        return self._category_names


def _configured_threshold() -> float:
    try:
        return float(current_app.config.get("IMPORTER_MATCH_THRESHOLD", MATCH_THRESHOLD))
    except (TypeError, ValueError):
        return MATCH_THRESHOLD


__all__ = [
    "MatchAction",
    "MatchType",
    "RowMatch",
    "RowMatcher",
    "RowReview",
    "ValidationReport",
    "ValidationSummary",
    "match_row",
    "split_list_field",
]
