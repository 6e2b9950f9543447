"""
Service helpers for import job querying, filtering, and serialization.

The import history endpoints and CLI consume these helpers to provide
paginated listings, detail payloads with the change trail, and aggregate
statistics while keeping SQLAlchemy logic in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from portal_app.models import ChangeType, ImportChange, ImportJob, ImportJobStatus, db

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-started_at"

VALID_SORT_FIELDS = {
    "id": ImportJob.id,
    "job_id": ImportJob.id,
    "import_type": ImportJob.import_type,
    "status": ImportJob.status,
    "started_at": ImportJob.started_at,
    "finished_at": ImportJob.finished_at,
}


@dataclass(frozen=True)
class JobFilters:
    """Canonical set of filter options applied to import job queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[ImportJobStatus, ...] = field(default_factory=tuple)
    import_types: tuple[str, ...] = field(default_factory=tuple)
    search: str | None = None
    started_from: datetime | None = None
    started_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        import_types: Iterable[str] | None = None,
        search: str | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
    ) -> "JobFilters":
        """
        Coerce mixed user input into a validated ``JobFilters`` instance.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        sort_key = resolved_sort.lstrip("-")
        if sort_key not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{sort_key}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))
        resolved_types = tuple(sorted({value.strip().lower() for value in (import_types or ()) if value}))
        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None

        resolved_started_from = _coerce_datetime(started_from)
        resolved_started_to = _coerce_datetime(started_to, end_of_day=True)
        if resolved_started_from and resolved_started_to and resolved_started_from > resolved_started_to:
            raise ValueError("started_from must be before started_to.")

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            import_types=resolved_types,
            search=resolved_search,
            started_from=resolved_started_from,
            started_to=resolved_started_to,
        )


@dataclass(slots=True)
class JobSummary:
    """Summarized representation of an import job."""

    id: int
    import_type: str
    file_name: str | None
    status: str
    started_at: datetime | None
    finished_at: datetime | None
    duration_seconds: float | None
    counts: Mapping[str, int]
    error_summary: str | None
    migration_summary: Mapping[str, Any] | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "import_type": self.import_type,
            "file_name": self.file_name,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "counts": dict(self.counts),
            "error_summary": self.error_summary,
            "migration_summary": self.migration_summary,
        }


@dataclass(slots=True)
class JobListResult:
    """Paginated result set for import jobs."""

    items: list[JobSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class JobStats:
    """Aggregate statistics across import jobs."""

    total: int
    statuses: Mapping[str, int]
    import_types: Mapping[str, int]
    changes: Mapping[str, int]


class ImportJobService:
    """Facade for querying import jobs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    def list_jobs(self, filters: JobFilters) -> JobListResult:
        query = self._apply_filters(self._base_query(), filters)

        total = query.count()
        if total == 0:
            return JobListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        jobs = query.offset((filters.page - 1) * filters.page_size).limit(filters.page_size).all()
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return JobListResult(
            items=[self.summarize(job) for job in jobs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_job(self, job_id: int) -> ImportJob:
        job = self._base_query().filter(ImportJob.id == job_id).one_or_none()
        if job is None:
            raise NoResultFound(f"Import job {job_id} not found.")
        return job

    def get_changes(
        self,
        job_id: int,
        *,
        change_type: ChangeType | str | None = None,
        entity_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[ImportChange], int]:
        self.get_job(job_id)
        query = self.session.query(ImportChange).filter(ImportChange.import_job_id == job_id)
        if change_type:
            query = query.filter(ImportChange.change_type == ChangeType(change_type))
        if entity_type:
            query = query.filter(ImportChange.entity_type == entity_type)
        total = query.count()
        items = query.order_by(ImportChange.id.asc()).offset(max(0, offset)).limit(max(1, min(limit, 1000))).all()
        return items, total

    def get_stats(self, filters: JobFilters | None = None) -> JobStats:
        filters = filters or JobFilters()
        query = self._apply_filters(self._base_query(), filters, include_sort=False)

        status_counts = {
            status.value if isinstance(status, ImportJobStatus) else str(status): count
            for status, count in query.with_entities(ImportJob.status, func.count()).group_by(ImportJob.status).all()
        }
        type_counts = {
            import_type: count
            for import_type, count in (
                query.with_entities(ImportJob.import_type, func.count()).group_by(ImportJob.import_type).all()
            )
        }
        job_ids = query.with_entities(ImportJob.id).subquery()
        change_counts = {
            change_type.value if isinstance(change_type, ChangeType) else str(change_type): count
            for change_type, count in (
                self.session.query(ImportChange.change_type, func.count())
                .filter(ImportChange.import_job_id.in_(job_ids.select()))
                .group_by(ImportChange.change_type)
                .all()
            )
        }
        return JobStats(
            total=sum(status_counts.values()),
            statuses=status_counts,
            import_types=type_counts,
            changes=change_counts,
        )

    def summarize(self, job: ImportJob) -> JobSummary:
        duration_seconds: float | None = None
        if job.started_at:
            finished = job.finished_at or datetime.now(timezone.utc)
            duration_seconds = (_as_aware(finished) - _as_aware(job.started_at)).total_seconds()
        return JobSummary(
            id=job.id,
            import_type=job.import_type,
            file_name=job.file_name,
            status=job.status.value if isinstance(job.status, ImportJobStatus) else str(job.status),
            started_at=job.started_at,
            finished_at=job.finished_at,
            duration_seconds=duration_seconds,
            counts=job.counters(),
            error_summary=job.error_summary,
            migration_summary=job.migration_summary,
        )

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _base_query(self):
        return self.session.query(ImportJob)

    def _apply_filters(self, query, filters: JobFilters, *, include_sort: bool = True):
        predicates = []
        if filters.statuses:
            predicates.append(ImportJob.status.in_(filters.statuses))
        if filters.import_types:
            predicates.append(ImportJob.import_type.in_(filters.import_types))
        if filters.started_from:
            predicates.append(ImportJob.started_at >= filters.started_from)
        if filters.started_to:
            predicates.append(ImportJob.started_at <= filters.started_to)
        if filters.search:
            predicates.append(_build_search_predicate(filters.search))
        if predicates:
            query = query.filter(and_(*predicates))
        if include_sort:
            query = query.order_by(_resolve_sort_expression(filters.sort), ImportJob.id.desc())
        return query


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | ImportJobStatus) -> ImportJobStatus:
    if isinstance(value, ImportJobStatus):
        return value
    normalized = str(value).strip().lower()
    try:
        return ImportJobStatus(normalized)
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _coerce_datetime(candidate: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    if candidate in (None, ""):
        return None
    if isinstance(candidate, datetime):
        return _as_aware(candidate)
    text = str(candidate).strip()
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        return parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unable to parse datetime value '{candidate}'. Expected ISO-like formats.")


def _resolve_sort_expression(sort: str):
    descending = sort.startswith("-")
    sort_key = sort.lstrip("-")
    expression = VALID_SORT_FIELDS.get(sort_key)
    if expression is None:
        raise ValueError(f"Unsupported sort field '{sort}'.")
    return expression.desc() if descending else expression.asc()


def _build_search_predicate(term: str):
    """Search by job id exact match, import type and file name partial matches."""
    like_pattern = f"%{term.lower()}%"
    predicates = [
        func.lower(ImportJob.import_type).like(like_pattern),
        func.lower(ImportJob.file_name).like(like_pattern),
    ]
    if term.isdigit():
        predicates.append(ImportJob.id == int(term))
    return or_(*predicates)
