"""
Import job ledger: one row per import run plus an append-only change trail.

Counters are applied with a single ``UPDATE ... SET col = col + :n`` per batch
so concurrent batches for the same job cannot lose increments.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portal_app.models import ChangeType, ImportChange, ImportJob, ImportJobKey, ImportJobStatus, db


class ImportSetupError(Exception):
    """Job-level failure that prevents any row from being processed."""


class ImportJobNotFound(ImportSetupError):
    """The referenced import job does not exist."""


@dataclass(slots=True)
class BatchCounters:
    entities_created: int = 0
    entities_updated: int = 0
    relationships_created: int = 0
    relationships_verified: int = 0
    relationships_orphaned: int = 0
    rows_processed: int = 0
    rows_skipped: int = 0
    errors_count: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class PendingChange:
    """A change collected during a batch, written to the ledger afterwards."""

    change_type: ChangeType
    entity_type: str
    entity_id: int | None = None
    entity_name: str | None = None
    old_value: dict | None = None
    new_value: dict | None = None
    source_row: dict | None = None
    metadata: dict | None = field(default=None)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ImportJobLedger:
    """Create, update, and audit import jobs."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session

    def open_job(
        self,
        import_type: str,
        *,
        file_name: str | None = None,
        existing_job_id: int | None = None,
    ) -> ImportJob:
        """
        Return the ledger row for a batch, creating it when no id is supplied.

        Raises:
            ImportJobNotFound: ``existing_job_id`` does not reference a job.
            ImportSetupError: the job belongs to another import type or the
                ledger row could not be written.
        """
        if existing_job_id is not None:
            job = self.session.get(ImportJob, existing_job_id)
            if job is None:
                raise ImportJobNotFound(f"Import job {existing_job_id} not found.")
            if job.import_type != import_type:
                raise ImportSetupError(
                    f"Import job {existing_job_id} belongs to '{job.import_type}', not '{import_type}'."
                )
            return job

        job = ImportJob(
            import_type=import_type,
            file_name=file_name,
            status=ImportJobStatus.IN_PROGRESS,
            started_at=_now(),
        )
        self.session.add(job)
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise ImportSetupError(f"Failed to create import job: {exc}") from exc

        current_app.logger.info(
            "Opened import job %s",
            job.id,
            extra={"import_job_id": job.id, "import_type": import_type, "import_file_name": file_name},
        )
        return job

    def record_batch(self, job_id: int, counters: BatchCounters, *, count_batch: bool = True) -> None:
        """Add a batch's counters to the job atomically."""
        values: dict[str, Any] = {
            name: getattr(ImportJob, name) + amount for name, amount in counters.as_dict().items() if amount
        }
        if count_batch:
            values["batches_processed"] = ImportJob.batches_processed + 1
        if not values:
            return
        try:
            self.session.execute(
                update(ImportJob)
                .where(ImportJob.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.exception("Failed to record batch counters", extra={"import_job_id": job_id})
            raise

    def finalize(
        self,
        job_id: int,
        *,
        status: ImportJobStatus | None = None,
        error_summary: str | None = None,
    ) -> ImportJob:
        """Set the terminal status; defaults to completed or completed_with_errors."""
        job = self.session.get(ImportJob, job_id)
        if job is None:
            raise ImportJobNotFound(f"Import job {job_id} not found.")
        self.session.refresh(job)
        if status is None:
            status = ImportJobStatus.COMPLETED_WITH_ERRORS if job.errors_count else ImportJobStatus.COMPLETED
        job.status = status
        job.finished_at = _now()
        if error_summary:
            job.error_summary = error_summary
        self.session.commit()

        current_app.logger.info(
            "Import job %s finished with status %s",
            job.id,
            status.value,
            extra={"import_job_id": job.id, "import_job_status": status.value, "import_job_counts": job.counters()},
        )
        return job

    def mark_failed(self, job_id: int, message: str) -> None:
        self.session.rollback()
        job = self.session.get(ImportJob, job_id)
        if job is None:
            return
        job.status = ImportJobStatus.FAILED
        job.error_summary = message
        job.finished_at = _now()
        self.session.commit()

    def append_changes(self, job_id: int, changes: Sequence[PendingChange]) -> int:
        if not changes:
            return 0
        for change in changes:
            self.session.add(
                ImportChange(
                    import_job_id=job_id,
                    change_type=change.change_type,
                    entity_type=change.entity_type,
                    entity_id=change.entity_id,
                    entity_name=change.entity_name,
                    old_value=change.old_value,
                    new_value=change.new_value,
                    source_row=change.source_row,
                    metadata_json=change.metadata,
                )
            )
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.exception(
                "Failed to append import changes",
                extra={"import_job_id": job_id, "import_change_count": len(changes)},
            )
            raise
        return len(changes)

    def record_listed_keys(self, job_id: int, rel_kind, listed: Mapping[int, Iterable[tuple[int, ...]]]) -> int:
        """
        Persist relationship keys a batch listed, grouped by owner id.

        Keys are recorded before their writes are known to succeed, so a row
        whose write failed still counts as listed when orphans are detected.
        """
        known = self.touched_relationship_keys(job_id, rel_kind)
        added = 0
        for owner_id, keys in listed.items():
            for key in keys:
                if key in known.get(owner_id, ()):
                    continue
                self.session.add(
                    ImportJobKey(
                        import_job_id=job_id,
                        relationship_type=rel_kind.name,
                        owner_id=owner_id,
                        key_json=rel_kind.key_to_dict(key),
                    )
                )
                known.setdefault(owner_id, set()).add(key)
                added += 1
        if not added:
            return 0
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.exception(
                "Failed to record listed relationship keys",
                extra={"import_job_id": job_id, "import_key_count": added},
            )
            raise
        return added

    def touched_relationship_keys(self, job_id: int, rel_kind) -> dict[int, set[tuple[int, ...]]]:
        """
        Relationship keys listed by any batch of a job, grouped by owner id.
        """
        rows: Iterable[ImportJobKey] = self.session.scalars(
            select(ImportJobKey).where(
                ImportJobKey.import_job_id == job_id,
                ImportJobKey.relationship_type == rel_kind.name,
            )
        )
        touched: dict[int, set[tuple[int, ...]]] = defaultdict(set)
        for row in rows:
            try:
                key = rel_kind.key_from_dict(row.key_json or {})
            except (KeyError, TypeError, ValueError):
                continue
            touched[row.owner_id].add(key)
        return dict(touched)


__all__ = [
    "BatchCounters",
    "ImportJobLedger",
    "ImportJobNotFound",
    "ImportSetupError",
    "PendingChange",
]
