"""
Durable status records for asynchronous validation jobs.

Each record carries an ``expires_at`` timestamp that is checked on every read;
an expired record is deleted and reported as missing. ``prune_expired`` clears
stale rows in bulk (wired to ``flask importer validation-jobs prune``).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from flask import current_app
from sqlalchemy import delete
from sqlalchemy.orm import Session

from portal_app.models import ValidationJob, ValidationJobStatus, db

DEFAULT_TTL_SECONDS = 3600


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class ValidationJobStore:
    """Create, update, and read validation job status rows."""

    def __init__(self, session: Session | None = None, *, ttl_seconds: int | None = None) -> None:
        self.session: Session = session or db.session
        if ttl_seconds is None:
            ttl_seconds = int(current_app.config.get("IMPORTER_VALIDATION_JOB_TTL_SECONDS", DEFAULT_TTL_SECONDS))
        self.ttl = timedelta(seconds=max(1, ttl_seconds))

    def create(self, import_type: str, total: int) -> ValidationJob:
        job = ValidationJob(
            id=uuid.uuid4().hex,
            import_type=import_type,
            status=ValidationJobStatus.PENDING,
            progress=0,
            total=total,
            message="Queued",
            expires_at=_now() + self.ttl,
        )
        self.session.add(job)
        self.session.commit()
        return job

    def get(self, job_id: str) -> ValidationJob | None:
        job = self.session.get(ValidationJob, job_id)
        if job is None:
            return None
        if _as_aware(job.expires_at) <= _now():
            self.session.delete(job)
            self.session.commit()
            return None
        return job

    def mark_processing(self, job_id: str, message: str = "Validating rows") -> ValidationJob | None:
        return self._update(job_id, status=ValidationJobStatus.PROCESSING, message=message)

    def update_progress(self, job_id: str, progress: int, *, message: str | None = None) -> ValidationJob | None:
        values: dict[str, Any] = {"progress": progress}
        if message:
            values["message"] = message
        return self._update(job_id, **values)

    def complete(self, job_id: str, results: dict[str, Any]) -> ValidationJob | None:
        job = self._update(
            job_id,
            status=ValidationJobStatus.COMPLETE,
            results_json=results,
            message="Validation complete",
            completed_at=_now(),
            # Completed results stay readable for a full TTL window.
            expires_at=_now() + self.ttl,
        )
        if job is not None:
            job.progress = job.total
            self.session.commit()
        return job

    def fail(self, job_id: str, error: str) -> ValidationJob | None:
        return self._update(
            job_id,
            status=ValidationJobStatus.ERROR,
            error=error,
            message="Validation failed",
            completed_at=_now(),
        )

    def prune_expired(self) -> int:
        result = self.session.execute(
            delete(ValidationJob)
            .where(ValidationJob.expires_at <= _now())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return int(result.rowcount or 0)

    def _update(self, job_id: str, **values: Any) -> ValidationJob | None:
        job = self.get(job_id)
        if job is None:
            current_app.logger.warning("Validation job %s missing or expired", job_id)
            return None
        for key, value in values.items():
            setattr(job, key, value)
        self.session.commit()
        return job


__all__ = ["DEFAULT_TTL_SECONDS", "ValidationJobStore"]
