"""
Importer Celery tasks.

``importer.validate_rows`` classifies an uploaded batch in the worker and
records progress on a durable ``ValidationJob`` row that the status endpoint
polls.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from celery import shared_task
from flask import current_app

from portal_app.importer.celery_app import HEALTHCHECK_TASK_NAME, VALIDATION_TASK_NAME
from portal_app.importer.pipeline.job_status import ValidationJobStore
from portal_app.importer.pipeline.matcher import RowMatcher
from portal_app.importer.pipeline.reconcile import get_import_type
from portal_app.models import db

PROGRESS_EVERY = 50


@shared_task(name=HEALTHCHECK_TASK_NAME, bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


def run_validation_job(job_id: str, import_type: str, rows: Sequence[Mapping[str, Any]]) -> dict[str, Any] | None:
    """
    Validate ``rows`` and store the report on validation job ``job_id``.

    Shared by the Celery task and the inline path used when no worker is
    configured. Returns the stored report, or ``None`` when the job expired
    before it finished.
    """
    store = ValidationJobStore()
    if store.mark_processing(job_id) is None:
        return None

    total = len(rows)

    def _progress(done: int) -> None:
        if done == total or done % PROGRESS_EVERY == 0:
            store.update_progress(job_id, done, message=f"Validated {done} of {total} rows")

    try:
        matcher = RowMatcher(get_import_type(import_type))
        report = matcher.validate_rows(rows, progress=_progress)
        results = report.to_payload()
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Validation job failed",
            extra={"validation_job_id": job_id, "import_type": import_type},
        )
        store.fail(job_id, str(exc))
        raise

    store.complete(job_id, results)
    current_app.logger.info(
        "Validation job completed",
        extra={"validation_job_id": job_id, "import_type": import_type, "validation_rows": total},
    )
    return results


@shared_task(name=VALIDATION_TASK_NAME, bind=True)
def validate_rows(self, *, job_id: str, import_type: str, rows: list[dict[str, Any]]) -> dict[str, Any]:
    results = run_validation_job(job_id, import_type, rows)
    return {
        "job_id": job_id,
        "import_type": import_type,
        "rows": len(rows),
        "expired": results is None,
        "summary": (results or {}).get("summary"),
    }
