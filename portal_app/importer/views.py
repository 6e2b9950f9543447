"""
Importer blueprint endpoints: validation, batch import, staging review,
orphan management, and import job history.
"""

from __future__ import annotations

import time
from http import HTTPStatus
from typing import Any

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from config.monitoring import ImporterMonitoring
from portal_app.importer.pipeline.job_service import ImportJobService, JobFilters
from portal_app.importer.pipeline.job_status import ValidationJobStore
from portal_app.importer.pipeline.ledger import ImportJobNotFound, ImportSetupError
from portal_app.importer.pipeline.matcher import RowMatcher
from portal_app.importer.pipeline.orphans import OrphanFilters, OrphanService
from portal_app.importer.pipeline.reconcile import ReconciliationEngine, UnknownImportType, get_import_type
from portal_app.importer.pipeline.staging import StagingService
from portal_app.importer.pipeline.store import StoreError
from portal_app.models import ChangeType
from portal_app.utils.importer import is_importer_enabled

from .celery_app import VALIDATION_TASK_NAME, get_celery_app
from .registry import ImportTypeDescriptor

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


class BadPayload(ValueError):
    """The request body is missing or malformed."""


def _serialize_import_type(descriptor: ImportTypeDescriptor) -> dict:
    return {
        "name": descriptor.name,
        "title": descriptor.title,
        "summary": descriptor.summary,
        "primary": descriptor.primary,
        "relationship": descriptor.relationship,
    }


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    import_types = importer_state.get("active_import_types", ())
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "importTypes": [_serialize_import_type(descriptor) for descriptor in import_types],
            }
        ),
        200,
    )


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def _json_error(message: str, status: HTTPStatus, **extra: Any):
    payload = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _resolve_import_type(import_type: str) -> ImportTypeDescriptor:
    """Return the descriptor for an enabled import type or raise ``UnknownImportType``."""
    descriptor = get_import_type(import_type)
    active = current_app.extensions.get("importer", {}).get("active_import_types", ())
    if descriptor.name not in {item.name for item in active}:
        raise UnknownImportType(f"Import type '{import_type}' is not enabled.")
    return descriptor


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise BadPayload("Request body must be a JSON object.")
    return body


def _require_rows(body: dict[str, Any]) -> list[dict[str, Any]]:
    rows = body.get("rows")
    if not isinstance(rows, list):
        raise BadPayload("'rows' must be a list of objects.")
    if any(not isinstance(row, dict) for row in rows):
        raise BadPayload("Every entry in 'rows' must be an object.")
    return rows


def _optional_int(body: dict[str, Any], key: str) -> int | None:
    value = body.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadPayload(f"'{key}' must be an integer.") from None


def _query_int(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise BadPayload(f"Query parameter '{name}' must be an integer.") from None


def _query_bool(name: str) -> bool | None:
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise BadPayload(f"Query parameter '{name}' must be a boolean.")


def _split_csv(value: str | None):
    if value in (None, "", ()):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


@importer_blueprint.before_request
def _guard_importer_enabled():
    if request.endpoint == "importer.importer_healthcheck":
        return None
    return _ensure_importer_enabled_api()


@importer_blueprint.errorhandler(BadPayload)
def _handle_bad_payload(exc: BadPayload):
    return _json_error(str(exc), HTTPStatus.BAD_REQUEST)


@importer_blueprint.errorhandler(UnknownImportType)
def _handle_unknown_import_type(exc: UnknownImportType):
    return _json_error(str(exc), HTTPStatus.NOT_FOUND)


@importer_blueprint.errorhandler(NoResultFound)
def _handle_not_found(exc: NoResultFound):
    return _json_error(str(exc), HTTPStatus.NOT_FOUND)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@importer_blueprint.post("/<import_type>/validate")
def importer_validate(import_type: str):
    descriptor = _resolve_import_type(import_type)
    rows = _require_rows(_json_body())

    start_time = time.perf_counter()
    try:
        report = RowMatcher(descriptor).validate_rows(rows)
    except StoreError as exc:
        current_app.logger.exception("Importer validation failed.", extra={"import_type": import_type})
        ImporterMonitoring.record_validate(
            mode="sync", duration_seconds=time.perf_counter() - start_time, status="error"
        )
        return _json_error(f"Failed to validate rows: {exc}", HTTPStatus.INTERNAL_SERVER_ERROR)

    ImporterMonitoring.record_validate(
        mode="sync", duration_seconds=time.perf_counter() - start_time, status="success"
    )
    return jsonify(report.to_payload()), HTTPStatus.OK


@importer_blueprint.post("/<import_type>/validate/async")
def importer_validate_async(import_type: str):
    descriptor = _resolve_import_type(import_type)
    rows = _require_rows(_json_body())

    store = ValidationJobStore()
    job = store.create(descriptor.name, len(rows))
    job_id = job.id
    importer_state = current_app.extensions.get("importer", {})

    start_time = time.perf_counter()
    if importer_state.get("worker_enabled"):
        celery_app = get_celery_app(current_app)
        if celery_app is None:
            store.fail(job_id, "Importer worker is unavailable.")
            return _json_error("Importer worker is unavailable.", HTTPStatus.SERVICE_UNAVAILABLE, jobId=job_id)
        async_result = celery_app.send_task(
            VALIDATION_TASK_NAME,
            kwargs={"job_id": job_id, "import_type": descriptor.name, "rows": rows},
        )
        current_app.logger.info(
            "Validation job queued",
            extra={"validation_job_id": job_id, "import_type": descriptor.name, "importer_task_id": async_result.id},
        )
        ImporterMonitoring.record_validate(
            mode="queued", duration_seconds=time.perf_counter() - start_time, status="success"
        )
        return jsonify({"jobId": job_id, "status": "pending"}), HTTPStatus.ACCEPTED

    # No worker configured: run inline, the status endpoint still serves the result.
    from .tasks import run_validation_job

    try:
        run_validation_job(job_id, descriptor.name, rows)
    except Exception as exc:
        ImporterMonitoring.record_validate(
            mode="inline", duration_seconds=time.perf_counter() - start_time, status="error"
        )
        return _json_error(f"Validation failed: {exc}", HTTPStatus.INTERNAL_SERVER_ERROR, jobId=job_id)

    ImporterMonitoring.record_validate(
        mode="inline", duration_seconds=time.perf_counter() - start_time, status="success"
    )
    job = store.get(job_id)
    status = job.status.value if job is not None else "complete"
    return jsonify({"jobId": job_id, "status": status}), HTTPStatus.ACCEPTED


@importer_blueprint.get("/validation-jobs/<job_id>")
def importer_validation_job_status(job_id: str):
    job = ValidationJobStore().get(job_id)
    if job is None:
        return _json_error(f"Validation job {job_id} not found or expired.", HTTPStatus.NOT_FOUND)
    return jsonify(job.to_dict()), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


@importer_blueprint.post("/<import_type>/import")
def importer_import_batch(import_type: str):
    descriptor = _resolve_import_type(import_type)
    body = _json_body()
    rows = _require_rows(body)
    existing_job_id = _optional_int(body, "existingImportJobId")
    row_offset = _optional_int(body, "rowOffset") or 0
    confirmed = body.get("confirmedMatches")
    if confirmed is not None and not isinstance(confirmed, (dict, list)):
        raise BadPayload("'confirmedMatches' must be an object keyed by row index or a list.")

    start_time = time.perf_counter()
    try:
        result = ReconciliationEngine().import_batch(
            descriptor.name,
            rows,
            file_name=body.get("fileName"),
            is_first_batch=bool(body.get("isFirstBatch", existing_job_id is None)),
            is_last_batch=bool(body.get("isLastBatch", True)),
            existing_import_job_id=existing_job_id,
            confirmed_matches=confirmed,
            row_offset=row_offset,
        )
    except ImportJobNotFound as exc:
        ImporterMonitoring.record_import(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except (ImportSetupError, StoreError) as exc:
        current_app.logger.exception("Importer batch failed.", extra={"import_type": import_type})
        ImporterMonitoring.record_import(duration_seconds=time.perf_counter() - start_time, status="error")
        return _json_error(f"Import failed: {exc}", HTTPStatus.INTERNAL_SERVER_ERROR)

    ImporterMonitoring.record_import(duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(result.to_payload()), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


@importer_blueprint.post("/<import_type>/stage")
def importer_stage_rows(import_type: str):
    descriptor = _resolve_import_type(import_type)
    body = _json_body()
    rows = _require_rows(body)
    try:
        summary = StagingService().stage_batch(
            descriptor.name,
            rows,
            file_name=body.get("fileName"),
            existing_import_job_id=_optional_int(body, "existingImportJobId"),
            row_offset=_optional_int(body, "rowOffset") or 0,
        )
    except ImportJobNotFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except (ImportSetupError, StoreError) as exc:
        current_app.logger.exception("Importer staging failed.", extra={"import_type": import_type})
        return _json_error(f"Staging failed: {exc}", HTTPStatus.INTERNAL_SERVER_ERROR)
    return jsonify(summary.to_payload()), HTTPStatus.CREATED


@importer_blueprint.get("/<import_type>/staging")
def importer_staging_list(import_type: str):
    descriptor = _resolve_import_type(import_type)
    page = _query_int("page", 1)
    per_page = _query_int("per_page", 100)
    rows, total = StagingService().list_rows(
        descriptor.name,
        approved=_query_bool("approved"),
        import_job_id=_query_int("import_job_id", 0) or None,
        page=page,
        per_page=per_page,
    )
    return (
        jsonify({"rows": [row.to_dict() for row in rows], "total": total, "page": page, "per_page": per_page}),
        HTTPStatus.OK,
    )


@importer_blueprint.post("/staging/approve")
def importer_staging_approve():
    body = _json_body()
    approved = body.get("approved", True)
    if not isinstance(approved, bool):
        raise BadPayload("'approved' must be a boolean.")
    service = StagingService()

    if "ids" in body:
        ids = body.get("ids")
        if not isinstance(ids, list):
            raise BadPayload("'ids' must be a list of staging row ids.")
        try:
            staging_ids = [int(value) for value in ids]
        except (TypeError, ValueError):
            raise BadPayload("'ids' must contain integers.") from None
        updated = service.set_approval(staging_ids, approved=approved)
        return jsonify({"updated": updated, "approved": approved}), HTTPStatus.OK

    staging_id = _optional_int(body, "id")
    if staging_id is None:
        raise BadPayload("Provide 'id' or 'ids'.")
    row = service.approve(staging_id, approved)
    return jsonify({"updated": 1, "approved": approved, "row": row.to_dict()}), HTTPStatus.OK


@importer_blueprint.post("/<import_type>/staging/migrate")
def importer_staging_migrate(import_type: str):
    descriptor = _resolve_import_type(import_type)
    body = request.get_json(silent=True) or {}
    if not isinstance(body, dict):
        raise BadPayload("Request body must be a JSON object.")
    confirmed = body.get("confirmedMatches")
    if confirmed is not None and not isinstance(confirmed, (dict, list)):
        raise BadPayload("'confirmedMatches' must be an object keyed by staging row id or a list.")
    try:
        summary = StagingService().migrate_approved(
            descriptor.name,
            import_job_id=_optional_int(body, "importJobId"),
            confirmed_matches=confirmed,
        )
    except (ImportSetupError, StoreError) as exc:
        current_app.logger.exception("Importer staging migration failed.", extra={"import_type": import_type})
        return _json_error(f"Migration failed: {exc}", HTTPStatus.INTERNAL_SERVER_ERROR)
    max_errors = int(current_app.config.get("IMPORTER_MAX_ERRORS", 20))
    return jsonify(summary.to_payload(max_errors=max_errors)), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------


@importer_blueprint.get("/orphans")
def importer_orphans_list():
    filters = OrphanFilters.coerce(request.args)
    result = OrphanService().list_orphans(
        filters,
        page=_query_int("page", 1),
        per_page=_query_int("per_page", 50),
    )
    return (
        jsonify(
            {
                "orphans": [orphan.to_dict() for orphan in result.items],
                "total": result.total,
                "page": result.page,
                "per_page": result.per_page,
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.post("/orphans/<int:orphan_id>/restore")
def importer_orphan_restore(orphan_id: int):
    try:
        relationship = OrphanService().restore(orphan_id)
    except StoreError as exc:
        current_app.logger.exception("Orphan restore failed.", extra={"orphan_id": orphan_id})
        return _json_error(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR)
    return jsonify({"restored": orphan_id, "relationship": relationship.to_dict()}), HTTPStatus.OK


@importer_blueprint.delete("/orphans/<int:orphan_id>")
def importer_orphan_delete(orphan_id: int):
    try:
        OrphanService().delete_permanently(orphan_id)
    except StoreError as exc:
        current_app.logger.exception("Orphan delete failed.", extra={"orphan_id": orphan_id})
        return _json_error(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR)
    return jsonify({"deleted": orphan_id}), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Import job history
# ---------------------------------------------------------------------------


def _parse_job_filters() -> JobFilters:
    raw = request.args
    page_size = raw.get("per_page") or raw.get("page_size")
    if page_size in (None, ""):
        page_size = current_app.config.get("IMPORTER_JOBS_PAGE_SIZE_DEFAULT")
    return JobFilters.coerce(
        page=raw.get("page"),
        page_size=page_size,
        sort=raw.get("sort"),
        statuses=_split_csv(raw.get("status")),
        import_types=_split_csv(raw.get("import_type")),
        search=raw.get("search"),
        started_from=raw.get("started_from"),
        started_to=raw.get("started_to"),
    )


@importer_blueprint.get("/jobs")
def importer_jobs_list():
    try:
        filters = _parse_job_filters()
    except ValueError as exc:
        ImporterMonitoring.record_jobs_list(duration_seconds=0.0, status="invalid_request", result_count=0)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = ImportJobService().list_jobs(filters)
    duration = time.perf_counter() - start_time
    ImporterMonitoring.record_jobs_list(duration_seconds=duration, status="success", result_count=len(result.items))

    response_payload = {
        "jobs": [item.to_payload() for item in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
        "filters": {
            "page": filters.page,
            "page_size": filters.page_size,
            "sort": filters.sort,
            "statuses": [status.value for status in filters.statuses],
            "import_types": list(filters.import_types),
            "search": filters.search,
            "started_from": filters.started_from.isoformat() if filters.started_from else None,
            "started_to": filters.started_to.isoformat() if filters.started_to else None,
        },
    }
    current_app.logger.info(
        "Importer jobs list retrieved",
        extra={
            "importer_job_count": len(result.items),
            "importer_total_jobs": result.total,
            "importer_response_time_ms": round(duration * 1000, 2),
        },
    )
    return jsonify(response_payload), HTTPStatus.OK


@importer_blueprint.get("/jobs/<int:job_id>")
def importer_job_detail(job_id: int):
    service = ImportJobService()
    start_time = time.perf_counter()
    try:
        job = service.get_job(job_id)
    except NoResultFound:
        ImporterMonitoring.record_jobs_detail(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(f"Import job {job_id} not found.", HTTPStatus.NOT_FOUND)

    payload = service.summarize(job).to_payload()
    payload["staged_rows"] = len(job.staging_rows)
    ImporterMonitoring.record_jobs_detail(duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.get("/jobs/<int:job_id>/changes")
def importer_job_changes(job_id: int):
    change_type = request.args.get("change_type")
    if change_type and change_type not in {item.value for item in ChangeType}:
        return _json_error(f"Unsupported change_type '{change_type}'.", HTTPStatus.BAD_REQUEST)
    page = max(1, _query_int("page", 1))
    per_page = max(1, min(_query_int("per_page", 100), 1000))
    changes, total = ImportJobService().get_changes(
        job_id,
        change_type=change_type or None,
        entity_type=request.args.get("entity_type") or None,
        limit=per_page,
        offset=(page - 1) * per_page,
    )
    return (
        jsonify({"changes": [change.to_dict() for change in changes], "total": total, "page": page, "per_page": per_page}),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/jobs/stats")
def importer_jobs_stats():
    try:
        filters = _parse_job_filters()
    except ValueError as exc:
        ImporterMonitoring.record_jobs_stats(duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    stats = ImportJobService().get_stats(filters)
    ImporterMonitoring.record_jobs_stats(duration_seconds=time.perf_counter() - start_time, status="success")
    return (
        jsonify(
            {
                "total": stats.total,
                "by_status": stats.statuses,
                "by_import_type": stats.import_types,
                "by_change_type": stats.changes,
            }
        ),
        HTTPStatus.OK,
    )
