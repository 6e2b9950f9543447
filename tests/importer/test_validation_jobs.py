from datetime import datetime, timedelta, timezone

import pytest

from portal_app.importer.pipeline.job_status import ValidationJobStore
from portal_app.importer.tasks import run_validation_job
from portal_app.models import ValidationJob, ValidationJobStatus, db


def _expire(job_id: str) -> None:
    job = db.session.get(ValidationJob, job_id)
    job.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db.session.commit()


def test_create_sets_expiry(importer_app):
    store = ValidationJobStore(ttl_seconds=120)

    job = store.create("brands", total=10)

    assert job.status is ValidationJobStatus.PENDING
    assert len(job.id) == 32
    fetched = store.get(job.id)
    assert fetched is not None
    assert fetched.to_dict()["total"] == 10


def test_expired_job_reads_as_missing_and_is_deleted(importer_app):
    store = ValidationJobStore()
    job_id = store.create("brands", total=1).id

    _expire(job_id)

    assert store.get(job_id) is None
    assert db.session.get(ValidationJob, job_id) is None


def test_updates_to_expired_job_are_ignored(importer_app):
    store = ValidationJobStore()
    job_id = store.create("brands", total=1).id
    _expire(job_id)

    assert store.mark_processing(job_id) is None
    assert store.complete(job_id, {"summary": {}}) is None


def test_prune_expired(importer_app):
    store = ValidationJobStore()
    stale = store.create("brands", total=1).id
    fresh = store.create("brands", total=1).id
    _expire(stale)

    assert store.prune_expired() == 1
    assert store.get(fresh) is not None


def test_complete_fills_progress(importer_app):
    store = ValidationJobStore()
    job_id = store.create("brands", total=3).id

    store.mark_processing(job_id)
    store.update_progress(job_id, 1, message="Validated 1 of 3 rows")
    job = store.complete(job_id, {"summary": {"total": 3}})

    assert job.status is ValidationJobStatus.COMPLETE
    assert job.progress == 3
    assert job.completed_at is not None
    assert job.results_json == {"summary": {"total": 3}}


def test_run_validation_job_stores_report(importer_app, entity_factory):
    entity_factory("brand", "Acme Spirits")
    store = ValidationJobStore()
    rows = [{"brand_name": "Acme Spirits"}, {"brand_name": "Brand New"}]
    job_id = store.create("brands", total=len(rows)).id

    results = run_validation_job(job_id, "brands", rows)

    assert results["summary"] == {"total": 2, "exact": 1, "fuzzy": 0, "new": 1, "errors": 0}
    payload = store.get(job_id).to_dict()
    assert payload["status"] == "complete"
    assert payload["progress"] == 2
    assert payload["results"]["summary"]["exact"] == 1


def test_run_validation_job_records_failure(importer_app, monkeypatch):
    store = ValidationJobStore()
    job_id = store.create("brands", total=1).id

    def _explode(self, rows, *, progress=None):
        raise RuntimeError("matcher blew up")

    monkeypatch.setattr("portal_app.importer.tasks.RowMatcher.validate_rows", _explode)

    with pytest.raises(RuntimeError):
        run_validation_job(job_id, "brands", [{"brand_name": "Acme"}])

    job = store.get(job_id)
    assert job.status is ValidationJobStatus.ERROR
    assert job.error == "matcher blew up"


def test_run_validation_job_skips_expired(importer_app):
    store = ValidationJobStore()
    job_id = store.create("brands", total=1).id
    _expire(job_id)

    assert run_validation_job(job_id, "brands", [{"brand_name": "Acme"}]) is None
