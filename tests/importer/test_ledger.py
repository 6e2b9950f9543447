import pytest

from portal_app.importer.pipeline.ledger import (
    BatchCounters,
    ImportJobLedger,
    ImportJobNotFound,
    ImportSetupError,
    PendingChange,
)
from portal_app.importer.pipeline.reconcile import ReconciliationEngine
from portal_app.importer.registry import get_relationship_kind
from portal_app.models import ChangeType, ImportChange, ImportJob, ImportJobKey, ImportJobStatus, db


def test_open_job_creates_in_progress_row(importer_app):
    job = ImportJobLedger().open_job("brands", file_name="brands.csv")

    assert job.id is not None
    assert job.status is ImportJobStatus.IN_PROGRESS
    assert job.file_name == "brands.csv"
    assert job.finished_at is None


def test_open_job_continues_existing(importer_app):
    ledger = ImportJobLedger()
    job = ledger.open_job("brands")
    assert ledger.open_job("brands", existing_job_id=job.id).id == job.id


def test_open_job_rejects_missing_or_mismatched(importer_app):
    ledger = ImportJobLedger()
    with pytest.raises(ImportJobNotFound):
        ledger.open_job("brands", existing_job_id=12345)

    job = ledger.open_job("brands")
    with pytest.raises(ImportSetupError):
        ledger.open_job("suppliers", existing_job_id=job.id)


def test_record_batch_accumulates_counters(importer_app):
    ledger = ImportJobLedger()
    job = ledger.open_job("brands")

    ledger.record_batch(job.id, BatchCounters(entities_created=2, rows_processed=3, rows_skipped=1))
    ledger.record_batch(job.id, BatchCounters(entities_created=1, entities_updated=4, rows_processed=5))

    db.session.refresh(job)
    assert job.entities_created == 3
    assert job.entities_updated == 4
    assert job.rows_processed == 8
    assert job.rows_skipped == 1
    assert job.batches_processed == 2


def test_finalize_picks_terminal_status(importer_app):
    ledger = ImportJobLedger()
    clean = ledger.open_job("brands")
    noisy = ledger.open_job("brands")
    ledger.record_batch(noisy.id, BatchCounters(errors_count=2))

    assert ledger.finalize(clean.id).status is ImportJobStatus.COMPLETED
    finished = ledger.finalize(noisy.id)
    assert finished.status is ImportJobStatus.COMPLETED_WITH_ERRORS
    assert finished.finished_at is not None


def test_mark_failed_records_summary(importer_app):
    ledger = ImportJobLedger()
    job = ledger.open_job("brands")

    ledger.mark_failed(job.id, "database went away")

    db.session.refresh(job)
    assert job.status is ImportJobStatus.FAILED
    assert job.error_summary == "database went away"


def test_changes_are_append_only(importer_app):
    ledger = ImportJobLedger()
    job = ledger.open_job("brands")
    ledger.append_changes(
        job.id,
        [PendingChange(change_type=ChangeType.CREATED, entity_type="brand", entity_id=1, entity_name="Acme")],
    )
    change = ImportChange.query.one()

    change.entity_name = "Renamed"
    with pytest.raises(ValueError):
        db.session.commit()
    db.session.rollback()


def test_multi_batch_import_aggregates_into_one_job(importer_app):
    engine = ReconciliationEngine()

    first = engine.import_batch(
        "brands",
        [{"brand_name": "Acme Spirits"}, {"brand_name": "Global Wine Co"}],
        file_name="brands.csv",
        is_last_batch=False,
    )
    assert first.status is ImportJobStatus.IN_PROGRESS

    last = engine.import_batch(
        "brands",
        [{"brand_name": "Acme Spirits"}, {"brand_name": ""}],
        is_first_batch=False,
        existing_import_job_id=first.import_job_id,
        row_offset=2,
    )

    assert last.import_job_id == first.import_job_id
    assert last.errors == ["Row 4: Missing brand_name"]
    job = db.session.get(ImportJob, first.import_job_id)
    db.session.refresh(job)
    assert job.batches_processed == 2
    assert job.rows_processed == 4
    assert job.entities_created == 2
    assert job.rows_skipped == 1
    assert job.errors_count == 1
    assert job.status is ImportJobStatus.COMPLETED_WITH_ERRORS
    assert job.file_name == "brands.csv"


def test_continuing_unknown_job_raises(importer_app):
    with pytest.raises(ImportJobNotFound):
        ReconciliationEngine().import_batch("brands", [{"brand_name": "Acme"}], existing_import_job_id=999)


def test_listed_keys_are_recorded_once_per_job(importer_app):
    ledger = ImportJobLedger()
    rel_kind = get_relationship_kind("brand_supplier_state")
    job = ledger.open_job("supplier-portfolio")
    other = ledger.open_job("supplier-portfolio")
    first_key = rel_kind.build_key(1, 10, 5)
    second_key = rel_kind.build_key(1, 11, 5)

    assert ledger.record_listed_keys(job.id, rel_kind, {1: {first_key}}) == 1
    assert ledger.record_listed_keys(job.id, rel_kind, {1: {first_key, second_key}, 2: set()}) == 1
    ledger.record_listed_keys(other.id, rel_kind, {3: {rel_kind.build_key(3, 10, 5)}})

    assert ledger.touched_relationship_keys(job.id, rel_kind) == {1: {first_key, second_key}}
    assert ImportJobKey.query.filter_by(import_job_id=job.id).count() == 2
    assert ledger.touched_relationship_keys(job.id, get_relationship_kind("brand_supplier")) == {}
