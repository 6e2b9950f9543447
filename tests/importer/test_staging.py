import pytest
from sqlalchemy.exc import NoResultFound

from portal_app.importer.pipeline.staging import StagingService, confirmed_match_from_review
from portal_app.models import Brand, BrandSupplierState, ImportJob, ImportJobStatus, StagingRow, db


def _stage_brands(rows):
    return StagingService().stage_batch("brands", rows, file_name="brands.csv")


def test_stage_batch_stores_rows_with_match(importer_app, entity_factory):
    entity_factory("brand", "Acme Spirits")

    summary = _stage_brands([{"brand_name": "Acme Spirits"}, {"brand_name": "Brand New"}])

    assert summary.rows_staged == 2
    assert summary.summary.as_dict()["exact"] == 1
    assert summary.summary.as_dict()["new"] == 1
    rows = StagingRow.query.order_by(StagingRow.row_index).all()
    assert [row.row_index for row in rows] == [0, 1]
    assert rows[0].match_json["matchType"] == "exact"
    assert rows[0].is_approved is False
    assert Brand.query.count() == 1


def test_list_rows_filters_by_approval(importer_app):
    _stage_brands([{"brand_name": "One"}, {"brand_name": "Two"}, {"brand_name": "Three"}])
    service = StagingService()
    first_id = StagingRow.query.order_by(StagingRow.id).first().id

    service.approve(first_id)

    approved, approved_total = service.list_rows("brands", approved=True)
    pending, pending_total = service.list_rows("brands", approved=False)
    assert approved_total == 1
    assert approved[0].id == first_id
    assert pending_total == 2
    assert len(pending) == 2


def test_approve_missing_row_raises(importer_app):
    with pytest.raises(NoResultFound):
        StagingService().approve(404)


def test_set_approval_bulk(importer_app):
    _stage_brands([{"brand_name": "One"}, {"brand_name": "Two"}])
    ids = [row.id for row in StagingRow.query.all()]

    assert StagingService().set_approval(ids) == 2
    assert StagingService().set_approval([]) == 0
    assert StagingRow.query.filter_by(is_approved=True).count() == 2


def test_migrate_applies_only_approved_rows(importer_app, entity_factory):
    entity_factory("brand", "Acme Spirits")
    summary = _stage_brands(
        [
            {"brand_name": "Acme Spirits", "brand_url": "https://acme.test"},
            {"brand_name": "Brand New"},
            {"brand_name": "Not Yet"},
        ]
    )
    service = StagingService()
    to_approve = StagingRow.query.filter(StagingRow.row_index.in_([0, 1])).all()
    service.set_approval([row.id for row in to_approve])

    result = service.migrate_approved("brands")

    assert result.migrated == 2
    assert result.failed == 0
    assert Brand.query.count() == 2
    assert Brand.query.filter_by(name="Acme Spirits").one().url == "https://acme.test"
    remaining = StagingRow.query.all()
    assert [row.raw_fields["brand_name"] for row in remaining] == ["Not Yet"]

    job = db.session.get(ImportJob, summary.import_job_id)
    db.session.refresh(job)
    assert job.status is ImportJobStatus.COMPLETED
    assert job.migration_summary["migrated"] == 2
    assert job.entities_created == 1
    assert job.entities_updated == 1


def test_migrate_keeps_failed_rows_staged(importer_app):
    StagingService().stage_batch(
        "supplier-portfolio",
        [
            {"supplier_name": "S1", "brand_name": "B1", "state_code": "CA"},
            {"supplier_name": "S1", "brand_name": "B2", "state_code": "ZZ"},
        ],
    )
    service = StagingService()
    service.set_approval([row.id for row in StagingRow.query.all()])

    result = service.migrate_approved("supplier-portfolio")

    assert result.migrated == 1
    assert result.failed == 1
    assert result.errors[0].startswith("Staging row ")
    assert BrandSupplierState.query.count() == 1
    leftover = StagingRow.query.one()
    assert leftover.raw_fields["brand_name"] == "B2"
    job = db.session.get(ImportJob, leftover.import_job_id)
    assert job.status is ImportJobStatus.PARTIAL


def test_migration_does_not_orphan(importer_app, entity_factory, relationship_factory):
    supplier = entity_factory("supplier", "S1")
    relationship_factory(entity_factory("brand", "Old Brand"), supplier, "CA")
    StagingService().stage_batch(
        "supplier-portfolio", [{"supplier_name": "S1", "brand_name": "B1", "state_code": "CA"}]
    )
    service = StagingService()
    service.set_approval([row.id for row in StagingRow.query.all()])

    service.migrate_approved("supplier-portfolio")

    assert BrandSupplierState.query.count() == 2


def test_explicit_confirmation_overrides_stored_suggestion(importer_app, entity_factory):
    target = entity_factory("brand", "Global Wine Co")
    _stage_brands([{"brand_name": "Totally Different Name"}])
    row = StagingRow.query.one()
    service = StagingService()
    service.approve(row.id)

    service.migrate_approved(
        "brands",
        confirmed_matches={str(row.id): {"useExisting": True, "existingId": target.id}},
    )

    assert Brand.query.count() == 1


def test_missing_confirmed_entity_warns_without_failing_migration(importer_app):
    _stage_brands([{"brand_name": "Brand New"}])
    row = StagingRow.query.one()
    service = StagingService()
    service.approve(row.id)

    result = service.migrate_approved(
        "brands",
        confirmed_matches={str(row.id): {"useExisting": True, "existingBrandId": 999}},
    )

    assert result.migrated == 1
    assert result.errors == []
    assert result.warnings == [f"Staging row {row.id}: brand 999 not found; resolved 'Brand New' by name instead"]
    job = ImportJob.query.one()
    assert job.status is ImportJobStatus.COMPLETED
    assert job.migration_summary["warnings"] == result.warnings


def test_confirmed_match_from_review():
    assert confirmed_match_from_review(None) is None
    assert confirmed_match_from_review({"matchType": "new", "matchedEntity": None}) is None
    confirmed = confirmed_match_from_review({"matchType": "fuzzy", "matchedEntity": {"id": 5}})
    assert confirmed.use_existing is True
    assert confirmed.existing_id == 5
