import pytest

from portal_app.importer.pipeline.reconcile import (
    ConfirmedMatch,
    ReconciliationEngine,
    UnknownImportType,
)
from portal_app.models import (
    Brand,
    BrandCategory,
    BrandSupplier,
    BrandSupplierState,
    ChangeType,
    DistributorSupplierState,
    ImportChange,
    ImportJob,
    ImportJobStatus,
    State,
    Supplier,
    db,
)


def test_confirmed_match_parsing():
    parsed = ConfirmedMatch.parse_many(
        {
            "0": {"useExisting": True, "existingId": "12"},
            "1": {"useExisting": False},
            "bogus": {"useExisting": True, "existingId": 3},
        }
    )
    assert parsed == {
        0: ConfirmedMatch(use_existing=True, existing_id=12),
        1: ConfirmedMatch(use_existing=False, existing_id=None),
    }
    listed = ConfirmedMatch.parse_many([{"rowIndex": 4, "use_existing": True, "existing_id": 8}, "junk"])
    assert listed == {4: ConfirmedMatch(use_existing=True, existing_id=8)}


def test_confirmed_match_accepts_kind_specific_id_keys():
    parsed = ConfirmedMatch.parse_many(
        {
            "0": {"useExisting": True, "existingBrandId": 5},
            "1": {"useExisting": True, "existingSupplierId": "6"},
            "2": {"useExisting": True, "existingDistributorId": 7},
        }
    )
    assert [match.existing_id for match in parsed.values()] == [5, 6, 7]


def test_unknown_import_type_raises(importer_app):
    with pytest.raises(UnknownImportType):
        ReconciliationEngine().import_batch("wines", [{"brand_name": "Acme"}])


def test_brand_import_creates_and_is_idempotent(importer_app):
    rows = [
        {"brand_name": "Acme Spirits", "brand_url": "https://acme.test", "brand_categories": "Spirits"},
        {"brand_name": "Global Wine Co"},
    ]
    engine = ReconciliationEngine()

    first = engine.import_batch("brands", rows, file_name="brands.csv")
    assert first.status is ImportJobStatus.COMPLETED
    assert first.counters.entities_created == 2
    assert first.created == 2
    assert first.entities_created == {"brand": 2}

    acme = Brand.query.filter_by(name="Acme Spirits").one()
    assert acme.url == "https://acme.test"
    assert BrandCategory.query.filter_by(brand_id=acme.id).count() == 1

    second = engine.import_batch("brands", rows, file_name="brands.csv")
    assert second.counters.entities_created == 0
    assert second.counters.entities_updated == 0
    assert Brand.query.count() == 2
    assert BrandCategory.query.filter_by(brand_id=acme.id).count() == 1


def test_update_only_fills_empty_fields(importer_app, entity_factory):
    brand = entity_factory("brand", "Acme Spirits", url="https://old.test")

    result = ReconciliationEngine().import_batch(
        "brands",
        [{"brand_name": "Acme Spirits", "brand_url": "https://new.test", "brand_logo_url": "https://logo.test/a.png"}],
    )

    db.session.refresh(brand)
    assert brand.url == "https://old.test"
    assert brand.logo_url == "https://logo.test/a.png"
    assert result.counters.entities_updated == 1

    change = ImportChange.query.filter_by(change_type=ChangeType.UPDATED).one()
    assert change.old_value == {"logo_url": None}
    assert change.new_value == {"logo_url": "https://logo.test/a.png"}


def test_portfolio_import_creates_then_verifies(importer_app):
    rows = [{"supplier_name": "S1", "brand_name": "B1", "state_code": "CA"}]
    engine = ReconciliationEngine()

    first = engine.import_batch("supplier-portfolio", rows)
    assert first.counters.entities_created == 2
    assert first.counters.relationships_created == 1
    assert first.created == 3
    assert first.entities_created == {"supplier": 1, "brand": 1}

    second = engine.import_batch("supplier-portfolio", rows)
    assert second.counters.relationships_created == 0
    assert second.counters.relationships_verified == 1
    assert second.counters.relationships_orphaned == 0
    assert BrandSupplierState.query.count() == 1

    relationship = BrandSupplierState.query.one()
    assert relationship.is_verified is True
    assert relationship.relationship_source == "csv_import"


def test_all_states_expands_to_every_state(importer_app):
    result = ReconciliationEngine().import_batch(
        "supplier-portfolio",
        [{"supplier_name": "S1", "brand_name": "B1", "state_code": "all"}],
    )

    state_count = State.query.count()
    assert state_count > 50
    assert result.counters.relationships_created == state_count
    assert BrandSupplierState.query.count() == state_count


def test_state_resolves_by_name(importer_app, state_lookup):
    ReconciliationEngine().import_batch(
        "supplier-portfolio",
        [{"supplier_name": "S1", "brand_name": "B1", "state_name": "Oregon"}],
    )
    assert BrandSupplierState.query.one().state_id == state_lookup("OR").id


def test_row_errors_do_not_stop_the_batch(importer_app):
    rows = [
        {"supplier_name": "S1", "brand_name": "B1", "state_code": "ZZ"},
        {"supplier_name": "S1", "brand_name": "B2"},
        {"supplier_name": "S1", "brand_name": "", "state_code": "CA"},
        {"supplier_name": "S1", "brand_name": "B3", "state_code": "TX"},
    ]

    result = ReconciliationEngine().import_batch("supplier-portfolio", rows, row_offset=10)

    assert result.status is ImportJobStatus.COMPLETED_WITH_ERRORS
    assert result.errors[0] == "Row 11: State not found: ZZ"
    assert result.errors[1] == "Row 12: Missing state_code"
    assert result.errors[2].startswith("Row 13: Missing brand_name")
    assert result.counters.rows_processed == 4
    assert result.counters.rows_skipped == 3
    assert result.counters.relationships_created == 1

    job = db.session.get(ImportJob, result.import_job_id)
    assert job.errors_count == 3
    assert job.status is ImportJobStatus.COMPLETED_WITH_ERRORS


def test_error_list_is_truncated_in_payload(importer_app):
    rows = [{"supplier_name": "S1", "brand_name": f"B{i}", "state_code": "ZZ"} for i in range(5)]

    payload = ReconciliationEngine(max_errors=2).import_batch("supplier-portfolio", rows).to_payload()

    assert len(payload["errors"]) == 2
    assert payload["errorsTotal"] == 5
    assert payload["errorsTruncated"] is True


def test_confirmed_match_overrides_name_lookup(importer_app, entity_factory):
    existing = entity_factory("brand", "Acme Spirits")

    result = ReconciliationEngine().import_batch(
        "brands",
        [{"brand_name": "ACME Spirits International", "brand_url": "https://acme.test"}],
        confirmed_matches={"0": {"useExisting": True, "existingId": existing.id}},
    )

    assert result.counters.entities_created == 0
    assert result.counters.entities_updated == 1
    assert Brand.query.count() == 1
    change = ImportChange.query.filter_by(change_type=ChangeType.UPDATED).one()
    assert change.metadata_json == {"basis": "confirmed"}


def test_confirmed_match_to_missing_entity_falls_back_to_name(importer_app):
    result = ReconciliationEngine().import_batch(
        "brands",
        [{"brand_name": "Acme Spirits"}],
        confirmed_matches={"0": {"useExisting": True, "existingId": 999}},
    )

    assert result.counters.entities_created == 1
    assert result.errors == []
    assert "999 not found" in result.warnings[0]
    assert result.status is ImportJobStatus.COMPLETED
    assert result.to_payload()["warnings"] == result.warnings


def test_fuzzy_matches_are_not_applied_without_confirmation(importer_app, entity_factory):
    entity_factory("brand", "Global Wine Co")

    result = ReconciliationEngine().import_batch("brands", [{"brand_name": "The Global Wine Company"}])

    assert result.counters.entities_created == 1
    assert Brand.query.count() == 2


def test_fuzzy_matches_auto_accepted_when_enabled(importer_app, entity_factory):
    entity_factory("brand", "Global Wine Co")

    result = ReconciliationEngine(auto_accept_fuzzy=True).import_batch(
        "brands", [{"brand_name": "The Global Wine Company", "brand_url": "https://gwc.test"}]
    )

    assert result.counters.entities_created == 0
    assert Brand.query.count() == 1
    assert Brand.query.one().url == "https://gwc.test"


def test_concurrent_insert_is_treated_as_verification(importer_app, entity_factory, relationship_factory, monkeypatch):
    brand = entity_factory("brand", "B1")
    supplier = entity_factory("supplier", "S1")
    relationship_factory(brand, supplier, "CA", verified=False)
    db.session.expunge_all()

    engine = ReconciliationEngine()
    real_lookup = engine.store.get_relationship
    calls = {"count": 0}

    def _stale_first_lookup(rel_kind, key):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return real_lookup(rel_kind, key)

    monkeypatch.setattr(engine.store, "get_relationship", _stale_first_lookup)

    result = engine.import_batch(
        "supplier-portfolio",
        [{"supplier_name": "S1", "brand_name": "B1", "state_code": "CA"}],
    )

    assert result.errors == []
    assert result.counters.relationships_created == 0
    assert result.counters.relationships_verified == 1
    assert BrandSupplierState.query.count() == 1
    assert BrandSupplierState.query.one().is_verified is True


def test_unscoped_brand_supplier_import(importer_app):
    result = ReconciliationEngine().import_batch("brand-supplier", [{"supplier_name": "S1", "brand_name": "B1"}])

    assert result.counters.relationships_created == 1
    link = BrandSupplier.query.one()
    assert link.brand_id == Brand.query.one().id
    assert link.supplier_id == Supplier.query.one().id


def test_distributor_supplier_portfolio(importer_app):
    result = ReconciliationEngine().import_batch(
        "distributor-supplier-portfolio",
        [{"distributor_name": "D1", "supplier_name": "S1", "state_code": "NY"}],
    )

    assert result.counters.relationships_created == 1
    assert DistributorSupplierState.query.count() == 1
    assert result.entities_created == {"distributor": 1, "supplier": 1}


def test_created_changes_are_audited(importer_app):
    result = ReconciliationEngine().import_batch(
        "supplier-portfolio",
        [{"supplier_name": "S1", "brand_name": "B1", "state_code": "CA"}],
    )

    changes = ImportChange.query.filter_by(import_job_id=result.import_job_id).all()
    assert sorted((change.change_type.value, change.entity_type) for change in changes) == [
        ("created", "brand"),
        ("created", "brand_supplier_state"),
        ("created", "supplier"),
    ]
    relationship_change = next(change for change in changes if change.entity_type == "brand_supplier_state")
    assert relationship_change.source_row["brand_name"] == "B1"
