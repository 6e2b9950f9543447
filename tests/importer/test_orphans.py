import pytest
from sqlalchemy.exc import NoResultFound

from portal_app.importer.pipeline.orphans import OrphanFilters, OrphanService
from portal_app.importer.pipeline.reconcile import ReconciliationEngine
from portal_app.importer.pipeline.store import StoreError
from portal_app.models import (
    Brand,
    BrandSupplierState,
    ChangeType,
    ImportChange,
    OrphanedRelationship,
    Supplier,
    db,
)


def _portfolio_rows(supplier: str, brands, state: str = "CA"):
    return [{"supplier_name": supplier, "brand_name": brand, "state_code": state} for brand in brands]


@pytest.fixture
def seeded_portfolio(importer_app):
    """S1 carries B1, B2, and B3 in CA; S2 carries B1 in CA."""
    engine = ReconciliationEngine()
    engine.import_batch("supplier-portfolio", _portfolio_rows("S1", ["B1", "B2", "B3"]))
    engine.import_batch("supplier-portfolio", _portfolio_rows("S2", ["B1"]))
    return engine


def _brand(name: str) -> Brand:
    return Brand.query.filter_by(name=name).one()


def test_unlisted_relationship_is_orphaned(seeded_portfolio):
    result = seeded_portfolio.import_batch("supplier-portfolio", _portfolio_rows("S1", ["B1", "B2"]))

    assert result.counters.relationships_verified == 2
    assert result.counters.relationships_orphaned == 1
    s1 = Supplier.query.filter_by(name="S1").one()
    remaining = {row.brand_id for row in BrandSupplierState.query.filter_by(supplier_id=s1.id)}
    assert remaining == {_brand("B1").id, _brand("B2").id}

    orphan = OrphanedRelationship.query.one()
    assert orphan.relationship_type == "brand_supplier_state"
    assert orphan.owner_id == s1.id
    assert orphan.key_json["brand_id"] == _brand("B3").id
    assert orphan.import_job_id == result.import_job_id
    assert orphan.was_verified is True

    assert _brand("B3").is_orphaned is True
    assert _brand("B1").is_orphaned is False

    orphaned_change = ImportChange.query.filter_by(
        import_job_id=result.import_job_id, change_type=ChangeType.ORPHANED
    ).one()
    assert orphaned_change.entity_id == _brand("B3").id


def _fail_verification_for(engine, monkeypatch, brand_id):
    real_verify = engine.store.verify_relationship

    def _verify(relationship, **kwargs):
        if relationship.brand_id == brand_id:
            raise StoreError("transient write failure")
        return real_verify(relationship, **kwargs)

    monkeypatch.setattr(engine.store, "verify_relationship", _verify)


def test_listed_relationship_with_failed_write_is_not_orphaned(seeded_portfolio, monkeypatch):
    b3_id = _brand("B3").id
    _fail_verification_for(seeded_portfolio, monkeypatch, b3_id)

    result = seeded_portfolio.import_batch("supplier-portfolio", _portfolio_rows("S1", ["B1", "B2", "B3"]))

    assert result.errors == ["Row 3: transient write failure"]
    assert result.counters.relationships_orphaned == 0
    assert OrphanedRelationship.query.count() == 0
    assert BrandSupplierState.query.filter_by(brand_id=b3_id).count() == 1


def test_failed_write_in_earlier_batch_still_counts_as_listed(seeded_portfolio, monkeypatch):
    b3_id = _brand("B3").id
    _fail_verification_for(seeded_portfolio, monkeypatch, b3_id)

    first = seeded_portfolio.import_batch(
        "supplier-portfolio",
        _portfolio_rows("S1", ["B3"]),
        is_first_batch=True,
        is_last_batch=False,
    )
    last = seeded_portfolio.import_batch(
        "supplier-portfolio",
        _portfolio_rows("S1", ["B1"]),
        is_first_batch=False,
        is_last_batch=True,
        existing_import_job_id=first.import_job_id,
        row_offset=1,
    )

    assert first.errors == ["Row 1: transient write failure"]
    assert last.counters.relationships_orphaned == 1
    orphan = OrphanedRelationship.query.one()
    assert orphan.key_json["brand_id"] == _brand("B2").id
    assert BrandSupplierState.query.filter_by(brand_id=b3_id).count() == 2


def test_other_owners_are_untouched(seeded_portfolio):
    seeded_portfolio.import_batch("supplier-portfolio", _portfolio_rows("S1", ["B2"]))

    s2 = Supplier.query.filter_by(name="S2").one()
    assert BrandSupplierState.query.filter_by(supplier_id=s2.id).count() == 1
    # B1 is still carried by S2, so only B3 loses every relationship
    assert _brand("B1").is_orphaned is False
    assert _brand("B3").is_orphaned is True


def test_orphan_detection_waits_for_last_batch(seeded_portfolio):
    first = seeded_portfolio.import_batch(
        "supplier-portfolio",
        _portfolio_rows("S1", ["B1"]),
        is_last_batch=False,
    )
    assert first.counters.relationships_orphaned == 0
    assert OrphanedRelationship.query.count() == 0

    last = seeded_portfolio.import_batch(
        "supplier-portfolio",
        _portfolio_rows("S1", ["B2"]),
        is_first_batch=False,
        is_last_batch=True,
        existing_import_job_id=first.import_job_id,
        row_offset=1,
    )

    assert last.import_job_id == first.import_job_id
    assert last.counters.relationships_orphaned == 1
    orphan = OrphanedRelationship.query.one()
    assert orphan.key_json["brand_id"] == _brand("B3").id


def test_restore_reverses_orphaning(seeded_portfolio):
    seeded_portfolio.import_batch("supplier-portfolio", _portfolio_rows("S1", ["B1", "B2"]))
    orphan = OrphanedRelationship.query.one()

    relationship = OrphanService().restore(orphan.id)

    assert relationship.is_verified is True
    assert relationship.brand_id == _brand("B3").id
    assert OrphanedRelationship.query.count() == 0
    assert BrandSupplierState.query.count() == 4
    assert _brand("B3").is_orphaned is False


def test_restore_reverifies_existing_relationship(seeded_portfolio):
    seeded_portfolio.import_batch("supplier-portfolio", _portfolio_rows("S1", ["B1", "B2"]))
    orphan_id = OrphanedRelationship.query.one().id
    # B3 comes back through a later import before the orphan is restored
    seeded_portfolio.import_batch("supplier-portfolio", _portfolio_rows("S1", ["B1", "B2", "B3"]))

    OrphanService().restore(orphan_id)

    assert BrandSupplierState.query.count() == 4
    assert OrphanedRelationship.query.count() == 0


def test_delete_permanently(seeded_portfolio):
    seeded_portfolio.import_batch("supplier-portfolio", _portfolio_rows("S1", ["B1", "B2"]))
    orphan_id = OrphanedRelationship.query.one().id

    OrphanService().delete_permanently(orphan_id)

    assert db.session.get(OrphanedRelationship, orphan_id) is None
    assert BrandSupplierState.query.count() == 3


def test_missing_orphan_raises(importer_app):
    service = OrphanService()
    with pytest.raises(NoResultFound):
        service.restore(404)
    with pytest.raises(NoResultFound):
        service.delete_permanently(404)


def test_list_orphans_filters(seeded_portfolio):
    seeded_portfolio.import_batch("supplier-portfolio", _portfolio_rows("S1", ["B1"]))
    s1 = Supplier.query.filter_by(name="S1").one()
    service = OrphanService()

    everything = service.list_orphans()
    assert everything.total == 2

    by_owner = service.list_orphans(OrphanFilters.coerce({"owner_id": str(s1.id)}))
    assert by_owner.total == 2
    assert service.list_orphans(OrphanFilters.coerce({"owner_id": s1.id + 100})).total == 0

    paged = service.list_orphans(page=2, per_page=1)
    assert paged.total == 2
    assert len(paged.items) == 1


def test_orphan_filters_ignore_unknown_relationship_type():
    filters = OrphanFilters.coerce({"relationship_type": "nonsense", "owner_id": "abc"})
    assert filters.relationship_type is None
    assert filters.owner_id is None
