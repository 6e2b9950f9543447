from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from portal_app.importer import init_importer
from portal_app.models import (
    Brand,
    BrandSupplierState,
    ChangeType,
    Distributor,
    ImportChange,
    ImportJob,
    ImportJobStatus,
    State,
    Supplier,
    db,
)

ALL_IMPORT_TYPES = (
    "brands",
    "suppliers",
    "distributors",
    "supplier-portfolio",
    "distributor-portfolio",
    "distributor-supplier-portfolio",
    "brand-supplier",
)


@pytest.fixture
def importer_app(app, reference_data):
    app.config.update(
        {
            "IMPORTER_ENABLED": True,
            "IMPORTER_IMPORT_TYPES": ALL_IMPORT_TYPES,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_MATCH_THRESHOLD": 0.75,
        }
    )
    init_importer(app)
    yield app


@pytest.fixture
def entity_factory(importer_app):
    models = {"brand": Brand, "supplier": Supplier, "distributor": Distributor}

    def _factory(kind: str, name: str, **fields):
        entity = models[kind](name=name, **fields)
        db.session.add(entity)
        db.session.commit()
        return entity

    return _factory


@pytest.fixture
def state_lookup(importer_app):
    def _lookup(code: str) -> State:
        return State.query.filter_by(code=code).one()

    return _lookup


@pytest.fixture
def relationship_factory(importer_app, state_lookup):
    def _factory(brand, supplier, state_code: str = "CA", *, verified: bool = True) -> BrandSupplierState:
        relationship = BrandSupplierState(
            brand_id=brand.id,
            supplier_id=supplier.id,
            state_id=state_lookup(state_code).id,
            is_verified=verified,
            last_verified_at=datetime.now(timezone.utc) if verified else None,
            relationship_source="seed",
        )
        db.session.add(relationship)
        db.session.commit()
        return relationship

    return _factory


@pytest.fixture
def job_factory(importer_app):
    def _factory(
        *,
        import_type: str = "brands",
        status: ImportJobStatus = ImportJobStatus.COMPLETED,
        started_offset_minutes: int = 0,
        duration_seconds: int = 60,
        file_name: str | None = "brands.csv",
        changes: tuple[ChangeType, ...] = (),
        **counters,
    ) -> ImportJob:
        now = datetime.now(timezone.utc)
        started_at = now.replace(microsecond=0) - timedelta(minutes=started_offset_minutes)
        finished_at = None
        if status is not ImportJobStatus.IN_PROGRESS:
            finished_at = started_at + timedelta(seconds=duration_seconds)

        job = ImportJob(
            import_type=import_type,
            file_name=file_name,
            status=status,
            started_at=started_at,
            finished_at=finished_at,
            **counters,
        )
        db.session.add(job)
        db.session.flush()
        for change_type in changes:
            db.session.add(
                ImportChange(
                    import_job_id=job.id,
                    change_type=change_type,
                    entity_type="brand",
                    entity_name="Seeded Brand",
                )
            )
        db.session.commit()
        return job

    return _factory
