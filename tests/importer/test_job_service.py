from __future__ import annotations

import pytest
from sqlalchemy.exc import NoResultFound

from portal_app.importer.pipeline.job_service import ImportJobService, JobFilters
from portal_app.models import ChangeType, ImportJobStatus


def test_job_filters_defaults():
    filters = JobFilters.coerce()
    assert filters.page == 1
    assert filters.page_size == 25
    assert filters.sort == "-started_at"
    assert filters.statuses == ()
    assert filters.import_types == ()


def test_job_filters_caps_page_size():
    assert JobFilters.coerce(page_size="500").page_size == 100


def test_job_filters_invalid_status():
    with pytest.raises(ValueError):
        JobFilters.coerce(statuses=["bogus"])


def test_job_filters_invalid_sort():
    with pytest.raises(ValueError):
        JobFilters.coerce(sort="duration")


def test_job_filters_invalid_date_range():
    with pytest.raises(ValueError):
        JobFilters.coerce(started_from="2024-05-02", started_to="2024-05-01")


def test_list_jobs_basic(job_factory):
    job_factory(import_type="brands", status=ImportJobStatus.COMPLETED, started_offset_minutes=10)
    job_factory(import_type="brands", status=ImportJobStatus.FAILED, started_offset_minutes=5)
    job_factory(import_type="supplier-portfolio", status=ImportJobStatus.IN_PROGRESS, started_offset_minutes=2)

    result = ImportJobService().list_jobs(JobFilters.coerce())

    assert result.total == 3
    assert result.total_pages == 1
    assert result.items[0].import_type == "supplier-portfolio"
    assert result.items[0].status == ImportJobStatus.IN_PROGRESS.value


def test_list_jobs_filters_and_stats(job_factory):
    job_factory(import_type="brands", status=ImportJobStatus.COMPLETED, started_offset_minutes=30)
    job_factory(
        import_type="supplier-portfolio",
        status=ImportJobStatus.COMPLETED_WITH_ERRORS,
        started_offset_minutes=20,
        changes=(ChangeType.CREATED, ChangeType.ORPHANED),
    )
    job_factory(
        import_type="supplier-portfolio",
        status=ImportJobStatus.COMPLETED,
        started_offset_minutes=10,
        changes=(ChangeType.VERIFIED,),
    )

    service = ImportJobService()
    filters = JobFilters.coerce(import_types=["Supplier-Portfolio"])
    result = service.list_jobs(filters)
    assert result.total == 2
    assert all(item.import_type == "supplier-portfolio" for item in result.items)

    stats = service.get_stats(filters)
    assert stats.total == 2
    assert stats.statuses[ImportJobStatus.COMPLETED.value] == 1
    assert stats.statuses[ImportJobStatus.COMPLETED_WITH_ERRORS.value] == 1
    assert stats.import_types == {"supplier-portfolio": 2}
    assert stats.changes == {"created": 1, "orphaned": 1, "verified": 1}


def test_list_jobs_search_and_pagination(job_factory):
    for offset in range(3):
        job_factory(file_name=f"batch-{offset}.csv", started_offset_minutes=offset)
    target = job_factory(file_name="special-upload.csv", started_offset_minutes=10)

    service = ImportJobService()
    by_name = service.list_jobs(JobFilters.coerce(search="special"))
    assert [item.id for item in by_name.items] == [target.id]
    by_id = service.list_jobs(JobFilters.coerce(search=str(target.id)))
    assert target.id in [item.id for item in by_id.items]

    paged = service.list_jobs(JobFilters.coerce(page_size=2, page=2, sort="started_at"))
    assert paged.total == 4
    assert paged.total_pages == 2
    assert len(paged.items) == 2


def test_get_job_and_changes(job_factory):
    job = job_factory(changes=(ChangeType.CREATED, ChangeType.UPDATED, ChangeType.CREATED))
    service = ImportJobService()

    assert service.get_job(job.id).id == job.id
    changes, total = service.get_changes(job.id)
    assert total == 3
    created, created_total = service.get_changes(job.id, change_type="created")
    assert created_total == 2
    assert all(change.change_type is ChangeType.CREATED for change in created)
    _, limited_total = service.get_changes(job.id, limit=1, offset=2)
    assert limited_total == 3


def test_get_job_missing_raises(importer_app):
    service = ImportJobService()
    with pytest.raises(NoResultFound):
        service.get_job(999)
    with pytest.raises(NoResultFound):
        service.get_changes(999)


def test_summary_payload(job_factory):
    job = job_factory(duration_seconds=90, entities_created=3, relationships_orphaned=1)

    payload = ImportJobService().summarize(job).to_payload()

    assert payload["duration_seconds"] == pytest.approx(90)
    assert payload["counts"]["entities_created"] == 3
    assert payload["counts"]["relationships_orphaned"] == 1
    assert payload["status"] == "completed"
    assert payload["file_name"] == "brands.csv"
