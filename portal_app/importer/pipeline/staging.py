"""
Staging store: import rows held for human approval before migration.

Staged rows keep their raw fields and the matcher's classification at staging
time. Migration applies approved rows through the reconciliation engine,
deletes the rows it applied, and leaves failed rows staged for another try.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import NoResultFound

from portal_app.models import ImportJobStatus, StagingRow, db

from .ledger import ImportJobLedger, ImportSetupError
from .matcher import RowMatcher, ValidationSummary
from .reconcile import ConfirmedMatch, ReconciliationEngine, get_import_type
from .store import EntityStore


@dataclass(slots=True)
class StagingSummary:
    import_job_id: int
    import_type: str
    rows_staged: int
    summary: ValidationSummary

    def to_payload(self) -> dict[str, Any]:
        return {
            "importJobId": self.import_job_id,
            "importType": self.import_type,
            "staged": self.rows_staged,
            "summary": self.summary.as_dict(),
        }


@dataclass(slots=True)
class MigrationSummary:
    import_type: str
    migrated: int = 0
    failed: int = 0
    jobs: dict[int, dict[str, Any]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_payload(self, *, max_errors: int = 20) -> dict[str, Any]:
        return {
            "importType": self.import_type,
            "migrated": self.migrated,
            "failed": self.failed,
            "jobs": {str(job_id): payload for job_id, payload in self.jobs.items()},
            "errors": self.errors[:max_errors],
            "errorsTotal": len(self.errors),
            "warnings": self.warnings[:max_errors],
        }


def confirmed_match_from_review(match_payload: Mapping[str, Any] | None) -> ConfirmedMatch | None:
    """
    Approving a staged row confirms the matcher's suggestion: an exact or fuzzy
    match becomes "use existing", anything else creates.
    """
    if not match_payload:
        return None
    matched = match_payload.get("matchedEntity") or {}
    if match_payload.get("matchType") in ("exact", "fuzzy") and matched.get("id") is not None:
        return ConfirmedMatch(use_existing=True, existing_id=int(matched["id"]))
    return None


class StagingService:
    """Stage, review, and migrate import rows."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        ledger: ImportJobLedger | None = None,
        engine: ReconciliationEngine | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.ledger = ledger or ImportJobLedger(self.session)
        self._engine = engine

    @property
    def engine(self) -> ReconciliationEngine:
        if self._engine is None:
            self._engine = ReconciliationEngine(self.session, ledger=self.ledger)
        return self._engine

    def stage_batch(
        self,
        import_type: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        file_name: str | None = None,
        existing_import_job_id: int | None = None,
        row_offset: int = 0,
    ) -> StagingSummary:
        descriptor = get_import_type(import_type)
        job = self.ledger.open_job(import_type, file_name=file_name, existing_job_id=existing_import_job_id)
        matcher = RowMatcher(descriptor, store=EntityStore(self.session))

        summary = ValidationSummary()
        for position, row in enumerate(rows):
            review = matcher.review_row(position, row)
            summary.add(review.match.match_type)
            self.session.add(
                StagingRow(
                    import_job_id=job.id,
                    import_type=import_type,
                    row_index=row_offset + position,
                    raw_fields=dict(row),
                    match_json=review.to_payload(),
                    is_approved=False,
                )
            )
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise ImportSetupError(f"Failed to stage rows: {exc}") from exc

        current_app.logger.info(
            "Staged %s %s rows",
            len(rows),
            import_type,
            extra={"import_job_id": job.id, "import_type": import_type, "import_validation_summary": summary.as_dict()},
        )
        return StagingSummary(
            import_job_id=job.id,
            import_type=import_type,
            rows_staged=len(rows),
            summary=summary,
        )

    def list_rows(
        self,
        import_type: str,
        *,
        approved: bool | None = None,
        import_job_id: int | None = None,
        page: int = 1,
        per_page: int = 100,
    ) -> tuple[list[StagingRow], int]:
        query = self.session.query(StagingRow).filter(StagingRow.import_type == import_type)
        if approved is not None:
            query = query.filter(StagingRow.is_approved.is_(approved))
        if import_job_id is not None:
            query = query.filter(StagingRow.import_job_id == import_job_id)
        total = query.count()
        page = max(1, page)
        per_page = max(1, min(per_page, 1000))
        rows = (
            query.order_by(StagingRow.import_job_id, StagingRow.row_index, StagingRow.id)
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return rows, total

    def approve(self, staging_id: int, approved: bool = True) -> StagingRow:
        row = self.session.get(StagingRow, staging_id)
        if row is None:
            raise NoResultFound(f"Staging row {staging_id} not found.")
        row.is_approved = approved
        self.session.commit()
        return row

    def set_approval(self, staging_ids: Sequence[int], approved: bool = True) -> int:
        """Flip approval for many rows at once. Returns the number of rows updated."""
        ids = sorted({int(staging_id) for staging_id in staging_ids})
        if not ids:
            return 0
        result = self.session.execute(
            update(StagingRow)
            .where(StagingRow.id.in_(ids))
            .values(is_approved=approved)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return int(result.rowcount or 0)

    def migrate_approved(
        self,
        import_type: str,
        *,
        import_job_id: int | None = None,
        confirmed_matches: Mapping[int, Any] | None = None,
    ) -> MigrationSummary:
        """
        Apply approved staged rows to production tables.

        ``confirmed_matches`` is keyed by staging row id and overrides the
        suggestion stored with the row. Migration does not orphan relationships
        because only a subset of a file may have been approved.
        """
        get_import_type(import_type)
        query = self.session.query(StagingRow).filter(
            StagingRow.import_type == import_type,
            StagingRow.is_approved.is_(True),
        )
        if import_job_id is not None:
            query = query.filter(StagingRow.import_job_id == import_job_id)
        staged = query.order_by(StagingRow.import_job_id, StagingRow.row_index, StagingRow.id).all()

        explicit = ConfirmedMatch.parse_many(confirmed_matches)
        by_job: "OrderedDict[int, list[StagingRow]]" = OrderedDict()
        for row in staged:
            by_job.setdefault(row.import_job_id, []).append(row)

        summary = MigrationSummary(import_type=import_type)
        for job_id, job_rows in by_job.items():
            self._migrate_job_rows(import_type, job_id, job_rows, explicit, summary)

        current_app.logger.info(
            "Migrated %s staged %s rows",
            summary.migrated,
            import_type,
            extra={"import_type": import_type, "migrated": summary.migrated, "failed": summary.failed},
        )
        return summary

    def _migrate_job_rows(
        self,
        import_type: str,
        job_id: int,
        job_rows: list[StagingRow],
        explicit: Mapping[int, ConfirmedMatch],
        summary: MigrationSummary,
    ) -> None:
        staging_ids = [row.id for row in job_rows]
        raw_rows = [dict(row.raw_fields or {}) for row in job_rows]
        overrides: dict[int, ConfirmedMatch] = {}
        for position, row in enumerate(job_rows):
            override = explicit.get(row.id) or confirmed_match_from_review(row.match_json)
            if override is not None:
                overrides[position] = override
        labels = {position: f"Staging row {row.id}" for position, row in enumerate(job_rows)}

        context = self.engine.new_context(import_type)
        outcome = self.engine.process_rows(
            context,
            enumerate(raw_rows),
            overrides=overrides,
            labels=labels,
        )
        self.ledger.append_changes(job_id, outcome.changes)
        outcome.counters.errors_count = len(outcome.errors)
        self.ledger.record_batch(job_id, outcome.counters, count_batch=False)

        migrated_ids = [staging_ids[position] for position in outcome.applied_rows]
        if migrated_ids:
            self.session.execute(
                delete(StagingRow)
                .where(StagingRow.id.in_(migrated_ids))
                .execution_options(synchronize_session=False)
            )
            self.session.commit()

        failed = len(job_rows) - len(migrated_ids)
        job_payload = {
            "migrated": len(migrated_ids),
            "failed": failed,
            "counts": outcome.counters.as_dict(),
            "errors": outcome.errors[:20],
            "warnings": outcome.warnings[:20],
        }
        job = self.ledger.finalize(
            job_id,
            status=ImportJobStatus.PARTIAL if outcome.errors else ImportJobStatus.COMPLETED,
        )
        job.migration_summary = job_payload
        self.session.commit()

        summary.migrated += len(migrated_ids)
        summary.failed += failed
        summary.errors.extend(outcome.errors)
        summary.warnings.extend(outcome.warnings)
        summary.jobs[job_id] = job_payload


__all__ = ["MigrationSummary", "StagingService", "StagingSummary", "confirmed_match_from_review"]
