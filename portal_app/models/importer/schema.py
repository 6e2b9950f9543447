"""
SQLAlchemy models backing the import pipeline.

``ImportJob`` is the ledger row for one (possibly multi-batch) import run,
``ImportChange`` its append-only audit trail. ``OrphanedRelationship`` keeps
relationships removed by an import so they can be restored. ``StagingRow``
holds rows awaiting human approval and ``ValidationJob`` tracks asynchronous
validation requests with an explicit expiry.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportJobStatus(str, enum.Enum):
    """Lifecycle states for an import job."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    PARTIAL = "partial"
    FAILED = "failed"


class ChangeType(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    VERIFIED = "verified"
    ORPHANED = "orphaned"
    RESTORED = "restored"


class ValidationJobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


JOB_COUNTER_FIELDS = (
    "entities_created",
    "entities_updated",
    "relationships_created",
    "relationships_verified",
    "relationships_orphaned",
    "rows_processed",
    "rows_skipped",
    "errors_count",
    "batches_processed",
)


class ImportJob(BaseModel):
    """Ledger row for one import run of one import type."""

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    import_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_job_status_enum"),
        nullable=False,
        default=ImportJobStatus.IN_PROGRESS,
        index=True,
    )
    started_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    entities_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    entities_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    relationships_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    relationships_verified: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    relationships_orphaned: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    errors_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    batches_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    migration_summary: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Outcome of the most recent staging migration for this job.",
    )

    changes = relationship(
        "ImportChange",
        back_populates="import_job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportChange.id",
    )
    staging_rows = relationship(
        "StagingRow",
        back_populates="import_job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    listed_keys = relationship(
        "ImportJobKey",
        back_populates="import_job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_import_jobs_type_started", "import_type", "started_at"),)

    def __repr__(self) -> str:
        return f"<ImportJob id={self.id} type={self.import_type} status={self.status}>"

    def counters(self) -> dict[str, int]:
        return {field: int(getattr(self, field) or 0) for field in JOB_COUNTER_FIELDS}


class ImportChange(BaseModel):
    """One audited mutation made by an import job. Rows are never updated."""

    __tablename__ = "import_changes"

    id: Mapped[int] = mapped_column(primary_key=True)
    import_job_id: Mapped[int] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    change_type: Mapped[ChangeType] = mapped_column(Enum(ChangeType, name="import_change_type_enum"), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    entity_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    old_value: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    new_value: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    source_row: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    import_job = relationship("ImportJob", back_populates="changes")

    __table_args__ = (Index("idx_import_changes_job_entity", "import_job_id", "entity_type"),)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "import_job_id": self.import_job_id,
            "change_type": self.change_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "source_row": self.source_row,
            "metadata": self.metadata_json,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(ImportChange, "before_update")
def _reject_change_update(mapper, connection, target):
    raise ValueError(f"ImportChange {target.id} is append-only and cannot be modified.")


class ImportJobKey(BaseModel):
    """A relationship identity an import job listed, whether or not its write succeeded."""

    __tablename__ = "import_job_keys"

    id: Mapped[int] = mapped_column(primary_key=True)
    import_job_id: Mapped[int] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    owner_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    key_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)

    import_job = relationship("ImportJob", back_populates="listed_keys")

    __table_args__ = (Index("idx_import_job_keys_job_type", "import_job_id", "relationship_type"),)


class OrphanedRelationship(BaseModel):
    """Snapshot of a relationship removed because an import no longer listed it."""

    __tablename__ = "orphaned_relationships"

    id: Mapped[int] = mapped_column(primary_key=True)
    relationship_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    owner_id: Mapped[int] = mapped_column(db.Integer, nullable=False, index=True)
    key_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    was_verified: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    last_verified_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    relationship_source: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    reason: Mapped[str] = mapped_column(db.String(100), nullable=False, default="not_in_import")
    orphaned_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    import_job_id: Mapped[int | None] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    import_job = relationship("ImportJob")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "relationship_type": self.relationship_type,
            "owner_id": self.owner_id,
            "key": dict(self.key_json or {}),
            "was_verified": self.was_verified,
            "last_verified_at": self.last_verified_at.isoformat() if self.last_verified_at else None,
            "relationship_source": self.relationship_source,
            "reason": self.reason,
            "orphaned_at": self.orphaned_at.isoformat() if self.orphaned_at else None,
            "import_job_id": self.import_job_id,
        }


class StagingRow(BaseModel):
    """Raw import row awaiting human approval before migration."""

    __tablename__ = "staging_rows"

    id: Mapped[int] = mapped_column(primary_key=True)
    import_job_id: Mapped[int] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    import_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    row_index: Mapped[int] = mapped_column(db.Integer, nullable=False)
    raw_fields: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    match_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    is_approved: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)

    import_job = relationship("ImportJob", back_populates="staging_rows")

    __table_args__ = (Index("idx_staging_rows_type_approved", "import_type", "is_approved"),)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "import_job_id": self.import_job_id,
            "import_type": self.import_type,
            "row_index": self.row_index,
            "raw_fields": dict(self.raw_fields or {}),
            "match": self.match_json,
            "is_approved": self.is_approved,
        }


class ValidationJob(BaseModel):
    """Durable status record for an asynchronous validation request."""

    __tablename__ = "validation_jobs"

    id: Mapped[str] = mapped_column(db.String(32), primary_key=True)
    import_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    status: Mapped[ValidationJobStatus] = mapped_column(
        Enum(ValidationJobStatus, name="validation_job_status_enum"),
        nullable=False,
        default=ValidationJobStatus.PENDING,
    )
    progress: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    results_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "jobId": self.id,
            "importType": self.import_type,
            "status": self.status.value,
            "progress": self.progress,
            "total": self.total,
            "message": self.message,
            "results": self.results_json,
            "error": self.error,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }
