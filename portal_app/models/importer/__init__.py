"""Importer persistence models."""

from .schema import (
    JOB_COUNTER_FIELDS,
    ChangeType,
    ImportChange,
    ImportJob,
    ImportJobKey,
    ImportJobStatus,
    OrphanedRelationship,
    StagingRow,
    ValidationJob,
    ValidationJobStatus,
)

__all__ = [
    "JOB_COUNTER_FIELDS",
    "ChangeType",
    "ImportChange",
    "ImportJob",
    "ImportJobKey",
    "ImportJobStatus",
    "OrphanedRelationship",
    "StagingRow",
    "ValidationJob",
    "ValidationJobStatus",
]
