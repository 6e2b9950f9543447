# portal_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .catalog import (
    Brand,
    BrandCategory,
    BrandSubCategory,
    Category,
    Distributor,
    State,
    SubCategory,
    Supplier,
)
from .importer import (
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
from .relationships import BrandDistributorState, BrandSupplier, BrandSupplierState, DistributorSupplierState

__all__ = [
    "db",
    "BaseModel",
    # Catalog
    "Brand",
    "Supplier",
    "Distributor",
    "State",
    "Category",
    "SubCategory",
    "BrandCategory",
    "BrandSubCategory",
    # Relationships
    "BrandSupplierState",
    "BrandDistributorState",
    "DistributorSupplierState",
    "BrandSupplier",
    # Importer
    "ImportJob",
    "ImportJobKey",
    "ImportJobStatus",
    "ImportChange",
    "ChangeType",
    "OrphanedRelationship",
    "StagingRow",
    "ValidationJob",
    "ValidationJobStatus",
]
