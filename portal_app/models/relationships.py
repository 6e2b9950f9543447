"""
Relationship tables linking brands, suppliers, distributors, and states.

Each table's primary key is the full identity tuple, so a relationship can
exist at most once. ``KEY_COLUMNS`` lists that tuple in a stable order,
``OWNER_COLUMN`` names the entity whose import defines the relationship set,
and ``MEMBER_COLUMN`` names the entity listed in the owner's portfolio.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class RelationshipMixin:
    KEY_COLUMNS = ()
    OWNER_COLUMN = ""
    MEMBER_COLUMN = ""

    is_verified: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    last_verified_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    relationship_source: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    def identity(self) -> tuple[int, ...]:
        return tuple(getattr(self, column) for column in self.KEY_COLUMNS)

    def to_dict(self) -> dict:
        payload = {column: getattr(self, column) for column in self.KEY_COLUMNS}
        payload.update(
            {
                "is_verified": self.is_verified,
                "last_verified_at": self.last_verified_at.isoformat() if self.last_verified_at else None,
                "relationship_source": self.relationship_source,
            }
        )
        return payload


class BrandSupplierState(RelationshipMixin, BaseModel):
    """A supplier carries a brand in a state."""

    __tablename__ = "brand_supplier_states"

    KEY_COLUMNS = ("brand_id", "supplier_id", "state_id")
    OWNER_COLUMN = "supplier_id"
    MEMBER_COLUMN = "brand_id"

    brand_id: Mapped[int] = mapped_column(ForeignKey("brands.id", ondelete="CASCADE"), primary_key=True)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="CASCADE"), primary_key=True)
    state_id: Mapped[int] = mapped_column(ForeignKey("states.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (Index("idx_bss_supplier_state", "supplier_id", "state_id"),)


class BrandDistributorState(RelationshipMixin, BaseModel):
    """A distributor carries a brand in a state."""

    __tablename__ = "brand_distributor_states"

    KEY_COLUMNS = ("brand_id", "distributor_id", "state_id")
    OWNER_COLUMN = "distributor_id"
    MEMBER_COLUMN = "brand_id"

    brand_id: Mapped[int] = mapped_column(ForeignKey("brands.id", ondelete="CASCADE"), primary_key=True)
    distributor_id: Mapped[int] = mapped_column(
        ForeignKey("distributors.id", ondelete="CASCADE"), primary_key=True
    )
    state_id: Mapped[int] = mapped_column(ForeignKey("states.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (Index("idx_bds_distributor_state", "distributor_id", "state_id"),)


class DistributorSupplierState(RelationshipMixin, BaseModel):
    """A distributor represents a supplier in a state."""

    __tablename__ = "distributor_supplier_states"

    KEY_COLUMNS = ("distributor_id", "supplier_id", "state_id")
    OWNER_COLUMN = "distributor_id"
    MEMBER_COLUMN = "supplier_id"

    distributor_id: Mapped[int] = mapped_column(
        ForeignKey("distributors.id", ondelete="CASCADE"), primary_key=True
    )
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="CASCADE"), primary_key=True)
    state_id: Mapped[int] = mapped_column(ForeignKey("states.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (Index("idx_dss_distributor_state", "distributor_id", "state_id"),)


class BrandSupplier(RelationshipMixin, BaseModel):
    """Unscoped brand ownership by a supplier."""

    __tablename__ = "brand_suppliers"

    KEY_COLUMNS = ("brand_id", "supplier_id")
    OWNER_COLUMN = "supplier_id"
    MEMBER_COLUMN = "brand_id"

    brand_id: Mapped[int] = mapped_column(ForeignKey("brands.id", ondelete="CASCADE"), primary_key=True)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="CASCADE"), primary_key=True)
