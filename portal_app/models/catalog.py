# portal_app/models/catalog.py

from sqlalchemy import Index, func

from .base import BaseModel, db


class EntityMixin:
    """Columns shared by brands, suppliers, and distributors."""

    id = db.Column(db.Integer, primary_key=True)
    # Unique at the storage layer; matching treats the name as the natural key
    name = db.Column(db.String(255), nullable=False, unique=True, index=True)
    url = db.Column(db.String(500), nullable=True)
    logo_url = db.Column(db.String(500), nullable=True)
    data_source = db.Column(db.String(100), nullable=True)

    # Orphan metadata
    is_orphaned = db.Column(db.Boolean, default=False, nullable=False, index=True)
    orphaned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    orphaned_reason = db.Column(db.String(100), nullable=True)

    FILLABLE_FIELDS = ("url", "logo_url", "data_source")

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "logo_url": self.logo_url,
            "data_source": self.data_source,
            "is_orphaned": self.is_orphaned,
            "orphaned_at": self.orphaned_at.isoformat() if self.orphaned_at else None,
        }


class Brand(EntityMixin, BaseModel):
    """A beverage brand."""

    __tablename__ = "brands"

    categories = db.relationship("BrandCategory", back_populates="brand", cascade="all, delete-orphan")
    sub_categories = db.relationship("BrandSubCategory", back_populates="brand", cascade="all, delete-orphan")


class Supplier(EntityMixin, BaseModel):
    """A supplier (brand owner or importer)."""

    __tablename__ = "suppliers"


class Distributor(EntityMixin, BaseModel):
    """A distributor operating in one or more states."""

    __tablename__ = "distributors"


class State(BaseModel):
    """US state (or territory) used to scope relationships."""

    __tablename__ = "states"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(2), nullable=False, unique=True, index=True)
    name = db.Column(db.String(100), nullable=False)

    def __repr__(self):
        return f"<State {self.code}>"

    def to_dict(self):
        return {"id": self.id, "code": self.code, "name": self.name}


class Category(BaseModel):
    __tablename__ = "categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)

    sub_categories = db.relationship("SubCategory", back_populates="category", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_category_name_lower", func.lower(name)),)

    def __repr__(self):
        return f"<Category {self.name}>"


class SubCategory(BaseModel):
    __tablename__ = "sub_categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)

    category = db.relationship("Category", back_populates="sub_categories")

    __table_args__ = (db.UniqueConstraint("category_id", "name", name="uq_sub_category_name"),)

    def __repr__(self):
        return f"<SubCategory {self.name}>"


class BrandCategory(BaseModel):
    __tablename__ = "brand_categories"

    brand_id = db.Column(db.Integer, db.ForeignKey("brands.id", ondelete="CASCADE"), primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True)

    brand = db.relationship("Brand", back_populates="categories")
    category = db.relationship("Category")


class BrandSubCategory(BaseModel):
    __tablename__ = "brand_sub_categories"

    brand_id = db.Column(db.Integer, db.ForeignKey("brands.id", ondelete="CASCADE"), primary_key=True)
    sub_category_id = db.Column(
        db.Integer, db.ForeignKey("sub_categories.id", ondelete="CASCADE"), primary_key=True
    )

    brand = db.relationship("Brand", back_populates="sub_categories")
    sub_category = db.relationship("SubCategory")
