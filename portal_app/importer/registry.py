"""
Entity, relationship, and import-type registry.

Every import flow runs through the same matcher and reconciliation engine; the
descriptors here supply the per-type pieces (which model to read, which row
columns hold the name and optional fields, which relationship table a
portfolio import writes).
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Tuple

from portal_app.models import (
    Brand,
    BrandDistributorState,
    BrandSupplier,
    BrandSupplierState,
    Distributor,
    DistributorSupplierState,
    Supplier,
)

from .pipeline.normalize import clean_display_name


def _clean_optional(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class EntityKind:
    """How one entity type is stored and how its fields appear in import rows."""

    name: str
    model: type
    name_field: str
    url_field: str
    logo_field: str

    def extract_name(self, row: Mapping[str, Any]) -> str:
        return clean_display_name(row.get(self.name_field))

    def extract_fields(self, row: Mapping[str, Any]) -> dict[str, str | None]:
        return {
            "url": _clean_optional(row.get(self.url_field)),
            "logo_url": _clean_optional(row.get(self.logo_field)),
            "data_source": _clean_optional(row.get("data_source")),
        }


@dataclass(frozen=True)
class RelationshipKind:
    """A relationship table and the entity kinds on either side of it."""

    name: str
    model: type
    owner: str
    member: str

    @property
    def scoped(self) -> bool:
        return "state_id" in self.model.KEY_COLUMNS

    @property
    def owner_column(self) -> str:
        return self.model.OWNER_COLUMN

    @property
    def member_column(self) -> str:
        return self.model.MEMBER_COLUMN

    @property
    def key_columns(self) -> Tuple[str, ...]:
        return tuple(self.model.KEY_COLUMNS)

    def build_key(self, owner_id: int, member_id: int, state_id: int | None = None) -> Tuple[int, ...]:
        values = {self.owner_column: owner_id, self.member_column: member_id, "state_id": state_id}
        return tuple(values[column] for column in self.key_columns)

    def key_to_dict(self, key: Sequence[int]) -> dict[str, int]:
        return dict(zip(self.key_columns, key))

    def key_from_dict(self, payload: Mapping[str, Any]) -> Tuple[int, ...]:
        return tuple(int(payload[column]) for column in self.key_columns)


@dataclass(frozen=True)
class ImportTypeDescriptor:
    """Metadata describing one import workflow."""

    name: str
    title: str
    primary: str
    relationship: str | None = None
    summary: str | None = None


ENTITY_KINDS: Mapping[str, EntityKind] = OrderedDict(
    (
        ("brand", EntityKind("brand", Brand, "brand_name", "brand_url", "brand_logo_url")),
        ("supplier", EntityKind("supplier", Supplier, "supplier_name", "supplier_url", "supplier_logo_url")),
        (
            "distributor",
            EntityKind("distributor", Distributor, "distributor_name", "distributor_url", "distributor_logo_url"),
        ),
    )
)

RELATIONSHIP_KINDS: Mapping[str, RelationshipKind] = OrderedDict(
    (
        ("brand_supplier_state", RelationshipKind("brand_supplier_state", BrandSupplierState, "supplier", "brand")),
        (
            "brand_distributor_state",
            RelationshipKind("brand_distributor_state", BrandDistributorState, "distributor", "brand"),
        ),
        (
            "distributor_supplier_state",
            RelationshipKind("distributor_supplier_state", DistributorSupplierState, "distributor", "supplier"),
        ),
        ("brand_supplier", RelationshipKind("brand_supplier", BrandSupplier, "supplier", "brand")),
    )
)


def get_import_type_registry() -> Mapping[str, ImportTypeDescriptor]:
    """Return the registry of supported import types."""
    return OrderedDict(
        (
            (
                "brands",
                ImportTypeDescriptor(
                    name="brands",
                    title="Brands",
                    primary="brand",
                    summary="Create or enrich brands, linking categories.",
                ),
            ),
            (
                "suppliers",
                ImportTypeDescriptor(name="suppliers", title="Suppliers", primary="supplier"),
            ),
            (
                "distributors",
                ImportTypeDescriptor(name="distributors", title="Distributors", primary="distributor"),
            ),
            (
                "supplier-portfolio",
                ImportTypeDescriptor(
                    name="supplier-portfolio",
                    title="Supplier Portfolio",
                    primary="brand",
                    relationship="brand_supplier_state",
                    summary="Brands a supplier carries, per state.",
                ),
            ),
            (
                "distributor-portfolio",
                ImportTypeDescriptor(
                    name="distributor-portfolio",
                    title="Distributor Portfolio",
                    primary="brand",
                    relationship="brand_distributor_state",
                    summary="Brands a distributor carries, per state.",
                ),
            ),
            (
                "distributor-supplier-portfolio",
                ImportTypeDescriptor(
                    name="distributor-supplier-portfolio",
                    title="Distributor Suppliers",
                    primary="supplier",
                    relationship="distributor_supplier_state",
                    summary="Suppliers a distributor represents, per state.",
                ),
            ),
            (
                "brand-supplier",
                ImportTypeDescriptor(
                    name="brand-supplier",
                    title="Brand Ownership",
                    primary="brand",
                    relationship="brand_supplier",
                    summary="Unscoped brand-to-supplier ownership.",
                ),
            ),
        )
    )


def get_entity_kind(name: str) -> EntityKind:
    try:
        return ENTITY_KINDS[name]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {name}") from None


def get_relationship_kind(name: str) -> RelationshipKind:
    try:
        return RELATIONSHIP_KINDS[name]
    except KeyError:
        raise ValueError(f"Unknown relationship kind: {name}") from None


def get_owner_kind(descriptor: ImportTypeDescriptor) -> EntityKind | None:
    if descriptor.relationship is None:
        return None
    return get_entity_kind(get_relationship_kind(descriptor.relationship).owner)


def resolve_import_types(
    configured: Sequence[str],
    registry: Mapping[str, ImportTypeDescriptor] | None = None,
) -> Iterable[ImportTypeDescriptor]:
    """
    Map configured import type names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_import_type_registry()
    unknown = sorted({name for name in configured if name not in registry})
    if unknown:
        raise ValueError(
            "Unknown import types configured: "
            + ", ".join(unknown)
            + ". Update IMPORTER_IMPORT_TYPES or register these import types first."
        )
    return tuple(registry[name] for name in configured)
