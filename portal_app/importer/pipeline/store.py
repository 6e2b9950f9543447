"""
Entity store used by the matcher and reconciliation engine.

Every write commits on its own so a failure rolls back only that write; rows
already written by a batch stay written. Unique-key violations surface as
``DuplicateKeyError`` so callers can treat them as a lookup conflict.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Sequence

from flask import current_app
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from portal_app.models import BrandCategory, BrandSubCategory, Category, State, SubCategory, db

from .candidate_index import EntityRecord

DEFAULT_PAGE_SIZE = 1000


class StoreError(Exception):
    """A read or write against the entity store failed."""


class DuplicateKeyError(StoreError):
    """An insert collided with an existing unique key."""


def is_duplicate_key_error(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "23505":
        return True
    message = str(orig if orig is not None else exc).lower()
    return "unique constraint" in message or "duplicate key" in message


class EntityStore:
    """Read and write entities, relationships, and reference data."""

    def __init__(self, session: Session | None = None, *, page_size: int | None = None) -> None:
        self.session = session or db.session
        if page_size is None:
            page_size = int(current_app.config.get("IMPORTER_FETCH_PAGE_SIZE", DEFAULT_PAGE_SIZE))
        self.page_size = max(1, page_size)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------
    def iter_entity_pages(self, kind, *, page_size: int | None = None) -> Iterator[list[EntityRecord]]:
        """Yield pages of entity snapshots until the collection is exhausted."""
        size = page_size or self.page_size
        model = kind.model
        offset = 0
        while True:
            try:
                rows = self.session.execute(
                    select(model.id, model.name, model.url, model.logo_url, model.data_source)
                    .order_by(model.id)
                    .limit(size)
                    .offset(offset)
                ).all()
            except SQLAlchemyError as exc:
                raise StoreError(f"Failed to fetch {kind.name} records at offset {offset}: {exc}") from exc
            page = [
                EntityRecord(
                    id=row.id,
                    name=row.name,
                    url=row.url,
                    logo_url=row.logo_url,
                    data_source=row.data_source,
                )
                for row in rows
            ]
            if page:
                yield page
            if len(rows) < size:
                return
            offset += size

    def fetch_all(self, kind, *, page_size: int | None = None) -> list[EntityRecord]:
        records: list[EntityRecord] = []
        for page in self.iter_entity_pages(kind, page_size=page_size):
            records.extend(page)
        return records

    def get_entity(self, kind, entity_id: int):
        try:
            return self.session.get(kind.model, entity_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load {kind.name} {entity_id}: {exc}") from exc

    def find_entity_by_name(self, kind, name: str):
        try:
            return self.session.scalars(
                select(kind.model).where(kind.model.name == name).order_by(kind.model.id).limit(1)
            ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to look up {kind.name} '{name}': {exc}") from exc

    def create_entity(self, kind, name: str, fields: Mapping[str, Any]):
        entity = kind.model(name=name, **{key: value for key, value in fields.items() if value is not None})
        self.session.add(entity)
        self._commit(f"create {kind.name} '{name}'")
        return entity

    def fill_missing_fields(self, entity, fields: Mapping[str, Any]) -> dict[str, tuple[Any, Any]]:
        """
        Set only the fields that are currently empty on ``entity``.

        Returns a mapping of changed field name to ``(old, new)``.
        """
        changed: dict[str, tuple[Any, Any]] = {}
        for field_name in entity.FILLABLE_FIELDS:
            new_value = fields.get(field_name)
            if new_value is None:
                continue
            current = getattr(entity, field_name)
            if current is None or current == "":
                changed[field_name] = (current, new_value)
                setattr(entity, field_name, new_value)
        if changed:
            self._commit(f"update {type(entity).__name__} {entity.id}")
        return changed

    def set_orphan_flag(self, entity, orphaned: bool, *, reason: str | None = None) -> bool:
        if bool(entity.is_orphaned) == orphaned:
            return False
        entity.is_orphaned = orphaned
        entity.orphaned_at = datetime.now(timezone.utc) if orphaned else None
        entity.orphaned_reason = reason if orphaned else None
        self._commit(f"flag {type(entity).__name__} {entity.id}")
        return True

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------
    def get_relationship(self, rel_kind, key: Sequence[int]):
        try:
            return self.session.scalars(select(rel_kind.model).filter_by(**rel_kind.key_to_dict(key))).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load {rel_kind.name} {tuple(key)}: {exc}") from exc

    def insert_relationship(
        self,
        rel_kind,
        key: Sequence[int],
        *,
        source: str | None,
        verified_at: datetime,
        is_verified: bool = True,
    ):
        relationship = rel_kind.model(
            **rel_kind.key_to_dict(key),
            is_verified=is_verified,
            last_verified_at=verified_at,
            relationship_source=source,
        )
        self.session.add(relationship)
        self._commit(f"insert {rel_kind.name} {tuple(key)}")
        return relationship

    def verify_relationship(self, relationship, *, source: str | None, verified_at: datetime):
        relationship.is_verified = True
        relationship.last_verified_at = verified_at
        if source:
            relationship.relationship_source = source
        self._commit(f"verify {type(relationship).__name__} {relationship.identity()}")
        return relationship

    def list_relationships(self, rel_kind, owner_id: int, *, state_ids: Sequence[int] | None = None) -> list:
        model = rel_kind.model
        stmt = select(model).where(getattr(model, rel_kind.owner_column) == owner_id)
        if state_ids is not None and rel_kind.scoped:
            stmt = stmt.where(model.state_id.in_(list(state_ids)))
        try:
            # populate_existing so the snapshot reflects the store, not the identity map
            return list(self.session.scalars(stmt.execution_options(populate_existing=True)))
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to list {rel_kind.name} for owner {owner_id}: {exc}") from exc

    def delete_relationship(self, relationship, *, commit: bool = True) -> None:
        self.session.delete(relationship)
        if commit:
            self._commit(f"delete {type(relationship).__name__} {relationship.identity()}")

    def has_relationships(self, rel_kind, column: str, entity_id: int) -> bool:
        model = rel_kind.model
        return bool(self.session.scalar(select(exists().where(getattr(model, column) == entity_id))))

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------
    def list_states(self) -> list[State]:
        try:
            return list(self.session.scalars(select(State).order_by(State.code)))
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to fetch states: {exc}") from exc

    def category_lookup(self) -> dict[str, Category]:
        try:
            categories = self.session.scalars(select(Category).order_by(Category.id))
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to fetch categories: {exc}") from exc
        lookup: dict[str, Category] = {}
        for category in categories:
            lookup.setdefault(category.name.strip().lower(), category)
        return lookup

    def sub_category_lookup(self) -> dict[str, SubCategory]:
        try:
            sub_categories = self.session.scalars(select(SubCategory).order_by(SubCategory.id))
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to fetch sub-categories: {exc}") from exc
        lookup: dict[str, SubCategory] = {}
        for sub_category in sub_categories:
            lookup.setdefault(sub_category.name.strip().lower(), sub_category)
        return lookup

    def link_brand_categories(
        self,
        brand_id: int,
        categories: Sequence[Category],
        sub_categories: Sequence[SubCategory] = (),
    ) -> int:
        """Attach categories to a brand, skipping existing links. Returns links added."""
        existing_categories = set(
            self.session.scalars(select(BrandCategory.category_id).where(BrandCategory.brand_id == brand_id))
        )
        existing_sub_categories = set(
            self.session.scalars(
                select(BrandSubCategory.sub_category_id).where(BrandSubCategory.brand_id == brand_id)
            )
        )
        added = 0
        for category in categories:
            if category.id in existing_categories:
                continue
            self.session.add(BrandCategory(brand_id=brand_id, category_id=category.id))
            existing_categories.add(category.id)
            added += 1
        for sub_category in sub_categories:
            if sub_category.id in existing_sub_categories:
                continue
            self.session.add(BrandSubCategory(brand_id=brand_id, sub_category_id=sub_category.id))
            existing_sub_categories.add(sub_category.id)
            added += 1
        if added:
            self._commit(f"link categories to brand {brand_id}")
        return added

    # ------------------------------------------------------------------
    def _commit(self, action: str) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            if is_duplicate_key_error(exc):
                raise DuplicateKeyError(f"Duplicate key on {action}") from exc
            raise StoreError(f"Constraint violation on {action}: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            current_app.logger.warning(
                "Entity store write failed",
                extra={"store_action": action, "store_error": str(exc)},
            )
            raise StoreError(f"Failed to {action}: {exc}") from exc


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "DuplicateKeyError",
    "EntityStore",
    "StoreError",
    "is_duplicate_key_error",
]
