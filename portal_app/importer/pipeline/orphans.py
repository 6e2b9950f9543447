"""
Orphan lifecycle: move relationships an import no longer lists out of the
active tables, and restore or permanently delete them on request.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Collection, Mapping, Sequence

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import NoResultFound

from portal_app.importer.metrics import record_orphan_event
from portal_app.importer.registry import RELATIONSHIP_KINDS, get_entity_kind, get_relationship_kind
from portal_app.models import ChangeType, OrphanedRelationship, db

from .ledger import PendingChange
from .store import EntityStore, StoreError

REASON_NOT_IN_IMPORT = "not_in_import"
ENTITY_ORPHAN_REASON = "no_active_relationships"
RESTORED_SOURCE = "orphan_restore"


@dataclass(frozen=True)
class OrphanFilters:
    relationship_type: str | None = None
    owner_id: int | None = None
    import_job_id: int | None = None
    reason: str | None = None

    @classmethod
    def coerce(cls, raw: Mapping[str, Any] | None) -> "OrphanFilters":
        raw = raw or {}
        relationship_type = (raw.get("relationship_type") or "").strip() or None
        if relationship_type and relationship_type not in RELATIONSHIP_KINDS:
            relationship_type = None
        return cls(
            relationship_type=relationship_type,
            owner_id=_coerce_int(raw.get("owner_id")),
            import_job_id=_coerce_int(raw.get("import_job_id")),
            reason=(raw.get("reason") or "").strip() or None,
        )


@dataclass(slots=True)
class OrphanListResult:
    items: Sequence[OrphanedRelationship]
    total: int
    page: int
    per_page: int


class OrphanService:
    """Detect, list, restore, and delete orphaned relationships."""

    def __init__(self, session: Session | None = None, *, store: EntityStore | None = None) -> None:
        self.session: Session = session or db.session
        self.store = store or EntityStore(self.session)

    def orphan_untouched(
        self,
        rel_kind,
        owner_id: int,
        touched_keys: Collection[tuple[int, ...]],
        *,
        import_job_id: int | None = None,
        reason: str = REASON_NOT_IN_IMPORT,
    ) -> list[PendingChange]:
        """
        Move the owner's relationships that the import did not touch into the
        orphan table. The owner's set is read fresh from the store.

        Returns the ledger changes describing each orphaned relationship.
        """
        existing = self.store.list_relationships(rel_kind, owner_id)
        changes: list[PendingChange] = []
        member_ids: set[int] = set()
        for relationship in existing:
            key = relationship.identity()
            if key in touched_keys:
                continue
            snapshot = rel_kind.key_to_dict(key)
            self.session.add(
                OrphanedRelationship(
                    relationship_type=rel_kind.name,
                    owner_id=owner_id,
                    key_json=snapshot,
                    was_verified=bool(relationship.is_verified),
                    last_verified_at=relationship.last_verified_at,
                    relationship_source=relationship.relationship_source,
                    reason=reason,
                    import_job_id=import_job_id,
                )
            )
            self.store.delete_relationship(relationship, commit=False)
            member_ids.add(getattr(relationship, rel_kind.member_column))
            changes.append(
                PendingChange(
                    change_type=ChangeType.ORPHANED,
                    entity_type=rel_kind.name,
                    entity_id=getattr(relationship, rel_kind.member_column),
                    entity_name=f"{rel_kind.owner} {owner_id} -> {rel_kind.member} "
                    f"{getattr(relationship, rel_kind.member_column)}",
                    old_value={
                        **snapshot,
                        "was_verified": bool(relationship.is_verified),
                        "last_verified_at": _isoformat(relationship.last_verified_at),
                        "relationship_source": relationship.relationship_source,
                    },
                    source_row={"reason": reason},
                )
            )

        if not changes:
            return changes

        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"Failed to orphan {rel_kind.name} relationships for owner {owner_id}: {exc}") from exc

        for member_id in member_ids:
            self.sync_member_flag(rel_kind, member_id)
        record_orphan_event(rel_kind.name, "orphaned", len(changes))
        current_app.logger.info(
            "Orphaned %s %s relationships for owner %s",
            len(changes),
            rel_kind.name,
            owner_id,
            extra={"relationship_kind": rel_kind.name, "owner_id": owner_id, "import_job_id": import_job_id},
        )
        return changes

    def sync_member_flag(self, rel_kind, member_id: int) -> None:
        """Flag a member entity as orphaned when it has no relationships of this kind left."""
        member_kind = get_entity_kind(rel_kind.member)
        entity = self.store.get_entity(member_kind, member_id)
        if entity is None:
            return
        has_active = self.store.has_relationships(rel_kind, rel_kind.member_column, member_id)
        self.store.set_orphan_flag(entity, not has_active, reason=ENTITY_ORPHAN_REASON)

    def list_orphans(
        self,
        filters: OrphanFilters | None = None,
        *,
        page: int = 1,
        per_page: int = 50,
    ) -> OrphanListResult:
        filters = filters or OrphanFilters()
        query = self.session.query(OrphanedRelationship)
        if filters.relationship_type:
            query = query.filter(OrphanedRelationship.relationship_type == filters.relationship_type)
        if filters.owner_id is not None:
            query = query.filter(OrphanedRelationship.owner_id == filters.owner_id)
        if filters.import_job_id is not None:
            query = query.filter(OrphanedRelationship.import_job_id == filters.import_job_id)
        if filters.reason:
            query = query.filter(OrphanedRelationship.reason == filters.reason)

        page = max(1, page)
        per_page = max(1, min(per_page, 500))
        total = query.count()
        items = (
            query.order_by(OrphanedRelationship.orphaned_at.desc(), OrphanedRelationship.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return OrphanListResult(items=items, total=total, page=page, per_page=per_page)

    def get_orphan(self, orphan_id: int) -> OrphanedRelationship:
        orphan = self.session.get(OrphanedRelationship, orphan_id)
        if orphan is None:
            raise NoResultFound(f"Orphaned relationship {orphan_id} not found.")
        return orphan

    def restore(self, orphan_id: int):
        """
        Re-activate an orphaned relationship as verified and remove the orphan.

        If an active relationship with the same key already exists (the pair was
        re-imported meanwhile) it is re-verified instead.
        """
        orphan = self.get_orphan(orphan_id)
        rel_kind = get_relationship_kind(orphan.relationship_type)
        key = rel_kind.key_from_dict(orphan.key_json)
        now = datetime.now(timezone.utc)

        relationship = self.store.get_relationship(rel_kind, key)
        if relationship is None:
            relationship = rel_kind.model(
                **rel_kind.key_to_dict(key),
                is_verified=True,
                last_verified_at=now,
                relationship_source=orphan.relationship_source or RESTORED_SOURCE,
            )
            self.session.add(relationship)
        else:
            relationship.is_verified = True
            relationship.last_verified_at = now
        self.session.delete(orphan)
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"Failed to restore orphan {orphan_id}: {exc}") from exc

        self.sync_member_flag(rel_kind, key[rel_kind.key_columns.index(rel_kind.member_column)])
        record_orphan_event(rel_kind.name, "restored")
        current_app.logger.info(
            "Restored orphaned relationship %s",
            orphan_id,
            extra={"relationship_kind": rel_kind.name, "relationship_key": list(key)},
        )
        return relationship

    def delete_permanently(self, orphan_id: int) -> None:
        orphan = self.get_orphan(orphan_id)
        relationship_type = orphan.relationship_type
        self.session.delete(orphan)
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"Failed to delete orphan {orphan_id}: {exc}") from exc
        record_orphan_event(relationship_type, "deleted")
        current_app.logger.info("Deleted orphaned relationship %s", orphan_id)


def _coerce_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


__all__ = [
    "ENTITY_ORPHAN_REASON",
    "OrphanFilters",
    "OrphanListResult",
    "OrphanService",
    "REASON_NOT_IN_IMPORT",
]
