"""
Reconciliation engine: apply matched import rows to the entity store.

For each row the named entity is resolved (human override, then exact name,
then insert), portfolio rows additionally resolve the owning entity and upsert
one relationship per state. Relationship writes are idempotent: an existing
identity tuple is re-verified, never inserted twice. Row failures are
collected and the batch continues; rows already written stay written.
"""

from __future__ import annotations

import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy.orm import Session

from portal_app.importer.metrics import record_import_batch, record_relationship_write
from portal_app.importer.registry import (
    EntityKind,
    ImportTypeDescriptor,
    RelationshipKind,
    get_entity_kind,
    get_import_type_registry,
    get_owner_kind,
    get_relationship_kind,
)
from portal_app.models import ChangeType, ImportJobStatus, State, db

from .ledger import BatchCounters, ImportJobLedger, ImportSetupError, PendingChange
from .matcher import MatchType, RowMatch, RowMatcher, split_list_field
from .orphans import OrphanService
from .store import DuplicateKeyError, EntityStore, StoreError

DEFAULT_RELATIONSHIP_SOURCE = "csv_import"
ALL_STATES_CODE = "ALL"
DEFAULT_MAX_ERRORS = 20
EXISTING_ID_KEYS = ("existingId", "existing_id", "existingBrandId", "existingSupplierId", "existingDistributorId")


class ImportRowError(Exception):
    """A single row cannot be applied; the batch continues."""


class UnknownImportType(ValueError):
    """The requested import type is not registered."""


@dataclass(frozen=True)
class ConfirmedMatch:
    """Reviewer decision for one row: use an existing entity or create a new one."""

    use_existing: bool
    existing_id: int | None = None

    @classmethod
    def parse_many(cls, raw: Any) -> dict[int, "ConfirmedMatch"]:
        """
        Accept ``{"<rowIndex>": {...}}`` or ``[{"rowIndex": n, ...}]`` payloads.
        Entries that cannot be parsed are ignored.
        """
        if not raw:
            return {}
        if isinstance(raw, Mapping):
            items = [(key, value) for key, value in raw.items()]
        else:
            items = [(entry.get("rowIndex"), entry) for entry in raw if isinstance(entry, Mapping)]

        parsed: dict[int, ConfirmedMatch] = {}
        for key, value in items:
            if not isinstance(value, Mapping):
                continue
            try:
                row_index = int(key)
            except (TypeError, ValueError):
                continue
            existing_id = next((value[key] for key in EXISTING_ID_KEYS if value.get(key) not in (None, "")), None)
            try:
                existing_id = int(existing_id) if existing_id not in (None, "") else None
            except (TypeError, ValueError):
                existing_id = None
            use_existing = value.get("useExisting", value.get("use_existing", False))
            parsed[row_index] = cls(use_existing=bool(use_existing), existing_id=existing_id)
        return parsed

    def as_dict(self) -> dict[str, Any]:
        return {"useExisting": self.use_existing, "existingId": self.existing_id}


@dataclass(slots=True)
class BatchOutcome:
    counters: BatchCounters = field(default_factory=BatchCounters)
    changes: list[PendingChange] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    touched: dict[int, set[tuple[int, ...]]] = field(default_factory=lambda: defaultdict(set))
    entities_created: Counter = field(default_factory=Counter)
    applied_rows: list[int] = field(default_factory=list)


@dataclass(slots=True)
class ImportBatchResult:
    import_job_id: int
    import_type: str
    status: ImportJobStatus
    counters: BatchCounters
    errors: list[str]
    entities_created: dict[str, int]
    warnings: list[str] = field(default_factory=list)
    max_errors: int = DEFAULT_MAX_ERRORS

    @property
    def created(self) -> int:
        return self.counters.entities_created + self.counters.relationships_created

    def to_payload(self) -> dict[str, Any]:
        return {
            "importJobId": self.import_job_id,
            "importType": self.import_type,
            "status": self.status.value,
            "created": self.created,
            "updated": self.counters.entities_updated,
            "verified": self.counters.relationships_verified,
            "orphaned": self.counters.relationships_orphaned,
            "skipped": self.counters.rows_skipped,
            "errors": self.errors[: self.max_errors],
            "errorsTotal": len(self.errors),
            "errorsTruncated": len(self.errors) > self.max_errors,
            "warnings": list(self.warnings),
            "entitiesCreated": dict(self.entities_created),
            "relationshipsCreated": self.counters.relationships_created,
            "rowsProcessed": self.counters.rows_processed,
        }


@dataclass(slots=True)
class _BatchContext:
    descriptor: ImportTypeDescriptor
    kind: EntityKind
    owner_kind: EntityKind | None
    rel_kind: RelationshipKind | None
    outcome: BatchOutcome
    states_by_code: dict[str, State] = field(default_factory=dict)
    states_by_name: dict[str, State] = field(default_factory=dict)
    categories: dict[str, Any] = field(default_factory=dict)
    sub_categories: dict[str, Any] = field(default_factory=dict)


def get_import_type(import_type: str) -> ImportTypeDescriptor:
    descriptor = get_import_type_registry().get(import_type)
    if descriptor is None:
        raise UnknownImportType(f"Unknown import type: {import_type}")
    return descriptor


def _row_label(row_index: int, row_offset: int) -> str:
    return f"Row {row_index + row_offset + 1}"


class ReconciliationEngine:
    """Apply import batches to entities and relationships."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        store: EntityStore | None = None,
        ledger: ImportJobLedger | None = None,
        orphans: OrphanService | None = None,
        relationship_source: str = DEFAULT_RELATIONSHIP_SOURCE,
        max_errors: int | None = None,
        auto_accept_fuzzy: bool | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.store = store or EntityStore(self.session)
        self.ledger = ledger or ImportJobLedger(self.session)
        self.orphans = orphans or OrphanService(self.session, store=self.store)
        self.relationship_source = relationship_source
        config = current_app.config
        self.max_errors = max_errors if max_errors is not None else int(
            config.get("IMPORTER_MAX_ERRORS", DEFAULT_MAX_ERRORS)
        )
        self.auto_accept_fuzzy = (
            auto_accept_fuzzy if auto_accept_fuzzy is not None else bool(config.get("IMPORTER_AUTO_ACCEPT_FUZZY"))
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def import_batch(
        self,
        import_type: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        file_name: str | None = None,
        is_first_batch: bool = True,
        is_last_batch: bool = True,
        existing_import_job_id: int | None = None,
        confirmed_matches: Any = None,
        matches: Mapping[int, RowMatch] | None = None,
        row_offset: int = 0,
    ) -> ImportBatchResult:
        """
        Reconcile one batch of rows and update the job ledger.

        Args:
            import_type: Registered import type name.
            rows: Parsed rows for this batch.
            file_name: Source file name recorded on a new job.
            is_first_batch: Whether this batch starts a job (informational when
                ``existing_import_job_id`` is given).
            is_last_batch: Run orphan detection and set the terminal status.
            existing_import_job_id: Ledger row to continue.
            confirmed_matches: Reviewer overrides keyed by row index.
            matches: Row Matcher output keyed by row index, used when fuzzy
                matches are auto-accepted.
            row_offset: Position of this batch's first row in the source file.

        Raises:
            UnknownImportType: ``import_type`` is not registered.
            ImportSetupError: reference data or the ledger row is unavailable.
        """
        descriptor = get_import_type(import_type)
        if existing_import_job_id is None and not is_first_batch:
            current_app.logger.warning(
                "Continuation batch without an import job id; opening a new job",
                extra={"import_type": import_type},
            )
        context = self._build_context(descriptor)
        job = self.ledger.open_job(import_type, file_name=file_name, existing_job_id=existing_import_job_id)
        job_id = job.id
        started = time.perf_counter()

        try:
            overrides = ConfirmedMatch.parse_many(confirmed_matches)
            if self.auto_accept_fuzzy and matches is None:
                matcher = RowMatcher(descriptor, store=self.store)
                matches = {position: matcher.match(position, row) for position, row in enumerate(rows)}

            self.process_rows(
                context,
                enumerate(rows),
                overrides=overrides,
                matches=matches,
                row_offset=row_offset,
            )
            outcome = context.outcome
            self.ledger.append_changes(job_id, outcome.changes)
            if context.rel_kind is not None:
                self.ledger.record_listed_keys(job_id, context.rel_kind, outcome.touched)

            if is_last_batch and context.rel_kind is not None:
                self._orphan_pass(context, job_id)

            outcome.counters.errors_count = len(outcome.errors)
            self.ledger.record_batch(job_id, outcome.counters)
            status = job.status
            if is_last_batch:
                status = self.ledger.finalize(job_id).status
        except ImportSetupError:
            raise
        except Exception as exc:
            current_app.logger.exception(
                "Import batch failed",
                extra={"import_job_id": job_id, "import_type": import_type},
            )
            self.ledger.mark_failed(job_id, str(exc))
            record_import_batch(import_type, status="failure", duration_seconds=time.perf_counter() - started)
            raise

        duration = time.perf_counter() - started
        record_import_batch(
            import_type,
            status="with_errors" if outcome.errors else "success",
            duration_seconds=duration,
        )
        current_app.logger.info(
            "Reconciled %s batch for import job %s",
            import_type,
            job_id,
            extra={
                "import_job_id": job_id,
                "import_type": import_type,
                "import_batch_counts": outcome.counters.as_dict(),
                "import_batch_last": is_last_batch,
                "import_batch_seconds": round(duration, 3),
            },
        )
        return ImportBatchResult(
            import_job_id=job_id,
            import_type=import_type,
            status=status,
            counters=outcome.counters,
            errors=list(outcome.errors),
            entities_created=dict(outcome.entities_created),
            warnings=list(outcome.warnings),
            max_errors=self.max_errors,
        )

    # ------------------------------------------------------------------
    # Row processing
    # ------------------------------------------------------------------
    def new_context(self, import_type: str) -> _BatchContext:
        return self._build_context(get_import_type(import_type))

    def _build_context(self, descriptor: ImportTypeDescriptor) -> _BatchContext:
        rel_kind = get_relationship_kind(descriptor.relationship) if descriptor.relationship else None
        context = _BatchContext(
            descriptor=descriptor,
            kind=get_entity_kind(descriptor.primary),
            owner_kind=get_owner_kind(descriptor),
            rel_kind=rel_kind,
            outcome=BatchOutcome(),
        )
        try:
            if rel_kind is not None and rel_kind.scoped:
                for state in self.store.list_states():
                    context.states_by_code[state.code.upper()] = state
                    context.states_by_name[state.name.strip().lower()] = state
            if context.kind.name == "brand":
                context.categories = self.store.category_lookup()
                context.sub_categories = self.store.sub_category_lookup()
        except StoreError as exc:
            raise ImportSetupError(f"Failed to load reference data: {exc}") from exc
        return context

    def process_rows(
        self,
        context: _BatchContext,
        indexed_rows: Iterable[tuple[int, Mapping[str, Any]]],
        *,
        overrides: Mapping[int, ConfirmedMatch] | None = None,
        matches: Mapping[int, RowMatch] | None = None,
        row_offset: int = 0,
        labels: Mapping[int, str] | None = None,
    ) -> BatchOutcome:
        """Apply rows in order, collecting per-row errors instead of raising."""
        overrides = overrides or {}
        matches = matches or {}
        labels = labels or {}
        outcome = context.outcome
        for row_index, row in indexed_rows:
            outcome.counters.rows_processed += 1
            label = labels.get(row_index) or _row_label(row_index, row_offset)
            try:
                self._apply_row(context, row_index, row, overrides.get(row_index), matches.get(row_index), label)
            except (ImportRowError, StoreError) as exc:
                self.session.rollback()
                outcome.errors.append(f"{label}: {exc}")
                outcome.counters.rows_skipped += 1
            else:
                outcome.applied_rows.append(row_index)
        return outcome

    def _apply_row(
        self,
        context: _BatchContext,
        row_index: int,
        row: Mapping[str, Any],
        override: ConfirmedMatch | None,
        auto_match: RowMatch | None,
        label: str,
    ) -> None:
        rel_kind = context.rel_kind
        if rel_kind is None:
            entity = self._resolve_entity(context, context.kind, row, override, auto_match, label)
            if context.kind.name == "brand":
                self._link_categories(context, entity, row)
            return

        states: list[State | None] = self._resolve_states(context, row) if rel_kind.scoped else [None]
        owner = self._resolve_entity(context, context.owner_kind, row, None, None, label)
        member = self._resolve_entity(context, context.kind, row, override, auto_match, label)
        for state in states:
            key = rel_kind.build_key(owner.id, member.id, state.id if state is not None else None)
            self._upsert_relationship(context, rel_kind, key, member, row)

    def _resolve_states(self, context: _BatchContext, row: Mapping[str, Any]) -> list[State]:
        code = str(row.get("state_code") or "").strip().upper()
        name = str(row.get("state_name") or "").strip().lower()
        if not code and not name:
            raise ImportRowError("Missing state_code")
        if code == ALL_STATES_CODE:
            if not context.states_by_code:
                raise ImportRowError("No states are configured")
            return list(context.states_by_code.values())
        state = context.states_by_code.get(code) if code else None
        if state is None and name:
            state = context.states_by_name.get(name)
        if state is None:
            raise ImportRowError(f"State not found: {code or name}")
        return [state]

    def _resolve_entity(
        self,
        context: _BatchContext,
        kind: EntityKind,
        row: Mapping[str, Any],
        override: ConfirmedMatch | None,
        auto_match: RowMatch | None,
        label: str,
    ):
        name = kind.extract_name(row)
        if not name:
            raise ImportRowError(f"Missing {kind.name_field}")
        fields = kind.extract_fields(row)
        outcome = context.outcome

        entity = None
        basis = None
        if override is not None and override.use_existing and override.existing_id is not None:
            entity = self.store.get_entity(kind, override.existing_id)
            if entity is None:
                outcome.warnings.append(
                    f"{label}: {kind.name} {override.existing_id} not found; resolved '{name}' by name instead"
                )
            else:
                basis = "confirmed"
        elif (
            self.auto_accept_fuzzy
            and auto_match is not None
            and auto_match.match_type is MatchType.FUZZY
            and auto_match.matched_id is not None
        ):
            entity = self.store.get_entity(kind, auto_match.matched_id)
            basis = f"auto_{auto_match.basis}" if entity is not None else None

        if entity is None:
            entity = self.store.find_entity_by_name(kind, name)
            basis = "exact" if entity is not None else None

        if entity is None:
            try:
                entity = self.store.create_entity(kind, name, fields)
            except DuplicateKeyError:
                entity = self.store.find_entity_by_name(kind, name)
                if entity is None:
                    raise ImportRowError(f"{kind.name} '{name}' conflicts with an existing record") from None
                basis = "exact"
            else:
                outcome.counters.entities_created += 1
                outcome.entities_created[kind.name] += 1
                outcome.changes.append(
                    PendingChange(
                        change_type=ChangeType.CREATED,
                        entity_type=kind.name,
                        entity_id=entity.id,
                        entity_name=entity.name,
                        new_value=entity.to_dict(),
                        source_row=dict(row),
                    )
                )
                return entity

        changed = self.store.fill_missing_fields(entity, fields)
        if changed:
            outcome.counters.entities_updated += 1
            outcome.changes.append(
                PendingChange(
                    change_type=ChangeType.UPDATED,
                    entity_type=kind.name,
                    entity_id=entity.id,
                    entity_name=entity.name,
                    old_value={field_name: old for field_name, (old, _new) in changed.items()},
                    new_value={field_name: new for field_name, (_old, new) in changed.items()},
                    source_row=dict(row),
                    metadata={"basis": basis},
                )
            )
        return entity

    def _link_categories(self, context: _BatchContext, brand, row: Mapping[str, Any]) -> None:
        categories = [
            context.categories[name.lower()]
            for name in split_list_field(row.get("brand_categories"))
            if name.lower() in context.categories
        ]
        sub_categories = [
            context.sub_categories[name.lower()]
            for name in split_list_field(row.get("brand_sub_categories"))
            if name.lower() in context.sub_categories
        ]
        if categories or sub_categories:
            self.store.link_brand_categories(brand.id, categories, sub_categories)

    def _upsert_relationship(
        self,
        context: _BatchContext,
        rel_kind: RelationshipKind,
        key: tuple[int, ...],
        member,
        row: Mapping[str, Any],
    ) -> None:
        outcome = context.outcome
        owner_id = key[rel_kind.key_columns.index(rel_kind.owner_column)]
        key_payload = rel_kind.key_to_dict(key)
        now = datetime.now(timezone.utc)
        outcome.touched[owner_id].add(key)

        existing = self.store.get_relationship(rel_kind, key)
        if existing is None:
            try:
                self.store.insert_relationship(
                    rel_kind, key, source=self.relationship_source, verified_at=now
                )
            except DuplicateKeyError:
                # Another writer inserted the same tuple; treat it as a verification.
                record_relationship_write(rel_kind.name, "conflict")
                existing = self.store.get_relationship(rel_kind, key)
                if existing is None:
                    raise ImportRowError(f"{rel_kind.name} {key_payload} could not be resolved") from None
            else:
                outcome.counters.relationships_created += 1
                outcome.changes.append(
                    PendingChange(
                        change_type=ChangeType.CREATED,
                        entity_type=rel_kind.name,
                        entity_id=getattr(member, "id", None),
                        entity_name=getattr(member, "name", None),
                        new_value={**key_payload, "relationship_source": self.relationship_source},
                        source_row=dict(row),
                    )
                )
                record_relationship_write(rel_kind.name, "created")
                if getattr(member, "is_orphaned", False):
                    self.store.set_orphan_flag(member, False)
                return

        old_value = {
            "is_verified": bool(existing.is_verified),
            "last_verified_at": existing.last_verified_at.isoformat() if existing.last_verified_at else None,
            "relationship_source": existing.relationship_source,
        }
        self.store.verify_relationship(existing, source=self.relationship_source, verified_at=now)
        outcome.counters.relationships_verified += 1
        outcome.changes.append(
            PendingChange(
                change_type=ChangeType.VERIFIED,
                entity_type=rel_kind.name,
                entity_id=getattr(member, "id", None),
                entity_name=getattr(member, "name", None),
                old_value=old_value,
                new_value={**key_payload, "relationship_source": self.relationship_source},
                source_row=dict(row),
            )
        )
        record_relationship_write(rel_kind.name, "verified")

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------
    def _orphan_pass(self, context: _BatchContext, job_id: int) -> None:
        rel_kind = context.rel_kind
        outcome = context.outcome
        touched = self.ledger.touched_relationship_keys(job_id, rel_kind)
        for owner_id, keys in outcome.touched.items():
            touched.setdefault(owner_id, set()).update(keys)

        for owner_id in sorted(touched):
            try:
                changes = self.orphans.orphan_untouched(
                    rel_kind,
                    owner_id,
                    touched[owner_id],
                    import_job_id=job_id,
                )
            except StoreError as exc:
                outcome.errors.append(f"Orphan detection failed for {rel_kind.owner} {owner_id}: {exc}")
                continue
            outcome.counters.relationships_orphaned += len(changes)
            self.ledger.append_changes(job_id, changes)


__all__ = [
    "ALL_STATES_CODE",
    "BatchOutcome",
    "ConfirmedMatch",
    "DEFAULT_RELATIONSHIP_SOURCE",
    "ImportBatchResult",
    "ImportRowError",
    "ReconciliationEngine",
    "UnknownImportType",
    "get_import_type",
]
