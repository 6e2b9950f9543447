"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal, Mapping

from prometheus_client import Counter, Gauge, Histogram

_import_types_enabled_gauge = Gauge(
    "importer_import_types_enabled",
    "Number of import types enabled on this instance.",
)
_row_matches_counter = Counter(
    "importer_row_matches_total",
    "Rows classified by the matcher, by import type and match type.",
    ["import_type", "match_type"],
)
_batch_counter = Counter(
    "importer_batches_total",
    "Import batches processed by import type and outcome.",
    ["import_type", "status"],
)
_batch_duration = Histogram(
    "importer_batch_duration_seconds",
    "Duration of import batch reconciliation in seconds.",
    ["import_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)
_relationship_writes_counter = Counter(
    "importer_relationship_writes_total",
    "Relationship writes by relationship kind and outcome.",
    ["relationship", "outcome"],
)
_orphan_events_counter = Counter(
    "importer_orphan_events_total",
    "Orphan lifecycle events by relationship kind and action.",
    ["relationship", "action"],
)


def record_import_types_enabled(count: int) -> None:
    """Set the enabled import type gauge."""

    _import_types_enabled_gauge.set(count)


def record_row_matches(import_type: str, summary: Mapping[str, int]) -> None:
    """Increment match counters from a validation summary."""

    for match_type in ("exact", "fuzzy", "new", "errors"):
        count = int(summary.get(match_type, 0) or 0)
        if count:
            _row_matches_counter.labels(import_type=import_type, match_type=match_type).inc(count)


def record_import_batch(
    import_type: str,
    *,
    status: Literal["success", "with_errors", "failure"],
    duration_seconds: float,
) -> None:
    """Capture metrics for one reconciled batch."""

    _batch_counter.labels(import_type=import_type, status=status).inc()
    _batch_duration.labels(import_type=import_type).observe(duration_seconds)


def record_relationship_write(relationship: str, outcome: Literal["created", "verified", "conflict"]) -> None:
    _relationship_writes_counter.labels(relationship=relationship, outcome=outcome).inc()


def record_orphan_event(relationship: str, action: Literal["orphaned", "restored", "deleted"], count: int = 1) -> None:
    if count:
        _orphan_events_counter.labels(relationship=relationship, action=action).inc(count)
