"""
CLI commands for the catalog importer.

``flask importer run`` feeds a CSV file through the reconciliation engine in
batches exactly like the upload UI does: the first batch opens an import job,
later batches continue it, and the last batch triggers orphan detection.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Iterator, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import NoResultFound

from portal_app.importer.celery_app import DEFAULT_QUEUE_NAME, HEALTHCHECK_TASK_NAME, get_celery_app
from portal_app.importer.pipeline.job_service import ImportJobService, JobFilters
from portal_app.importer.pipeline.job_status import ValidationJobStore
from portal_app.importer.pipeline.ledger import ImportSetupError
from portal_app.importer.pipeline.matcher import RowMatcher
from portal_app.importer.pipeline.orphans import OrphanFilters, OrphanService
from portal_app.importer.pipeline.reconcile import ReconciliationEngine, UnknownImportType, get_import_type
from portal_app.importer.pipeline.staging import StagingService
from portal_app.importer.pipeline.store import StoreError
from portal_app.importer.registry import get_import_type_registry
from portal_app.utils.importer import get_importer_import_types, is_importer_enabled


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Catalog importer management commands.

    Displays configured import types when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. " "Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        import_types = get_importer_import_types(app)
        if not import_types:
            click.echo("No import types configured.")
        else:
            registry = get_import_type_registry()
            click.echo("Enabled import types:")
            for name in import_types:
                descriptor = registry.get(name)
                title = descriptor.title if descriptor else "unknown"
                click.echo(f"  - {name} ({title})")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_celery(app) -> Celery:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _resolve_import_type(app, import_type: str) -> str:
    normalized = import_type.strip().lower()
    try:
        get_import_type(normalized)
    except UnknownImportType as exc:
        raise click.ClickException(str(exc)) from exc
    if normalized not in get_importer_import_types(app):
        raise click.ClickException(f"Import type '{normalized}' is not enabled in IMPORTER_IMPORT_TYPES.")
    return normalized


def _normalize_header(value: str | None) -> str:
    return "_".join((value or "").strip().lower().split())


def read_csv_rows(csv_path: Path) -> list[dict[str, Any]]:
    """Read a CSV file into row dicts keyed by normalized header names."""
    with csv_path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        rows = []
        for raw in reader:
            row = {_normalize_header(key): value for key, value in raw.items() if key is not None}
            if any((value or "").strip() for value in row.values() if isinstance(value, str)):
                rows.append(row)
        return rows


def _chunked(rows: list[dict[str, Any]], size: int) -> Iterator[tuple[int, list[dict[str, Any]]]]:
    for start in range(0, len(rows), size):
        yield start, rows[start : start + size]


def _load_json_option(path: Optional[Path]) -> Any:
    if path is None:
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc


def _echo_payload(payload: dict[str, Any], as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))
        return
    for key, value in payload.items():
        if isinstance(value, (list, dict)):
            continue
        click.echo(f"  {key:<22}: {value}")


# ---------------------------------------------------------------------------
# Validate / run / stage / migrate
# ---------------------------------------------------------------------------

_csv_file_option = click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to the CSV file.",
)
_import_type_option = click.option(
    "--type",
    "import_type",
    required=True,
    help="Import type, e.g. 'brands' or 'supplier-portfolio'.",
)


@importer_cli.command("validate")
@_import_type_option
@_csv_file_option
@click.option("--json", "as_json", is_flag=True, help="Emit the full validation report as JSON.")
@click.pass_context
def importer_validate(ctx, import_type: str, file_path: Path, as_json: bool):
    """Classify every CSV row against existing entities without writing."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    import_type = _resolve_import_type(app, import_type)
    rows = read_csv_rows(file_path)

    try:
        report = RowMatcher(get_import_type(import_type)).validate_rows(rows)
    except StoreError as exc:
        raise click.ClickException(f"Validation failed: {exc}") from exc

    if as_json:
        click.echo(json.dumps(report.to_payload(include_candidates=False), indent=2, default=str))
        return
    click.echo(f"Validated {len(rows)} {import_type} row(s) from {file_path.name}.")
    for key, value in report.summary.as_dict().items():
        click.echo(f"  {key:<10}: {value}")


@importer_cli.command("run")
@_import_type_option
@_csv_file_option
@click.option("--batch-size", type=int, help="Rows per batch (defaults to IMPORTER_CLI_BATCH_SIZE).")
@click.option(
    "--confirmed-matches",
    "confirmed_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="JSON file of reviewer decisions keyed by row index.",
)
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary after completion.")
@click.pass_context
def importer_run(
    ctx,
    import_type: str,
    file_path: Path,
    batch_size: Optional[int],
    confirmed_path: Optional[Path],
    summary_json: bool,
):
    """Import a CSV file through the reconciliation engine."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    import_type = _resolve_import_type(app, import_type)
    rows = read_csv_rows(file_path)
    if not rows:
        raise click.ClickException(f"{file_path} contains no data rows.")

    size = max(1, batch_size or int(app.config.get("IMPORTER_CLI_BATCH_SIZE", 500)))
    confirmed = _load_json_option(confirmed_path)
    overrides_by_row: dict[int, Any] = {}
    if isinstance(confirmed, dict):
        overrides_by_row = {int(key): value for key, value in confirmed.items() if str(key).isdigit()}
    elif isinstance(confirmed, list):
        overrides_by_row = {
            int(entry["rowIndex"]): entry for entry in confirmed if isinstance(entry, dict) and "rowIndex" in entry
        }

    engine = ReconciliationEngine()
    job_id: Optional[int] = None
    totals: dict[str, int] = {}
    errors: list[str] = []
    warnings: list[str] = []
    result = None
    for start, batch in _chunked(rows, size):
        batch_overrides = {
            index - start: value for index, value in overrides_by_row.items() if start <= index < start + len(batch)
        }
        try:
            result = engine.import_batch(
                import_type,
                batch,
                file_name=file_path.name,
                is_first_batch=job_id is None,
                is_last_batch=start + len(batch) >= len(rows),
                existing_import_job_id=job_id,
                confirmed_matches=batch_overrides,
                row_offset=start,
            )
        except (ImportSetupError, StoreError) as exc:
            raise click.ClickException(f"Import failed: {exc}") from exc
        job_id = result.import_job_id
        errors.extend(result.errors)
        warnings.extend(result.warnings)
        for key, value in result.counters.as_dict().items():
            totals[key] = totals.get(key, 0) + value

    payload = {
        "import_job_id": job_id,
        "import_type": import_type,
        "status": result.status.value if result else None,
        "rows": len(rows),
        **totals,
        "errors": errors,
        "warnings": warnings,
    }
    click.echo(f"Import job {job_id} finished with status {payload['status']}.")
    _echo_payload(payload, summary_json)
    if errors and not summary_json:
        max_errors = int(app.config.get("IMPORTER_MAX_ERRORS", 20))
        for message in errors[:max_errors]:
            click.echo(f"  ! {message}", err=True)
        if len(errors) > max_errors:
            click.echo(f"  ... {len(errors) - max_errors} more error(s)", err=True)
    if warnings and not summary_json:
        for message in warnings:
            click.echo(f"  ~ {message}", err=True)


@importer_cli.command("stage")
@_import_type_option
@_csv_file_option
@click.pass_context
def importer_stage(ctx, import_type: str, file_path: Path):
    """Stage CSV rows for review instead of importing them directly."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    import_type = _resolve_import_type(app, import_type)
    rows = read_csv_rows(file_path)
    try:
        summary = StagingService().stage_batch(import_type, rows, file_name=file_path.name)
    except (ImportSetupError, StoreError) as exc:
        raise click.ClickException(f"Staging failed: {exc}") from exc
    click.echo(f"Staged {summary.rows_staged} row(s) under import job {summary.import_job_id}.")
    for key, value in summary.summary.as_dict().items():
        click.echo(f"  {key:<10}: {value}")


@importer_cli.command("approve")
@_import_type_option
@click.option("--job-id", type=int, help="Only approve rows staged by this import job.")
@click.option("--ids", help="Comma-separated staging row ids; defaults to every pending row.")
@click.option("--revoke", is_flag=True, help="Clear approval instead of granting it.")
@click.pass_context
def importer_approve(ctx, import_type: str, job_id: Optional[int], ids: Optional[str], revoke: bool):
    """Approve (or un-approve) staged rows."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    import_type = _resolve_import_type(app, import_type)
    service = StagingService()
    if ids:
        try:
            staging_ids = [int(token) for token in ids.split(",") if token.strip()]
        except ValueError as exc:
            raise click.ClickException("--ids must be a comma-separated list of integers.") from exc
    else:
        rows, _ = service.list_rows(import_type, approved=revoke, import_job_id=job_id, per_page=1000)
        staging_ids = [row.id for row in rows]
    updated = service.set_approval(staging_ids, approved=not revoke)
    click.echo(f"{'Revoked' if revoke else 'Approved'} {updated} staged row(s).")


@importer_cli.command("migrate")
@_import_type_option
@click.option("--job-id", type=int, help="Only migrate rows staged by this import job.")
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary after completion.")
@click.pass_context
def importer_migrate(ctx, import_type: str, job_id: Optional[int], summary_json: bool):
    """Apply approved staged rows to the catalog."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    import_type = _resolve_import_type(app, import_type)
    try:
        summary = StagingService().migrate_approved(import_type, import_job_id=job_id)
    except (ImportSetupError, StoreError) as exc:
        raise click.ClickException(f"Migration failed: {exc}") from exc
    payload = summary.to_payload(max_errors=int(app.config.get("IMPORTER_MAX_ERRORS", 20)))
    if summary_json:
        click.echo(json.dumps(payload, indent=2, sort_keys=True))
        return
    click.echo(f"Migrated {summary.migrated} row(s); {summary.failed} failed.")
    for message in payload["errors"]:
        click.echo(f"  ! {message}", err=True)


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------


@importer_cli.group(name="orphans")
def orphans_group():
    """Review orphaned relationships."""


@orphans_group.command("list")
@click.option("--relationship-type", help="Filter by relationship kind, e.g. brand_supplier_state.")
@click.option("--owner-id", type=int, help="Filter by owning entity id.")
@click.option("--job-id", type=int, help="Filter by the import job that orphaned the relationship.")
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--per-page", default=50, show_default=True, type=int)
@click.option("--json", "as_json", is_flag=True)
def orphans_list(relationship_type, owner_id, job_id, page, per_page, as_json):
    """List orphaned relationships, newest first."""
    filters = OrphanFilters.coerce(
        {"relationship_type": relationship_type, "owner_id": owner_id, "import_job_id": job_id}
    )
    result = OrphanService().list_orphans(filters, page=page, per_page=per_page)
    if as_json:
        click.echo(json.dumps({"total": result.total, "items": [o.to_dict() for o in result.items]}, indent=2))
        return
    if not result.items:
        click.echo("No orphaned relationships found.")
        return
    click.echo(f"{result.total} orphaned relationship(s); page {result.page}:")
    for orphan in result.items:
        click.echo(
            f"  #{orphan.id} {orphan.relationship_type} owner={orphan.owner_id} "
            f"key={json.dumps(orphan.key_json, sort_keys=True)} reason={orphan.reason}"
        )


@orphans_group.command("restore")
@click.argument("orphan_id", type=int)
def orphans_restore(orphan_id: int):
    """Restore an orphaned relationship as verified."""
    try:
        OrphanService().restore(orphan_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    except StoreError as exc:
        raise click.ClickException(f"Restore failed: {exc}") from exc
    click.echo(f"Restored orphaned relationship {orphan_id}.")


@orphans_group.command("delete")
@click.argument("orphan_id", type=int)
@click.confirmation_option(prompt="Permanently delete this orphaned relationship?")
def orphans_delete(orphan_id: int):
    """Permanently delete an orphaned relationship."""
    try:
        OrphanService().delete_permanently(orphan_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    except StoreError as exc:
        raise click.ClickException(f"Delete failed: {exc}") from exc
    click.echo(f"Deleted orphaned relationship {orphan_id}.")


# ---------------------------------------------------------------------------
# Import history / validation jobs
# ---------------------------------------------------------------------------


@importer_cli.group(name="jobs")
def jobs_group():
    """Inspect import jobs."""


@jobs_group.command("list")
@click.option("--status", "statuses", multiple=True, help="Filter by status (repeatable).")
@click.option("--type", "import_types", multiple=True, help="Filter by import type (repeatable).")
@click.option("--limit", default=25, show_default=True, type=int)
@click.option("--json", "as_json", is_flag=True)
def jobs_list(statuses, import_types, limit, as_json):
    """List recent import jobs."""
    try:
        filters = JobFilters.coerce(page_size=limit, statuses=statuses, import_types=import_types)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    result = ImportJobService().list_jobs(filters)
    if as_json:
        click.echo(json.dumps([item.to_payload() for item in result.items], indent=2))
        return
    if not result.items:
        click.echo("No import jobs found.")
        return
    for item in result.items:
        counts = item.counts
        click.echo(
            f"  #{item.id} {item.import_type:<32} {item.status:<22} "
            f"rows={counts['rows_processed']} created={counts['entities_created'] + counts['relationships_created']} "
            f"orphaned={counts['relationships_orphaned']} errors={counts['errors_count']}"
        )


@importer_cli.group(name="validation-jobs")
def validation_jobs_group():
    """Maintain asynchronous validation job records."""


@validation_jobs_group.command("prune")
def validation_jobs_prune():
    """Delete expired validation job records."""
    removed = ValidationJobStore().prune_expired()
    click.echo(f"Removed {removed} expired validation job(s).")


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but validation requests run inline until the flag is enabled.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get("importer")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get(HEALTHCHECK_TASK_NAME)
    if task is None:
        raise click.ClickException(f"Heartbeat task '{HEALTHCHECK_TASK_NAME}' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))
