"""
Importer feature package.

Provides conditional blueprint and CLI registration along with import type
registry validation while remaining lightweight when the importer is disabled.
"""

from __future__ import annotations

from typing import Any, Iterable, Tuple

from flask import Flask

from portal_app.utils.importer import get_importer_import_types, is_importer_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .metrics import record_import_types_enabled
from .registry import ImportTypeDescriptor, get_import_type_registry, resolve_import_types
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_active_import_types",
    "get_celery_app",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_import_types": (),
            "active_import_types": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )
    return state


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally mount importer blueprint and CLI based on configuration.

    Records importer state inside ``app.extensions['importer']`` for reuse in
    views, CLI, and tasks.
    """
    enabled = is_importer_enabled(app)
    configured: Tuple[str, ...] = get_importer_import_types(app)

    state = _ensure_extension_state(app)
    worker_enabled = bool(app.config.get("IMPORTER_WORKER_ENABLED", False))
    state.update(
        {
            "enabled": enabled,
            "configured_import_types": configured,
            "worker_enabled": worker_enabled,
        }
    )

    if not enabled:
        record_import_types_enabled(0)
        state["active_import_types"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    registry = get_import_type_registry()
    active: Iterable[ImportTypeDescriptor] = resolve_import_types(configured, registry)
    state["active_import_types"] = tuple(active)
    record_import_types_enabled(len(state["active_import_types"]))
    ensure_celery_app(app, state)

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    type_names = ", ".join(descriptor.name for descriptor in state["active_import_types"]) or "none"
    app.logger.info("Importer enabled with import types: %s", type_names)


def get_active_import_types(app: Flask) -> dict[str, Any]:
    """Return active import type descriptors keyed by name."""
    state = _ensure_extension_state(app)
    return {descriptor.name: descriptor for descriptor in state.get("active_import_types", ())}
