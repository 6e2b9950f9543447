"""
Celery wiring for asynchronous row validation.

The worker is optional: without ``IMPORTER_WORKER_ENABLED`` the validate/async
endpoint runs validation inline. When a worker runs, both importer tasks are
routed to the ``imports`` queue and executed inside the Flask app context so
they share ``db.session`` with the request code. Task results are only a
transport detail; the durable outcome lives on the ``ValidationJob`` row, so
results expire on the same TTL.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
VALIDATION_TASK_NAME = "importer.validate_rows"
HEALTHCHECK_TASK_NAME = "importer.healthcheck"


def _default_transport_urls(app: Flask) -> tuple[str, str]:
    """SQLite broker and result backend under the instance folder (``CELERY_SQLITE_PATH`` overrides)."""
    sqlite_path = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not sqlite_path.is_absolute():
        sqlite_path = Path(app.instance_path) / sqlite_path
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    posix_path = sqlite_path.as_posix()
    return f"sqla+sqlite:///{posix_path}", f"db+sqlite:///{posix_path}"


def _overrides(app: Flask) -> Mapping[str, Any] | None:
    overrides = app.config.get("CELERY_CONFIG")
    if isinstance(overrides, str):
        try:
            overrides = json.loads(overrides)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.")
            return None
    return overrides or None


def create_celery_app(app: Flask) -> Celery:
    """Build the importer Celery app for ``app``."""
    default_broker, default_backend = _default_transport_urls(app)
    broker_url = app.config.get("CELERY_BROKER_URL") or default_broker
    result_backend = app.config.get("CELERY_RESULT_BACKEND") or default_backend

    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("portal_app.importer.tasks",),
    )
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_routes={
            VALIDATION_TASK_NAME: {"queue": DEFAULT_QUEUE_NAME},
            HEALTHCHECK_TASK_NAME: {"queue": DEFAULT_QUEUE_NAME},
        },
        # A validation batch can hold thousands of rows; take one at a time
        # and acknowledge only after the job row is updated.
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_time_limit=app.config.get("IMPORTER_TASK_TIME_LIMIT", 15 * 60),
        task_soft_time_limit=app.config.get("IMPORTER_TASK_SOFT_TIME_LIMIT", 12 * 60),
        result_expires=app.config.get("IMPORTER_VALIDATION_JOB_TTL_SECONDS", 3600),
        broker_connection_retry_on_startup=True,
        worker_hijack_root_logger=False,
    )

    overrides = _overrides(app)
    if overrides:
        celery_app.conf.update(overrides)

    app.logger.info(
        "Importer Celery app configured",
        extra={
            "importer_celery_broker_url": broker_url,
            "importer_celery_result_backend": result_backend,
            "importer_celery_overrides": sorted(overrides) if overrides else [],
        },
    )

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Return the Celery app cached on the importer extension state, creating it once."""
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """The importer Celery app, or ``None`` when the importer is not enabled."""
    state: dict[str, Any] | None = app.extensions.get("importer")  # type: ignore[arg-type]
    if not state:
        return None
    if state.get("celery_app") is None and not state.get("enabled"):
        return None
    return ensure_celery_app(app, state)
