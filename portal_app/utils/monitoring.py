"""
Prometheus exposition for the application.

When ``MONITORING_ENABLED`` is set, ``init_monitoring`` mounts the default
registry at ``METRICS_ENDPOINT``. Importer counters live in
``portal_app.importer.metrics`` and endpoint timings in
``config.monitoring.ImporterMonitoring``; both register on the default registry.
"""

from __future__ import annotations

from flask import Flask, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

METRICS_VIEW_NAME = "prometheus_metrics"


def metrics_response() -> Response:
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


def init_monitoring(app: Flask) -> None:
    if not app.config.get("MONITORING_ENABLED", False):
        app.logger.debug("Monitoring disabled; metrics endpoint not registered.")
        return
    if METRICS_VIEW_NAME in app.view_functions:
        return
    endpoint = app.config.get("METRICS_ENDPOINT", "/metrics")
    app.add_url_rule(endpoint, METRICS_VIEW_NAME, metrics_response, methods=["GET"])
    app.logger.info("Metrics endpoint registered at %s", endpoint)
