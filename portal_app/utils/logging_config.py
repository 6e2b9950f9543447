"""
Application logging setup.

``setup_logging`` attaches console and rotating file handlers to the Flask
logger according to the ``LOG_*`` / ``ENABLE_*_LOGGING`` settings from
``config.monitoring``. Calling it again replaces previously attached handlers,
so tests can re-run it after changing configuration.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from flask import Flask, has_request_context, request

HANDLER_MARKER = "_portal_handler"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys() | {"message", "asctime"}
)


class JSONFormatter(logging.Formatter):
    """Render records as single-line JSON including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request"] = {"method": request.method, "path": request.path}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(app: Flask) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT)


def _resolve_level(app: Flask) -> int:
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(app: Flask) -> None:
    """Configure ``app.logger`` handlers from application config."""
    logger = app.logger
    for handler in list(logger.handlers):
        if getattr(handler, HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    level = _resolve_level(app)
    logger.setLevel(level)
    formatter = _build_formatter(app)

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        setattr(console, HANDLER_MARKER, True)
        logger.addHandler(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "app.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        setattr(file_handler, HANDLER_MARKER, True)
        logger.addHandler(file_handler)

    # SQLAlchemy echo output stays out of the structured stream unless asked for
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logger.debug("Logging configured", extra={"log_level": logging.getLevelName(level)})
