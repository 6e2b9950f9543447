# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Monitoring and logging configuration"""

    # Monitoring Configuration
    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    # Console and File Logging
    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    # Application Info
    APP_NAME = os.environ.get("APP_NAME", "Beverage Catalog Portal")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"  # Structured logging for production
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5)


class ImporterMonitoring:
    """Prometheus metric helpers for importer API endpoints."""

    JOBS_LIST_COUNTER = Counter(
        "importer_jobs_list_requests_total",
        "Total importer jobs list API requests.",
        labelnames=("status",),
    )
    JOBS_LIST_LATENCY = Histogram(
        "importer_jobs_list_request_seconds",
        "Latency histogram for importer jobs list API.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )
    JOBS_LIST_RESULT_SIZE = Histogram(
        "importer_jobs_list_result_size",
        "Number of jobs returned by list endpoint.",
        labelnames=("status",),
        buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500),
    )

    JOBS_DETAIL_COUNTER = Counter(
        "importer_jobs_detail_requests_total",
        "Total importer job detail API requests.",
        labelnames=("status",),
    )
    JOBS_DETAIL_LATENCY = Histogram(
        "importer_jobs_detail_request_seconds",
        "Latency histogram for importer job detail API.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )

    JOBS_STATS_COUNTER = Counter(
        "importer_jobs_stats_requests_total",
        "Total importer jobs stats API requests.",
        labelnames=("status",),
    )
    JOBS_STATS_LATENCY = Histogram(
        "importer_jobs_stats_request_seconds",
        "Latency histogram for importer jobs stats API.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )

    VALIDATE_COUNTER = Counter(
        "importer_validate_requests_total",
        "Total importer validation API requests.",
        labelnames=("mode", "status"),
    )
    VALIDATE_LATENCY = Histogram(
        "importer_validate_request_seconds",
        "Latency histogram for importer validation API.",
        labelnames=("mode", "status"),
        buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
    )

    IMPORT_COUNTER = Counter(
        "importer_import_requests_total",
        "Total importer import batch API requests.",
        labelnames=("status",),
    )
    IMPORT_LATENCY = Histogram(
        "importer_import_request_seconds",
        "Latency histogram for importer import batch API.",
        labelnames=("status",),
        buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
    )

    @classmethod
    def record_jobs_list(cls, *, duration_seconds: float, status: str, result_count: int):
        cls.JOBS_LIST_COUNTER.labels(status=status).inc()
        cls.JOBS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        cls.JOBS_LIST_RESULT_SIZE.labels(status=status).observe(float(max(result_count, 0)))

    @classmethod
    def record_jobs_detail(cls, *, duration_seconds: float, status: str):
        cls.JOBS_DETAIL_COUNTER.labels(status=status).inc()
        cls.JOBS_DETAIL_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_jobs_stats(cls, *, duration_seconds: float, status: str):
        cls.JOBS_STATS_COUNTER.labels(status=status).inc()
        cls.JOBS_STATS_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_validate(cls, *, mode: str, duration_seconds: float, status: str):
        cls.VALIDATE_COUNTER.labels(mode=mode, status=status).inc()
        cls.VALIDATE_LATENCY.labels(mode=mode, status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_import(cls, *, duration_seconds: float, status: str):
        cls.IMPORT_COUNTER.labels(status=status).inc()
        cls.IMPORT_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
