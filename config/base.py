# config.py
import os
from datetime import timedelta

DEFAULT_IMPORT_TYPES = (
    "brands,suppliers,distributors,supplier-portfolio,"
    "distributor-portfolio,distributor-supplier-portfolio,brand-supplier"
)


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    try:
        number = int(value) if value not in (None, "") else default
    except ValueError:
        number = default
    if minimum is not None:
        number = max(minimum, number)
    return number


def _coerce_float(value, default):
    try:
        return float(value) if value not in (None, "") else default
    except ValueError:
        return default


def _parse_name_list(value):
    """
    Parse a comma-separated name list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized identifiers.
    """
    if not value:
        return ()

    seen = set()
    names = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        names.append(item)
    return tuple(names)


def _parse_int_list(value, *, minimum=1, maximum=100):
    """
    Parse a comma-separated list of integers with optional bounds.
    """

    if not value:
        return []

    parsed: list[int] = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue
        try:
            number = int(item)
        except ValueError:
            continue
        if number < minimum or number > maximum:
            continue
        if number not in parsed:
            parsed.append(number)
    return parsed


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    # Set a default for testing (will be overridden by TestingConfig)
    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_IMPORT_TYPES = _parse_name_list(os.environ.get("IMPORTER_IMPORT_TYPES", DEFAULT_IMPORT_TYPES))

    if IMPORTER_ENABLED and not IMPORTER_IMPORT_TYPES:
        raise ValueError(
            "IMPORTER_ENABLED is true but IMPORTER_IMPORT_TYPES is empty. " "Provide at least one import type."
        )

    IMPORTER_MATCH_THRESHOLD = _coerce_float(os.environ.get("IMPORTER_MATCH_THRESHOLD"), 0.75)
    IMPORTER_AUTO_ACCEPT_FUZZY = _coerce_bool(os.environ.get("IMPORTER_AUTO_ACCEPT_FUZZY"), default=False)
    IMPORTER_MAX_ERRORS = _coerce_int(os.environ.get("IMPORTER_MAX_ERRORS"), 20, minimum=1)
    IMPORTER_FETCH_PAGE_SIZE = _coerce_int(os.environ.get("IMPORTER_FETCH_PAGE_SIZE"), 1000, minimum=1)
    IMPORTER_VALIDATION_JOB_TTL_SECONDS = _coerce_int(
        os.environ.get("IMPORTER_VALIDATION_JOB_TTL_SECONDS"), 3600, minimum=1
    )
    IMPORTER_CLI_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_CLI_BATCH_SIZE"), 500, minimum=1)

    _parsed_page_sizes = _parse_int_list(os.environ.get("IMPORTER_JOBS_PAGE_SIZES", "25,50,100"), minimum=5, maximum=500)
    if not _parsed_page_sizes:
        _parsed_page_sizes = [25, 50, 100]
    IMPORTER_JOBS_PAGE_SIZE_DEFAULT = _coerce_int(
        os.environ.get("IMPORTER_JOBS_PAGE_SIZE_DEFAULT"), _parsed_page_sizes[0], minimum=1
    )
    if IMPORTER_JOBS_PAGE_SIZE_DEFAULT not in _parsed_page_sizes:
        _parsed_page_sizes.insert(0, IMPORTER_JOBS_PAGE_SIZE_DEFAULT)
    IMPORTER_JOBS_PAGE_SIZES = tuple(sorted(set(_parsed_page_sizes)))

    # Worker configuration
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 15 * 60, minimum=1)
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"), 12 * 60, minimum=1)

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Import batches can carry a few thousand rows
    MAX_CONTENT_LENGTH = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 25, minimum=1) * 1024 * 1024


class DevelopmentConfig(Config):
    DEBUG = True
    # Use instance folder for database to avoid conflicts
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # Windows needs forward slashes in the SQLite URI
    db_path_normalized = os.path.join(instance_path, "catalog_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_ENABLED = True
    IMPORTER_IMPORT_TYPES = _parse_name_list(DEFAULT_IMPORT_TYPES)
    IMPORTER_WORKER_ENABLED = False
    IMPORTER_AUTO_ACCEPT_FUZZY = False
    IMPORTER_MAX_ERRORS = 20


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True  # Secure cookies in production
