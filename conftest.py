# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py loads TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from portal_app.models import db  # noqa: E402
from portal_app.models.reference_data import seed_reference_data  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """Create and configure a test Flask application backed by a fresh in-memory database"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "WARNING",
            "IMPORTER_ENABLED": True,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_AUTO_ACCEPT_FUZZY": False,
            "IMPORTER_MAX_ERRORS": 20,
            "IMPORTER_VALIDATION_JOB_TTL_SECONDS": 3600,
        }
    )

    from portal_app.utils.logging_config import setup_logging

    setup_logging(flask_app)

    with flask_app.app_context():
        # Drop any existing tables to ensure clean state
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def reference_data(app):
    """Seed US states and the default category tree"""
    return seed_reference_data(db.session)


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
