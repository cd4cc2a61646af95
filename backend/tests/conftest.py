"""
Pytest configuration and fixtures for testing the health agent.

This module provides:
- Test client fixture for the FastAPI app
- A complete monitor config injected through dependency overrides
- Environment variable overrides so nothing reaches a real monitoring server
"""
import os
import tempfile

import pytest
from fastapi.testclient import TestClient

# Override environment variables before the app is imported
os.environ.setdefault("HEALTH_MONITOR_ENABLED", "false")
os.environ.setdefault("HEALTH_MONITOR_SERVER_NAME", "test-host")
os.environ.setdefault("HEALTH_MONITOR_URL", "")
os.environ.setdefault("HEALTH_MONITOR_API_KEY", "")
os.environ.setdefault("HEALTH_MONITOR_LOG_DIR", tempfile.mkdtemp(prefix="health-agent-logs-"))

from auth import get_monitor_config  # noqa: E402
from main import app  # noqa: E402
from tests.mock_helpers import make_config  # noqa: E402


@pytest.fixture
def test_app():
    """
    The app from main.py; dependencies are overridden per test.
    """
    return app


@pytest.fixture
def monitor_config():
    return make_config()


@pytest.fixture
def client(test_app, monitor_config):
    """
    Create a test client for the FastAPI app.

    Set raise_server_exceptions=False so that exceptions are caught by
    exception handlers and returned as responses (matching production behavior).
    """
    test_app.dependency_overrides[get_monitor_config] = lambda: monitor_config
    yield TestClient(test_app, raise_server_exceptions=False)
    test_app.dependency_overrides.clear()
