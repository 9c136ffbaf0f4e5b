"""
Pytest configuration and shared fixtures.

This file contains pytest configuration and fixtures that are available
to all test modules in the project.
"""

import os
import sys

import pytest

# Import all fixtures from the fixtures module
from tests.fixtures import *


def pytest_configure(config):
    """Configure pytest settings."""
    # Register custom markers
    config.addinivalue_line(
        "markers", "unit: Unit tests that test individual components in isolation"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that run services against a real store"
    )
    config.addinivalue_line(
        "markers", "config: Configuration-related tests"
    )
    config.addinivalue_line(
        "markers", "rate_limit: Rate limiter tests"
    )
    config.addinivalue_line(
        "markers", "escalation: Escalation prevention tests"
    )
    config.addinivalue_line(
        "markers", "roles: Role request, approval and assignment tests"
    )
    config.addinivalue_line(
        "markers", "temporary: Temporary role processing tests"
    )


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location and content."""
    for item in items:
        # Mark tests based on file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)

        # Mark tests based on file and function name patterns
        name = f"{item.fspath.basename} {item.name}"
        if "config" in name:
            item.add_marker(pytest.mark.config)

        if "rate_limit" in name:
            item.add_marker(pytest.mark.rate_limit)

        if "escalation" in name or "approver" in name:
            item.add_marker(pytest.mark.escalation)

        if "role_manager" in name or "role_change" in name:
            item.add_marker(pytest.mark.roles)

        if "temporary" in name or "expir" in name:
            item.add_marker(pytest.mark.temporary)


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up the test environment before any tests run."""
    os.environ["ENVIRONMENT"] = "test"
    os.environ["TESTING"] = "true"

    yield

    os.environ.pop("ENVIRONMENT", None)
    os.environ.pop("TESTING", None)


@pytest.fixture(autouse=True)
def isolate_tests():
    """Isolate tests from each other by resetting global state."""
    # Drop the cached configuration so every test loads it afresh
    config_module = sys.modules.get("campus_roles.config")
    if config_module is not None:
        config_module._engine_config = None

    yield


@pytest.fixture
def mock_environment_variables():
    """Provide a context manager for mocking environment variables."""
    from unittest.mock import patch

    def _mock_env(**kwargs):
        return patch.dict(os.environ, kwargs)

    return _mock_env


@pytest.fixture
def capture_logs():
    """Capture log output during tests."""
    import io
    import logging

    log_buffer = io.StringIO()

    handler = logging.StreamHandler(log_buffer)
    handler.setLevel(logging.DEBUG)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    original_level = root_logger.level
    root_logger.setLevel(logging.DEBUG)

    yield log_buffer

    root_logger.removeHandler(handler)
    root_logger.setLevel(original_level)
