"""
Test configuration and fixtures for the tmimport project.

This file is the root pytest configuration file that sets up pytest
markers and imports fixtures from the fixtures modules to make them
available to all tests.
"""

import pytest

from tests.fixtures.base import base_test_env, mock_env_vars, temp_db_path, temp_dir
from tests.fixtures.database import db_manager, make_runtime, staging
from tests.fixtures.exports import blob_store, demo_configuration, demo_export


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark a test as a unit test")
    config.addinivalue_line("markers", "integration: mark a test as an integration test")
    config.addinivalue_line("markers", "db: mark a test that requires database access")
