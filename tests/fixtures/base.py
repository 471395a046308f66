"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Base fixtures for the TMIMPORT test suite.

Temporary files and environment isolation shared by unit and integration
tests.
"""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest


@pytest.fixture
def base_test_env() -> dict[str, str]:
    """
    Provide a standardized set of environment variables for testing.

    Returns:
        Dict[str, str]: Dictionary of environment variables
    """
    return {
        "TMIMPORT_LOG_LEVEL": "DEBUG",
        "TMIMPORT_DB_TYPE": "sqlite",
        "TMIMPORT_DB_PATH": ":memory:",
    }


@pytest.fixture
def mock_env_vars(base_test_env: dict[str, str]) -> Generator[dict[str, str], None, None]:
    """
    Set and restore environment variables for tests.

    Yields:
        Dict[str, str]: The applied environment variables
    """
    original_environ = os.environ.copy()
    os.environ.update(base_test_env)

    yield base_test_env

    os.environ.clear()
    os.environ.update(original_environ)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory that is removed after the test."""
    with tempfile.TemporaryDirectory() as directory:
        yield Path(directory)


@pytest.fixture
def temp_db_path(temp_dir: Path) -> Path:
    """Path of a SQLite database file inside the temporary directory."""
    return temp_dir / "tmimport_test.db"
