"""
Fixtures package for the TMIMPORT test suite.

Shared fixtures live in the modules of this package and are made available
to every test through ``tests/conftest.py``.
"""

from tests.fixtures.base import base_test_env, mock_env_vars, temp_db_path, temp_dir
from tests.fixtures.database import db_manager, make_runtime, staging
from tests.fixtures.exports import InMemoryBlobStore, blob_store, build_export, demo_configuration, demo_export, stage_rows
