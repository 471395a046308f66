"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Database fixtures for the TMIMPORT test suite.

Every database test gets its own in-memory SQLite database with the full
schema and a seeded destination workspace.
"""

from collections.abc import Generator

import pytest

from tmimport.core.config import DatabaseConfig, ImportConfig
from tmimport.core.db_manager import SQLDatabaseManager
from tmimport.destination import seed_workspace_defaults
from tmimport.importers import ImportRuntime
from tmimport.mapping_config import MappingConfiguration, normalize_mapping_configuration
from tmimport.progress import ImportContext
from tmimport.staging import StagingStore


@pytest.fixture
def db_manager() -> Generator[SQLDatabaseManager, None, None]:
    """In-memory database with schema and workspace defaults."""
    manager = SQLDatabaseManager(config=DatabaseConfig(db_type="sqlite", db_path=":memory:"))
    manager.initialize_database()
    with manager.get_session() as session:
        seed_workspace_defaults(session)
    yield manager
    manager.close()


@pytest.fixture
def staging(db_manager: SQLDatabaseManager) -> StagingStore:
    return StagingStore(db_manager)


@pytest.fixture
def make_runtime(db_manager: SQLDatabaseManager, staging: StagingStore):
    """
    Factory for an ImportRuntime over the test database.

    Accepts a raw configuration dict (or a MappingConfiguration), optional
    ImportConfig overrides and an optional abort predicate.
    """

    def factory(
        job_id: str = "job-1",
        configuration: dict | MappingConfiguration | None = None,
        should_abort=None,
        **config_overrides,
    ) -> ImportRuntime:
        context = ImportContext(job_id=job_id, should_abort=should_abort)
        return ImportRuntime(
            db_manager,
            staging,
            job_id,
            normalize_mapping_configuration(configuration or {}),
            context,
            config=ImportConfig(**config_overrides),
        )

    return factory
