"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

import pytest
from sqlalchemy import inspect

from tmimport.core.db_models import (
    EntityMapping,
    ImportDataset,
    ImportJob,
    Project,
    RepositoryCase,
    StagingRow,
    Status,
    TestRunResult as RunResultModel,
    User,
)


@pytest.mark.unit
class TestDBModels:
    def test_models_tablenames(self):
        """Test that the pipeline and workspace models map to the expected tables."""
        expected_tables = {
            ImportJob: "import_jobs",
            ImportDataset: "import_datasets",
            StagingRow: "import_staging",
            EntityMapping: "import_entity_mappings",
            Project: "projects",
            Status: "statuses",
            User: "users",
            RepositoryCase: "repository_cases",
            RunResultModel: "test_run_results",
        }
        for model, table_name in expected_tables.items():
            assert model.__tablename__ == table_name

    def test_staging_row_payload(self):
        row = StagingRow(job_id="job-1", dataset_name="projects", row_index=0, row_data='{"id": 1}')
        assert row.data_dict == {"id": 1}
        assert StagingRow(row_data="").data_dict == {}

    @pytest.mark.db
    def test_schema_has_unique_staging_rows(self, db_manager):
        inspector = inspect(db_manager.engine)
        constraints = {item["name"] for item in inspector.get_unique_constraints("import_staging")}
        assert "uq_staging_row" in constraints
        assert db_manager.has_schema() is True

    @pytest.mark.db
    def test_job_defaults(self, db_manager):
        with db_manager.get_session() as session:
            session.add(ImportJob(id="job-1", storage_key="export.json"))

        with db_manager.get_session() as session:
            job = session.get(ImportJob, "job-1")
            assert job.status == "QUEUED"
            assert job.processed_count == 0
            assert job.cancel_requested is False
            assert job.datasets == []

    @pytest.mark.db
    def test_deleting_job_removes_its_datasets(self, db_manager):
        with db_manager.get_session() as session:
            job = ImportJob(id="job-1", storage_key="export.json")
            job.datasets.append(ImportDataset(name="projects", row_count=3))
            session.add(job)

        with db_manager.get_session() as session:
            session.delete(session.get(ImportJob, "job-1"))

        with db_manager.get_session() as session:
            assert session.query(ImportDataset).count() == 0
