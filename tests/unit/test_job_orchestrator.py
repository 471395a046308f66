"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Unit tests for the import job orchestrator.

The orchestrator is driven against the in-memory workspace with exports held
in an in-memory blob store.
"""

import io

import pytest
from rich.console import Console

from tests.fixtures import build_export
from tmimport.exceptions import AnalysisError, ConfigurationError, JobNotFoundError, UnsupportedModeError
from tmimport.job_orchestrator import ImportJobOrchestrator, ImportJobPhase, ImportJobStatus, LocalFileBlobStore


class FailingReindexTrigger:
    def __init__(self):
        self.calls = []

    def enqueue_reindex(self, job_id, user_id):
        self.calls.append(job_id)
        raise RuntimeError("search service unavailable")


@pytest.fixture
def orchestrator(db_manager, blob_store):
    return ImportJobOrchestrator(db_manager, blob_store)


def upload(orchestrator, blob_store, datasets, key="export.json") -> str:
    content = build_export(datasets)
    blob_store.put(key, content)
    return orchestrator.create_job(key, size=len(content))


@pytest.mark.db
class TestJobLifecycle:
    def test_new_job_is_queued(self, orchestrator, blob_store):
        job_id = upload(orchestrator, blob_store, {"projects": []})

        status = orchestrator.get_status(job_id)
        assert status["status"] == ImportJobStatus.QUEUED.value
        assert status["phase"] == ImportJobPhase.UPLOADING.value
        assert status["activityLog"] == []

    def test_unknown_job(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            orchestrator.process("missing", "analyze")

    def test_unknown_mode(self, orchestrator, blob_store):
        job_id = upload(orchestrator, blob_store, {"projects": []})
        with pytest.raises(UnsupportedModeError):
            orchestrator.process(job_id, "export")

    def test_analysis_stores_dataset_summaries(self, orchestrator, blob_store, demo_export):
        job_id = upload(orchestrator, blob_store, demo_export)

        assert orchestrator.process(job_id, "analyze") == ImportJobStatus.READY.value

        status = orchestrator.get_status(job_id)
        assert status["phase"] == ImportJobPhase.CONFIGURING.value
        assert status["totalDatasets"] == 2
        assert status["processedRows"] == 2
        assert status["analysis"]["datasets"] == {"projects": 1, "milestones": 1}
        assert sorted(dataset["name"] for dataset in status["datasets"]) == ["milestones", "projects"]
        assert orchestrator.staging.get_dataset_counts(job_id) == {"projects": 1, "milestones": 1}

    def test_malformed_export_fails_the_job(self, orchestrator, blob_store):
        blob_store.put("broken.json", b'{"projects": {"data": [{"id": 1},')
        job_id = orchestrator.create_job("broken.json")

        with pytest.raises(AnalysisError):
            orchestrator.process(job_id, "analyze")

        status = orchestrator.get_status(job_id)
        assert status["status"] == ImportJobStatus.FAILED.value
        assert status["errorMessage"]

    def test_finished_job_is_not_processed_again(self, orchestrator, blob_store):
        blob_store.put("broken.json", b"[")
        job_id = orchestrator.create_job("broken.json")
        with pytest.raises(AnalysisError):
            orchestrator.process(job_id, "analyze")

        assert orchestrator.process(job_id, "analyze") == ImportJobStatus.FAILED.value

    def test_import_requires_configuration(self, orchestrator, blob_store, demo_export):
        job_id = upload(orchestrator, blob_store, demo_export)
        orchestrator.process(job_id, "analyze")

        with pytest.raises(ConfigurationError):
            orchestrator.process(job_id, "import")

    def test_set_configuration_stores_serialized_form(self, orchestrator, blob_store, demo_configuration):
        job_id = upload(orchestrator, blob_store, {"projects": []})

        configuration = orchestrator.set_configuration(job_id, demo_configuration)

        assert configuration.users[1].email == "a@x.com"
        stored = orchestrator._load_job(job_id).configuration
        assert stored["users"]["1"]["action"] == "create"


@pytest.mark.db
class TestCancellation:
    def test_cancel_before_analysis(self, orchestrator, blob_store, demo_export):
        job_id = upload(orchestrator, blob_store, demo_export)

        assert orchestrator.request_cancel(job_id) is True
        assert orchestrator.process(job_id, "analyze") == ImportJobStatus.CANCELED.value
        assert orchestrator.staging.has_staging_data(job_id) is False

    def test_cancel_before_first_import_step(self, orchestrator, blob_store, demo_export, demo_configuration):
        job_id = upload(orchestrator, blob_store, demo_export)
        orchestrator.process(job_id, "analyze")
        orchestrator.set_configuration(job_id, demo_configuration)
        orchestrator.request_cancel(job_id)

        assert orchestrator.process(job_id, "import") == ImportJobStatus.CANCELED.value
        assert orchestrator.get_status(job_id)["processedCount"] == 0

    def test_finished_job_cannot_be_canceled(self, orchestrator, blob_store, demo_export):
        job_id = upload(orchestrator, blob_store, demo_export)
        orchestrator.request_cancel(job_id)
        orchestrator.process(job_id, "analyze")

        assert orchestrator.request_cancel(job_id) is False


@pytest.mark.db
def test_reindex_failure_does_not_fail_the_import(db_manager, blob_store, demo_export, demo_configuration):
    trigger = FailingReindexTrigger()
    orchestrator = ImportJobOrchestrator(db_manager, blob_store, reindex_trigger=trigger)
    job_id = upload(orchestrator, blob_store, demo_export)
    orchestrator.process(job_id, "analyze")
    orchestrator.set_configuration(job_id, demo_configuration)

    assert orchestrator.process(job_id, "import") == ImportJobStatus.COMPLETED.value
    assert trigger.calls == [job_id]


@pytest.mark.db
def test_cleanup_and_reset_failed_rows(orchestrator, blob_store, demo_export):
    job_id = upload(orchestrator, blob_store, demo_export)
    orchestrator.process(job_id, "analyze")
    row = next(iter(orchestrator.staging.iter_rows(job_id, "projects")))
    orchestrator.staging.mark_failed([row.id], "boom")

    assert orchestrator.reset_failed_rows(job_id, "projects") == 1

    orchestrator.cleanup(job_id)
    assert orchestrator.staging.has_staging_data(job_id) is False
    assert orchestrator.get_status(job_id)["datasets"] == []


@pytest.mark.db
def test_print_status_renders_tables(orchestrator, blob_store, demo_export, demo_configuration):
    job_id = upload(orchestrator, blob_store, demo_export)
    orchestrator.process(job_id, "analyze")
    orchestrator.set_configuration(job_id, demo_configuration)
    orchestrator.process(job_id, "import")

    output = io.StringIO()
    orchestrator.print_status(job_id, console=Console(file=output, width=120))

    text = output.getvalue()
    # The title wraps at the table width, so the id may land on its own line
    assert "Import Job" in text
    assert job_id in text
    assert "Entity Progress" in text
    assert "Recent Activity" in text


@pytest.mark.unit
def test_local_file_blob_store(temp_dir):
    (temp_dir / "export.json").write_bytes(b"{}")
    store = LocalFileBlobStore(temp_dir)

    stream, size = store.open_read_stream("export.json")
    with stream:
        assert stream.read() == b"{}"
    assert size == 2
