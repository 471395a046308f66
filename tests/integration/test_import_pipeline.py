"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
End-to-end tests of analyze and import.

Each test uploads an export into the in-memory blob store and drives a job
through the orchestrator: analyze, configure, import.
"""

import pytest
from sqlalchemy import func, select

from tests.fixtures import build_export
from tmimport.core import db_models as models
from tmimport.destination import get_default_workflow
from tmimport.exceptions import ConfigurationError
from tmimport.importers import pipeline
from tmimport.importers.base import EntitySummary
from tmimport.job_orchestrator import ImportJobOrchestrator, ImportJobStatus


@pytest.fixture
def orchestrator(db_manager, blob_store):
    return ImportJobOrchestrator(db_manager, blob_store)


def count(db_manager, model) -> int:
    with db_manager.get_session() as session:
        return session.scalar(select(func.count()).select_from(model))


def run_job(orchestrator, blob_store, datasets, configuration) -> str:
    content = build_export(datasets)
    blob_store.put("export.json", content)
    job_id = orchestrator.create_job("export.json", size=len(content))
    assert orchestrator.process(job_id, "analyze") == ImportJobStatus.READY.value
    orchestrator.set_configuration(job_id, configuration)
    orchestrator.process(job_id, "import")
    return job_id


@pytest.fixture
def full_export():
    return {
        "projects": [{"id": 1, "name": "Demo"}],
        "milestones": [{"id": 10, "project_id": 1, "name": "M1"}],
        "repositories": [
            {"id": 100, "project_id": 1, "is_snapshot": 0},
            {"id": 101, "project_id": 1, "is_snapshot": 1},
        ],
        "repository_folders": [
            {"id": 200, "project_id": 1, "repo_id": 100, "name": "Root"},
            {"id": 201, "project_id": 1, "repo_id": 100, "parent_id": 200, "name": "Login"},
        ],
        "repository_cases": [
            {"id": 300, "project_id": 1, "repo_id": 100, "folder_id": 201, "name": "Valid login"},
            {"id": 301, "project_id": 1, "repo_id": 101, "folder_id": 999, "name": "Snapshot copy"},
        ],
        "repository_case_steps": [{"case_id": 300, "repo_id": 100, "text1": "Open", "text3": "Opened"}],
        "repository_case_tags": [{"case_id": 300, "tag_id": 5}],
        "runs": [{"id": 400, "project_id": 1, "state_id": 7, "milestone_id": 10, "name": "Regression"}],
        "run_tests": [{"id": 500, "run_id": 400, "case_id": 300, "is_selected": 1, "status_id": 1}],
        "run_results": [
            {"id": 600, "run_id": 400, "test_id": 500, "status_id": 1, "created_by": 1, "comment": "ok"}
        ],
        "run_result_steps": [{"result_id": 600, "test_id": 500, "display_order": 2, "text1": "Submit", "status_id": 1}],
    }


@pytest.fixture
def full_configuration(db_manager):
    with db_manager.get_session() as session:
        runs_workflow = get_default_workflow(session, "RUNS").id
    return {
        "users": {"1": {"action": "create", "email": "a@x.com"}},
        "tags": {"5": {"action": "create", "name": "smoke"}},
        "statuses": {"1": {"action": "create", "name": "Passed", "isSuccess": True, "isCompleted": True}},
        "workflows": {"7": {"action": "map", "mappedTo": runs_workflow}},
    }


@pytest.mark.integration
def test_demo_export_imports_project_user_and_milestone(orchestrator, blob_store, db_manager, demo_export, demo_configuration):
    job_id = run_job(orchestrator, blob_store, demo_export, demo_configuration)

    status = orchestrator.get_status(job_id)
    assert status["status"] == ImportJobStatus.COMPLETED.value
    assert status["processedCount"] == status["totalCount"] == 3
    assert status["entityProgress"]["projects"] == {"total": 1, "created": 1, "mapped": 0}

    with db_manager.get_session() as session:
        project = session.scalars(select(models.Project)).one()
        user = session.scalars(select(models.User).where(models.User.email == "a@x.com")).one()
        milestone = session.scalars(select(models.Milestone)).one()
        assert project.name == "Demo"
        assert milestone.name == "M1"
        assert milestone.project_id == project.id
        assert user.password != ""

    stored = orchestrator._load_job(job_id).configuration
    assert stored["users"]["1"]["action"] == "map"
    assert stored["users"]["1"]["mappedTo"] == user.id
    assert "password" not in stored["users"]["1"] or stored["users"]["1"]["password"] is None


@pytest.mark.integration
def test_full_export_imports_cases_runs_and_results(orchestrator, blob_store, db_manager, full_export, full_configuration):
    job_id = run_job(orchestrator, blob_store, full_export, full_configuration)

    assert orchestrator.get_status(job_id)["status"] == ImportJobStatus.COMPLETED.value
    assert count(db_manager, models.Repository) == 1
    assert count(db_manager, models.RepositoryFolder) == 2
    assert count(db_manager, models.RepositoryCase) == 1
    assert count(db_manager, models.TestRun) == 1
    assert count(db_manager, models.TestRunCase) == 1
    assert count(db_manager, models.TestRunResult) == 1
    assert count(db_manager, models.TestRunStepResult) == 1
    assert count(db_manager, models.case_tags) == 1
    assert count(db_manager, models.RepositoryCaseVersion) == 1

    with db_manager.get_session() as session:
        login = session.scalars(select(models.RepositoryFolder).where(models.RepositoryFolder.name == "Login")).one()
        root = session.get(models.RepositoryFolder, login.parent_id)
        assert root.name == "Root"
        assert root.parent_id is None

        case = session.scalars(select(models.RepositoryCase)).one()
        assert case.folder_id == login.id
        version = session.scalars(select(models.RepositoryCaseVersion)).one()
        assert version.repository_case_id == case.id
        assert (version.project_name, version.folder_name) == ("Demo", "Login")
        assert len(version.steps) == 1
        orders = sorted(step.order for step in session.scalars(select(models.Step)))
        assert orders == [1, 2]

        run = session.scalars(select(models.TestRun)).one()
        assert run.milestone_id is not None
        run_case = session.scalars(select(models.TestRunCase)).one()
        assert run_case.is_completed is True

        result = session.scalars(select(models.TestRunResult)).one()
        passed = session.scalars(select(models.Status).where(models.Status.system_name == "passed")).one()
        user = session.scalars(select(models.User)).one()
        assert result.status_id == passed.id
        assert result.executed_by_id == user.id


@pytest.mark.integration
def test_rerun_maps_everything_it_created(orchestrator, blob_store, db_manager, full_export, full_configuration):
    job_id = run_job(orchestrator, blob_store, full_export, full_configuration)
    models_to_check = (
        models.Project,
        models.Milestone,
        models.User,
        models.Tag,
        models.Status,
        models.Repository,
        models.RepositoryFolder,
        models.RepositoryCase,
        models.Step,
        models.TestRun,
        models.TestRunCase,
        models.TestRunResult,
        models.TestRunStepResult,
        models.RepositoryCaseVersion,
    )
    before = {model.__name__: count(db_manager, model) for model in models_to_check}

    summaries = orchestrator.run_import(orchestrator._load_job(job_id))

    after = {model.__name__: count(db_manager, model) for model in models_to_check}
    assert after == before
    assert sum(summary.created for summary in summaries) == 0
    assert orchestrator.get_status(job_id)["status"] == ImportJobStatus.COMPLETED.value


@pytest.mark.integration
def test_cancel_between_steps_keeps_finished_work(
    monkeypatch, orchestrator, blob_store, db_manager, demo_export, demo_configuration
):
    content = build_export(demo_export)
    blob_store.put("export.json", content)
    job_id = orchestrator.create_job("export.json")
    orchestrator.process(job_id, "analyze")
    orchestrator.set_configuration(job_id, demo_configuration)

    def cancel_now(runtime):
        orchestrator.request_cancel(job_id)
        return EntitySummary("cancelRequest")

    steps = list(pipeline.IMPORT_STEPS)
    position = [name for name, _ in steps].index("projects") + 1
    steps.insert(position, ("cancelRequest", cancel_now))
    monkeypatch.setattr(pipeline, "IMPORT_STEPS", steps)

    assert orchestrator.process(job_id, "import") == ImportJobStatus.CANCELED.value
    assert count(db_manager, models.Project) == 1
    assert count(db_manager, models.Milestone) == 0

    stored = orchestrator._load_job(job_id).configuration
    assert stored["users"]["1"]["action"] == "map"


@pytest.mark.integration
def test_rows_are_imported_in_export_order(orchestrator, blob_store, db_manager):
    export = {"projects": [{"id": 3, "name": "B"}, {"id": 1, "name": "A"}, {"id": 2, "name": "C"}]}
    run_job(orchestrator, blob_store, export, {})

    with db_manager.get_session() as session:
        names = list(session.scalars(select(models.Project.name).order_by(models.Project.id)))
    assert names == ["B", "A", "C"]


@pytest.mark.integration
def test_truncated_samples_still_import_every_row(orchestrator, blob_store, db_manager):
    export = {"projects": [{"id": index, "name": f"Project {index}"} for index in range(8)]}
    job_id = run_job(orchestrator, blob_store, export, {})

    dataset = orchestrator.get_status(job_id)["datasets"][0]
    assert dataset == {"name": "projects", "rowCount": 8, "truncated": True}
    assert count(db_manager, models.Project) == 8


@pytest.mark.integration
def test_failing_step_fails_the_job(orchestrator, blob_store, demo_export):
    configuration = {"groups": {"1": {"action": "map", "mappedTo": 999}}}
    content = build_export(demo_export)
    blob_store.put("export.json", content)
    job_id = orchestrator.create_job("export.json")
    orchestrator.process(job_id, "analyze")
    orchestrator.set_configuration(job_id, configuration)

    with pytest.raises(ConfigurationError):
        orchestrator.process(job_id, "import")

    status = orchestrator.get_status(job_id)
    assert status["status"] == ImportJobStatus.FAILED.value
    assert "999" in status["errorMessage"]


def summary_entry(status, entity) -> dict:
    return next(
        entry for entry in status["activityLog"] if entry["type"] == "summary" and entry["entity"] == entity
    )


def messages(status) -> list[str]:
    return [entry["message"] for entry in status["activityLog"] if entry["type"] == "message"]


@pytest.mark.integration
def test_unselected_run_tests_import_only_with_results(
    orchestrator, blob_store, db_manager, full_export, full_configuration
):
    full_export["run_tests"] += [
        {"id": 501, "run_id": 400, "case_id": 300, "is_selected": 0, "status_id": 1},
        {"id": 502, "run_id": 400, "case_id": 300, "is_selected": 0},
    ]
    full_export["run_results"].append({"id": 601, "run_id": 400, "test_id": 501, "status_id": 1, "created_by": 1})
    job_id = run_job(orchestrator, blob_store, full_export, full_configuration)

    status = orchestrator.get_status(job_id)
    assert status["status"] == ImportJobStatus.COMPLETED.value
    details = summary_entry(status, "testRunCases")["details"]
    assert details["skippedUnselected"] == 1
    assert details["importedUnselectedWithResults"] == 1
    assert "Skipping unselected test run case without results" in messages(status)
    # Both run tests point at one case, so the unselected one maps onto the selected row
    assert count(db_manager, models.TestRunCase) == 1
    assert count(db_manager, models.TestRunResult) == 2


@pytest.mark.integration
def test_oversized_run_test_elapsed_is_scaled_and_counted(
    orchestrator, blob_store, db_manager, full_export, full_configuration
):
    full_export["run_tests"][0]["elapsed"] = 5e12
    job_id = run_job(orchestrator, blob_store, full_export, full_configuration)

    with db_manager.get_session() as session:
        run_case = session.scalars(select(models.TestRunCase)).one()
        assert run_case.elapsed == 5_000_000

    status = orchestrator.get_status(job_id)
    details = summary_entry(status, "testRunCases")["details"]
    assert details["elapsedAdjusted"] == 1
    assert details["elapsedClamped"] == 0
    assert "Adjusted test run case elapsed durations" in messages(status)


@pytest.mark.integration
def test_created_sessions_get_a_version_snapshot(orchestrator, blob_store, db_manager):
    export = {
        "projects": [{"id": 1, "name": "Demo"}],
        "milestones": [{"id": 10, "project_id": 1, "name": "M1"}],
        "sessions": [
            {"id": 900, "project_id": 1, "milestone_id": 10, "name": "Explore login", "elapsed": 90_000_000},
        ],
    }
    job_id = run_job(orchestrator, blob_store, export, {})
    assert orchestrator.get_status(job_id)["status"] == ImportJobStatus.COMPLETED.value

    with db_manager.get_session() as session:
        test_session = session.scalars(select(models.Session)).one()
        version = session.scalars(select(models.SessionVersion)).one()
        assert version.session_id == test_session.id
        assert version.version == 1
        assert (version.project_name, version.milestone_name) == ("Demo", "M1")
        assert version.elapsed == 90

    orchestrator.run_import(orchestrator._load_job(job_id))
    assert count(db_manager, models.SessionVersion) == 1
