"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Unit tests for the importer machinery and individual importers.

Database tests run against the in-memory workspace from the ``db_manager``
fixture; staged rows are written directly with ``stage_rows``.
"""

import bcrypt
import pytest
from sqlalchemy import func, select

from tests.fixtures import stage_rows
from tmimport.core.db_models import (
    CaseFieldType,
    CaseFieldValue,
    CaseFieldVersionValue,
    Milestone,
    MilestoneType,
    Project,
    Repository,
    RepositoryCase,
    RepositoryFolder,
    Status,
    Step,
    Tag,
    Template,
    TemplateField,
    User,
)
from tmimport.core.db_models import Session as TestSession
from tmimport.destination import get_default_workflow
from tmimport.exceptions import ConfigurationError, ImportCanceled
from tmimport.importers import configuration, projects, users
from tmimport.importers.automation import junit_result_type
from tmimport.importers.base import SKIP_LOG_LIMIT, EntitySummary, chunked
from tmimport.importers.issues import build_external_url, provider_for
from tmimport.importers.links import linked_urls
from tmimport.importers.repositories import build_case_steps, select_canonical_repositories
from tmimport.importers.users import hash_password
from tmimport.importers.versions import snapshot_case, snapshot_session
from tmimport.mapping_config import EntryState
from tmimport.progress import NameCache


def count(db_manager, model) -> int:
    with db_manager.get_session() as session:
        return session.scalar(select(func.count()).select_from(model))


@pytest.mark.unit
def test_chunked_keeps_order_and_remainder():
    assert list(chunked(range(5), 2)) == [[0, 1], [2, 3], [4]]
    assert list(chunked([], 3)) == []


@pytest.mark.db
class TestRunChunks:
    def test_rows_are_handled_in_order_and_marked_processed(self, make_runtime, staging):
        stage_rows(staging, "job-1", {"tags": [{"id": index} for index in range(5)]})
        runtime = make_runtime()
        seen = []

        committed = runtime.run_chunks(
            "tags", runtime.staged_rows("tags"), runtime.policy(2), lambda session, row: seen.append(row.data["id"])
        )

        assert committed == 3
        assert seen == [0, 1, 2, 3, 4]
        assert staging.get_unprocessed_count("job-1", "tags") == 0

    def test_failed_chunk_marks_its_rows_and_raises(self, make_runtime, staging):
        stage_rows(staging, "job-1", {"tags": [{"id": index} for index in range(4)]})
        runtime = make_runtime()

        def handler(session, row):
            if row.data["id"] == 3:
                raise ValueError("bad tag")

        with pytest.raises(ValueError):
            runtime.run_chunks("tags", runtime.staged_rows("tags"), runtime.policy(2), handler)

        stats = staging.get_processing_stats("job-1", "tags")
        assert stats["processed"] == 2
        assert stats["errors"] == 2
        assert {row["error"] for row in staging.get_failed_rows("job-1", "tags")} == {"bad tag"}

    def test_cancellation_between_chunks(self, make_runtime, staging):
        stage_rows(staging, "job-1", {"tags": [{"id": index} for index in range(4)]})
        checks = []

        def should_abort():
            checks.append(True)
            return len(checks) > 1

        runtime = make_runtime(should_abort=should_abort)
        seen = []
        with pytest.raises(ImportCanceled):
            runtime.run_chunks(
                "tags", runtime.staged_rows("tags"), runtime.policy(2), lambda session, row: seen.append(row.data["id"])
            )
        assert seen == [0, 1]
        assert staging.get_unprocessed_count("job-1", "tags") == 2

    def test_skip_shrinks_planned_total(self, make_runtime):
        runtime = make_runtime()
        runtime.context.planned_total = 3
        runtime.context.initialize_entity_progress("tags", 3)

        runtime.skip(EntitySummary("tags"), "Skipping tag", sourceId=1)

        assert runtime.context.planned_total == 2
        assert runtime.context.skipped_count == 1
        assert runtime.context.activity_log[-1]["message"] == "Skipping tag"
        assert runtime.context.activity_log[-1]["details"] == {"entity": "tags", "sourceId": 1}

    def test_skips_beyond_the_limit_are_aggregated(self, make_runtime):
        runtime = make_runtime()
        summary = EntitySummary("tags")

        for source_id in range(SKIP_LOG_LIMIT + 5):
            runtime.skip(summary, "Skipping tag with unmapped project", sourceId=source_id)
        runtime.flush_skips()

        messages = [entry for entry in runtime.context.activity_log if entry["type"] == "message"]
        assert len(messages) == SKIP_LOG_LIMIT + 1
        assert messages[0]["details"] == {"entity": "tags", "sourceId": 0}
        assert messages[-1]["message"] == "Skipping tag with unmapped project: 5 more rows skipped"
        assert messages[-1]["details"] == {"entity": "tags", "skipped": SKIP_LOG_LIMIT + 5}
        assert runtime.context.skipped_count == SKIP_LOG_LIMIT + 5

        runtime.flush_skips()
        assert len([entry for entry in runtime.context.activity_log if entry["type"] == "message"]) == len(messages)


@pytest.mark.db
class TestConfigurationImporters:
    def test_created_tag_is_reused_on_rerun(self, make_runtime, db_manager):
        raw = {"tags": {"7": {"action": "create", "name": "smoke"}}}

        first = make_runtime(configuration=raw)
        summary = configuration.import_tags(first)
        assert (summary.created, summary.mapped) == (1, 0)

        entry = first.configuration.tags[7]
        assert entry.state is EntryState.RESOLVED
        assert first.id_maps.tags == {7: entry.mapped_to}

        second = make_runtime(configuration=raw)
        summary = configuration.import_tags(second)
        assert (summary.created, summary.mapped) == (0, 1)
        assert second.configuration.tags[7].mapped_to == entry.mapped_to
        assert count(db_manager, Tag) == 1

    def test_map_to_missing_target_is_a_configuration_error(self, make_runtime):
        runtime = make_runtime(configuration={"groups": {"1": {"action": "map", "mappedTo": 999}}})
        with pytest.raises(ConfigurationError):
            configuration.import_groups(runtime)

    def test_status_matching_existing_system_name_is_mapped(self, make_runtime, db_manager):
        with db_manager.get_session() as session:
            untested_id = session.scalars(select(Status.id).where(Status.system_name == "untested")).one()

        runtime = make_runtime(configuration={"statuses": {"3": {"action": "create", "name": "Untested"}}})
        summary = configuration.import_statuses(runtime)

        assert summary.mapped == 1
        assert runtime.id_maps.statuses == {3: untested_id}

    def test_created_status_gets_system_name_and_every_scope(self, make_runtime, db_manager):
        runtime = make_runtime(configuration={"statuses": {"4": {"action": "create", "name": "Passed With Notes"}}})
        summary = configuration.import_statuses(runtime)

        assert summary.created == 1
        with db_manager.get_session() as session:
            status = session.get(Status, runtime.id_maps.statuses[4])
            assert status.system_name == "passed_with_notes"
            assert len(status.scopes) == 3

    def test_workflow_create_requires_icon_and_color(self, make_runtime):
        runtime = make_runtime(configuration={"workflows": {"1": {"action": "create", "name": "Review"}}})
        with pytest.raises(ConfigurationError):
            configuration.import_workflows(runtime)

    def test_milestone_type_icon_is_optional_but_must_exist(self, make_runtime, db_manager):
        runtime = make_runtime(configuration={"milestoneTypes": {"1": {"action": "create", "name": "Sprint"}}})
        assert configuration.import_milestone_types(runtime).created == 1
        with db_manager.get_session() as session:
            assert session.get(MilestoneType, runtime.id_maps.milestone_types[1]).icon_id is None

        runtime = make_runtime(
            configuration={"milestoneTypes": {"2": {"action": "create", "name": "Release", "iconId": 999}}}
        )
        with pytest.raises(ConfigurationError):
            configuration.import_milestone_types(runtime)


@pytest.mark.db
class TestUserImport:
    def test_created_user_has_hashed_password(self, make_runtime, db_manager):
        runtime = make_runtime(
            configuration={"users": {"1": {"action": "create", "email": "A@X.com", "password": "secret"}}}
        )
        summary = users.import_users(runtime)

        assert summary.created == 1
        entry = runtime.configuration.users[1]
        assert entry.password is None
        with db_manager.get_session() as session:
            user = session.get(User, runtime.id_maps.users[1])
            assert user.email == "a@x.com"
            assert bcrypt.checkpw(b"secret", user.password.encode("utf-8"))

    def test_existing_email_is_mapped(self, make_runtime):
        raw = {"users": {"1": {"action": "create", "email": "a@x.com"}}}
        users.import_users(make_runtime(configuration=raw))

        rerun = make_runtime(configuration=raw)
        summary = users.import_users(rerun)
        assert (summary.created, summary.mapped) == (0, 1)

    def test_hash_password_truncates_long_input(self):
        hashed = hash_password("x" * 100)
        assert bcrypt.checkpw(b"x" * 72, hashed.encode("utf-8"))


@pytest.mark.db
class TestProjectImport:
    def test_projects_are_reused_by_name(self, make_runtime, staging, db_manager):
        stage_rows(staging, "job-1", {"projects": [{"id": 1, "name": "Demo"}, {"id": 2, "name": "Demo"}]})
        runtime = make_runtime()

        summary = projects.import_projects(runtime)

        assert (summary.created, summary.mapped) == (1, 1)
        assert runtime.id_maps.projects[1] == runtime.id_maps.projects[2]
        assert count(db_manager, Project) == 1

    def test_cancellation_keeps_committed_chunks(self, make_runtime, staging, db_manager):
        stage_rows(staging, "job-1", {"projects": [{"id": index, "name": f"P{index}"} for index in range(3)]})
        checks = []

        def should_abort():
            checks.append(True)
            return len(checks) > 1

        runtime = make_runtime(staging_batch_size=1, should_abort=should_abort)
        with pytest.raises(ImportCanceled):
            projects.import_projects(runtime)

        assert count(db_manager, Project) == 1

    def test_milestones_need_a_mapped_project(self, make_runtime, staging, db_manager):
        stage_rows(
            staging,
            "job-1",
            {
                "projects": [{"id": 1, "name": "Demo"}],
                "milestones": [
                    {"id": 10, "project_id": 1, "name": "M1"},
                    {"id": 11, "project_id": 99, "name": "Orphan"},
                ],
            },
        )
        runtime = make_runtime()
        projects.import_projects(runtime)

        summary = projects.import_milestones(runtime)

        assert summary.created == 1
        with db_manager.get_session() as session:
            milestone = session.scalars(select(Milestone)).one()
            assert milestone.name == "M1"
            assert milestone.project_id == runtime.id_maps.projects[1]


@pytest.mark.db
class TestVersionSnapshots:
    def _project(self, session):
        project = Project(name="Demo")
        session.add(project)
        session.flush()
        return project

    def test_case_snapshot_freezes_names_and_field_values(self, db_manager):
        with db_manager.get_session() as session:
            project = self._project(session)
            repository = Repository(project_id=project.id)
            session.add(repository)
            session.flush()
            folder = RepositoryFolder(project_id=project.id, repository_id=repository.id, name="Login")
            session.add(folder)
            session.flush()
            template = session.scalars(select(Template)).first()
            workflow = get_default_workflow(session, "CASES")
            case = RepositoryCase(
                repository_id=repository.id,
                project_id=project.id,
                folder_id=folder.id,
                template_id=template.id,
                state_id=workflow.id,
                name="Valid login",
                current_version=1,
            )
            session.add(case)
            session.flush()
            text_type = session.scalars(select(CaseFieldType).where(CaseFieldType.type == "Text String")).one()
            field = TemplateField(
                target_type="case", display_name="Preconditions", system_name="preconditions", type_id=text_type.id
            )
            session.add(field)
            session.flush()
            session.add(CaseFieldValue(case_id=case.id, field_id=field.id, value="Logged out"))
            step = Step(case_id=case.id, order=1, step={"text": "Open"}, expected_result=None)
            session.add(step)
            session.flush()

            cache = NameCache()
            cache.set("project", project.id, "Demo (cached)")
            version = snapshot_case(cache, session, case, [step])

            assert version.version == 1
            assert version.project_name == "Demo (cached)"
            assert version.folder_name == "Login"
            assert version.template_name == template.name
            assert version.state_name == workflow.name
            assert version.creator_name == "Automation Import"
            assert version.steps == [{"step": {"text": "Open"}, "expectedResult": None}]
            values = session.execute(
                select(CaseFieldVersionValue.field, CaseFieldVersionValue.value).where(
                    CaseFieldVersionValue.version_id == version.id
                )
            ).all()
            assert [tuple(value) for value in values] == [("Preconditions", "Logged out")]
            assert cache.get("folder", folder.id) == "Login"

    def test_session_snapshot_resolves_optional_references(self, db_manager):
        with db_manager.get_session() as session:
            project = self._project(session)
            milestone_type = session.scalars(select(MilestoneType)).first()
            milestone = Milestone(project_id=project.id, milestone_type_id=milestone_type.id, name="M1")
            session.add(milestone)
            session.flush()
            template = session.scalars(select(Template)).first()
            workflow = get_default_workflow(session, "SESSIONS")
            test_session = TestSession(
                project_id=project.id,
                template_id=template.id,
                state_id=workflow.id,
                milestone_id=milestone.id,
                name="Explore login",
                elapsed=90,
            )
            session.add(test_session)
            session.flush()

            version = snapshot_session(NameCache(), session, test_session)

            assert version.session_id == test_session.id
            assert version.project_name == "Demo"
            assert version.milestone_name == "M1"
            assert version.configuration_name is None
            assert version.assigned_to_name is None
            assert version.state_name == workflow.name
            assert version.elapsed == 90


@pytest.mark.unit
class TestIssueLinks:
    def test_provider_falls_back_to_source_type(self):
        assert provider_for("GITHUB", 1) == "GITHUB"
        assert provider_for(None, 1) == "JIRA"
        assert provider_for(None, 42) == "SIMPLE_URL"

    def test_external_urls(self):
        assert build_external_url("JIRA", "https://jira.example.com/", "QA-1") == "https://jira.example.com/browse/QA-1"
        assert build_external_url("GITHUB", "https://github.com/o/r", "5") == "https://github.com/o/r/issues/5"
        assert (
            build_external_url("SIMPLE_URL", "https://bugs.example.com/show?id={issueId}", "77")
            == "https://bugs.example.com/show?id=77"
        )
        assert build_external_url("JIRA", None, "QA-1") is None


@pytest.mark.unit
class TestJunitResultType:
    def test_classification_by_name(self):
        assert junit_result_type(None, "Skipped") == "SKIPPED"
        assert junit_result_type(None, "error") == "ERROR"
        assert junit_result_type(None, "Failed") == "FAILURE"
        assert junit_result_type(None, "passed") == "PASSED"

    def test_failure_flag_and_aliases(self):
        assert junit_result_type(Status(name="Broken", system_name="broken", is_failure=True), None) == "FAILURE"
        assert junit_result_type(Status(name="Held", system_name="held", aliases="blocked, held"), None) == "SKIPPED"


@pytest.mark.unit
def test_select_canonical_repositories():
    rows = [
        {"id": 1, "project_id": 1, "is_snapshot": 1},
        {"id": 2, "project_id": 1, "is_snapshot": 0},
        {"id": 3, "project_id": 2, "is_master": 1},
        {"id": 4, "project_id": 2},
        {"id": 5, "project_id": 3, "is_snapshot": 1},
    ]
    assert select_canonical_repositories(rows) == {1: [2], 2: [3], 3: [5]}


@pytest.mark.unit
def test_build_case_steps_drops_empty_rows_and_fills_order():
    steps = build_case_steps(
        8,
        [
            {"text1": "Open app", "text3": "App opens"},
            {"text1": None, "text2": None},
            {"text1": "Log in", "text2": "user=a", "display_order": 5},
            {"text3": "Dashboard"},
        ],
    )
    assert all(isinstance(step, Step) for step in steps)
    assert [step.order for step in steps] == [1, 5, 6]
    assert steps[1].step["content"][0]["content"][0]["text"] == "Log in\n<data>user=a</data>"
    assert steps[2].step is None


@pytest.mark.unit
def test_linked_urls_reads_link_marks():
    doc = {
        "type": "doc",
        "content": [
            {
                "type": "paragraph",
                "content": [{"type": "text", "text": "Spec", "marks": [{"type": "link", "attrs": {"href": "https://a"}}]}],
            }
        ],
    }
    assert linked_urls(doc) == {"https://a"}
    assert linked_urls(None) == set()
