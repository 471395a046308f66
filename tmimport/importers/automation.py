"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Automated test cases and the automation runs that executed them.

Automation cases become JUNIT repository cases filed under an ``Automation``
folder tree that follows their dotted class path. Several source cases with
the same project, name and class name collapse into one destination case.
Automation runs become JUNIT test runs; each executed test becomes a run
case plus a result, and its free-form fields become automation result fields.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from tmimport.core.db_models import (
    AutomationResultField,
    Repository,
    RepositoryCase,
    RepositoryFolder,
    Status,
    TestRun,
    TestRunCase,
    TestRunResult,
    project_template_assignment,
    run_tags,
)
from tmimport.destination import find_first, get_default_workflow
from tmimport.importers.base import EntitySummary, ImportRuntime, chunked, ensure_link
from tmimport.importers.links import import_links
from tmimport.importers.versions import snapshot_case
from tmimport.normalization import (
    microseconds_to_seconds,
    normalize_automation_class_name,
    to_bool,
    to_date,
    to_int,
    to_str,
)
from tmimport.staging import StagedRow

logger = logging.getLogger("tmimport.importers.automation")

AUTOMATION_FOLDER_NAME = "Automation"
JUNIT_SOURCE = "JUNIT"


@dataclass
class _CaseGroup:
    project_id: int
    name: str
    class_name: str | None
    folder_path: list[str]
    source_ids: list[int] = field(default_factory=list)
    created_by: object = None
    created_at: object = None


class _AutomationFolders:
    """Find-or-create cache of ``Automation/<segment>/...`` folders per repository."""

    def __init__(self, session: Session):
        self.session = session
        self._cache: dict[tuple[int, int | None, str], int] = {}

    def _folder(self, repository_id: int, project_id: int, parent_id: int | None, name: str) -> int:
        key = (repository_id, parent_id, name)
        if key in self._cache:
            return self._cache[key]
        folder = find_first(
            self.session,
            RepositoryFolder,
            repository_id=repository_id,
            parent_id=parent_id,
            name=name,
            is_deleted=False,
        )
        if folder is None:
            folder = RepositoryFolder(
                repository_id=repository_id,
                project_id=project_id,
                parent_id=parent_id,
                name=name,
            )
            self.session.add(folder)
            self.session.flush()
        self._cache[key] = folder.id
        return folder.id

    def resolve(self, repository_id: int, project_id: int, path: list[str]) -> int:
        folder_id = self._folder(repository_id, project_id, None, AUTOMATION_FOLDER_NAME)
        for segment in path:
            folder_id = self._folder(repository_id, project_id, folder_id, segment)
        return folder_id


def _group_automation_cases(
    runtime: ImportRuntime, summary: EntitySummary, rows: list[StagedRow]
) -> list[_CaseGroup]:
    id_maps = runtime.id_maps
    groups: dict[tuple[int, str, str | None], _CaseGroup] = {}
    for row in rows:
        record = row.data
        source_id = to_int(record.get("id"))
        project_source_id = to_int(record.get("project_id"))
        project_id = id_maps.projects.get(project_source_id)
        if source_id is None or project_id is None:
            runtime.skip(
                summary,
                "Skipping automation case due to missing project mapping",
                sourceId=source_id,
                projectSourceId=project_source_id,
            )
            continue

        name = to_str(record.get("name")) or f"Automation Case {source_id}"
        folder = to_str(record.get("folder"))
        class_name = normalize_automation_class_name(folder)
        key = (project_id, name, class_name)
        group = groups.get(key)
        if group is None:
            path = [segment.strip() for segment in (folder or "").split(".") if segment.strip()]
            group = _CaseGroup(
                project_id=project_id,
                name=name,
                class_name=class_name,
                folder_path=path,
                created_by=record.get("created_by"),
                created_at=record.get("created_at"),
            )
            groups[key] = group
        group.source_ids.append(source_id)
    return list(groups.values())


def import_automation_cases(runtime: ImportRuntime) -> EntitySummary:
    """
    Create or update one JUNIT repository case per (project, name, class name).

    An existing JUNIT case is matched by name and class name, then by name
    alone; it is moved into the automation folder tree and counted as mapped.
    Every source id of a group maps to the same destination case.
    """
    summary = EntitySummary("automationCases")
    id_maps = runtime.id_maps
    rows = runtime.load_rows("automation_cases")
    if not rows:
        return summary

    groups = _group_automation_cases(runtime, summary, rows)
    row_ids = [row.id for row in rows]
    timeout_ms = runtime.config.automation_transaction_timeout_ms
    state: dict[str, object] = {}

    def repository_for(session: Session, project_id: int) -> int:
        repository_id = id_maps.project_repositories.get(project_id)
        if repository_id is not None:
            return repository_id
        repository = find_first(session, Repository, project_id=project_id, is_active=True, is_deleted=False)
        if repository is None:
            repository = Repository(project_id=project_id)
            session.add(repository)
            session.flush()
            logger.debug(f"Created repository {repository.id} for automation cases of project {project_id}")
        id_maps.project_repositories[project_id] = repository.id
        return repository.id

    def template_for(session: Session, project_id: int) -> int | None:
        template_id = id_maps.project_default_templates.get(project_id)
        if template_id is not None:
            return template_id
        assigned = session.execute(
            select(project_template_assignment.c.template_id)
            .where(project_template_assignment.c.project_id == project_id)
            .order_by(project_template_assignment.c.template_id)
            .limit(1)
        ).scalar()
        if assigned is not None:
            return assigned
        return next(iter(id_maps.templates.values()), None)

    def workflow_id(session: Session) -> int | None:
        if "workflow" not in state:
            workflow = next(iter(id_maps.workflows.values()), None)
            if workflow is None:
                default = get_default_workflow(session, "CASES")
                workflow = default.id if default is not None else None
            state["workflow"] = workflow
        return state["workflow"]

    def import_group(session: Session, folders: _AutomationFolders, group: _CaseGroup) -> None:
        template_id = template_for(session, group.project_id)
        state_id = workflow_id(session)
        if template_id is None or state_id is None:
            for source_id in group.source_ids:
                runtime.skip(
                    summary,
                    "Skipping automation case due to missing template or workflow",
                    sourceId=source_id,
                    name=group.name,
                    projectId=group.project_id,
                )
            return

        repository_id = repository_for(session, group.project_id)
        folder_id = folders.resolve(repository_id, group.project_id, group.folder_path)

        case = None
        if group.class_name:
            case = find_first(
                session,
                RepositoryCase,
                project_id=group.project_id,
                name=group.name,
                class_name=group.class_name,
                source=JUNIT_SOURCE,
                is_deleted=False,
            )
        if case is None:
            case = find_first(
                session,
                RepositoryCase,
                project_id=group.project_id,
                name=group.name,
                source=JUNIT_SOURCE,
                is_deleted=False,
            )

        if case is not None:
            case.class_name = group.class_name
            case.automated = True
            case.state_id = state_id
            case.template_id = template_id
            case.folder_id = folder_id
            case.repository_id = repository_id
            runtime.mapped(summary, len(group.source_ids))
        else:
            case = RepositoryCase(
                repository_id=repository_id,
                project_id=group.project_id,
                folder_id=folder_id,
                template_id=template_id,
                state_id=state_id,
                name=group.name,
                class_name=group.class_name,
                source=JUNIT_SOURCE,
                automated=True,
                created_by_id=runtime.resolve_user(session, group.created_by),
                created_at=to_date(group.created_at),
            )
            session.add(case)
            session.flush()
            snapshot_case(runtime.context.name_cache, session, case)
            runtime.created(summary)
            if len(group.source_ids) > 1:
                runtime.mapped(summary, len(group.source_ids) - 1)

        for source_id in group.source_ids:
            id_maps.automation_cases[source_id] = case.id

    chunk_size = runtime.config.automation_case_chunk_size
    for batch in chunked(groups, chunk_size):

        def work(session: Session, batch: list[_CaseGroup] = batch) -> None:
            folders = _AutomationFolders(session)
            for group in batch:
                import_group(session, folders, group)
            session.flush()

        runtime.run_in_transaction(work, timeout_ms)
        runtime.persist("automationCases")

    runtime.run_in_transaction(lambda session: runtime.staging.mark_processed(row_ids, session=session))
    return summary


def import_automation_runs(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("automationRuns")
    id_maps = runtime.id_maps
    defaults: dict[str, int | None] = {}

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        source_id = to_int(record.get("id"))
        project_source_id = to_int(record.get("project_id"))
        project_id = id_maps.projects.get(project_source_id)
        if source_id is None or project_id is None:
            runtime.skip(
                summary,
                "Skipping automation run due to missing project mapping",
                sourceId=source_id,
                projectSourceId=project_source_id,
            )
            return

        existing = runtime.remembered_target(session, "automationRuns", source_id, TestRun)
        if existing is not None:
            id_maps.automation_runs[source_id] = existing
            runtime.mapped(summary)
            return

        if "state" not in defaults:
            workflow = get_default_workflow(session, "RUNS")
            fallback = next(iter(id_maps.workflows.values()), None)
            defaults["state"] = workflow.id if workflow is not None else fallback
        if defaults["state"] is None:
            runtime.skip(summary, "Skipping automation run due to missing workflow", sourceId=source_id)
            return

        created_at = to_date(record.get("created_at"))
        is_completed = to_bool(record.get("is_completed"), default=True)
        completed_at = to_date(record.get("completed_at"))
        if completed_at is None and is_completed:
            completed_at = created_at

        run = TestRun(
            project_id=project_id,
            state_id=defaults["state"],
            milestone_id=id_maps.milestones.get(to_int(record.get("milestone_id"))),
            configuration_id=id_maps.configurations.get(to_int(record.get("config_id"))),
            name=to_str(record.get("name")) or f"Automation Run {source_id}",
            run_type=JUNIT_SOURCE,
            elapsed=microseconds_to_seconds(record.get("elapsed")),
            is_completed=is_completed,
            completed_at=completed_at,
            created_by_id=runtime.resolve_user(session, record.get("created_by")),
            created_at=created_at,
        )
        session.add(run)
        session.flush()
        runtime.remember(session, "automationRuns", source_id, run.id, "test_run")
        id_maps.automation_runs[source_id] = run.id
        runtime.created(summary)

    runtime.run_chunks(
        "automationRuns",
        runtime.staged_rows("automation_runs"),
        runtime.policy(runtime.config.automation_run_chunk_size, runtime.config.automation_transaction_timeout_ms),
        handle,
    )
    return summary


def junit_result_type(status: Status | None, raw_status: str | None) -> str:
    """Classify a result as SKIPPED, ERROR, FAILURE or PASSED from its status names."""
    candidates = set()
    for value in (raw_status, status.system_name if status else None, status.name if status else None):
        if value and value.strip():
            candidates.add(value.strip().lower())
    if status is not None and status.aliases:
        candidates.update(alias.strip().lower() for alias in status.aliases.split(",") if alias.strip())

    def mentions(*needles: str) -> bool:
        return any(needle in candidate for candidate in candidates for needle in needles)

    if mentions("skip", "block", "omit"):
        return "SKIPPED"
    if mentions("error", "exception"):
        return "ERROR"
    if (status is not None and status.is_failure) or mentions("fail"):
        return "FAILURE"
    return "PASSED"


def _find_status(session: Session, status_text: str) -> int | None:
    normalized = status_text.strip().lower()
    return session.scalars(
        select(Status.id)
        .where(
            Status.is_enabled.is_(True),
            Status.is_deleted.is_(False),
            or_(func.lower(Status.system_name) == normalized, Status.aliases.contains(normalized)),
        )
        .order_by(Status.id)
        .limit(1)
    ).first()


def import_automation_run_tests(runtime: ImportRuntime) -> EntitySummary:
    """
    Turn executed automation tests into run cases and results.

    The run case is unique per (run, case) and carries the latest status;
    each executed test adds one result. Tests whose case lives in another
    project than the run are skipped.
    """
    summary = EntitySummary("automationRunTests")
    id_maps = runtime.id_maps
    names = runtime.context.name_cache
    run_state: dict[int, dict] = {}

    def run_info(session: Session, run_id: int) -> dict:
        info = run_state.get(run_id)
        if info is None:
            run = session.get(TestRun, run_id)
            next_order = session.execute(
                select(func.max(TestRunCase.order)).where(TestRunCase.test_run_id == run_id)
            ).scalar()
            info = {
                "project_id": run.project_id if run else None,
                "executed_at": (run.completed_at or run.created_at) if run else None,
                "next_order": (next_order or 0) + 1,
            }
            run_state[run_id] = info
        return info

    def resolve_status(session: Session, status_source_id: int | None, status_text: str | None) -> Status | None:
        status_id = id_maps.statuses.get(status_source_id) if status_source_id is not None else None
        if status_id is not None:
            status = session.get(Status, status_id)
            if status is not None:
                return status
        if status_text:
            found_id = names.get_or_load("automationStatus", status_text.lower(), lambda key: _find_status(session, key))
            if found_id is not None:
                return session.get(Status, found_id)
        untested_id = names.get_or_load("automationStatus", "untested", lambda key: _find_status(session, key))
        return session.get(Status, untested_id) if untested_id is not None else None

    def write_detail(session: Session, result_id: int, name: str, value: object) -> None:
        if value is None:
            return
        session.add(AutomationResultField(result_id=result_id, name=name, field_type="junit", value=str(value)))

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        source_id = to_int(record.get("id"))
        run_source_id = to_int(record.get("run_id"))
        run_id = id_maps.automation_runs.get(run_source_id)
        if source_id is None or run_id is None:
            runtime.skip(
                summary,
                "Skipping automation run test due to missing run mapping",
                sourceId=source_id,
                runSourceId=run_source_id,
            )
            return
        if source_id in id_maps.automation_run_tests:
            runtime.skip(summary, "Skipping duplicate automation run test", sourceId=source_id)
            return

        existing = runtime.remembered_target(session, "automationRunTests", source_id, TestRunResult)
        if existing is not None:
            id_maps.automation_run_tests[source_id] = existing
            runtime.mapped(summary)
            return

        info = run_info(session, run_id)
        case_source_id = to_int(record.get("case_id"))
        case_id = id_maps.automation_cases.get(case_source_id)
        case_project_id = None
        if case_id is not None:
            case = session.get(RepositoryCase, case_id)
            case_project_id = case.project_id if case is not None else None
        elif info["project_id"] is not None and to_str(record.get("name")):
            case = find_first(
                session,
                RepositoryCase,
                project_id=info["project_id"],
                name=to_str(record.get("name")),
                source=JUNIT_SOURCE,
            )
            if case is not None:
                case_id, case_project_id = case.id, case.project_id

        if case_id is None or case_project_id is None:
            runtime.skip(
                summary,
                "Skipping automation run test due to missing case mapping",
                sourceId=source_id,
                caseSourceId=case_source_id,
            )
            return
        if case_project_id != info["project_id"]:
            summary.count("skippedCrossProject")
            runtime.skip(
                summary,
                "Skipping automation run test whose case belongs to another project",
                sourceId=source_id,
                caseProjectId=case_project_id,
                runProjectId=info["project_id"],
            )
            return

        status_text = to_str(record.get("status"))
        status = resolve_status(session, to_int(record.get("status_id")), status_text)
        if status is None:
            runtime.skip(summary, "Skipping automation run test due to missing status", sourceId=source_id)
            return

        elapsed = microseconds_to_seconds(record.get("elapsed"))
        executed_at = info["executed_at"]
        run_case = find_first(session, TestRunCase, test_run_id=run_id, repository_case_id=case_id)
        if run_case is None:
            run_case = TestRunCase(test_run_id=run_id, repository_case_id=case_id, order=info["next_order"])
            info["next_order"] += 1
            session.add(run_case)
        run_case.status_id = status.id
        run_case.elapsed = elapsed
        run_case.is_completed = bool(status.is_completed)
        run_case.completed_at = executed_at if status.is_completed else None
        session.flush()

        result = TestRunResult(
            test_run_id=run_id,
            test_run_case_id=run_case.id,
            status_id=status.id,
            executed_by_id=runtime.fallback_creator(session),
            executed_at=executed_at,
            elapsed=elapsed,
        )
        session.add(result)
        session.flush()

        write_detail(session, result.id, "resultType", junit_result_type(status, status_text))
        write_detail(session, result.id, "file", to_str(record.get("file")))
        write_detail(session, result.id, "line", to_int(record.get("line")))
        write_detail(session, result.id, "assertions", to_int(record.get("assertions")))

        runtime.remember(session, "automationRunTests", source_id, result.id, "test_run_result")
        id_maps.automation_run_tests[source_id] = result.id
        runtime.created(summary)

    runtime.run_chunks(
        "automationRunTests",
        runtime.staged_rows("automation_run_tests"),
        runtime.policy(
            runtime.config.automation_run_test_chunk_size, runtime.config.automation_transaction_timeout_ms
        ),
        handle,
    )
    return summary


def import_automation_run_fields(runtime: ImportRuntime) -> EntitySummary:
    """
    Store run-level fields (version, build, ...) as the run note.

    The note is a JSON object ``{name: {"type": ..., "value": ...}}``; each
    run counts once however many fields it has.
    """
    summary = EntitySummary("automationRunFields")
    id_maps = runtime.id_maps
    rows = runtime.load_rows("automation_run_fields")
    if not rows:
        return summary

    fields_by_run: dict[int, dict[str, dict]] = defaultdict(dict)
    skipped = 0
    for row in rows:
        run_id = id_maps.automation_runs.get(to_int(row.data.get("run_id")))
        name = to_str(row.data.get("name"))
        if run_id is None or not name:
            skipped += 1
            continue
        fields_by_run[run_id][name] = {"type": to_int(row.data.get("type")), "value": to_str(row.data.get("value"))}

    if skipped:
        runtime.log("Skipped automation run fields without a run or name", count=skipped)
    runtime.context.initialize_entity_progress("automationRunFields", len(fields_by_run))
    row_ids = [row.id for row in rows]

    for batch in chunked(list(fields_by_run.items()), runtime.config.automation_run_field_chunk_size):

        def work(session: Session, batch: list = batch) -> None:
            for run_id, fields in batch:
                run = session.get(TestRun, run_id)
                if run is None:
                    runtime.skip(summary, "Skipping automation run fields of a missing run", runId=run_id)
                    continue
                if run.note == fields:
                    runtime.mapped(summary)
                    continue
                run.note = fields
                runtime.created(summary)

        runtime.run_in_transaction(work, runtime.config.automation_transaction_timeout_ms)
        runtime.persist("automationRunFields")

    runtime.run_in_transaction(lambda session: runtime.staging.mark_processed(row_ids, session=session))
    return summary


def import_automation_run_links(runtime: ImportRuntime) -> EntitySummary:
    return import_links(
        runtime,
        "automationRunLinks",
        "automation_run_links",
        "run_id",
        runtime.id_maps.automation_runs,
        TestRun,
        runtime.config.automation_run_link_chunk_size,
        runtime.config.automation_transaction_timeout_ms,
    )


def import_automation_run_test_fields(runtime: ImportRuntime) -> EntitySummary:
    """Attach output, traces and other per-test fields to their results."""
    summary = EntitySummary("automationRunTestFields")
    id_maps = runtime.id_maps

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        result_id = id_maps.automation_run_tests.get(to_int(record.get("test_id")))
        name = to_str(record.get("name"))
        if result_id is None or not name:
            runtime.skip(
                summary,
                "Skipping automation run test field with unmapped test or missing name",
                testSourceId=to_int(record.get("test_id")),
            )
            return
        value = record.get("value")
        text = value if isinstance(value, str) else (None if value is None else str(value))
        field_type = to_str(record.get("type"))

        existing = find_first(session, AutomationResultField, result_id=result_id, name=name)
        if existing is not None:
            existing.value = text
            existing.field_type = field_type
            runtime.mapped(summary)
            return
        session.add(AutomationResultField(result_id=result_id, name=name, field_type=field_type, value=text))
        session.flush()
        runtime.created(summary)

    runtime.run_chunks(
        "automationRunTestFields",
        runtime.staged_rows("automation_run_test_fields"),
        runtime.policy(
            runtime.config.automation_run_test_field_chunk_size, runtime.config.automation_transaction_timeout_ms
        ),
        handle,
    )
    return summary


def import_automation_run_tags(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("automationRunTags")
    id_maps = runtime.id_maps

    def handle(session: Session, row: StagedRow) -> None:
        run_id = id_maps.automation_runs.get(to_int(row.data.get("run_id")))
        tag_id = id_maps.tags.get(to_int(row.data.get("tag_id")))
        if run_id is None or tag_id is None:
            runtime.skip(
                summary,
                "Skipping automation run tag with unmapped run or tag",
                runSourceId=to_int(row.data.get("run_id")),
                tagSourceId=to_int(row.data.get("tag_id")),
            )
            return
        if ensure_link(session, run_tags, test_run_id=run_id, tag_id=tag_id):
            runtime.created(summary)
        else:
            runtime.mapped(summary)

    runtime.run_chunks(
        "automationRunTags",
        runtime.staged_rows("automation_run_tags"),
        runtime.policy(runtime.config.automation_run_tag_chunk_size, runtime.config.automation_transaction_timeout_ms),
        handle,
    )
    return summary
