"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Repositories, folders, cases and case tags.

An export may carry several repositories per project (the master plus
snapshots). Only the canonical ones are imported and all of them land in the
project's single destination repository; folders and cases of any other
repository are skipped.
"""

import logging
from collections import defaultdict
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmimport.core.db_models import (
    CaseFieldValue,
    Repository,
    RepositoryCase,
    RepositoryFolder,
    Step,
    case_tags,
    project_template_assignment,
)
from tmimport.destination import find_first, get_default_template, get_default_workflow
from tmimport.importers.base import EntitySummary, FieldMeta, ImportRuntime, ensure_link, load_field_metadata
from tmimport.importers.templates import TemplateResolver
from tmimport.importers.versions import snapshot_case
from tmimport.normalization import (
    normalize_case_field_value,
    normalize_estimate,
    to_bool,
    to_date,
    to_int,
    to_rich_text_doc,
    to_str,
)
from tmimport.staging import StagedRow

logger = logging.getLogger("tmimport.importers.repositories")

FALLBACK_FOLDER_NAME = "Imported"
ESTIMATE_SCALED = ("microseconds", "nanoseconds", "milliseconds")


def select_canonical_repositories(rows: list[dict[str, Any]]) -> dict[int, list[int]]:
    """
    Source project id -> canonical source repository ids.

    Per project the explicit masters win, then every repository that is not
    a snapshot, then the first repository listed.
    """
    by_project: dict[int, list[dict[str, Any]]] = defaultdict(list)
    for record in rows:
        if to_int(record.get("id")) is None or to_int(record.get("project_id")) is None:
            continue
        by_project[to_int(record["project_id"])].append(record)

    canonical: dict[int, list[int]] = {}
    for project_id, records in by_project.items():
        masters = [record for record in records if to_int(record.get("is_master")) == 1]
        non_snapshots = [record for record in records if to_int(record.get("is_snapshot")) != 1]
        selected = masters or non_snapshots or records[:1]
        canonical[project_id] = list(dict.fromkeys(to_int(record["id"]) for record in selected))
    return canonical


def import_repositories(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("repositories", details={"skippedNonCanonical": 0})
    id_maps = runtime.id_maps
    rows = runtime.load_rows("repositories")
    if not rows:
        runtime.log("No repository data available; skipping repository import.")
        return summary

    canonical = select_canonical_repositories([row.data for row in rows])
    canonical_ids = {repo_id for repo_ids in canonical.values() for repo_id in repo_ids}

    def handle(session: Session, row: StagedRow) -> None:
        repo_source_id = to_int(row.data.get("id"))
        project_source_id = to_int(row.data.get("project_id"))
        if repo_source_id is None or repo_source_id not in canonical_ids:
            summary.count("skippedNonCanonical")
            runtime.skip(
                summary,
                "Skipping non-canonical repository",
                repositorySourceId=repo_source_id,
                projectSourceId=project_source_id,
            )
            return
        project_id = id_maps.projects.get(project_source_id)
        if project_id is None:
            runtime.skip(
                summary,
                "Skipping repository due to missing project mapping",
                repoId=repo_source_id,
                projectSourceId=project_source_id,
            )
            return

        repository_id = id_maps.project_repositories.get(project_id)
        if repository_id is None:
            existing = session.scalars(
                select(Repository)
                .where(Repository.project_id == project_id, Repository.is_deleted.is_(False))
                .order_by(Repository.id)
                .limit(1)
            ).first()
            if existing is None:
                repository = Repository(project_id=project_id)
                session.add(repository)
                session.flush()
                id_maps.project_repositories[project_id] = repository.id
                id_maps.repositories[repo_source_id] = repository.id
                runtime.created(summary)
                return
            repository_id = existing.id
            id_maps.project_repositories[project_id] = repository_id

        id_maps.repositories[repo_source_id] = repository_id
        runtime.mapped(summary)

    runtime.run_chunks("repositories", rows, runtime.policy(runtime.config.staging_batch_size), handle)
    if summary.details["skippedNonCanonical"]:
        runtime.log(
            "Skipped snapshot repositories; their folders and cases are not imported",
            count=summary.details["skippedNonCanonical"],
        )
    return summary


class _FolderImporter:
    """
    Imports folders parents first.

    Each folder is written in its own short transaction together with the
    marking of its staged row, so a large tree never holds one long lock.
    """

    def __init__(self, runtime: ImportRuntime, summary: EntitySummary, rows: dict[int, StagedRow]):
        self.runtime = runtime
        self.summary = summary
        self.rows = rows
        self.id_maps = runtime.id_maps
        self.done: set[int] = set()
        self.signatures: dict[tuple[int, int | None, str], int] = {}
        self.unwritten: list[int] = []

    def _parent_of(self, folder_id: int) -> int | None:
        return to_int(self.rows[folder_id].data.get("parent_id"))

    def _ancestry(self, folder_id: int) -> tuple[list[int], bool]:
        """
        Folders to import, top-down, ending with ``folder_id``.

        Returns:
            Tuple of (chain, cycle) where cycle is True when the topmost
            folder's parent loops back into the chain
        """
        chain = [folder_id]
        seen = {folder_id}
        current = folder_id
        while True:
            parent = self._parent_of(current)
            if parent is None or parent in self.done or parent not in self.rows:
                return list(reversed(chain)), False
            if parent in seen:
                return list(reversed(chain)), True
            chain.append(parent)
            seen.add(parent)
            current = parent

    def import_all(self) -> None:
        for folder_id in list(self.rows):
            if folder_id in self.done:
                continue
            chain, cycle = self._ancestry(folder_id)
            for index, member in enumerate(chain):
                self._import_one(member, cycle and index == 0)
                self.done.add(member)
                self.runtime.tick("repositoryFolders")

        if self.unwritten:

            def mark(session: Session) -> None:
                self.runtime.staging.mark_processed(self.unwritten, session=session)

            self.runtime.run_in_transaction(mark)

    def _import_one(self, folder_id: int, cycle: bool) -> None:
        runtime = self.runtime
        row = self.rows[folder_id]
        record = row.data
        project_source_id = to_int(record.get("project_id"))
        repo_source_id = to_int(record.get("repo_id"))
        project_id = self.id_maps.projects.get(project_source_id)
        if project_id is None:
            runtime.skip(
                self.summary,
                "Skipping folder due to missing project mapping",
                folderSourceId=folder_id,
                projectSourceId=project_source_id,
            )
            self.unwritten.append(row.id)
            return
        repository_id = self.id_maps.repositories.get(repo_source_id)
        if repository_id is None:
            runtime.skip(
                self.summary,
                "Skipping folder due to missing canonical repository",
                folderSourceId=folder_id,
                repoSourceId=repo_source_id,
            )
            self.unwritten.append(row.id)
            return

        parent_source_id = self._parent_of(folder_id)
        parent_id = None
        if parent_source_id is not None:
            if cycle:
                runtime.log(
                    "Detected folder parent cycle; attaching to repository root",
                    folderSourceId=folder_id,
                )
            else:
                parent_id = self.id_maps.folders.get(parent_source_id)
            if parent_id is None:
                if not cycle:
                    runtime.log(
                        "Folder parent missing; attaching to repository root",
                        folderSourceId=folder_id,
                        parentSourceId=parent_source_id,
                    )
                parent_id = self.id_maps.root_folders.get(repository_id)

        name = to_str(record.get("name")) or f"Folder {folder_id}"
        signature = (repository_id, parent_id, name)
        if signature in self.signatures:
            self.id_maps.folders[folder_id] = self.signatures[signature]
            runtime.mapped(self.summary)
            self.unwritten.append(row.id)
            return

        def work(session: Session) -> tuple[int, bool]:
            existing = find_first(
                session,
                RepositoryFolder,
                project_id=project_id,
                repository_id=repository_id,
                parent_id=parent_id,
                name=name,
                is_deleted=False,
            )
            if existing is not None:
                result = (existing.id, False)
            else:
                folder = RepositoryFolder(
                    project_id=project_id,
                    repository_id=repository_id,
                    parent_id=parent_id,
                    name=name,
                    docs=to_rich_text_doc(record.get("docs")),
                    order=to_int(record.get("display_order")) or 0,
                )
                session.add(folder)
                session.flush()
                result = (folder.id, True)
            runtime.staging.mark_processed([row.id], session=session)
            return result

        destination_id, created = runtime.run_in_transaction(
            work, runtime.config.repository_folder_transaction_timeout_ms
        )
        if created:
            runtime.created(self.summary)
        else:
            runtime.mapped(self.summary)
        self.id_maps.folders[folder_id] = destination_id
        self.signatures[signature] = destination_id
        if parent_id is None:
            self.id_maps.root_folders.setdefault(repository_id, destination_id)


def import_repository_folders(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("repositoryFolders")
    rows: dict[int, StagedRow] = {}
    for row in runtime.staged_rows("repository_folders"):
        folder_id = to_int(row.data.get("id"))
        if folder_id is None:
            runtime.skip(summary, "Skipping repository folder without an id", rowIndex=row.row_index)
            continue
        rows[folder_id] = row

    if not rows:
        runtime.log("No repository folders dataset found; skipping folder import.")
        return summary

    _FolderImporter(runtime, summary, rows).import_all()
    return summary


def step_doc(text: str | None, data: str | None) -> dict[str, Any] | None:
    if not text and not data:
        return None
    combined = text or ""
    if data:
        combined += ("\n" if combined else "") + f"<data>{data}</data>"
    return to_rich_text_doc(combined)


def build_case_steps(case_id: int, step_rows: list[dict[str, Any]]) -> list[Step]:
    """
    Steps of one case from ``text1``..``text4``.

    Action and its data form the step; expected result and its data form the
    expected result. Rows with no text at all are dropped. Missing display
    orders continue from the previous step.
    """
    steps: list[Step] = []
    generated_order = 0
    for record in step_rows:
        action, action_data = to_str(record.get("text1")), to_str(record.get("text2"))
        expected, expected_data = to_str(record.get("text3")), to_str(record.get("text4"))
        if not (action or action_data or expected or expected_data):
            continue
        order = to_int(record.get("display_order"))
        if order is None:
            generated_order += 1
            order = generated_order
        else:
            generated_order = order
        steps.append(
            Step(
                case_id=case_id,
                order=order,
                step=step_doc(action, action_data),
                expected_result=step_doc(expected, expected_data),
            )
        )
    return steps


def _is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list):
        return not value
    return False


def _option_type(meta: FieldMeta) -> str | None:
    kind = meta.type_name.strip().lower().replace(" ", "-")
    if kind == "dropdown":
        return "dropdown"
    if kind == "multi-select":
        return "multi-select"
    return None


class _CaseValueWriter:
    """Custom field values of newly created cases."""

    def __init__(self, runtime: ImportRuntime, session: Session, metadata: dict[int, FieldMeta]):
        self.runtime = runtime
        self.session = session
        self.metadata = metadata

    def _source_names(self, value: Any) -> Any:
        """Source value ids become their names so options resolve by name."""
        id_maps = self.runtime.id_maps
        if isinstance(value, list):
            return [id_maps.field_value_name(item) or item for item in value]
        if isinstance(value, int) and not isinstance(value, bool):
            return id_maps.field_value_name(value) or value
        return value

    def normalize(self, meta: FieldMeta, raw_value: Any, case_source_id: int, source: str) -> Any:
        if _option_type(meta) is not None:
            raw_value = self._source_names(raw_value)

        def warn(message: str, details: dict[str, Any]) -> None:
            self.runtime.log(
                message,
                caseSourceId=case_source_id,
                field=meta.system_name,
                displayName=meta.display_name,
                source=source,
                **details,
            )

        return normalize_case_field_value(meta.type_name, raw_value, meta.options, meta.system_name, warn)

    def upsert(self, case_id: int, field_id: int, value: Any) -> None:
        existing = find_first(self.session, CaseFieldValue, case_id=case_id, field_id=field_id)
        if existing is not None:
            existing.value = value
        else:
            self.session.add(CaseFieldValue(case_id=case_id, field_id=field_id, value=value))
        self.session.flush()

    def write_custom_fields(self, case_id: int, case_source_id: int, record: dict[str, Any]) -> None:
        case_fields = self.runtime.id_maps.case_fields
        for key, raw_value in record.items():
            if not key.startswith("custom_") or _is_empty_value(raw_value):
                continue
            field_id = case_fields.get(key[len("custom_") :])
            if field_id is None:
                continue
            meta = self.metadata.get(field_id)
            if meta is None:
                self.runtime.log("Missing case field metadata", field=key, fieldId=field_id, caseSourceId=case_source_id)
                continue
            value = self.normalize(meta, raw_value, case_source_id, "repository_cases")
            if _is_empty_value(value):
                continue
            self.upsert(case_id, field_id, value)

    def write_multi_select_values(
        self, case_id: int, case_source_id: int, values: dict[int, list[int]]
    ) -> None:
        for field_source_id, value_ids in values.items():
            field_id = self.runtime.id_maps.template_fields.get(field_source_id)
            meta = self.metadata.get(field_id) if field_id is not None else None
            if meta is None or _option_type(meta) != "multi-select":
                continue
            value = self.normalize(meta, value_ids, case_source_id, "repository_case_values")
            if _is_empty_value(value):
                continue
            self.upsert(case_id, field_id, value)


def import_repository_cases(runtime: ImportRuntime) -> EntitySummary:
    """
    Create or reuse cases by ``(project, folder, name)``.

    Steps and multi-select values live in their own datasets and are loaded
    up front, keyed by source case id. Values and steps are only written for
    cases created by this run.
    """
    summary = EntitySummary("repositoryCases", details={"estimateAdjusted": 0, "estimateClamped": 0})
    id_maps = runtime.id_maps

    steps_by_case: dict[int, list[dict[str, Any]]] = defaultdict(list)
    for row in runtime.staged_rows("repository_case_steps"):
        case_source_id = to_int(row.data.get("case_id"))
        if case_source_id is not None:
            steps_by_case[case_source_id].append(row.data)

    values_by_case: dict[int, dict[int, list[int]]] = defaultdict(lambda: defaultdict(list))
    for row in runtime.staged_rows("repository_case_values"):
        case_source_id = to_int(row.data.get("case_id"))
        field_source_id = to_int(row.data.get("field_id"))
        value_id = to_int(row.data.get("value_id"))
        if case_source_id is not None and field_source_id is not None and value_id is not None:
            values_by_case[case_source_id][field_source_id].append(value_id)

    state: dict[str, Any] = {}
    template_assignments: set[tuple[int, int]] = set()

    def load_state(session: Session) -> None:
        default_template = get_default_template(session)
        default_workflow = get_default_workflow(session, "CASES")
        state["template"] = default_template.id if default_template is not None else None
        state["workflow"] = default_workflow.id if default_workflow is not None else None
        field_ids = set(id_maps.case_fields.values()) | set(id_maps.template_fields.values())
        state["metadata"] = load_field_metadata(session, field_ids)

    def resolve_template(session: Session, template_source_id: int | None) -> int | None:
        if template_source_id is None:
            return state["template"]
        template_id = id_maps.templates.get(template_source_id)
        if template_id is None:
            name = id_maps.template_source_names.get(template_source_id)
            template_id, _ = TemplateResolver(runtime, session).resolve(name)
            if template_id is not None:
                id_maps.templates[template_source_id] = template_id
        return template_id or state["template"]

    def resolve_folder(session: Session, folder_source_id: int | None, project_id: int, repository_id: int) -> int:
        folder_id = id_maps.folders.get(folder_source_id)
        if folder_id is not None:
            return folder_id
        folder_id = id_maps.root_folders.get(repository_id)
        if folder_id is not None:
            return folder_id
        folder = find_first(
            session,
            RepositoryFolder,
            repository_id=repository_id,
            parent_id=None,
            name=FALLBACK_FOLDER_NAME,
            is_deleted=False,
        )
        if folder is None:
            folder = RepositoryFolder(project_id=project_id, repository_id=repository_id, name=FALLBACK_FOLDER_NAME)
            session.add(folder)
            session.flush()
        id_maps.root_folders[repository_id] = folder.id
        return folder.id

    def handle(session: Session, row: StagedRow) -> None:
        if not state:
            load_state(session)
        record = row.data
        case_source_id = to_int(record.get("id"))
        project_source_id = to_int(record.get("project_id"))
        repo_source_id = to_int(record.get("repo_id"))
        project_id = id_maps.projects.get(project_source_id)
        if case_source_id is None or project_id is None:
            runtime.skip(
                summary,
                "Skipping case due to missing project mapping",
                caseSourceId=case_source_id,
                projectSourceId=project_source_id,
            )
            return
        repository_id = id_maps.repositories.get(repo_source_id)
        if repository_id is None:
            runtime.skip(
                summary,
                "Skipping case due to missing canonical repository",
                caseSourceId=case_source_id,
                repoSourceId=repo_source_id,
            )
            return

        folder_id = resolve_folder(session, to_int(record.get("folder_id")), project_id, repository_id)
        name = to_str(record.get("name")) or f"Imported Case {case_source_id}"
        existing = find_first(
            session, RepositoryCase, project_id=project_id, folder_id=folder_id, name=name, is_deleted=False
        )
        if existing is not None:
            id_maps.cases[case_source_id] = existing.id
            runtime.mapped(summary)
            return

        template_source_id = to_int(record.get("template_id"))
        state_source_id = to_int(record.get("state_id"))
        template_id = resolve_template(session, template_source_id)
        workflow_id = id_maps.workflows.get(state_source_id) or state["workflow"]
        if template_id is None or workflow_id is None:
            runtime.skip(
                summary,
                "Skipping case due to missing template or workflow mapping",
                caseSourceId=case_source_id,
                templateSourceId=template_source_id,
                stateSourceId=state_source_id,
            )
            return

        estimate, adjustment = normalize_estimate(record.get("estimate"))
        if adjustment in ESTIMATE_SCALED:
            summary.count("estimateAdjusted")
        elif adjustment == "clamped":
            summary.count("estimateClamped")

        repository_case = RepositoryCase(
            repository_id=repository_id,
            project_id=project_id,
            folder_id=folder_id,
            template_id=template_id,
            state_id=workflow_id,
            name=name,
            class_name=to_str(record.get("key")),
            source="MANUAL",
            automated=to_bool(record.get("automated")),
            estimate=estimate,
            order=to_int(record.get("display_order")) or 0,
            current_version=1,
            created_by_id=runtime.resolve_user(session, record.get("created_by")),
            created_at=to_date(record.get("created_at")),
        )
        session.add(repository_case)
        session.flush()
        id_maps.cases[case_source_id] = repository_case.id
        template_assignments.add((project_id, template_id))

        writer = _CaseValueWriter(runtime, session, state["metadata"])
        writer.write_custom_fields(repository_case.id, case_source_id, record)
        if case_source_id in values_by_case:
            writer.write_multi_select_values(repository_case.id, case_source_id, values_by_case[case_source_id])
        steps = build_case_steps(repository_case.id, steps_by_case.get(case_source_id, []))
        if steps:
            session.add_all(steps)
            session.flush()
        snapshot_case(runtime.context.name_cache, session, repository_case, steps)
        runtime.created(summary)

    policy = runtime.policy(runtime.config.repository_case_chunk_size)
    runtime.log(f"Processing repository cases in batches of {policy.size}")
    runtime.run_chunks("repositoryCases", runtime.staged_rows("repository_cases"), policy, handle)

    if template_assignments:

        def assign_templates(session: Session) -> None:
            for project_id, template_id in sorted(template_assignments):
                ensure_link(session, project_template_assignment, project_id=project_id, template_id=template_id)

        runtime.run_in_transaction(assign_templates)

    if summary.details["estimateAdjusted"]:
        runtime.log(
            "Converted repository case estimates from smaller units",
            count=summary.details["estimateAdjusted"],
        )
    if summary.details["estimateClamped"]:
        runtime.log(
            "Clamped repository case estimates that exceed the supported range",
            count=summary.details["estimateClamped"],
        )
    return summary


def import_repository_case_tags(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("repositoryCaseTags")
    id_maps = runtime.id_maps

    def handle(session: Session, row: StagedRow) -> None:
        case_id = id_maps.cases.get(to_int(row.data.get("case_id")))
        tag_id = id_maps.tags.get(to_int(row.data.get("tag_id")))
        if case_id is None or tag_id is None:
            runtime.skip(
                summary,
                "Skipping case tag with unmapped case or tag",
                caseSourceId=to_int(row.data.get("case_id")),
                tagSourceId=to_int(row.data.get("tag_id")),
            )
            return
        if ensure_link(session, case_tags, case_id=case_id, tag_id=tag_id):
            runtime.created(summary)
        else:
            runtime.mapped(summary)

    runtime.run_chunks(
        "repositoryCaseTags",
        runtime.staged_rows("repository_case_tags"),
        runtime.policy(runtime.config.staging_batch_size),
        handle,
    )
    return summary
