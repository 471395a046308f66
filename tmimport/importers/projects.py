"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Projects, milestones and their links.

Every project, new or reused, gets the imported statuses, workflows,
milestone types and templates assigned, so cases and runs created later can
use them. Milestones are reused by ``(project, name)``; parent and root
milestones are linked once all milestones exist.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from tmimport.core.db_models import (
    Milestone,
    Project,
    Template,
    project_milestone_type_assignment,
    project_status_assignment,
    project_template_assignment,
    project_workflow_assignment,
)
from tmimport.destination import find_first, get_default_milestone_type, get_default_workflow
from tmimport.importers.base import EntitySummary, ImportRuntime, ensure_link
from tmimport.importers.links import import_links
from tmimport.normalization import to_bool, to_date, to_int, to_rich_text_doc, to_str
from tmimport.staging import StagedRow

logger = logging.getLogger("tmimport.importers.projects")


@dataclass
class ProjectAssignments:
    """Reference rows assigned to every imported project."""

    status_ids: list[int] = field(default_factory=list)
    workflow_ids: list[int] = field(default_factory=list)
    milestone_type_ids: list[int] = field(default_factory=list)
    template_ids: list[int] = field(default_factory=list)
    default_template_id: int | None = None

    @classmethod
    def load(cls, runtime: ImportRuntime, session: Session) -> "ProjectAssignments":
        id_maps = runtime.id_maps
        assignments = cls(status_ids=list(dict.fromkeys(id_maps.statuses.values())))

        workflow_ids = list(id_maps.workflows.values())
        default_workflow = get_default_workflow(session, "CASES")
        if default_workflow is not None:
            workflow_ids.append(default_workflow.id)
        assignments.workflow_ids = list(dict.fromkeys(workflow_ids))

        milestone_type_ids = list(id_maps.milestone_types.values())
        default_type = get_default_milestone_type(session)
        if default_type is not None:
            milestone_type_ids.append(default_type.id)
        assignments.milestone_type_ids = list(dict.fromkeys(milestone_type_ids))

        template_ids = list(id_maps.templates.values()) + list(id_maps.template_names.values())
        default_template = find_first(session, Template, is_default=True)
        if default_template is not None:
            template_ids.append(default_template.id)
            assignments.default_template_id = default_template.id
        assignments.template_ids = list(dict.fromkeys(template_ids))
        return assignments

    def apply(self, session: Session, project_id: int) -> int | None:
        """Assign everything to one project and return its default template."""
        for status_id in self.status_ids:
            ensure_link(session, project_status_assignment, project_id=project_id, status_id=status_id)
        for workflow_id in self.workflow_ids:
            ensure_link(session, project_workflow_assignment, project_id=project_id, workflow_id=workflow_id)
        for milestone_type_id in self.milestone_type_ids:
            ensure_link(
                session,
                project_milestone_type_assignment,
                project_id=project_id,
                milestone_type_id=milestone_type_id,
            )
        for template_id in self.template_ids:
            ensure_link(session, project_template_assignment, project_id=project_id, template_id=template_id)

        if self.default_template_id is not None:
            return self.default_template_id

        assigned = session.execute(
            select(project_template_assignment.c.template_id)
            .where(project_template_assignment.c.project_id == project_id)
            .order_by(project_template_assignment.c.template_id)
            .limit(1)
        ).scalar()
        if assigned is not None:
            return assigned

        fallback = session.scalars(select(Template).order_by(Template.id).limit(1)).first()
        if fallback is None:
            return None
        ensure_link(session, project_template_assignment, project_id=project_id, template_id=fallback.id)
        return fallback.id


def import_projects(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("projects")
    id_maps = runtime.id_maps
    state: dict[str, ProjectAssignments] = {}

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        source_id = to_int(record.get("id"))
        if source_id is None:
            runtime.skip(summary, "Skipping project without an id", rowIndex=row.row_index)
            return
        if "assignments" not in state:
            state["assignments"] = ProjectAssignments.load(runtime, session)

        name = to_str(record.get("name")) or f"Imported Project {source_id}"
        project = find_first(session, Project, name=name)
        if project is not None:
            runtime.mapped(summary)
        else:
            project = Project(
                name=name,
                note=to_str(record.get("note")),
                docs=to_rich_text_doc(record.get("docs")),
                is_completed=to_bool(record.get("is_completed")),
                completed_at=to_date(record.get("completed_at")),
                created_by_id=runtime.resolve_user(session, record.get("created_by")),
                created_at=to_date(record.get("created_at")),
            )
            session.add(project)
            session.flush()
            runtime.created(summary)

        id_maps.projects[source_id] = project.id
        default_template_id = state["assignments"].apply(session, project.id)
        id_maps.project_default_templates[project.id] = default_template_id
        if project.default_template_id is None and default_template_id is not None:
            project.default_template_id = default_template_id

    runtime.run_chunks(
        "projects",
        runtime.staged_rows("projects"),
        runtime.policy(runtime.config.staging_batch_size),
        handle,
    )
    if summary.total == 0:
        runtime.log("No projects dataset found; skipping project import.")
    return summary


def import_project_links(runtime: ImportRuntime) -> EntitySummary:
    return import_links(
        runtime,
        "projectLinks",
        "project_links",
        "project_id",
        runtime.id_maps.projects,
        Project,
        runtime.config.staging_batch_size,
    )


def import_milestones(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("milestones")
    id_maps = runtime.id_maps
    # (destination milestone, source parent, source root) of created milestones
    pending: list[tuple[int, int | None, int | None]] = []
    fallback_type: dict[str, int | None] = {}

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        source_id = to_int(record.get("id"))
        project_source_id = to_int(record.get("project_id"))
        project_id = id_maps.projects.get(project_source_id)
        if source_id is None or project_id is None:
            runtime.skip(
                summary,
                "Skipping milestone due to missing project mapping",
                sourceId=source_id,
                projectSourceId=project_source_id,
            )
            return

        if "id" not in fallback_type:
            default_type = get_default_milestone_type(session)
            fallback_type["id"] = default_type.id if default_type is not None else None
        type_source_id = to_int(record.get("type_id"))
        milestone_type_id = id_maps.milestone_types.get(type_source_id) or fallback_type["id"]
        if milestone_type_id is None:
            runtime.skip(
                summary,
                "Skipping milestone due to missing milestone type mapping",
                sourceId=source_id,
                typeSourceId=type_source_id,
            )
            return

        name = to_str(record.get("name")) or f"Imported Milestone {source_id}"
        existing = find_first(session, Milestone, project_id=project_id, name=name)
        if existing is not None:
            id_maps.milestones[source_id] = existing.id
            runtime.mapped(summary)
            return

        milestone = Milestone(
            project_id=project_id,
            milestone_type_id=milestone_type_id,
            name=name,
            note=to_rich_text_doc(record.get("note")),
            docs=to_rich_text_doc(record.get("docs")),
            is_started=to_bool(record.get("is_started")),
            is_completed=to_bool(record.get("is_completed")),
            started_at=to_date(record.get("started_at")),
            completed_at=to_date(record.get("completed_at")),
            created_by_id=runtime.resolve_user(session, record.get("created_by")),
            created_at=to_date(record.get("created_at")),
        )
        session.add(milestone)
        session.flush()
        id_maps.milestones[source_id] = milestone.id
        pending.append((milestone.id, to_int(record.get("parent_id")), to_int(record.get("root_id"))))
        runtime.created(summary)

    runtime.run_chunks(
        "milestones",
        runtime.staged_rows("milestones"),
        runtime.policy(runtime.config.staging_batch_size),
        handle,
    )

    def link_hierarchy(session: Session) -> None:
        for milestone_id, parent_source_id, root_source_id in pending:
            parent_id = id_maps.milestones.get(parent_source_id)
            root_id = id_maps.milestones.get(root_source_id)
            if parent_id is None and root_id is None:
                continue
            values = {}
            if parent_id is not None:
                values["parent_id"] = parent_id
            if root_id is not None:
                values["root_id"] = root_id
            session.execute(update(Milestone).where(Milestone.id == milestone_id).values(**values))

    if pending:
        runtime.run_in_transaction(link_hierarchy)
    return summary


def import_milestone_links(runtime: ImportRuntime) -> EntitySummary:
    return import_links(
        runtime,
        "milestoneLinks",
        "milestone_links",
        "milestone_id",
        runtime.id_maps.milestones,
        Milestone,
        runtime.config.staging_batch_size,
    )
